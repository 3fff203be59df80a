"""
pymixed: linear mixed-effects models by profiled maximum likelihood.

Fits models with crossed or nested random-effects terms using a blocked
sparse Cholesky factorization of the penalized cross-product system,
compares them by deviance, AIC, AICc, BIC and likelihood ratio tests,
and records fit cost per model.

Submodules:
    mixed: Model fitting, comparison and benchmark records
    core: Exceptions, result envelope, timing, validation
"""

__version__ = "0.1.0"

from pymixed import mixed
from pymixed._config import (
    OptimizerSettings,
    get_optimizer_defaults,
    set_optimizer_defaults,
    reset_optimizer_defaults,
)
from pymixed.mixed import (
    lmm,
    LMMSolution,
    ContrastCoding,
    likelihood_ratio_test,
    benchmark_fit,
    records_to_frame,
    write_records,
)

__all__ = [
    "__version__",
    "mixed",
    "lmm",
    "LMMSolution",
    "ContrastCoding",
    "likelihood_ratio_test",
    "benchmark_fit",
    "records_to_frame",
    "write_records",
    "OptimizerSettings",
    "get_optimizer_defaults",
    "set_optimizer_defaults",
    "reset_optimizer_defaults",
]
