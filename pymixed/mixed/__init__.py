"""
Linear mixed models fitted by profiled maximum likelihood.

Public API:
    lmm()                   - fit a linear mixed model (ML or REML)
    LMMSolution             - result wrapper for a fitted model
    likelihood_ratio_test() - compare nested fitted models
    benchmark_fit()         - dimensions and fit cost of a model
    records_to_frame()      - benchmark records as a DataFrame
    write_records()         - benchmark records as a delimited file
    ContrastCoding          - contrast coding of a categorical factor
"""

from pymixed.mixed.solvers import lmm
from pymixed.mixed.solution import LMMSolution
from pymixed.mixed._common import DimensionRecord, TermDimension, VarCompSummary
from pymixed.mixed._contrasts import ContrastCoding
from pymixed.mixed._lrt import LRTResult, likelihood_ratio_test
from pymixed.mixed.benchmark import benchmark_fit, records_to_frame, write_records

__all__ = [
    "lmm",
    "LMMSolution",
    "DimensionRecord",
    "TermDimension",
    "VarCompSummary",
    "ContrastCoding",
    "LRTResult",
    "likelihood_ratio_test",
    "benchmark_fit",
    "records_to_frame",
    "write_records",
]
