"""
Frozen records produced by a linear mixed-model fit.

LMMParams is the payload of the Result envelope that ``lmm`` returns.
The other records describe pieces of it: one variance component, the
size of one random-effects term, and one row of a benchmark table.
None of them compute anything.
"""

from dataclasses import dataclass

from numpy.typing import NDArray

from pymixed.mixed._optimizer import OptSummary


@dataclass(frozen=True)
class VarCompSummary:
    """Variance and correlations of one column of a random-effects term.

    Attributes:
        group: Grouping factor, e.g. 'subj'.
        name: Column label inside the term, e.g. 'prec: maintain'.
        variance: σ² times the diagonal entry of ΛΛᵗ for this column.
        std_dev: Its square root.
        corr: Correlations with the preceding columns of the same term,
            in column order. Empty for the first column and for
            uncorrelated (``||``) terms.
    """
    group: str
    name: str
    variance: float
    std_dev: float
    corr: tuple[float, ...] = ()


@dataclass(frozen=True)
class TermDimension:
    """Size of one random-effects term."""
    group: str
    n_levels: int
    q: int


@dataclass(frozen=True)
class LMMParams:
    """
    Everything estimated or derived when fitting one model.

    Arrays indexed by fixed effect have length p, the number of columns
    of X left after aliased columns are dropped. Per-observation arrays
    have length n_obs.
    """
    formula: str
    reml: bool
    n_obs: int

    coefficients: NDArray
    coefficient_names: tuple[str, ...]
    se: NDArray
    z_values: NDArray
    p_values: NDArray                  # two-sided, standard normal
    vcov: NDArray                      # σ̂²(L_X L_Xᵗ)⁻¹
    dropped_columns: tuple[str, ...]

    theta: NDArray
    var_components: tuple[VarCompSummary, ...]
    residual_variance: float
    residual_std: float
    terms: tuple[TermDimension, ...]

    deviance: float
    log_likelihood: float
    dof: int                           # len(θ) + p + 1
    aic: float
    aicc: float
    bic: float

    converged: bool
    fevals: int
    optsum: OptSummary

    # group → (n_levels, q) conditional modes, with row and column labels
    random_effects: dict[str, NDArray]
    random_effect_levels: dict[str, tuple[str, ...]]
    random_effect_names: dict[str, tuple[str, ...]]

    fitted_values: NDArray             # Xβ̂ + Zb̂
    residuals: NDArray


@dataclass(frozen=True)
class DimensionRecord:
    """Dimensions and fit cost of one model, one row of a benchmark table.

    Attributes:
        name: Model label.
        n_obs: Number of observations.
        p: Number of fixed-effect columns.
        terms: (group, n_levels, q) for each random-effects term.
        n_theta: Length of θ.
        fevals: Objective evaluations used by the optimizer.
        fit_seconds: Median wall-clock seconds per fit.
        deviance: Objective at θ̂.
        converged: Whether the optimizer converged.
    """
    name: str
    n_obs: int
    p: int
    terms: tuple[TermDimension, ...]
    n_theta: int
    fevals: int
    fit_seconds: float
    deviance: float
    converged: bool
