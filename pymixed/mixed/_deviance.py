"""
Profiled deviance of a linear mixed model.

The profiled deviance is the objective that the outer optimizer
minimizes over θ. β and σ² are profiled out analytically, so once L(θ)
is available the deviance needs only its diagonal and the last element
of the response block:

    ML:   d(θ) = log|L_Z|² + n × [1 + log(2π × pwrss/n)]

    REML: d(θ) = log|L_Z|² + log|L_X|² + (n-p) × [1 + log(2π × pwrss/(n-p))]

where log|L_Z|² sums over the random-effects diagonal blocks,
L_X is the fixed-effects diagonal block and pwrss = L_yy².

References:
    Bates, D., Maechler, M., Bolker, B., & Walker, S. (2015).
    Fitting Linear Mixed-Effects Models Using lme4.
    Journal of Statistical Software, 67(1), Sections 2-3.
"""

from __future__ import annotations

import logging

import numpy as np
from numpy.typing import NDArray

from pymixed.core.exceptions import NotPositiveDefiniteError
from pymixed.mixed._blocked import BlockedSystem, FactorState, DIAGONAL, BLOCKDIAG
from pymixed.mixed._update_l import update_l

logger = logging.getLogger(__name__)

# Objective value for θ where L(θ) cannot be factored
INFEASIBLE = np.inf


def logdet_block(L, kind: str) -> float:
    """log of the squared determinant of one factored diagonal block."""
    if kind == DIAGONAL:
        return 2.0 * float(np.sum(np.log(L)))
    if kind == BLOCKDIAG:
        return 2.0 * float(np.sum(np.log(np.diagonal(L, axis1=1, axis2=2))))
    return 2.0 * float(np.sum(np.log(np.diag(L))))


def logdet_random(system: BlockedSystem, state: FactorState) -> float:
    """log|Λᵗ Z ᵗZ Λ + I|, summed over the random-effects blocks."""
    return sum(
        logdet_block(state.blocks[(j, j)], system.kinds[(j, j)])
        for j in range(system.k)
    )


def logdet_fixed(system: BlockedSystem, state: FactorState) -> float:
    """log|L_X|², the REML correction term."""
    xb = system.x_block
    return logdet_block(state.blocks[(xb, xb)], system.kinds[(xb, xb)])


def pwrss(system: BlockedSystem, state: FactorState) -> float:
    """Penalized residual sum of squares ‖y - Xβ - ZΛu‖² + ‖u‖²."""
    yb = system.y_block
    return float(state.blocks[(yb, yb)][0, 0] ** 2)


def profiled_deviance(system: BlockedSystem, state: FactorState, reml: bool = False) -> float:
    """Profiled ML (or REML) deviance from an up-to-date factor.

    Args:
        system: Blocked system of the model.
        state: Workspace holding L(θ), as left by ``update_l``.
        reml: If True, return the REML criterion.

    Returns:
        Deviance (-2 × maximized log-likelihood for the given θ).
    """
    if not state.valid:
        raise ValueError("Factor state is not valid; call update_l first")

    n, p = system.design.n, system.design.p
    ld = logdet_random(system, state)
    rss = pwrss(system, state)
    if reml:
        df = n - p
        return float(
            ld + logdet_fixed(system, state)
            + df * (1.0 + np.log(2.0 * np.pi * rss / df))
        )
    return float(ld + n * (1.0 + np.log(2.0 * np.pi * rss / n)))


def objective(
    system: BlockedSystem,
    theta: NDArray,
    state: FactorState,
    reml: bool = False,
) -> float:
    """Profiled deviance as a function of θ.

    Refactors L(θ) into ``state`` and evaluates the deviance. Values of θ
    for which a diagonal block is not positive definite, or where the
    deviance is not finite, give INFEASIBLE instead of raising.
    """
    try:
        update_l(system, theta, state)
    except NotPositiveDefiniteError as e:
        logger.debug("infeasible θ=%s: %s", theta, e)
        return INFEASIBLE

    dev = profiled_deviance(system, state, reml=reml)
    if not np.isfinite(dev):
        return INFEASIBLE
    return dev
