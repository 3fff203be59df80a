"""
Derivative-free optimization of the profiled deviance over θ.

The driver wraps ``scipy.optimize.minimize`` with bound constraints
(diagonal elements of each Λ_i are non-negative), counts every objective
evaluation, keeps the best θ seen, and checks the boundary once the
search stops: diagonal elements that are essentially zero are set to
exactly zero when that does not make the objective worse.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Callable

import numpy as np
from numpy.typing import NDArray
from scipy.optimize import minimize

from pymixed._config import OptimizerSettings
from pymixed.core.exceptions import ConvergenceError

logger = logging.getLogger(__name__)

# Diagonal θ elements below this are candidates for the boundary
BOUNDARY_TOL = 1e-5


class FitStatus(enum.Enum):
    CONVERGED = 'converged'
    FAILED = 'failed'


@dataclass(frozen=True)
class OptSummary:
    """Record of one θ optimization.

    Attributes:
        initial: Starting θ.
        lower_bounds: Lower bound of each θ element.
        method: scipy.optimize.minimize method used.
        ftol_abs: Absolute objective tolerance.
        ftol_rel: Relative objective tolerance.
        xtol_abs: Absolute θ tolerance.
        maxfeval: Evaluation cap.
        final: Best θ found.
        fmin: Objective at ``final``.
        feval: Number of objective evaluations, boundary check included.
        status: CONVERGED or FAILED.
        message: Optimizer message.
    """
    initial: NDArray
    lower_bounds: NDArray
    method: str
    ftol_abs: float
    ftol_rel: float
    xtol_abs: float
    maxfeval: int
    final: NDArray
    fmin: float
    feval: int
    status: FitStatus
    message: str

    @property
    def converged(self) -> bool:
        return self.status is FitStatus.CONVERGED


class _CountingObjective:
    """Objective wrapper that counts calls and tracks the best point."""

    def __init__(self, fn: Callable[[NDArray], float]):
        self.fn = fn
        self.feval = 0
        self.best_x: NDArray | None = None
        self.best_f = np.inf

    def __call__(self, x: NDArray) -> float:
        f = float(self.fn(x))
        self.feval += 1
        if self.best_x is None or f < self.best_f:
            self.best_f = f
            self.best_x = np.array(x, dtype=np.float64)
        if self.feval % 500 == 0:
            logger.debug("feval %d: best deviance %.6f", self.feval, self.best_f)
        return f


def optimize_theta(
    fn: Callable[[NDArray], float],
    theta0: NDArray,
    lower: NDArray,
    settings: OptimizerSettings,
) -> OptSummary:
    """Minimize ``fn`` over θ subject to ``θ >= lower``.

    Args:
        fn: Objective; returns +inf for infeasible θ.
        theta0: Starting θ (must be feasible).
        lower: Lower bounds, -inf for unbounded elements.
        settings: Method, tolerances and evaluation cap.

    Returns:
        OptSummary. ``status`` is FAILED when the evaluation cap was hit
        or the optimizer reported failure; the best θ is still returned.

    Raises:
        ConvergenceError: If the objective is not finite at ``theta0``.
    """
    theta0 = np.asarray(theta0, dtype=np.float64)
    lower = np.asarray(lower, dtype=np.float64)
    counted = _CountingObjective(fn)

    f0 = counted(theta0)
    if not np.isfinite(f0):
        raise ConvergenceError(
            f"Objective is not finite at the initial θ {theta0}",
            iterations=counted.feval,
            reason="infeasible",
        )

    bounds = [(lb if np.isfinite(lb) else None, None) for lb in lower]
    remaining = max(settings.maxfeval - counted.feval, 1)
    if settings.method == 'Nelder-Mead':
        options = {
            'fatol': settings.ftol(f0),
            'xatol': settings.xtol_abs,
            'maxfev': remaining,
            'maxiter': remaining,
        }
    else:
        options = {
            'ftol': settings.ftol(f0) / max(abs(f0), 1.0),
            'xtol': settings.xtol_abs,
            'maxfev': remaining,
        }

    logger.debug(
        "optimizing %d θ parameters with %s, f(θ0)=%.6f",
        len(theta0), settings.method, f0,
    )
    res = minimize(counted, theta0, method=settings.method, bounds=bounds, options=options)

    capped = counted.feval >= settings.maxfeval
    status = FitStatus.CONVERGED if res.success and not capped else FitStatus.FAILED
    message = str(res.message)
    if capped and res.success:
        message = f"Reached the cap of {settings.maxfeval} evaluations"

    best_x = counted.best_x.copy()
    best_f = counted.best_f
    best_x, best_f = _check_boundary(counted, best_x, best_f, lower)

    logger.debug(
        "optimizer %s after %d evaluations: deviance %.6f",
        status.value, counted.feval, best_f,
    )

    return OptSummary(
        initial=theta0,
        lower_bounds=lower,
        method=settings.method,
        ftol_abs=settings.ftol_abs,
        ftol_rel=settings.ftol_rel,
        xtol_abs=settings.xtol_abs,
        maxfeval=settings.maxfeval,
        final=best_x,
        fmin=best_f,
        feval=counted.feval,
        status=status,
        message=message,
    )


def _check_boundary(
    counted: _CountingObjective,
    x: NDArray,
    f: float,
    lower: NDArray,
) -> tuple[NDArray, float]:
    """Snap near-zero bounded elements to zero if the objective allows."""
    on_bound = (lower == 0.0) & (x != 0.0) & (np.abs(np.round(x, 10)) < BOUNDARY_TOL)
    if not np.any(on_bound):
        return x, f

    trial = x.copy()
    trial[on_bound] = 0.0
    f_trial = counted(trial)
    if f_trial <= f:
        logger.debug("θ elements %s set to zero", np.flatnonzero(on_bound).tolist())
        return trial, f_trial
    return x, f
