"""
Solver entry point for linear mixed models.

Public API:
    lmm() - fit a linear mixed model by profiled ML (or REML)
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import replace
from typing import Any, Mapping

import numpy as np
from numpy.typing import ArrayLike
from scipy import stats

from pymixed._config import OptimizerSettings, get_optimizer_defaults
from pymixed.core.exceptions import ConvergenceWarning, ValidationError
from pymixed.core.result import Result
from pymixed.core.compute.timing import Timer

from pymixed.mixed._blocked import BlockedSystem
from pymixed.mixed._common import LMMParams, TermDimension, VarCompSummary
from pymixed.mixed._contrasts import ContrastCoding
from pymixed.mixed._deviance import objective, profiled_deviance
from pymixed.mixed._optimizer import optimize_theta
from pymixed.mixed._pls import solve_pls
from pymixed.mixed._random_effects import ReTerm, theta_lower_bounds, theta_start
from pymixed.mixed._update_l import update_l
from pymixed.mixed.design import MixedDesign
from pymixed.mixed.solution import LMMSolution

logger = logging.getLogger(__name__)


def lmm(
    formula: str,
    data: 'Any',
    *,
    contrasts: 'Mapping[str, str | ContrastCoding] | None' = None,
    reml: bool = False,
    optimizer: 'OptimizerSettings | str | None' = None,
    initial_theta: ArrayLike | None = None,
) -> LMMSolution:
    """Fit a linear mixed model.

    Estimates the covariance parameters θ by minimizing the profiled
    deviance with a derivative-free optimizer. Each evaluation refactors
    the blocked Cholesky factor of the penalized cross-product system;
    β̂, σ² and the conditional modes are then read off the factor at θ̂.

    Args:
        formula: Model formula, e.g.
            ``"rt ~ 1 + spkr * prec + (1 + prec | item) + (1 | subj)"``.
        data: Observation table (DataFrame or mapping of column arrays).
        contrasts: Mapping of categorical column name to a contrast
            scheme ('treatment', 'effects', 'helmert') or ContrastCoding.
        reml: If True, use the REML criterion. Default ML (reml=False),
            which is what likelihood ratio tests between models with
            different fixed effects require.
        optimizer: OptimizerSettings, or a method name ('Nelder-Mead',
            'Powell') applied on top of the configured defaults. None
            uses the defaults from ``pymixed.get_optimizer_defaults()``.
        initial_theta: Starting θ. Default: identity relative covariance
            factors.

    Returns:
        LMMSolution with fixed effects, variance components, conditional
        modes, fit statistics and an R-style summary().

    Raises:
        FormulaError: Malformed formula or unknown columns.
        ValidationError: Invalid data or initial θ.
        ConvergenceError: The deviance is not finite at the initial θ.

    Examples:
        >>> fit = lmm("y ~ 1 + x + (1 | g)", df)
        >>> fit = lmm("rt ~ 1 + prec + (1 + prec | subj)", kb07,
        ...           contrasts={'prec': 'helmert'})
    """
    timer = Timer()
    timer.start()
    warn_list: list[str] = []

    settings = _resolve_settings(optimizer)

    with timer.section('setup'):
        design = MixedDesign.build(formula, data, contrasts)
        if design.dropped_columns:
            warn_list.append(
                f"Aliased fixed-effect columns dropped: {list(design.dropped_columns)}"
            )

        # Each fit owns its system and workspace
        system = BlockedSystem.build(design)
        state = system.new_state()

        reterms = list(system.reterms)
        lower = theta_lower_bounds(reterms)
        theta0 = _initial_theta(initial_theta, reterms, lower)

    with timer.section('optimization'):
        optsum = optimize_theta(
            lambda theta: objective(system, theta, state, reml=reml),
            theta0,
            lower,
            settings,
        )

    converged = optsum.converged
    if not converged:
        msg = (
            f"LMM optimizer did not converge after {optsum.feval} evaluations. "
            f"Message: {optsum.message}"
        )
        warnings.warn(msg, ConvergenceWarning, stacklevel=2)
        warn_list.append(msg)

    # Final solve at θ̂; the workspace holds the last evaluated θ
    with timer.section('final_solve'):
        theta_hat = optsum.final
        update_l(system, theta_hat, state)
        deviance = profiled_deviance(system, state, reml=reml)
        pls = solve_pls(system, state, reml=reml)

    with timer.section('variance_components'):
        var_comps = _extract_var_components(theta_hat, pls.sigma_sq, system)

    with timer.section('inference'):
        vcov = pls.sigma_sq * pls.vcov_unscaled
        se = np.sqrt(np.maximum(np.diag(vcov), 0.0))
        z_vals = pls.beta / se
        p_vals = 2.0 * stats.norm.sf(np.abs(z_vals))

    dof = len(theta_hat) + design.p + 1
    ll, aic, aicc, bic = _compute_fit_stats(deviance, dof, design.n)

    timer.stop()

    logger.debug(
        "lmm %r: deviance=%.6f fevals=%d converged=%s",
        formula, deviance, optsum.feval, converged,
    )

    params = LMMParams(
        coefficients=pls.beta,
        coefficient_names=design.coefficient_names,
        se=se,
        z_values=z_vals,
        p_values=p_vals,
        vcov=vcov,
        dropped_columns=design.dropped_columns,
        var_components=tuple(var_comps),
        residual_variance=pls.sigma_sq,
        residual_std=float(np.sqrt(pls.sigma_sq)),
        terms=tuple(
            TermDimension(group=t.group_name, n_levels=t.n_levels, q=t.q)
            for t in reterms
        ),
        deviance=deviance,
        log_likelihood=ll,
        reml=reml,
        dof=dof,
        aic=aic,
        aicc=aicc,
        bic=bic,
        n_obs=design.n,
        converged=converged,
        fevals=optsum.feval,
        optsum=optsum,
        random_effects={t.group_name: b for t, b in zip(reterms, pls.b)},
        random_effect_levels={t.group_name: t.levels for t in reterms},
        random_effect_names={t.group_name: t.cnames for t in reterms},
        fitted_values=pls.fitted,
        residuals=pls.residuals,
        theta=theta_hat,
        formula=design.formula.formula,
    )

    result = Result(
        params=params,
        info={
            'method': 'REML' if reml else 'ML',
            'optimizer': settings.method,
            'converged': converged,
            'fevals': optsum.feval,
            'deviance': deviance,
            'message': optsum.message,
            'block_kinds': dict(system.kinds),
        },
        timing=timer.result(),
        backend_name='cpu_blocked_cholesky',
        warnings=tuple(warn_list),
    )

    return LMMSolution(_result=result)


# =====================================================================
# Helpers
# =====================================================================

def _resolve_settings(optimizer: 'OptimizerSettings | str | None') -> OptimizerSettings:
    if optimizer is None:
        return get_optimizer_defaults()
    if isinstance(optimizer, OptimizerSettings):
        return optimizer
    if isinstance(optimizer, str):
        return replace(get_optimizer_defaults(), method=optimizer)
    raise ValidationError(
        f"optimizer must be OptimizerSettings, a method name or None, "
        f"got {type(optimizer).__name__}"
    )


def _initial_theta(
    initial_theta: ArrayLike | None,
    reterms: list[ReTerm],
    lower: np.ndarray,
) -> np.ndarray:
    if initial_theta is None:
        return theta_start(reterms)

    theta0 = np.asarray(initial_theta, dtype=np.float64).ravel()
    if theta0.shape != lower.shape:
        raise ValidationError(
            f"initial_theta must have length {len(lower)}, got {theta0.shape[0]}"
        )
    if not np.all(np.isfinite(theta0)):
        raise ValidationError("initial_theta contains non-finite values")
    if np.any(theta0 < lower):
        raise ValidationError(
            f"initial_theta violates the lower bounds at positions "
            f"{np.flatnonzero(theta0 < lower).tolist()}"
        )
    return theta0


def _extract_var_components(
    theta: np.ndarray,
    sigma_sq: float,
    system: BlockedSystem,
) -> list[VarCompSummary]:
    """Variance component summaries from θ and σ².

    The covariance of the random effects of term i is σ² Λ_i Λ_iᵗ.
    """
    var_comps = []
    for term, sl in zip(system.reterms, system.theta_slices):
        lam = term.lambda_factor(theta[sl])
        cov = sigma_sq * (lam @ lam.T)
        sd = np.sqrt(np.maximum(np.diag(cov), 0.0))

        for a in range(term.q):
            corr: tuple[float, ...] = ()
            if term.correlated and a > 0:
                corr = tuple(
                    float(np.clip(cov[a, b] / (sd[a] * sd[b]), -1.0, 1.0))
                    if sd[a] > 0 and sd[b] > 0 else float('nan')
                    for b in range(a)
                )
            var_comps.append(VarCompSummary(
                group=term.group_name,
                name=term.cnames[a],
                variance=float(cov[a, a]),
                std_dev=float(sd[a]),
                corr=corr,
            ))
    return var_comps


def _compute_fit_stats(deviance: float, dof: int, n: int) -> tuple[float, float, float, float]:
    """Log-likelihood, AIC, AICc and BIC from the deviance."""
    ll = -0.5 * deviance
    aic = deviance + 2.0 * dof
    denom = n - dof - 1
    aicc = aic + 2.0 * dof * (dof + 1) / denom if denom > 0 else np.inf
    bic = deviance + dof * np.log(n)
    return float(ll), float(aic), float(aicc), float(bic)
