"""
User-facing view of a fitted linear mixed model.

LMMSolution sits on top of a Result[LMMParams] envelope. It exposes the
estimates as numpy arrays and pandas frames, renders an lme4-style
summary, compares models by likelihood ratio and reports the model's
dimensions for benchmarking.
"""

from __future__ import annotations

import numpy as np
import pandas as pd
from numpy.typing import NDArray

from pymixed.core.result import Result
from pymixed.mixed._common import DimensionRecord, LMMParams, VarCompSummary
from pymixed.mixed._lrt import LRTResult, likelihood_ratio_test, _format_pvalue
from pymixed.mixed._optimizer import OptSummary

# (upper p bound, marker), checked in order
_STAR_LEVELS = ((0.001, '***'), (0.01, '**'), (0.05, '*'), (0.1, '.'))
SIGNIF_LEGEND = "Signif. codes:  0 '***' 0.001 '**' 0.01 '*' 0.05 '.' 0.1 ' ' 1"


def _stars(p: float) -> str:
    for bound, marker in _STAR_LEVELS:
        if p < bound:
            return marker
    return ' '


class LMMSolution:
    """A fitted linear mixed model.

    Returned by :func:`pymixed.mixed.lmm`; not meant to be built by hand.
    Everything is read from the frozen ``Result`` it wraps, so a solution
    never changes after the fit returns.
    """

    def __init__(self, _result: Result[LMMParams]):
        self._result = _result

    # Envelope

    @property
    def params(self) -> LMMParams:
        """The full parameter payload."""
        return self._result.params

    @property
    def info(self) -> dict:
        return self._result.info

    @property
    def timing(self) -> dict[str, float] | None:
        """Seconds spent per fit stage, plus ``total_seconds``."""
        return self._result.timing

    @property
    def warnings(self) -> tuple[str, ...]:
        """Non-fatal conditions met during the fit."""
        return self._result.warnings

    # Covariance parameters and optimizer

    @property
    def theta(self) -> NDArray:
        """θ̂, the lower-triangle entries of every Λ_i in term order."""
        return self.params.theta

    @property
    def optsum(self) -> OptSummary:
        return self.params.optsum

    @property
    def converged(self) -> bool:
        return self.params.converged

    @property
    def fevals(self) -> int:
        """Deviance evaluations spent by the optimizer."""
        return self.params.fevals

    # Fixed effects

    @property
    def coefficients(self) -> NDArray:
        return self.params.coefficients

    @property
    def fixef(self) -> dict[str, float]:
        """β̂ keyed by coefficient name."""
        p = self.params
        return {name: float(b) for name, b in zip(p.coefficient_names, p.coefficients)}

    @property
    def se(self) -> NDArray:
        return self.params.se

    @property
    def z_values(self) -> NDArray:
        return self.params.z_values

    @property
    def p_values(self) -> NDArray:
        """Two-sided p-values of the z statistics."""
        return self.params.p_values

    @property
    def vcov(self) -> NDArray:
        """Covariance matrix of β̂, σ̂²(L_X L_Xᵗ)⁻¹."""
        return self.params.vcov

    def coef_table(self) -> pd.DataFrame:
        """Estimates, standard errors, z values and p-values as a frame."""
        p = self.params
        return pd.DataFrame(
            np.column_stack([p.coefficients, p.se, p.z_values, p.p_values]),
            index=list(p.coefficient_names),
            columns=['Estimate', 'Std. Error', 'z value', 'Pr(>|z|)'],
        )

    # Random effects

    @property
    def ranef(self) -> dict[str, pd.DataFrame]:
        """Conditional modes per grouping factor.

        One frame per factor, indexed by level, with one column per
        random-effects column of the term.
        """
        p = self.params
        frames = {}
        for group, modes in p.random_effects.items():
            frames[group] = pd.DataFrame(
                modes,
                index=pd.Index(p.random_effect_levels[group], name=group),
                columns=list(p.random_effect_names[group]),
            )
        return frames

    @property
    def var_components(self) -> tuple[VarCompSummary, ...]:
        return self.params.var_components

    @property
    def sigma(self) -> float:
        """Residual standard deviation."""
        return self.params.residual_std

    # Fit statistics

    @property
    def deviance(self) -> float:
        """Objective at θ̂: -2 log L for ML, the REML criterion otherwise."""
        return self.params.deviance

    @property
    def log_likelihood(self) -> float:
        return self.params.log_likelihood

    @property
    def dof(self) -> int:
        """Parameter count len(θ) + p + 1 used by AIC, AICc and BIC."""
        return self.params.dof

    @property
    def aic(self) -> float:
        return self.params.aic

    @property
    def aicc(self) -> float:
        return self.params.aicc

    @property
    def bic(self) -> float:
        return self.params.bic

    @property
    def fitted_values(self) -> NDArray:
        return self.params.fitted_values

    @property
    def residuals(self) -> NDArray:
        return self.params.residuals

    # Comparison and records

    def compare(self, *others: 'LMMSolution') -> LRTResult:
        """Likelihood ratio test of this model against ``others``.

        Fit every model with ML (``reml=False``) to the same data.
        """
        return likelihood_ratio_test(self, *others)

    def dimension_record(self, name: str | None = None) -> DimensionRecord:
        """Sizes and cost of this fit; ``name`` defaults to the formula."""
        p = self.params
        total = self.timing.get('total_seconds', np.nan) if self.timing else np.nan
        return DimensionRecord(
            name=p.formula if name is None else name,
            n_obs=p.n_obs,
            p=len(p.coefficients),
            terms=p.terms,
            n_theta=len(p.theta),
            fevals=p.fevals,
            fit_seconds=float(total),
            deviance=p.deviance,
            converged=p.converged,
        )

    # Text output

    def summary(self) -> str:
        """Summary text in the layout of lme4's ``summary(lmer(...))``."""
        p = self.params
        criterion = 'REML' if p.reml else 'maximum likelihood'
        parts = [
            [f"Linear mixed model fit by {criterion}", f" Formula: {p.formula}"],
            _fit_block(p),
            _random_block(p),
            _fixed_block(p),
        ]
        if p.dropped_columns:
            parts.append([f"Aliased columns dropped: {', '.join(p.dropped_columns)}"])
        status = 'converged' if p.converged else 'NOT converged'
        parts.append([
            f"Optimizer: {p.optsum.method}, {p.fevals} evaluations, {status}",
            f"θ: {np.array2string(p.theta, precision=4)}",
        ])
        return '\n\n'.join('\n'.join(block) for block in parts)

    def __repr__(self) -> str:
        p = self.params
        return (
            f"LMMSolution({'REML' if p.reml else 'ML'}, n={p.n_obs}, "
            f"fixed={len(p.coefficients)}, theta={len(p.theta)}, "
            f"deviance={p.deviance:.4f})"
        )


def _fit_block(p: LMMParams) -> list[str]:
    labels = ('AIC', 'AICc', 'BIC', 'logLik', 'deviance')
    values = (p.aic, p.aicc, p.bic, p.log_likelihood, p.deviance)
    return [
        ' ' + ' '.join(f"{label:>10s}" for label in labels),
        ' ' + ' '.join(f"{value:10.4f}" for value in values),
    ]


def _random_block(p: LMMParams) -> list[str]:
    out = [
        "Random effects:",
        f" {'Groups':<12s} {'Name':<18s} {'Variance':>10s} {'Std.Dev.':>10s} Corr",
    ]
    shown = None
    for vc in p.var_components:
        group = '' if vc.group == shown else vc.group
        shown = vc.group
        corr = ' '.join(f"{c:5.2f}" for c in vc.corr)
        out.append(
            f" {group:<12s} {vc.name:<18s} {vc.variance:10.4f} {vc.std_dev:10.4f} {corr}".rstrip()
        )
    out.append(
        f" {'Residual':<12s} {'':<18s} {p.residual_variance:10.4f} {p.residual_std:10.4f}"
    )
    levels = '; '.join(f"{t.group}, {t.n_levels}" for t in p.terms)
    out.append(f" Number of obs: {p.n_obs}; levels of grouping factors: {levels}")
    return out


def _fixed_block(p: LMMParams) -> list[str]:
    width = max([15] + [len(name) for name in p.coefficient_names])
    out = [
        "Fixed effects:",
        f" {'':>{width}s} {'Estimate':>10s} {'Std.Error':>10s} {'z value':>10s} {'Pr(>|z|)':>10s}",
    ]
    rows = zip(p.coefficient_names, p.coefficients, p.se, p.z_values, p.p_values)
    for name, est, se, z, pval in rows:
        out.append(
            f" {name:>{width}s} {est:10.4f} {se:10.4f} {z:10.3f} "
            f"{_format_pvalue(pval):>10s} {_stars(pval)}"
        )
    out.extend(["---", SIGNIF_LEGEND])
    return out
