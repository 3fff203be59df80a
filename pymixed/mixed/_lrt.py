"""
Likelihood ratio tests between fitted linear mixed models.

Models are ordered by degrees of freedom; each model is tested against
the one before it with χ² = difference in deviance on the difference in
dof. The test is only meaningful for nested models fitted by ML to the
same observations, which is checked as far as it can be.
"""

from __future__ import annotations

import warnings
from dataclasses import dataclass

from scipy import stats

from pymixed.core.exceptions import ValidationError


@dataclass(frozen=True)
class LRTRow:
    """One model in a likelihood ratio test table."""
    formula: str
    dof: int
    deviance: float
    aic: float
    aicc: float
    bic: float
    chisq: float | None = None
    chi_dof: int | None = None
    p_value: float | None = None


@dataclass(frozen=True)
class LRTResult:
    """Likelihood ratio test over a sequence of models, ordered by dof."""
    rows: tuple[LRTRow, ...]

    @property
    def p_values(self) -> tuple[float | None, ...]:
        return tuple(r.p_value for r in self.rows)

    def summary(self) -> str:
        lines = [
            "Likelihood Ratio Test",
            f" {'model':<6s} {'dof':>4s} {'deviance':>12s} {'AIC':>12s} "
            f"{'BIC':>12s} {'Chisq':>10s} {'Df':>4s} {'Pr(>Chisq)':>11s}",
        ]
        for i, r in enumerate(self.rows, start=1):
            if r.chisq is None:
                tail = f" {'':>10s} {'':>4s} {'':>11s}"
            else:
                tail = f" {r.chisq:10.4f} {r.chi_dof:4d} {_format_pvalue(r.p_value):>11s}"
            lines.append(
                f" {i:<6d} {r.dof:4d} {r.deviance:12.4f} {r.aic:12.4f} "
                f"{r.bic:12.4f}" + tail
            )
        lines.append("")
        for i, r in enumerate(self.rows, start=1):
            lines.append(f" {i}: {r.formula}")
        return '\n'.join(lines)

    def __str__(self) -> str:
        return self.summary()


def likelihood_ratio_test(*models) -> LRTResult:
    """Likelihood ratio tests for a sequence of nested fitted models.

    Args:
        *models: Two or more LMMSolution objects.

    Returns:
        LRTResult. The first row (fewest dof) has no test statistic.

    Raises:
        ValidationError: If fewer than two models are given or two
            models have the same dof.
    """
    if len(models) < 2:
        raise ValidationError(
            f"likelihood_ratio_test needs at least 2 models, got {len(models)}"
        )
    if any(m.params.reml for m in models):
        warnings.warn(
            "Likelihood ratio test requires ML (not REML) fits for valid "
            "comparison. Refit with reml=False.",
            UserWarning,
            stacklevel=2,
        )
    n_obs = {m.params.n_obs for m in models}
    if len(n_obs) > 1:
        warnings.warn(
            f"Models were fitted to different numbers of observations "
            f"{sorted(n_obs)}; the test is not valid",
            UserWarning,
            stacklevel=2,
        )

    ordered = sorted(models, key=lambda m: m.params.dof)
    dofs = [m.params.dof for m in ordered]
    if len(set(dofs)) != len(dofs):
        raise ValidationError(
            f"Models must have distinct degrees of freedom, got {dofs}"
        )

    rows = []
    prev = None
    for m in ordered:
        p = m.params
        if prev is None:
            rows.append(LRTRow(p.formula, p.dof, p.deviance, p.aic, p.aicc, p.bic))
        else:
            chisq = max(prev.deviance - p.deviance, 0.0)
            chi_dof = p.dof - prev.dof
            rows.append(LRTRow(
                p.formula, p.dof, p.deviance, p.aic, p.aicc, p.bic,
                chisq=float(chisq),
                chi_dof=int(chi_dof),
                p_value=float(stats.chi2.sf(chisq, chi_dof)),
            ))
        prev = p

    return LRTResult(rows=tuple(rows))


def _format_pvalue(p: float) -> str:
    """Format p-value like R."""
    if p < 2e-16:
        return '< 2e-16'
    elif p < 0.001:
        return f'{p:.2e}'
    else:
        return f'{p:.4f}'
