"""
Penalized least squares estimates from the blocked factor.

For fixed θ the penalized least squares problem

    minimize ‖y - Xβ - ZΛu‖² + ‖u‖²

is solved entirely by the blocked Cholesky factor L(θ): β comes from the
fixed-effects block, the spherical random effects u by block
back-substitution through the random-effects blocks, and σ² is
profiled out from the penalized RSS.

References:
    Bates, D., Maechler, M., Bolker, B., & Walker, S. (2015).
    Fitting Linear Mixed-Effects Models Using lme4.
    Journal of Statistical Software, 67(1), 1-48. Section 3.
"""

from __future__ import annotations

from dataclasses import dataclass
import numpy as np
from numpy.typing import NDArray
import scipy.linalg as sla

from pymixed.core.exceptions import NumericalError
from pymixed.mixed._blocked import BlockedSystem, FactorState, DIAGONAL, BLOCKDIAG
from pymixed.mixed._deviance import pwrss as _pwrss


@dataclass(frozen=True)
class PLSResult:
    """Result from penalized least squares.

    Attributes:
        beta: Fixed effects estimates (p,).
        u: Spherical random effects, one array per term (n_levels * q,).
        b: Conditional modes per term, shape (n_levels, q).
        sigma_sq: Profiled residual variance.
        pwrss: Penalized residual sum of squares.
        vcov_unscaled: (L_X L_Xᵗ)⁻¹, the covariance of β̂ divided by σ².
        fitted: Xβ + Zb (n,).
        residuals: y - fitted (n,).
    """
    beta: NDArray
    u: tuple[NDArray, ...]
    b: tuple[NDArray, ...]
    sigma_sq: float
    pwrss: float
    vcov_unscaled: NDArray
    fitted: NDArray
    residuals: NDArray


def solve_pls(system: BlockedSystem, state: FactorState, reml: bool = False) -> PLSResult:
    """Extract β, u, b, σ² and fitted values from an up-to-date factor.

    Args:
        system: Blocked system of the model.
        state: Workspace holding L(θ).
        reml: If True, σ² = pwrss / (n - p); otherwise pwrss / n.

    Returns:
        PLSResult.

    Raises:
        NumericalError: If the penalized RSS is zero or the estimates are
            not finite.
    """
    if not state.valid:
        raise ValueError("Factor state is not valid; call update_l first")

    design = system.design
    k, xb, yb = system.k, system.x_block, system.y_block
    blocks = state.blocks
    n, p = design.n, design.p

    # L_Xᵗ β = L_yXᵗ
    L_X = blocks[(xb, xb)]
    beta = sla.solve_triangular(L_X, blocks[(yb, xb)].ravel(), lower=True, trans='T')

    rss = _pwrss(system, state)
    sigma_sq = rss / (n - p) if reml else rss / n
    if not (rss > 0.0 and np.isfinite(sigma_sq) and np.all(np.isfinite(beta))):
        raise NumericalError(
            f"Penalized least squares failed: pwrss={rss}, "
            f"finite beta={bool(np.all(np.isfinite(beta)))}"
        )

    # L_Zᵗ u = L_yZᵗ - L_XZᵗ β, backwards over the random-effects blocks
    u: list[NDArray | None] = [None] * k
    for j in reversed(range(k)):
        r = blocks[(yb, j)].ravel() - blocks[(xb, j)].T @ beta
        for i in range(j + 1, k):
            r = r - np.asarray(blocks[(i, j)].T @ u[i]).ravel()
        u[j] = _solve_diagonal_t(blocks[(j, j)], system.kinds[(j, j)], r)

    b = []
    fitted = design.X @ beta
    for term, u_j, lam in zip(system.reterms, u, state.lambdas):
        b_j = u_j.reshape(term.n_levels, term.q) @ lam.T
        b.append(b_j)
        fitted = fitted + term.Z @ b_j.ravel()

    L_X_inv = sla.solve_triangular(L_X, np.eye(p), lower=True)
    vcov_unscaled = L_X_inv.T @ L_X_inv

    return PLSResult(
        beta=beta,
        u=tuple(u),
        b=tuple(b),
        sigma_sq=sigma_sq,
        pwrss=rss,
        vcov_unscaled=vcov_unscaled,
        fitted=fitted,
        residuals=design.y - fitted,
    )


def _solve_diagonal_t(L, kind: str, r: NDArray) -> NDArray:
    """Solve L_jjᵗ x = r for one factored diagonal block."""
    if kind == DIAGONAL:
        return r / L
    if kind == BLOCKDIAG:
        n, q, _ = L.shape
        x = np.linalg.solve(L.transpose(0, 2, 1), r.reshape(n, q, 1))
        return x.reshape(-1)
    return sla.solve_triangular(L, r, lower=True, trans='T')
