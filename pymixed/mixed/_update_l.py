"""
Numeric refactorization of the blocked Cholesky factor L(θ).

For a given θ, update_l overwrites a FactorState with the lower
Cholesky factor of

    Λᵗ A Λ + I        (identity on the random-effects blocks only)

where Λ is block diagonal with I_n ⊗ Λ_i on the random-effects blocks
and the identity on the fixed-effects and response blocks. The
factorization is left-looking over block columns:

    for j:
        L[j,j] -= Σ_{m<j} L[j,m] L[j,m]ᵗ,   then Cholesky of L[j,j]
        for i > j:
            L[i,j] -= Σ_{m<j} L[i,m] L[j,m]ᵗ
            L[i,j]  = L[i,j] L[j,j]^{-ᵗ}

The storage kind of every block was fixed by the symbolic analysis in
BlockedSystem, so each step dispatches on the kinds involved.
"""

from __future__ import annotations

import numpy as np
import scipy.linalg as sla
import scipy.sparse as sp
from numpy.typing import NDArray

from pymixed.core.exceptions import DimensionError, NotPositiveDefiniteError
from pymixed.mixed._blocked import (
    BlockedSystem, FactorState, SparsePattern,
    DIAGONAL, BLOCKDIAG, SPARSE, DENSE,
)


def update_l(system: BlockedSystem, theta: NDArray, state: FactorState) -> FactorState:
    """Recompute L(θ) into ``state``.

    Args:
        system: Immutable blocked system of the model.
        theta: Covariance parameter vector.
        state: Workspace allocated by ``system.new_state()``.

    Returns:
        The updated state.

    Raises:
        NotPositiveDefiniteError: If a diagonal block cannot be factored.
            The state is left marked invalid.
        DimensionError: If θ has the wrong length.
    """
    theta = np.asarray(theta, dtype=np.float64)
    if theta.shape != (system.n_theta,):
        raise DimensionError(
            f"θ must have length {system.n_theta}, got shape {theta.shape}"
        )

    state.valid = False
    for term, sl, lam in zip(system.reterms, system.theta_slices, state.lambdas):
        term.set_lambda(lam, theta[sl])

    _scale(system, state)

    kinds = system.kinds
    blocks = state.blocks
    for j in range(system.n_blocks):
        for m in range(j):
            _rank_update(blocks[(j, j)], kinds[(j, j)], blocks[(j, m)])
        _cholesky(blocks[(j, j)], kinds[(j, j)], j)

        for i in range(j + 1, system.n_blocks):
            key = (i, j)
            pattern = system.patterns.get(key)
            for m in range(j):
                _subtract_product(
                    blocks[key], kinds[key], pattern, blocks[(i, m)], blocks[(j, m)]
                )
            _rdiv(blocks[key], kinds[key], pattern, blocks[(j, j)], kinds[(j, j)])

    state.theta = theta.copy()
    state.n_updates += 1
    state.valid = True
    return state


# ═══════════════════════════════════════════════════════════════════════
# Scaling: L ← Λᵗ A Λ (+ I)
# ═══════════════════════════════════════════════════════════════════════

def _scale(system: BlockedSystem, state: FactorState) -> None:
    k = system.k
    lambdas = state.lambdas
    for key, kind in system.kinds.items():
        i, j = key
        A = system.A[key]
        L = state.blocks[key]

        if i == j and i < k:
            S = _scaled_diagonal(A, lambdas[i])
            q = S.shape[1]
            if kind == DIAGONAL:
                L[:] = S[:, 0, 0] + 1.0
            elif kind == BLOCKDIAG:
                L[...] = S
                L[:, np.arange(q), np.arange(q)] += 1.0
            else:
                n = S.shape[0]
                idx = np.arange(n)[:, None] * q + np.arange(q)[None, :]
                L.fill(0.0)
                L[idx[:, :, None], idx[:, None, :]] = S
                L[np.diag_indices_from(L)] += 1.0
        elif i < k:
            if kind == SPARSE:
                factor = lambdas[i][0, 0] * lambdas[j][0, 0]
                L.data.fill(0.0)
                L.data[system.patterns[key].a_positions] = A.data * factor
            else:
                L[...] = _scale_cols(_scale_rows(A.toarray(), lambdas[i]), lambdas[j])
        elif j < k:
            L[...] = _scale_cols(A, lambdas[j])
        else:
            L[...] = A


def _scaled_diagonal(A: NDArray, lam: NDArray) -> NDArray:
    """Λᵗ A_l Λ for every level, as an (n, q, q) stack."""
    if A.ndim == 1:
        return (lam[0, 0] ** 2 * A).reshape(-1, 1, 1)
    return np.einsum('ba,lbc,cd->lad', lam, A, lam)


def _scale_rows(M: NDArray, lam: NDArray) -> NDArray:
    """(I_n ⊗ Λ)ᵗ M for level-major rows."""
    q = lam.shape[0]
    if q == 1:
        return M * lam[0, 0]
    n = M.shape[0] // q
    return np.einsum('ab,lam->lbm', lam, M.reshape(n, q, -1)).reshape(n * q, -1)


def _scale_cols(M: NDArray, lam: NDArray) -> NDArray:
    """M (I_n ⊗ Λ) for level-major columns."""
    q = lam.shape[0]
    if q == 1:
        return M * lam[0, 0]
    r = M.shape[0]
    return (M.reshape(r, -1, q) @ lam).reshape(r, -1)


# ═══════════════════════════════════════════════════════════════════════
# Block operations
# ═══════════════════════════════════════════════════════════════════════

def _product(Li, Lj):
    """Li Ljᵗ for any mix of dense and sparse blocks."""
    if sp.issparse(Li):
        return Li @ Lj.T
    if sp.issparse(Lj):
        return np.asarray((Lj @ Li.T).T)
    return Li @ Lj.T


def _rank_update(target, kind: str, Lm) -> None:
    """target -= Lm Lmᵗ, restricted to the stored part of target."""
    if kind == DIAGONAL:
        if sp.issparse(Lm):
            target -= np.asarray(Lm.multiply(Lm).sum(axis=1)).ravel()
        else:
            target -= np.einsum('ij,ij->i', Lm, Lm)
    elif kind == BLOCKDIAG:
        n, q, _ = target.shape
        M = Lm.reshape(n, q, -1)
        target -= np.einsum('lac,lbc->lab', M, M)
    else:
        prod = _product(Lm, Lm)
        target -= prod.toarray() if sp.issparse(prod) else prod


def _subtract_product(target, kind: str, pattern: SparsePattern | None, Li, Lj) -> None:
    prod = _product(Li, Lj)
    if kind == SPARSE:
        if sp.issparse(prod):
            gathered = np.asarray(prod.tocsr()[pattern.rows, pattern.cols]).ravel()
        else:
            gathered = prod[pattern.rows, pattern.cols]
        target.data -= gathered
    else:
        target -= prod.toarray() if sp.issparse(prod) else prod


def _cholesky(L, kind: str, block: int) -> None:
    """Factor a diagonal block in place."""
    if kind == DIAGONAL:
        if not np.all(L > 0.0):
            raise NotPositiveDefiniteError(
                f"Diagonal block {block} has a non-positive pivot",
                matrix_name='L', block=block,
            )
        np.sqrt(L, out=L)
        return

    try:
        if kind == BLOCKDIAG:
            L[...] = np.linalg.cholesky(L)
        else:
            L[...] = sla.cholesky(L, lower=True)
    except (np.linalg.LinAlgError, ValueError) as e:
        raise NotPositiveDefiniteError(
            f"Block {block} is not positive definite: {e}",
            matrix_name='L', block=block,
        ) from e

    if not np.all(np.isfinite(L)):
        raise NotPositiveDefiniteError(
            f"Block {block} factor is not finite", matrix_name='L', block=block,
        )


def _rdiv(target, kind: str, pattern: SparsePattern | None, Ljj, kind_jj: str) -> None:
    """target ← target L_jj^{-ᵗ} in place."""
    if kind_jj == DIAGONAL:
        if kind == SPARSE:
            target.data /= Ljj[pattern.cols]
        else:
            target /= Ljj[None, :]
    elif kind_jj == BLOCKDIAG:
        n, q, _ = Ljj.shape
        r = target.shape[0]
        # Per level: X_lᵗ = T_l^{-1} B_lᵗ
        Bt = target.reshape(r, n, q).transpose(1, 2, 0)
        Xt = np.linalg.solve(Ljj, Bt)
        target[...] = Xt.transpose(2, 0, 1).reshape(r, n * q)
    else:
        target[...] = sla.solve_triangular(Ljj, target.T, lower=True).T
