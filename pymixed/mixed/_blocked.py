"""
Blocked cross-product system and symbolic fill-in analysis.

The augmented cross-product matrix

    A = [Z_1 … Z_k X y]ᵗ [Z_1 … Z_k X y]

is stored as its lower-triangular blocks, with one block row/column per
random-effects term, one for the fixed effects and one for the response.
A depends only on the data and is built once per model.

The Cholesky factor L of Λᵗ A Λ + I (identity on the random-effects
blocks only) has the same block structure. Which blocks of L stay
diagonal, block diagonal or sparse, and which fill in, depends only on
the sparsity of A, so it is worked out here once, at level granularity,
and every numeric refactorization reuses the result.

Block storage kinds:
    'diagonal'   1D array, random-effects diagonal block with q = 1
    'blockdiag'  (n, q, q) array, random-effects diagonal block with q > 1
    'sparse'     CSC matrix with a fixed nonzero pattern
    'dense'      2D array

References:
    Bates, D., Maechler, M., Bolker, B., & Walker, S. (2015).
    Fitting Linear Mixed-Effects Models Using lme4.
    Journal of Statistical Software, 67(1), 1-48. Section 3.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import numpy as np
import scipy.sparse as sp
from numpy.typing import NDArray

from pymixed.mixed._random_effects import ReTerm, theta_slices
from pymixed.mixed.design import MixedDesign

logger = logging.getLogger(__name__)

# Off-diagonal random-effects blocks of L above this fraction of
# nonzeros are stored dense
SPARSE_MAX_DENSITY = 0.25

DIAGONAL = 'diagonal'
BLOCKDIAG = 'blockdiag'
SPARSE = 'sparse'
DENSE = 'dense'


@dataclass(frozen=True)
class SparsePattern:
    """Fixed nonzero pattern of a sparse L block (CSC, sorted indices).

    Attributes:
        shape: Block shape.
        indices: CSC row indices.
        indptr: CSC column pointers.
        rows: Row of each stored entry.
        cols: Column of each stored entry.
        a_positions: Position in the pattern of each stored entry of the
            matching A block, so A can be scattered into L.
    """
    shape: tuple[int, int]
    indices: NDArray
    indptr: NDArray
    rows: NDArray
    cols: NDArray
    a_positions: NDArray

    @property
    def nnz(self) -> int:
        return len(self.indices)

    def empty(self) -> sp.csc_matrix:
        return sp.csc_matrix(
            (np.zeros(self.nnz), self.indices.copy(), self.indptr.copy()),
            shape=self.shape,
        )


@dataclass
class FactorState:
    """Workspace for one evaluation of the blocked Cholesky factor.

    A FactorState is owned by a single fit. It is overwritten on every
    call to ``update_l``; the BlockedSystem it was made from is never
    modified, so several states can share one system.

    Attributes:
        lambdas: Λ_i for each random-effects term (q_i × q_i).
        blocks: L blocks keyed by (row, col) block index, row >= col.
        theta: θ the blocks were last computed for, or None.
        n_updates: Number of numeric refactorizations performed.
        valid: Whether the blocks hold a complete factor for ``theta``.
    """
    lambdas: list[NDArray]
    blocks: dict[tuple[int, int], Any]
    theta: NDArray | None = None
    n_updates: int = 0
    valid: bool = field(default=False)


@dataclass(frozen=True)
class BlockedSystem:
    """Immutable data-derived blocked system for one model.

    Attributes:
        design: The model design.
        reterms: Random-effects terms (block order).
        A: Lower-triangular blocks of the cross-product matrix.
        kinds: Storage kind of each L block.
        patterns: Fixed patterns of the sparse L blocks.
        theta_slices: Slice of θ for each random-effects term.
    """
    design: MixedDesign
    reterms: tuple[ReTerm, ...]
    A: dict[tuple[int, int], Any]
    kinds: dict[tuple[int, int], str]
    patterns: dict[tuple[int, int], SparsePattern]
    theta_slices: tuple[slice, ...]

    @property
    def k(self) -> int:
        """Number of random-effects terms."""
        return len(self.reterms)

    @property
    def n_blocks(self) -> int:
        """Block rows: random-effects terms, fixed effects, response."""
        return len(self.reterms) + 2

    @property
    def x_block(self) -> int:
        return len(self.reterms)

    @property
    def y_block(self) -> int:
        return len(self.reterms) + 1

    @property
    def n_theta(self) -> int:
        return sum(t.theta_size for t in self.reterms)

    @staticmethod
    def build(design: MixedDesign) -> 'BlockedSystem':
        """Assemble A and run the symbolic fill-in analysis."""
        reterms = design.reterms
        A = _assemble(design)
        kinds, patterns = _symbolic(reterms, A)

        logger.debug(
            "blocked system: kinds=%s",
            {key: kind for key, kind in kinds.items() if key[0] < len(reterms)},
        )

        return BlockedSystem(
            design=design,
            reterms=tuple(reterms),
            A=A,
            kinds=kinds,
            patterns=patterns,
            theta_slices=tuple(theta_slices(list(reterms))),
        )

    def new_state(self) -> FactorState:
        """Allocate an L workspace with this system's storage kinds."""
        blocks: dict[tuple[int, int], Any] = {}
        for key, kind in self.kinds.items():
            shape = self.block_shape(key)
            if kind == DIAGONAL:
                blocks[key] = np.zeros(shape[0], dtype=np.float64)
            elif kind == BLOCKDIAG:
                t = self.reterms[key[0]]
                blocks[key] = np.zeros((t.n_levels, t.q, t.q), dtype=np.float64)
            elif kind == SPARSE:
                blocks[key] = self.patterns[key].empty()
            else:
                blocks[key] = np.zeros(shape, dtype=np.float64)
        lambdas = [np.zeros((t.q, t.q), dtype=np.float64) for t in self.reterms]
        return FactorState(lambdas=lambdas, blocks=blocks)

    def block_size(self, b: int) -> int:
        if b < self.k:
            return self.reterms[b].n_columns
        if b == self.x_block:
            return self.design.p
        return 1

    def block_shape(self, key: tuple[int, int]) -> tuple[int, int]:
        return self.block_size(key[0]), self.block_size(key[1])


def _assemble(design: MixedDesign) -> dict[tuple[int, int], Any]:
    reterms = design.reterms
    k = len(reterms)
    X, y = design.X, design.y
    A: dict[tuple[int, int], Any] = {}

    for i, ti in enumerate(reterms):
        A[(i, i)] = _diagonal_block(ti)
        for j in range(i):
            A[(i, j)] = (ti.Z.T @ reterms[j].Z).tocsc()
            A[(i, j)].sort_indices()
        A[(k, i)] = np.asarray(ti.Z.T @ X).T
        A[(k + 1, i)] = np.asarray(ti.Z.T @ y).reshape(1, -1)

    A[(k, k)] = X.T @ X
    A[(k + 1, k)] = (X.T @ y).reshape(1, -1)
    A[(k + 1, k + 1)] = np.array([[y @ y]])
    return A


def _diagonal_block(term: ReTerm) -> NDArray:
    """Z_iᵗZ_i, which is diagonal (q = 1) or block diagonal (q > 1)."""
    n, q = term.n_levels, term.q
    if q == 1:
        return np.bincount(term.refs, weights=term.z[0] ** 2, minlength=n)
    block = np.empty((n, q, q), dtype=np.float64)
    for a in range(q):
        for b in range(a + 1):
            v = np.bincount(term.refs, weights=term.z[a] * term.z[b], minlength=n)
            block[:, a, b] = v
            block[:, b, a] = v
    return block


def _symbolic(
    reterms: tuple[ReTerm, ...],
    A: dict[tuple[int, int], Any],
) -> tuple[dict[tuple[int, int], str], dict[tuple[int, int], SparsePattern]]:
    """Storage kind of every L block from the level-level sparsity of A.

    Blocked symbolic Cholesky at level granularity:

        P[j,j] = I ∪ ⋃_{m<j} P[j,m] P[j,m]ᵗ
        P[i,j] = P_A[i,j] ∪ ⋃_{m<j} P[i,m] P[j,m]ᵗ        (i > j)

    A diagonal block with any off-diagonal entry in P is factored dense,
    and then every block below it fills in completely.
    """
    k = len(reterms)
    G = [t.indicator().astype(np.int64) for t in reterms]
    P: dict[tuple[int, int], sp.csc_matrix] = {}
    for i in range(k):
        for j in range(i):
            P[(i, j)] = _bool(G[i].T @ G[j])

    kinds: dict[tuple[int, int], str] = {}
    patterns: dict[tuple[int, int], SparsePattern] = {}
    dense_diag = [False] * k

    for j in range(k):
        nj = reterms[j].n_levels
        diag = sp.identity(nj, format='csc', dtype=np.int64)
        for m in range(j):
            diag = diag + P[(j, m)] @ P[(j, m)].T
        diag = _bool(diag)
        dense_diag[j] = diag.nnz > nj
        if dense_diag[j]:
            kinds[(j, j)] = DENSE
        else:
            kinds[(j, j)] = DIAGONAL if reterms[j].q == 1 else BLOCKDIAG

        for i in range(j + 1, k):
            block = P[(i, j)]
            for m in range(j):
                block = block + P[(i, m)] @ P[(j, m)].T
            block = _bool(block)
            if dense_diag[j]:
                block = _bool(sp.csc_matrix(np.ones(block.shape, dtype=np.int64)))
            P[(i, j)] = block

            density = block.nnz / float(block.shape[0] * block.shape[1])
            scalar = reterms[i].q == 1 and reterms[j].q == 1
            if scalar and not dense_diag[j] and density <= SPARSE_MAX_DENSITY:
                kinds[(i, j)] = SPARSE
                patterns[(i, j)] = _pattern(block, A[(i, j)])
            else:
                kinds[(i, j)] = DENSE

    # Fixed-effects and response rows are dense
    for i in (k, k + 1):
        for j in range(i + 1):
            kinds[(i, j)] = DENSE

    return kinds, patterns


def _bool(M) -> sp.csc_matrix:
    """Structural nonzero pattern as a 0/1 integer CSC matrix."""
    M = sp.csc_matrix(M)
    M.eliminate_zeros()
    M.data = np.ones_like(M.data)
    M.sort_indices()
    return M


def _pattern(P: sp.csc_matrix, A_block: sp.csc_matrix) -> SparsePattern:
    nrows, ncols = P.shape
    cols = np.repeat(np.arange(ncols), np.diff(P.indptr))
    rows = P.indices.astype(np.intp)
    keys = cols.astype(np.int64) * nrows + rows

    a_cols = np.repeat(np.arange(ncols), np.diff(A_block.indptr))
    a_keys = a_cols.astype(np.int64) * nrows + A_block.indices
    positions = np.searchsorted(keys, a_keys)

    return SparsePattern(
        shape=(nrows, ncols),
        indices=P.indices.copy(),
        indptr=P.indptr.copy(),
        rows=rows,
        cols=cols,
        a_positions=positions,
    )
