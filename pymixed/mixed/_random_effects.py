"""
Random-effects terms, Z matrix construction, and Λ_θ parameterization.

This module handles:
1. Mapping grouping-factor labels to 0-indexed levels
2. Building the sparse indicator design matrix Z_i for each term
3. Constructing the relative covariance factor Λ_i from its slice of θ
4. θ bounds and starting values for the optimizer

The θ parameterization follows Bates et al. (2015): θ_i holds the
lower-triangular entries of the q_i × q_i relative covariance factor
(the covariance divided by σ²), in column-major order. Diagonal entries
are bounded below by zero; off-diagonal entries are free. Terms written
with ``||`` have a diagonal factor and only q_i parameters.

Z_i uses level-major column ordering: columns l*q_i .. l*q_i + q_i - 1
belong to level l. With this layout Λ for the term is I_n ⊗ Λ_i and
Z_iᵗZ_i is block diagonal with q_i × q_i blocks.
"""

from __future__ import annotations

from dataclasses import dataclass
import numpy as np
from numpy.typing import NDArray
import scipy.sparse as sp

from pymixed.core.exceptions import DimensionError, ValidationError


@dataclass(frozen=True)
class ReTerm:
    """One random-effects term tied to a grouping factor.

    Attributes:
        group_name: Name of the grouping factor (e.g. 'subj').
        levels: Level labels, position = level index.
        refs: Level index of each observation, shape (n_obs,).
        cnames: Column names of the term (e.g. ('(Intercept)', 'prec: maintain')).
        z: Term covariates, shape (q, n_obs). The intercept row is all ones.
        Z: Sparse indicator design, shape (n_obs, n_levels * q), CSC.
        correlated: False for diagonal (``||``) covariance.
    """
    group_name: str
    levels: tuple[str, ...]
    refs: NDArray
    cnames: tuple[str, ...]
    z: NDArray
    Z: sp.csc_matrix
    correlated: bool = True

    @property
    def n_levels(self) -> int:
        return len(self.levels)

    @property
    def q(self) -> int:
        return len(self.cnames)

    @property
    def n_columns(self) -> int:
        """Number of columns of Z_i (n_levels * q)."""
        return self.n_levels * self.q

    @property
    def theta_index(self) -> tuple[NDArray, NDArray]:
        """Row and column positions in Λ_i of each θ_i element."""
        q = self.q
        if not self.correlated:
            idx = np.arange(q)
            return idx, idx
        rows, cols = [], []
        for col in range(q):
            for row in range(col, q):
                rows.append(row)
                cols.append(col)
        return np.array(rows, dtype=np.intp), np.array(cols, dtype=np.intp)

    @property
    def theta_size(self) -> int:
        q = self.q
        return q * (q + 1) // 2 if self.correlated else q

    def lower_bounds(self) -> NDArray:
        """Lower bounds for θ_i: 0 on the diagonal, -inf off the diagonal."""
        rows, cols = self.theta_index
        return np.where(rows == cols, 0.0, -np.inf)

    def initial_theta(self) -> NDArray:
        """Starting θ_i: identity relative covariance factor."""
        rows, cols = self.theta_index
        return np.where(rows == cols, 1.0, 0.0)

    def set_lambda(self, out: NDArray, theta: NDArray) -> NDArray:
        """Write Λ_i(θ_i) into ``out`` (q × q) in place and return it."""
        if len(theta) != self.theta_size:
            raise DimensionError(
                f"Term '{self.group_name}' expects {self.theta_size} θ "
                f"values, got {len(theta)}"
            )
        rows, cols = self.theta_index
        out.fill(0.0)
        out[rows, cols] = theta
        return out

    def lambda_factor(self, theta: NDArray) -> NDArray:
        """Λ_i(θ_i) as a new q × q array."""
        return self.set_lambda(np.zeros((self.q, self.q), dtype=np.float64), theta)

    def indicator(self) -> sp.csc_matrix:
        """Boolean level-membership matrix, shape (n_obs, n_levels)."""
        n_obs = len(self.refs)
        return sp.csc_matrix(
            (np.ones(n_obs, dtype=bool), (np.arange(n_obs), self.refs)),
            shape=(n_obs, self.n_levels),
        )


def build_reterm(
    group_name: str,
    group_values: NDArray,
    cnames: list[str],
    columns: NDArray,
    *,
    correlated: bool = True,
    declared_levels: list[str] | None = None,
) -> ReTerm:
    """Build a ReTerm from grouping labels and term covariates.

    Args:
        group_name: Name of the grouping factor.
        group_values: Grouping labels for each observation (n_obs,).
        cnames: Term column names, length q.
        columns: Term covariates, shape (n_obs, q).
        correlated: False for diagonal covariance.
        declared_levels: Levels declared for the grouping factor (e.g. the
            categories of a pandas Categorical). Every declared level must
            be observed.

    Returns:
        ReTerm.

    Raises:
        ValidationError: If a level has zero observations or the factor
            has fewer than 2 levels.
    """
    labels = np.asarray([str(v) for v in group_values])
    n_obs = labels.shape[0]
    unique_levels, refs = np.unique(labels, return_inverse=True)

    if declared_levels is not None:
        declared = [str(v) for v in declared_levels]
        empty = sorted(set(declared) - set(unique_levels.tolist()))
        if empty:
            raise ValidationError(
                f"Grouping factor '{group_name}': levels {empty} have zero observations"
            )

    n_levels = len(unique_levels)
    if n_levels < 2:
        raise ValidationError(
            f"Grouping factor '{group_name}' has only {n_levels} level(s), "
            f"need at least 2"
        )

    columns = np.asarray(columns, dtype=np.float64).reshape(n_obs, -1)
    q = columns.shape[1]
    if q != len(cnames):
        raise DimensionError(
            f"Term '{group_name}': {len(cnames)} column names for {q} columns"
        )

    # Level-major layout: row r fills columns refs[r]*q .. refs[r]*q + q - 1
    rows = np.repeat(np.arange(n_obs), q)
    cols = (refs[:, None] * q + np.arange(q)[None, :]).ravel()
    Z = sp.csc_matrix(
        (columns.ravel(), (rows, cols)),
        shape=(n_obs, n_levels * q),
    )

    return ReTerm(
        group_name=group_name,
        levels=tuple(unique_levels.tolist()),
        refs=refs.astype(np.intp),
        cnames=tuple(cnames),
        z=np.ascontiguousarray(columns.T),
        Z=Z,
        correlated=correlated,
    )


def theta_slices(reterms: list[ReTerm]) -> list[slice]:
    """Slice of the full θ vector belonging to each term."""
    slices = []
    offset = 0
    for term in reterms:
        slices.append(slice(offset, offset + term.theta_size))
        offset += term.theta_size
    return slices


def theta_lower_bounds(reterms: list[ReTerm]) -> NDArray:
    """Concatenated lower bounds of θ across terms."""
    return np.concatenate([t.lower_bounds() for t in reterms])


def theta_start(reterms: list[ReTerm]) -> NDArray:
    """Concatenated starting θ across terms."""
    return np.concatenate([t.initial_theta() for t in reterms])
