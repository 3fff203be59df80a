"""
Contrast coding for categorical fixed-effect factors.

Handles the translation from categorical factors to numeric columns of
the fixed-effects design matrix. The coding is fixed before the model
matrix is built and determines what each coefficient means.

Schemes:
    - treatment: k-1 indicator columns, base level (first) dropped
    - effects:   k-1 sum-to-zero columns, base level coded -1 in every column
    - helmert:   k-1 columns comparing each level with the mean of the
                 levels before it; base level coded -1

For two-level factors, effects and helmert coding are the same ±1 coding.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import numpy as np
from numpy.typing import NDArray

from pymixed.core.exceptions import ValidationError

_SCHEMES = ('treatment', 'effects', 'helmert')


@dataclass(frozen=True)
class ContrastCoding:
    """Contrast coding for one categorical factor.

    Attributes:
        scheme: 'treatment', 'effects' or 'helmert'.
        levels: Explicit level order. Default: sorted unique values.
        base: Base (reference) level for treatment/effects coding.
            Default: the first level. Helmert coding always uses the
            first level, so reorder ``levels`` instead.
    """
    scheme: str = 'treatment'
    levels: tuple[Any, ...] | None = None
    base: Any = None

    def __post_init__(self):
        if self.scheme not in _SCHEMES:
            raise ValidationError(
                f"Unknown contrast scheme {self.scheme!r}. "
                f"Choose from {list(_SCHEMES)}."
            )
        if self.scheme == 'helmert' and self.base is not None:
            raise ValidationError(
                f"Helmert coding has no base level (got base={self.base!r}); "
                f"set the level order with levels= instead"
            )


def resolve_coding(coding: 'str | ContrastCoding | None') -> ContrastCoding:
    """Normalize one factor's entry of ``contrasts`` to a ContrastCoding."""
    if coding is None:
        return ContrastCoding()
    if isinstance(coding, ContrastCoding):
        return coding
    if isinstance(coding, str):
        return ContrastCoding(scheme=coding.lower())
    raise ValidationError(
        f"Contrast coding must be a scheme name or ContrastCoding, "
        f"got {type(coding).__name__}"
    )


def factor_levels(values: NDArray, coding: ContrastCoding, name: str) -> list[str]:
    """Ordered level labels of a categorical column.

    Raises:
        ValidationError: If an explicit level has zero observations or a
            value in the data is not among the explicit levels.
    """
    observed = sorted(set(str(v) for v in values))
    if coding.levels is None:
        return observed

    levels = [str(v) for v in coding.levels]
    missing = [lv for lv in levels if lv not in observed]
    if missing:
        raise ValidationError(
            f"{name}: levels {missing} have zero observations"
        )
    unknown = [lv for lv in observed if lv not in levels]
    if unknown:
        raise ValidationError(
            f"{name}: values {unknown} are not among the declared levels {levels}"
        )
    return levels


def contrast_matrix(
    levels: list[str],
    coding: ContrastCoding,
    name: str,
) -> tuple[NDArray, list[str]]:
    """Build the k × (k-1) contrast matrix for a factor.

    Returns:
        (C, labels) where row i of C codes level i and labels name the
        k-1 columns.
    """
    k = len(levels)
    if k < 2:
        raise ValidationError(
            f"{name}: categorical factor needs at least 2 levels, got {k}"
        )

    if coding.scheme == 'helmert':
        C = np.zeros((k, k - 1), dtype=np.float64)
        for j in range(1, k):
            C[:j, j - 1] = -1.0
            C[j, j - 1] = float(j)
        return C, levels[1:]

    base = levels[0] if coding.base is None else str(coding.base)
    if base not in levels:
        raise ValidationError(
            f"{name}: base level {base!r} is not one of {levels}"
        )
    others = [lv for lv in levels if lv != base]

    C = np.zeros((k, k - 1), dtype=np.float64)
    for j, level in enumerate(others):
        C[levels.index(level), j] = 1.0
    if coding.scheme == 'effects':
        C[levels.index(base), :] = -1.0
    return C, others


def encode_factor(
    values: NDArray,
    coding: ContrastCoding,
    name: str,
) -> tuple[NDArray, list[str]]:
    """Encode a categorical column with the given contrast coding.

    Args:
        values: 1D array of level labels.
        coding: Contrast coding to apply.
        name: Column name, used for column labels and error messages.

    Returns:
        (X_coded, labels): (n, k-1) float64 matrix and column labels of
        the form ``'name: level'``.
    """
    levels = factor_levels(values, coding, name)
    C, col_levels = contrast_matrix(levels, coding, name)
    index = {lv: i for i, lv in enumerate(levels)}
    codes = np.array([index[str(v)] for v in values], dtype=np.intp)
    return C[codes], [f"{name}: {lv}" for lv in col_levels]


def interaction_columns(X_a: NDArray, X_b: NDArray) -> NDArray:
    """Row-wise products of every column of ``X_a`` with every column of
    ``X_b``, ``X_a`` varying slowest: an (n, p_a * p_b) block."""
    n = X_a.shape[0]
    return (X_a[:, :, None] * X_b[:, None, :]).reshape(n, -1).astype(np.float64)
