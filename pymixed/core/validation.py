"""
Checks applied to observation-table columns before a model is built.

Every check raises on the first problem it finds and names the offending
column in the message. Nothing is repaired silently: the only conversion
performed is to float64 for numeric input.
"""

from typing import Any

import numpy as np
from numpy.typing import ArrayLike, NDArray

from pymixed.core.exceptions import DimensionError, ValidationError


def check_array(array: ArrayLike, name: str) -> NDArray[np.floating[Any]]:
    """
    Return ``array`` as a floating point ndarray.

    Booleans and integers are promoted to float64; floating input is
    returned as is. Strings, objects, datetimes and anything else that is
    not a number are rejected, since they mean a categorical column was
    used where a numeric one is required.

    Raises:
        ValidationError: If the input is not numeric.
    """
    try:
        values = np.asarray(array)
    except (ValueError, TypeError) as e:
        raise ValidationError(f"{name}: cannot convert to array: {e}") from e

    if values.dtype == bool or np.issubdtype(values.dtype, np.integer):
        return values.astype(np.float64)
    if np.issubdtype(values.dtype, np.floating):
        return values
    raise ValidationError(
        f"{name}: non-numeric dtype {values.dtype}, expected numeric data"
    )


def check_finite(array: NDArray[np.floating[Any]], name: str) -> None:
    """Raise ValidationError if ``array`` holds NaN or ±Inf."""
    bad_nan = np.isnan(array)
    bad_inf = np.isinf(array)
    if bad_nan.any() or bad_inf.any():
        raise ValidationError(
            f"{name}: contains non-finite values "
            f"({int(bad_nan.sum())} NaN, {int(bad_inf.sum())} Inf)"
        )


def check_1d(array: NDArray, name: str) -> None:
    if array.ndim != 1:
        raise DimensionError(
            f"{name}: expected 1D array, got {array.ndim}D with shape {array.shape}"
        )


def check_consistent_length(*arrays: NDArray, names: tuple[str, ...]) -> None:
    """
    Raise DimensionError unless all arrays share their first dimension.

    Raises:
        ValueError: If ``names`` does not label every array.
        DimensionError: On a length mismatch, listing every length.
    """
    if len(names) != len(arrays):
        raise ValueError(
            f"Number of arrays ({len(arrays)}) must match number of names ({len(names)})"
        )
    lengths = {name: arr.shape[0] for name, arr in zip(names, arrays)}
    if len(set(lengths.values())) > 1:
        listed = ", ".join(f"{name}={n}" for name, n in lengths.items())
        raise DimensionError(f"Inconsistent lengths: {listed}")


def check_min_samples(array: NDArray, min_samples: int, name: str) -> None:
    n = array.shape[0]
    if n < min_samples:
        raise ValidationError(
            f"{name}: requires at least {min_samples} samples, got {n}"
        )
