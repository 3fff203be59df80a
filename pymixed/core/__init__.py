"""
Core infrastructure for pymixed.

Shared abstractions used by the mixed-model code:
    result: Generic Result[P] envelope
    exceptions: Exception and warning hierarchy
    validation: Input validators
    compute: Timing utilities
"""

from pymixed.core.result import Result
from pymixed.core.exceptions import (
    PyMixedError,
    ValidationError,
    DimensionError,
    FormulaError,
    NumericalError,
    NotPositiveDefiniteError,
    ConvergenceError,
    RankDeficiencyWarning,
    ConvergenceWarning,
)

__all__ = [
    # Result
    "Result",
    # Exceptions
    "PyMixedError",
    "ValidationError",
    "DimensionError",
    "FormulaError",
    "NumericalError",
    "NotPositiveDefiniteError",
    "ConvergenceError",
    # Warnings
    "RankDeficiencyWarning",
    "ConvergenceWarning",
]
