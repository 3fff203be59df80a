"""
Tests for the pymixed exception and warning hierarchy.

Validates:
    - Inheritance chain (all exceptions catchable via PyMixedError)
    - Diagnostic attributes on FormulaError, NotPositiveDefiniteError,
      ConvergenceError
    - Warning categories derive from the standard library ones
"""

import warnings

import pytest

from pymixed.core.exceptions import (
    ConvergenceError,
    ConvergenceWarning,
    DimensionError,
    FormulaError,
    NotPositiveDefiniteError,
    NumericalError,
    PyMixedError,
    RankDeficiencyWarning,
    ValidationError,
)


# ═══════════════════════════════════════════════════════════════════════
# Inheritance hierarchy
# ═══════════════════════════════════════════════════════════════════════


class TestInheritance:
    """Every exception is catchable via PyMixedError."""

    @pytest.mark.parametrize("exc", [
        ValidationError("bad"),
        DimensionError("shape"),
        FormulaError("formula"),
        NumericalError("numeric"),
        NotPositiveDefiniteError("not PD"),
        ConvergenceError("stuck", iterations=3),
    ])
    def test_catchable_as_base(self, exc):
        """Each error can be caught as PyMixedError."""
        with pytest.raises(PyMixedError):
            raise exc

    def test_formula_error_is_validation_error(self):
        """Formula problems count as input errors."""
        assert issubclass(FormulaError, ValidationError)

    def test_dimension_error_is_validation_error(self):
        """Shape problems count as input errors."""
        assert issubclass(DimensionError, ValidationError)

    def test_not_pd_is_numerical(self):
        """A failed block factorization is a numerical error."""
        assert issubclass(NotPositiveDefiniteError, NumericalError)

    def test_convergence_error_not_validation(self):
        """An optimizer failure is not an input error."""
        assert not issubclass(ConvergenceError, ValidationError)


# ═══════════════════════════════════════════════════════════════════════
# Diagnostic attributes
# ═══════════════════════════════════════════════════════════════════════


class TestAttributes:
    """Errors carry the location they refer to."""

    def test_formula_error(self):
        """FormulaError keeps the formula and the offending term."""
        exc = FormulaError("unknown column", formula="y ~ x + (1 | g)", term="x")
        assert str(exc) == "unknown column"
        assert exc.formula == "y ~ x + (1 | g)"
        assert exc.term == "x"

    def test_formula_error_defaults(self):
        """Formula and term default to None."""
        exc = FormulaError("empty")
        assert exc.formula is None
        assert exc.term is None

    def test_not_positive_definite(self):
        """The failing matrix and block index are recorded."""
        exc = NotPositiveDefiniteError("block 2", matrix_name='L', block=2)
        assert exc.matrix_name == 'L'
        assert exc.block == 2

    def test_not_positive_definite_defaults(self):
        """Matrix name and block default to None."""
        exc = NotPositiveDefiniteError("failed")
        assert exc.matrix_name is None
        assert exc.block is None

    def test_convergence_error(self):
        """Evaluation count and reason are recorded."""
        exc = ConvergenceError("infeasible start", iterations=1, reason="infeasible")
        assert exc.iterations == 1
        assert exc.reason == "infeasible"
        assert "infeasible start" in str(exc)


class TestWarningCategories:
    """Warnings plug into the standard warnings filters."""

    def test_rank_deficiency_is_user_warning(self):
        """RankDeficiencyWarning derives from UserWarning."""
        assert issubclass(RankDeficiencyWarning, UserWarning)

    def test_convergence_warning_is_runtime_warning(self):
        """ConvergenceWarning derives from RuntimeWarning."""
        assert issubclass(ConvergenceWarning, RuntimeWarning)

    def test_filterable(self):
        """Each category can be filtered on its own."""
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("ignore", ConvergenceWarning)
            warnings.simplefilter("always", RankDeficiencyWarning)
            warnings.warn("cap reached", ConvergenceWarning)
            warnings.warn("aliased", RankDeficiencyWarning)
        assert [w.category for w in caught] == [RankDeficiencyWarning]
