"""
Errors and warnings raised by pymixed.

Everything fatal derives from PyMixedError, so callers can catch the
whole family at once. Input problems are ValidationErrors and are
raised while the model is being built, before any numerical work.
Numerical failures carry the location they happened at. Non-fatal
conditions use the two warning categories at the end of the module, so
they can be filtered with the standard ``warnings`` machinery.
"""


class PyMixedError(Exception):
    """Root of the pymixed exception hierarchy."""


class ValidationError(PyMixedError):
    """User input was rejected."""


class DimensionError(ValidationError):
    """Inputs have missing, extra or mismatched dimensions."""


class FormulaError(ValidationError):
    """
    The model formula cannot be parsed or does not match the data.

    Attributes:
        formula: The formula as given, when known.
        term: The term at fault, when one can be singled out.
    """

    def __init__(self, message: str, formula: str | None = None, term: str | None = None):
        super().__init__(message)
        self.formula = formula
        self.term = term


class NumericalError(PyMixedError):
    """A numerical step produced an unusable result."""


class NotPositiveDefiniteError(NumericalError):
    """
    A diagonal block of the blocked Cholesky factor could not be formed.

    ``update_l`` raises it; the profiled objective turns it into an
    infeasible evaluation rather than letting it end the fit.

    Attributes:
        matrix_name: Which matrix was being factored.
        block: Index of the failing diagonal block.
    """

    def __init__(self, message: str, matrix_name: str | None = None, block: int | None = None):
        super().__init__(message)
        self.matrix_name = matrix_name
        self.block = block


class ConvergenceError(PyMixedError):
    """
    The optimizer could not make progress at all.

    Attributes:
        iterations: Objective evaluations made before giving up.
        reason: Short tag such as ``'infeasible'``.
    """

    def __init__(self, message: str, iterations: int, reason: str | None = None):
        super().__init__(message)
        self.iterations = iterations
        self.reason = reason


class RankDeficiencyWarning(UserWarning):
    """Aliased fixed-effects columns were dropped from X."""


class ConvergenceWarning(RuntimeWarning):
    """The θ optimizer stopped before meeting its tolerances."""
