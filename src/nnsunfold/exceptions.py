"""Error kinds raised by the unfolding core."""


class UnfoldingError(Exception):
    """Base class for errors raised by nnsunfold."""


class ShapeError(UnfoldingError, ValueError):
    """Mismatched or degenerate dimensions of the supplied arrays."""


class DomainError(UnfoldingError, ArithmeticError):
    """
    Numeric singularity in the supplied inputs.

    Raised for a zero estimated measurement, a zero normalization entry or a
    zero total flux where no numeric sentinel is expected downstream.
    """
