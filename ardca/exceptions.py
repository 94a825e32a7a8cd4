"""Exceptions and warnings raised by arDCA."""


class ArDCAError(Exception):
    """Base exception for arDCA."""

    pass


class InvalidInputError(ArDCAError, ValueError):
    """Raised when the alignment, weights or a configuration value is malformed."""

    def __init__(self, message: str, field: str = ""):
        self.field = field
        super().__init__(message)


class InvalidOrderError(ArDCAError, ValueError):
    """Raised when an autoregressive order is not a permutation of the positions."""

    def __init__(self, permorder, message: str = ""):
        self.permorder = permorder
        super().__init__(message or f"permorder is not a valid order: {permorder!r}")


class ConvergenceWarning(UserWarning):
    """A site hit the iteration cap before reaching tolerance.

    The parameters returned for that site are the best point found and remain usable.
    """

    pass


class DegenerateColumnError(UserWarning):
    """Soft error: a column holds a single category across all weighted sequences.

    Issued through :mod:`warnings`, never raised by arDCA itself. Use a warnings
    filter (``warnings.simplefilter("error", DegenerateColumnError)``) to make it fatal.
    """

    pass
