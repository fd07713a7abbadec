"""Exception taxonomy for trim-and-fill analyses.

Only shape and precondition violations are raised.  Recoverable
conditions (missing values dropped, a degenerate missing-study estimate,
the iteration cap) are logged and recorded on the result instead.
"""


class PubBiasError(Exception):
    """Base class for all errors raised by :mod:`pubbias`."""


class InputShapeError(PubBiasError, ValueError):
    """Parallel study arrays do not have matching lengths."""


class InsufficientDataError(PubBiasError, ValueError):
    """Too few usable studies for the requested computation."""

    def __init__(self, message: str, k: int = 0, required: int = 0) -> None:
        super().__init__(message)
        self.k = k
        self.required = required
