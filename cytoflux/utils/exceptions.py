"""
Error taxonomy for cytoflux.

Run-scoped errors (ConfigurationError, DimensionMismatchError,
InvalidPValueError) abort an engine invocation. Feature-scoped errors
(ConvergenceError, InsufficientDataError, DegenerateInputError raised inside
a per-feature loop) are caught by the engine, recorded as a failure marker for
that feature and excluded from multiple-testing correction.
"""

from typing import Optional


class CytofluxError(Exception):
    """Base class for exceptions in cytoflux."""

    def __init__(self, message: str, feature: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.feature = feature

    @property
    def kind(self) -> str:
        return type(self).__name__

    def __str__(self) -> str:
        if self.feature is not None:
            return f"[{self.feature}] {self.message}"
        return self.message


class ConfigurationError(CytofluxError, ValueError):
    """Malformed experiment design or configuration."""


class DimensionMismatchError(CytofluxError, ValueError):
    """Contrast length or matrix axes disagree."""


class DegenerateInputError(CytofluxError):
    """Zero-variance feature or empty group."""


class InvalidPValueError(CytofluxError, ValueError):
    """NaN or out-of-range p-value reached the corrector."""


class ConvergenceError(CytofluxError):
    """Iterative fit did not converge."""


class InsufficientDataError(CytofluxError):
    """Too few valid observations."""


FEATURE_SCOPED_ERRORS = (ConvergenceError, InsufficientDataError, DegenerateInputError)
