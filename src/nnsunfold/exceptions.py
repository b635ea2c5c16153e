"""Exceptions raised by the unfolding core."""
from __future__ import annotations

from typing import Optional


class UnfoldingError(Exception):
    """Base class for all unfolding errors."""


class DimensionError(UnfoldingError, ValueError):
    """Vector or matrix lengths do not agree."""


class ConfigurationError(UnfoldingError, ValueError):
    """Invalid settings or an unrecognized selector."""


class InsufficientDataError(UnfoldingError, ValueError):
    """Not enough samples for the requested calculation."""


class DivergenceError(UnfoldingError, ArithmeticError):
    """
    An estimate or a normalization denominator reached zero during iteration.

    Parameters
    ----------
    message : str
        Description of the failure.
    iteration : Optional[int]
        Iteration index (starting at 1) at which the failure occurred.
    """

    def __init__(self, message: str, iteration: Optional[int] = None):
        super().__init__(message)
        self.iteration = iteration

    def __str__(self) -> str:
        message = super().__str__()
        if self.iteration is None:
            return message
        return f"{message} (iteration {self.iteration})"
