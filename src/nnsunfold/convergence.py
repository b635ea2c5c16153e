"""Stopping rule shared by the MLEM and MAP solvers."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator

import numpy as np

from .exceptions import ConfigurationError


@dataclass(frozen=True)
class ConvergencePolicy:
    """
    Iteration cap and ratio tolerance.

    Iteration indices start at 1, so a cap of ``max_iterations`` allows at
    most ``max_iterations - 1`` update steps. A run stops early once every
    measured/estimated ratio lies within ``[1 - error_tolerance,
    1 + error_tolerance]``; reaching the cap is a normal outcome.

    Parameters
    ----------
    max_iterations : int
        Hard iteration cap (>= 1).
    error_tolerance : float
        Allowed relative disagreement per measurement channel, in (0, 1).
    """

    max_iterations: int
    error_tolerance: float

    def __post_init__(self):
        if isinstance(self.max_iterations, bool) or not isinstance(
            self.max_iterations, (int, np.integer)
        ):
            raise ConfigurationError(
                f"max_iterations must be an integer, got {self.max_iterations!r}"
            )
        if self.max_iterations < 1:
            raise ConfigurationError(
                f"max_iterations must be positive, got {self.max_iterations}"
            )
        if not 0 < self.error_tolerance < 1:
            raise ConfigurationError(
                f"error_tolerance must lie in (0, 1), got {self.error_tolerance}"
            )

    @property
    def max_steps(self) -> int:
        """Largest number of update steps a run may execute."""
        return self.max_iterations - 1

    def step_indices(self) -> Iterator[int]:
        """Iteration indices ``1 .. max_iterations - 1``."""
        return iter(range(1, self.max_iterations))

    def is_converged(self, ratio: np.ndarray) -> bool:
        """True when every ratio is within tolerance of one."""
        return bool(np.all(np.abs(1.0 - np.asarray(ratio)) <= self.error_tolerance))
