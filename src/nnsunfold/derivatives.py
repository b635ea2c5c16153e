"""Finite-difference derivatives of POI trajectories."""
from __future__ import annotations

import numpy as np

from .exceptions import ConfigurationError, DimensionError, InsufficientDataError


def calculate_derivatives(iterations, values) -> np.ndarray:
    """
    Derivative of a POI with respect to the number of iterations.

    The first sample uses a forward difference, the last a backward
    difference and interior samples the central difference
    ``(v[i+1] - v[i-1]) / (n[i+1] - n[i-1])``. Iteration counts need not be
    evenly spaced.

    Parameters
    ----------
    iterations : array-like
        Strictly increasing iteration counts.
    values : array-like
        POI value at each iteration count.

    Returns
    -------
    np.ndarray
        Derivative at each sample.

    Raises
    ------
    InsufficientDataError
        If fewer than 2 samples are given.
    DimensionError
        If the two inputs differ in length.
    ConfigurationError
        If the iteration counts are not strictly increasing.
    """
    n = np.asarray(iterations, dtype=float).ravel()
    v = np.asarray(values, dtype=float).ravel()
    if n.size != v.size:
        raise DimensionError(
            f"Got {n.size} iteration counts but {v.size} POI values"
        )
    if n.size < 2:
        raise InsufficientDataError(
            f"At least 2 samples are required for derivatives, got {n.size}"
        )
    if np.any(np.diff(n) <= 0):
        raise ConfigurationError("Iteration counts must be strictly increasing")

    derivatives = np.empty_like(v)
    derivatives[0] = (v[1] - v[0]) / (n[1] - n[0])
    derivatives[-1] = (v[-1] - v[-2]) / (n[-1] - n[-2])
    derivatives[1:-1] = (v[2:] - v[:-2]) / (n[2:] - n[:-2])
    return derivatives
