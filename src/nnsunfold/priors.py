"""
Smoothness priors for MAP unfolding.

Each prior is represented by the gradient of its energy function
``U(phi)`` with respect to every bin. Neighbouring bins are the previous
and next energy bin; the first and last bins only have one neighbour.
"""
from __future__ import annotations

from typing import Callable, Dict

import numpy as np

from .exceptions import ConfigurationError

PriorGradient = Callable[[np.ndarray], np.ndarray]

_FLOOR = 1e-300


def quadratic_gradient(spectrum: np.ndarray) -> np.ndarray:
    """
    Gradient of ``U = 1/2 * sum_b (phi[b+1] - phi[b])**2``.

    Entry ``b`` is ``sum_n (phi[b] - phi[n])`` over its neighbours ``n``.
    """
    diff = np.diff(spectrum)
    grad = np.zeros_like(spectrum, dtype=float)
    grad[:-1] -= diff
    grad[1:] += diff
    return grad


def entropy_gradient(spectrum: np.ndarray) -> np.ndarray:
    """
    Gradient of a cross-entropy penalty against the local neighbour mean.

    Entry ``b`` is ``log(phi[b] / m[b])`` where ``m[b]`` is the mean of the
    neighbouring bins.
    """
    spectrum = np.asarray(spectrum, dtype=float)
    if spectrum.size < 2:
        return np.zeros_like(spectrum)
    neighbour_sum = np.zeros_like(spectrum)
    neighbour_count = np.zeros_like(spectrum)
    neighbour_sum[:-1] += spectrum[1:]
    neighbour_sum[1:] += spectrum[:-1]
    neighbour_count[:-1] += 1
    neighbour_count[1:] += 1
    neighbour_mean = neighbour_sum / neighbour_count
    return np.log(np.maximum(spectrum, _FLOOR) / np.maximum(neighbour_mean, _FLOOR))


def total_variation_gradient(
    spectrum: np.ndarray, smoothing: float = 1e-3
) -> np.ndarray:
    """
    Gradient of a smoothed total variation ``sum_b sqrt(d_b**2 + eps**2)``.

    ``eps`` is ``smoothing`` times the mean of the spectrum, which keeps the
    penalty differentiable where neighbouring bins are equal.
    """
    spectrum = np.asarray(spectrum, dtype=float)
    eps = max(smoothing * float(np.mean(np.abs(spectrum))), _FLOOR)
    diff = np.diff(spectrum)
    weight = diff / np.sqrt(diff**2 + eps**2)
    grad = np.zeros_like(spectrum)
    grad[:-1] -= weight
    grad[1:] += weight
    return grad


PRIORS: Dict[str, PriorGradient] = {
    "quadratic": quadratic_gradient,
    "gaussian": quadratic_gradient,
    "entropy": entropy_gradient,
    "total_variation": total_variation_gradient,
}


def get_prior(prior) -> PriorGradient:
    """
    Resolve a prior selector to its gradient function.

    Parameters
    ----------
    prior : str or callable
        Name in :data:`PRIORS` or a custom gradient function.

    Raises
    ------
    ConfigurationError
        If the name is not registered.
    """
    if callable(prior):
        return prior
    try:
        return PRIORS[str(prior).lower()]
    except KeyError:
        raise ConfigurationError(
            f"Unrecognized prior '{prior}'. Available: {sorted(PRIORS)}"
        ) from None
