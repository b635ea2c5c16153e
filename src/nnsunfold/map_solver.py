"""Maximum A Posteriori (MAP) unfolding with the one-step-late update."""
from __future__ import annotations

import logging
from typing import Optional

import numpy as np

from .exceptions import ConfigurationError
from .mlem import IterationRun, MLEMSolver
from .priors import get_prior

logger = logging.getLogger(__name__)


class MAPSolver(MLEMSolver):
    """
    MLEM with a smoothness prior weighted by ``beta``.

    The prior gradient is evaluated at the current spectrum (one-step-late)
    and enters the update as a multiplicative energy correction::

        energy_correction = 1 + beta * dU/dphi / normalized_response
        phi *= correction / (normalized_response * energy_correction)

    With ``beta = 0`` every energy correction is exactly 1 and the update is
    identical to MLEM.

    Parameters
    ----------
    response : ResponseModel or array-like
        Response model or matrix of shape (n_measurements, n_bins).
    measurements : array-like
        Measured count rates [cps].
    initial_spectrum : array-like
        Strictly positive starting spectrum.
    beta : float
        Regularization strength (>= 0).
    prior : str or callable, optional
        Prior selector, see :data:`nnsunfold.priors.PRIORS`. Default
        ``"quadratic"``.
    copy : bool, optional
        Work on a private copy of ``initial_spectrum`` (default).

    Raises
    ------
    ConfigurationError
        If ``beta`` is negative or not finite, or the prior is unknown.
    """

    method = "MAP"

    def __init__(
        self,
        response,
        measurements,
        initial_spectrum,
        beta: float,
        prior="quadratic",
        copy: bool = True,
    ):
        super().__init__(response, measurements, initial_spectrum, copy=copy)
        beta = float(beta)
        if not np.isfinite(beta) or beta < 0:
            raise ConfigurationError(f"beta must be non-negative, got {beta}")
        self.beta = beta
        self.prior = prior
        self.prior_gradient = get_prior(prior)
        self.energy_correction = np.ones(self.model.num_bins)

    def _denominator(self) -> np.ndarray:
        gradient = np.asarray(self.prior_gradient(self.spectrum), dtype=float)
        energy_correction = 1.0 + self.beta * gradient / self.model.normalized
        invalid = ~(energy_correction > 0) | ~np.isfinite(energy_correction)
        if np.any(invalid):
            raise ConfigurationError(
                f"Energy correction is not positive in bins "
                f"{np.flatnonzero(invalid).tolist()} at iteration "
                f"{self.total_iterations + 1}; beta={self.beta:g} is too "
                f"strong for the '{self.prior}' prior"
            )
        self.energy_correction[:] = energy_correction
        return self.model.normalized * self.energy_correction

    def _result(self, executed: int, converged: bool) -> IterationRun:
        return IterationRun(
            num_iterations=executed,
            spectrum=self.spectrum.copy(),
            ratio=self.ratio.copy(),
            converged=converged,
            estimate=self.estimate.copy(),
            correction=self.correction.copy(),
            energy_correction=self.energy_correction.copy(),
            total_iterations=self.total_iterations,
        )


def run_map(
    spectrum: np.ndarray,
    measurements,
    response,
    max_iterations: int,
    error_tolerance: float,
    beta: float,
    prior="quadratic",
    energy_correction: Optional[np.ndarray] = None,
) -> IterationRun:
    """
    Run MAP unfolding on ``spectrum`` in place.

    Parameters
    ----------
    spectrum : np.ndarray
        Float array updated in place; strictly positive on entry.
    measurements : array-like
        Measured count rates [cps].
    response : ResponseModel or array-like
        Response model or matrix.
    max_iterations : int
        Iteration cap (at most ``max_iterations - 1`` updates).
    error_tolerance : float
        Ratio tolerance for early termination.
    beta : float
        Regularization strength.
    prior : str or callable, optional
        Prior selector.
    energy_correction : Optional[np.ndarray]
        Buffer that receives the last energy correction.

    Returns
    -------
    IterationRun
        Result of the run, including ``energy_correction``.
    """
    solver = MAPSolver(
        response, measurements, spectrum, beta=beta, prior=prior, copy=False
    )
    result = solver.run(max_iterations, error_tolerance)
    if (
        isinstance(spectrum, np.ndarray)
        and solver.spectrum is not spectrum
        and spectrum.flags.writeable
        and np.issubdtype(spectrum.dtype, np.floating)
    ):
        spectrum[...] = solver.spectrum
    if energy_correction is not None:
        energy_correction[...] = solver.energy_correction
    return result
