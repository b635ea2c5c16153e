"""Maximum Likelihood Expectation Maximization (MLEM) unfolding."""
from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Optional

import numpy as np

from .convergence import ConvergencePolicy
from .exceptions import ConfigurationError, DivergenceError
from .response import ResponseModel, as_response_model

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IterationRun:
    """
    Result of one solver invocation.

    Attributes
    ----------
    num_iterations : int
        Number of update steps executed by this invocation.
    spectrum : np.ndarray
        Spectrum after the last update [n cm^-2 s^-1].
    ratio : np.ndarray
        Measured / estimated ratio from the last update.
    converged : bool
        Whether the ratio tolerance was met before the cap.
    estimate : np.ndarray
        Estimated measurements that produced ``ratio``.
    correction : np.ndarray
        Back-projected ratio of the last update.
    energy_correction : Optional[np.ndarray]
        Prior correction of the last update (MAP only).
    total_iterations : int
        Update steps applied since the initial spectrum, across resumes.
    """

    num_iterations: int
    spectrum: np.ndarray
    ratio: np.ndarray
    converged: bool
    estimate: np.ndarray
    correction: np.ndarray
    energy_correction: Optional[np.ndarray] = None
    total_iterations: int = 0


def validate_initial_spectrum(model: ResponseModel, initial_spectrum) -> np.ndarray:
    """Check that an initial guess has one strictly positive value per bin."""
    spectrum = model.check_spectrum(initial_spectrum, "Initial spectrum")
    if not np.all(np.isfinite(spectrum)) or np.any(spectrum <= 0):
        zero_bins = np.flatnonzero(~(spectrum > 0)).tolist()
        raise ConfigurationError(
            "Initial spectrum must be strictly positive in every bin; "
            f"bins {zero_bins} are not"
        )
    return spectrum


class MLEMSolver:
    """
    Stateful MLEM reconstruction.

    Each update projects the current spectrum through the response
    (``estimate = R @ phi``), compares it with the measurements
    (``ratio = y / estimate``), back-projects the ratio
    (``correction = R.T @ ratio``) and rescales every bin by
    ``correction / normalized_response``. The update is multiplicative, so
    a non-negative spectrum stays non-negative.

    Repeated calls to :meth:`run` resume from the current state, so
    sweeping iteration counts does not repeat work.

    Parameters
    ----------
    response : ResponseModel or array-like
        Response model or matrix of shape (n_measurements, n_bins).
    measurements : array-like
        Measured count rates [cps], one per response row.
    initial_spectrum : array-like
        Strictly positive starting spectrum, one value per energy bin.
    copy : bool, optional
        Work on a private copy of ``initial_spectrum`` (default). With
        ``copy=False`` a float ndarray is updated in place.

    Raises
    ------
    DimensionError
        If the lengths of the inputs do not match the response.
    ConfigurationError
        If measurements are negative or the initial spectrum is not
        strictly positive.
    """

    method = "MLEM"

    def __init__(
        self,
        response,
        measurements,
        initial_spectrum,
        copy: bool = True,
    ):
        self.model = as_response_model(response)
        self.measurements = self.model.check_measurements(measurements)
        spectrum = validate_initial_spectrum(self.model, initial_spectrum)
        if copy or not spectrum.flags.writeable:
            spectrum = spectrum.copy()
        self.spectrum = spectrum

        self.ratio = np.full(self.model.num_measurements, np.nan)
        self.estimate = np.full(self.model.num_measurements, np.nan)
        self.correction = np.full(self.model.num_bins, np.nan)
        self.total_iterations = 0

    def _project(self) -> None:
        """Compute estimate and ratio for the current spectrum."""
        estimate = self.model.forward(self.spectrum)
        collapsed = ~(estimate > 0) | ~np.isfinite(estimate)
        if np.any(collapsed):
            raise DivergenceError(
                "Estimated measurements "
                f"{np.flatnonzero(collapsed).tolist()} collapsed to zero",
                iteration=self.total_iterations + 1,
            )
        self.estimate[:] = estimate
        self.ratio[:] = self.measurements / estimate

    def _denominator(self) -> np.ndarray:
        return self.model.normalized

    def _update(self) -> None:
        self._project()
        self.correction[:] = self.model.back_project(self.ratio)
        self.spectrum *= self.correction / self._denominator()
        self.total_iterations += 1

    def _result(self, executed: int, converged: bool) -> IterationRun:
        return IterationRun(
            num_iterations=executed,
            spectrum=self.spectrum.copy(),
            ratio=self.ratio.copy(),
            converged=converged,
            estimate=self.estimate.copy(),
            correction=self.correction.copy(),
            total_iterations=self.total_iterations,
        )

    def run(self, max_iterations: int, error_tolerance: float) -> IterationRun:
        """
        Advance the reconstruction.

        Parameters
        ----------
        max_iterations : int
            Iteration cap; at most ``max_iterations - 1`` updates are applied.
            The executed count is the number of updates, so a cap of 1
            applies none and reports 0 executed iterations (a count of
            projections would report 1); the ratio of the current spectrum is
            still returned.
        error_tolerance : float
            Stop once every ratio lies in ``[1 - tol, 1 + tol]``.

        Returns
        -------
        IterationRun
            Executed step count and a snapshot of the final state.

        Raises
        ------
        ConfigurationError
            If the cap or the tolerance is invalid.
        DivergenceError
            If an estimated measurement reaches zero.
        """
        policy = ConvergencePolicy(max_iterations, error_tolerance)
        return self.run_policy(policy)

    def run_policy(self, policy: ConvergencePolicy) -> IterationRun:
        """Advance the reconstruction under an existing policy."""
        executed = 0
        converged = False
        for _ in policy.step_indices():
            self._update()
            executed += 1
            if policy.is_converged(self.ratio):
                converged = True
                break

        if executed == 0:
            # a cap of 1 applies no update; report the current agreement
            self._project()

        if converged:
            logger.debug(
                "%s converged after %d iterations (tolerance %g)",
                self.method,
                executed,
                policy.error_tolerance,
            )
        else:
            logger.debug(
                "%s stopped at the iteration cap (%d updates)",
                self.method,
                executed,
            )
        return self._result(executed, converged)


def run_mlem(
    spectrum: np.ndarray,
    measurements,
    response,
    max_iterations: int,
    error_tolerance: float,
    ratio: Optional[np.ndarray] = None,
) -> IterationRun:
    """
    Run MLEM on ``spectrum`` in place.

    Parameters
    ----------
    spectrum : np.ndarray
        Float array updated in place; strictly positive on entry.
    measurements : array-like
        Measured count rates [cps].
    response : ResponseModel or array-like
        Response model or matrix (n_measurements, n_bins).
    max_iterations : int
        Iteration cap (at most ``max_iterations - 1`` updates).
    error_tolerance : float
        Ratio tolerance for early termination.
    ratio : Optional[np.ndarray]
        Buffer that receives the final ratio vector.

    Returns
    -------
    IterationRun
        Result of the run.

    Examples
    --------
    >>> spectrum = np.array([1.0, 1.0])
    >>> run = run_mlem(spectrum, [2.0, 3.0], [[1, 0], [0, 1]], 100, 0.01)
    >>> run.num_iterations, spectrum.tolist()
    (2, [2.0, 3.0])
    """
    solver = MLEMSolver(response, measurements, spectrum, copy=False)
    result = solver.run(max_iterations, error_tolerance)
    if (
        isinstance(spectrum, np.ndarray)
        and solver.spectrum is not spectrum
        and spectrum.flags.writeable
        and np.issubdtype(spectrum.dtype, np.floating)
    ):
        spectrum[...] = solver.spectrum
    if ratio is not None:
        ratio[...] = solver.ratio
    return result
