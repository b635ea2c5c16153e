"""Poisson resampling estimate of the unfolding uncertainty."""
from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
import logging
from typing import Callable, Dict, Optional, Tuple

import numpy as np
import pandas as pd

from .convergence import ConvergencePolicy
from .exceptions import ConfigurationError, DimensionError, InsufficientDataError
from .mlem import MLEMSolver, validate_initial_spectrum
from .poi import total_dose
from .response import as_response_model

logger = logging.getLogger(__name__)

Sampler = Callable[[np.ndarray, np.random.Generator], np.ndarray]


def poisson_sampler(measurements: np.ndarray, rng: np.random.Generator) -> np.ndarray:
    """Draw one count-rate vector with Poisson statistics around ``measurements``."""
    return rng.poisson(measurements).astype(float)


def replicate_rng(seed: int, index: int) -> np.random.Generator:
    """Independent generator for replicate ``index`` derived from ``seed``."""
    return np.random.default_rng([seed, index])


@dataclass
class PoissonEnsemble:
    """
    Replicate spectra and doses collected by sample index.

    Parameters
    ----------
    num_bins : int
        Number of energy bins of every replicate spectrum.
    """

    num_bins: int
    spectra: Dict[int, np.ndarray] = field(default_factory=dict)
    doses: Dict[int, float] = field(default_factory=dict)

    def add(self, index: int, spectrum: np.ndarray, dose: float) -> None:
        """Store the result of replicate ``index``."""
        spectrum = np.asarray(spectrum, dtype=float)
        if spectrum.shape != (self.num_bins,):
            raise DimensionError(
                f"Replicate {index} has {spectrum.size} bins, expected {self.num_bins}"
            )
        self.spectra[index] = spectrum
        self.doses[index] = float(dose)

    def __len__(self) -> int:
        return len(self.spectra)

    def finalize(
        self, reference_spectrum: np.ndarray, reference_dose: float
    ) -> Tuple[np.ndarray, float]:
        """
        RMS deviation of the replicates from the reference.

        Returns ``sqrt(mean_k (replicate_k - reference)**2)`` per bin, and the
        same quantity for the dose. The deviation is taken from the reference
        result, not from the replicate mean.

        Raises
        ------
        InsufficientDataError
            If no replicate was added.
        """
        if not self.spectra:
            raise InsufficientDataError("Poisson ensemble is empty")
        reference_spectrum = np.asarray(reference_spectrum, dtype=float)
        if reference_spectrum.shape != (self.num_bins,):
            raise DimensionError(
                f"Reference spectrum has {reference_spectrum.size} bins, "
                f"expected {self.num_bins}"
            )
        indices = sorted(self.spectra)
        samples = np.vstack([self.spectra[i] for i in indices])
        doses = np.array([self.doses[i] for i in indices])

        spectrum_uncertainty = np.sqrt(
            np.mean((samples - reference_spectrum) ** 2, axis=0)
        )
        dose_uncertainty = float(np.sqrt(np.mean((doses - reference_dose) ** 2)))
        return spectrum_uncertainty, dose_uncertainty

    def to_frame(self) -> pd.DataFrame:
        """Replicates as a table: one row per sample, bins then ``dose``."""
        indices = sorted(self.spectra)
        frame = pd.DataFrame(
            [self.spectra[i] for i in indices],
            index=pd.Index(indices, name="sample"),
        )
        frame["dose"] = [self.doses[i] for i in indices]
        return frame


@dataclass(frozen=True)
class UncertaintyResult:
    """
    Aggregated Poisson resampling statistics.

    Attributes
    ----------
    spectrum_uncertainty : np.ndarray
        Per-bin RMS deviation from the reference spectrum [n cm^-2 s^-1].
    dose : float
        Dose of the reference spectrum [mSv/h].
    dose_uncertainty : float
        RMS deviation of replicate doses from ``dose`` [mSv/h].
    num_samples : int
        Number of replicates.
    seed : int
        Base seed; replicate ``k`` used ``default_rng([seed, k])``.
    samples : Optional[pd.DataFrame]
        Replicate spectra and doses when requested.
    """

    spectrum_uncertainty: np.ndarray
    dose: float
    dose_uncertainty: float
    num_samples: int
    seed: int
    samples: Optional[pd.DataFrame] = None


def _run_replicate(
    index: int,
    model,
    measurements: np.ndarray,
    initial_spectrum: np.ndarray,
    icrp_factors: np.ndarray,
    policy: ConvergencePolicy,
    seed: int,
    sampler: Sampler,
) -> Tuple[int, np.ndarray, float]:
    rng = replicate_rng(seed, index)
    sampled = np.asarray(sampler(measurements.copy(), rng), dtype=float)
    solver = MLEMSolver(model, sampled, initial_spectrum, copy=True)
    run = solver.run_policy(policy)
    return index, run.spectrum, total_dose(run.spectrum, icrp_factors)


def estimate_uncertainty(
    response,
    measurements,
    initial_spectrum,
    reference_spectrum,
    icrp_factors,
    num_samples: int = 1000,
    max_iterations: int = 1000,
    error_tolerance: float = 0.1,
    seed: Optional[int] = None,
    sampler: Optional[Sampler] = None,
    max_workers: Optional[int] = None,
    keep_samples: bool = False,
) -> UncertaintyResult:
    """
    Estimate spectrum and dose uncertainty by Poisson resampling.

    Every replicate draws a new measurement vector (Poisson distributed
    around each measured value by default), unfolds it with MLEM from the
    same initial spectrum and convergence policy as the reference run, and
    records the resulting spectrum and dose.

    Parameters
    ----------
    response : ResponseModel or array-like
        Response model or matrix, shared read-only by all replicates.
    measurements : array-like
        Measured count rates [cps].
    initial_spectrum : array-like
        Initial spectrum used for the reference run.
    reference_spectrum : array-like
        Result of the reference run.
    icrp_factors : array-like
        Fluence-to-dose coefficients [pSv cm^2].
    num_samples : int, optional
        Number of replicates, default: 1000.
    max_iterations : int, optional
        MLEM iteration cap, default: 1000.
    error_tolerance : float, optional
        MLEM ratio tolerance, default: 0.1.
    seed : Optional[int], optional
        Base seed. Drawn from fresh entropy when None.
    sampler : Optional[Callable], optional
        ``sampler(measurements, rng) -> measurements`` replacing the Poisson
        draw.
    max_workers : Optional[int], optional
        Run replicates on a thread pool of this size when greater than 1.
    keep_samples : bool, optional
        Attach the replicate table to the result, default: False.

    Returns
    -------
    UncertaintyResult
        Aggregated uncertainties.

    Raises
    ------
    ConfigurationError
        If ``num_samples`` is not a positive integer.
    DimensionError
        If any vector does not match the response.
    DivergenceError
        If a replicate reconstruction diverges.
    """
    if isinstance(num_samples, bool) or not isinstance(num_samples, (int, np.integer)):
        raise ConfigurationError(f"num_samples must be an integer, got {num_samples!r}")
    if num_samples < 1:
        raise ConfigurationError(f"num_samples must be positive, got {num_samples}")

    model = as_response_model(response)
    measurements = model.check_measurements(measurements)
    initial_spectrum = validate_initial_spectrum(model, initial_spectrum).copy()
    reference_spectrum = model.check_spectrum(reference_spectrum, "Reference spectrum")
    icrp_factors = model.check_spectrum(icrp_factors, "ICRP factors")
    policy = ConvergencePolicy(max_iterations, error_tolerance)

    if seed is None:
        seed = int(np.random.SeedSequence().entropy % (2**63))
    if sampler is None:
        sampler = poisson_sampler

    logger.info(
        "Calculating uncertainty with %d Poisson samples (seed %d)...",
        num_samples,
        seed,
    )

    ensemble = PoissonEnsemble(model.num_bins)
    args = (model, measurements, initial_spectrum, icrp_factors, policy, seed, sampler)
    if max_workers is not None and max_workers > 1:
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            futures = [
                executor.submit(_run_replicate, index, *args)
                for index in range(num_samples)
            ]
            for future in futures:
                ensemble.add(*future.result())
    else:
        for index in range(num_samples):
            ensemble.add(*_run_replicate(index, *args))

    dose = total_dose(reference_spectrum, icrp_factors)
    spectrum_uncertainty, dose_uncertainty = ensemble.finalize(
        reference_spectrum, dose
    )
    logger.info("Uncertainty calculation completed.")

    return UncertaintyResult(
        spectrum_uncertainty=spectrum_uncertainty,
        dose=dose,
        dose_uncertainty=dose_uncertainty,
        num_samples=num_samples,
        seed=seed,
        samples=ensemble.to_frame() if keep_samples else None,
    )
