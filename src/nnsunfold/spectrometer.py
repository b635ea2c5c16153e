"""Spectrometer class with MLEM and MAP unfolding."""
from __future__ import annotations

from datetime import datetime
import logging
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import pandas as pd

from .exceptions import ConfigurationError
from .map_solver import MAPSolver
from .mlem import IterationRun, MLEMSolver
from .poi import subdoses, total_dose, total_fluence
from .response import ResponseModel
from .settings import UnfoldingSettings
from .uncertainty import UncertaintyResult, estimate_uncertainty

logger = logging.getLogger(__name__)


class Spectrometer:
    """
    Neutron spectrometer with iterative spectrum unfolding.

    Wraps a table of response functions and unfolds detector readings with
    MLEM or MAP. Every unfolding returns a standardized result dictionary
    that is also kept in a result history.

    Parameters
    ----------
    response_functions_df : pd.DataFrame
        Response functions, one row per energy bin. The ``E_MeV`` column (or
        the first column) holds the bin energies, every other column the
        response of one detector configuration [cm^2].
    icrp_factors : array-like, optional
        Fluence-to-dose conversion coefficients [pSv cm^2], one per energy
        bin. Without them results carry no dose.

    Attributes
    ----------
    model : ResponseModel
        Response of all detector configurations.
    E_MeV : np.ndarray
        Energy grid in MeV.
    detector_names : List[str]
        Names of the detector configurations.
    sensitivities : Dict[str, np.ndarray]
        Response of each configuration per energy bin.

    Examples
    --------
    >>> spectrometer = Spectrometer(rf_df, icrp_factors=coefficients)
    >>> readings = {"0": 120.0, "1": 310.5, "2": 402.1}
    >>> result = spectrometer.unfold_mlem(readings, max_iterations=2000)
    >>> result["dose"]
    """

    def __init__(self, response_functions_df: pd.DataFrame, icrp_factors=None):
        self.model = ResponseModel.from_dataframe(response_functions_df)
        self.E_MeV = np.asarray(self.model.energy_bins, dtype=float)
        self.detector_names: List[str] = list(self.model.detector_names)
        self.sensitivities = {
            name: self.model.matrix[i] for i, name in enumerate(self.detector_names)
        }
        if icrp_factors is not None:
            icrp_factors = self.model.check_spectrum(icrp_factors, "ICRP factors").copy()
        self.icrp_factors = icrp_factors

        self.results_history: Dict[str, Dict[str, Any]] = {}
        self.current_result: Optional[Dict[str, Any]] = None

    def __str__(self) -> str:
        energy_range = f"{self.E_MeV[0]:.3e} - {self.E_MeV[-1]:.3e} MeV"
        return (
            f"Spectrometer(energy bins: {self.n_energy_bins}, "
            f"detectors: {self.n_detectors}, "
            f"range: {energy_range})"
        )

    def __repr__(self) -> str:
        return (
            f"Spectrometer(detectors={self.detector_names}, "
            f"n_energy_bins={self.n_energy_bins})"
        )

    @property
    def n_detectors(self) -> int:
        """Number of detector configurations."""
        return len(self.detector_names)

    @property
    def n_energy_bins(self) -> int:
        """Number of energy bins."""
        return len(self.E_MeV)

    def _save_result(self, result: Dict[str, Any]) -> str:
        """
        Store an MLEM/MAP result under ``<timestamp>_<method>``.

        Results produced within the same second get a numeric suffix. The
        stored entry is a shallow copy; ``result`` becomes the current
        result and is the dict later updated by :meth:`estimate_uncertainty`.

        Returns
        -------
        str
            Key under which the result was saved (timestamp + method).
        """
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        key = f"{timestamp}_{result.get('method', 'unknown')}"
        suffix = 1
        while key in self.results_history:
            suffix += 1
            key = f"{timestamp}_{result.get('method', 'unknown')}_{suffix}"

        result["timestamp"] = timestamp
        result["saved_key"] = key
        self.results_history[key] = result.copy()
        self.current_result = result

        logger.info("Result saved with key: %s", key)
        return key

    def get_result(self, key: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """
        Look up a stored unfolding result.

        Parameters
        ----------
        key : Optional[str], optional
            Key returned by :meth:`list_results`. The most recent MLEM or
            MAP result when None.
        """
        if key is None:
            return self.current_result
        return self.results_history.get(key)

    def list_results(self) -> List[str]:
        """Keys of the stored results, oldest first."""
        return sorted(self.results_history.keys())

    def clear_results(self) -> None:
        """Forget every stored result, including the current one."""
        self.results_history.clear()
        self.current_result = None
        logger.info("All results cleared.")

    def _validate_readings(self, readings: Dict[str, float]) -> Dict[str, float]:
        """
        Keep the readings of known detectors.

        Raises
        ------
        ConfigurationError
            If a reading is negative or not finite, or no known detector
            has a reading.
        """
        valid = {}
        for name in self.detector_names:
            if name in readings:
                value = float(readings[name])
                if not np.isfinite(value) or value < 0:
                    raise ConfigurationError(f"Reading '{name}' is invalid: {value}")
                valid[name] = value
        unknown = sorted(set(map(str, readings)) - set(self.detector_names))
        if unknown:
            logger.warning("Ignoring readings of unknown detectors: %s", unknown)
        if not valid:
            raise ConfigurationError("No detector readings provided")
        return valid

    def _build_system(
        self, readings: Dict[str, float]
    ) -> Tuple[ResponseModel, np.ndarray, List[str]]:
        """
        Response model and measurement vector of the read detectors.

        Returns
        -------
        Tuple[ResponseModel, np.ndarray, List[str]]
            Model restricted to the read detectors, measurements [cps] and
            selected detector names.
        """
        selected = [name for name in self.detector_names if name in readings]
        if len(selected) == self.n_detectors:
            model = self.model
        else:
            model = ResponseModel(
                np.array([self.sensitivities[name] for name in selected]),
                detector_names=selected,
                energy_bins=self.E_MeV,
            )
        b = np.array([readings[name] for name in selected], dtype=float)
        return model, b, selected

    def _initial_spectrum(self, initial_spectrum) -> np.ndarray:
        if initial_spectrum is None:
            return np.ones(self.n_energy_bins)
        return self.model.check_spectrum(initial_spectrum, "Initial spectrum").copy()

    def _standardize_output(
        self,
        run: IterationRun,
        model: ResponseModel,
        b: np.ndarray,
        selected: List[str],
        method: str,
        **kwargs,
    ) -> Dict[str, Any]:
        """
        Create the result dictionary shared by all unfolding methods.

        Parameters
        ----------
        run : IterationRun
            Solver result.
        model : ResponseModel
            Response of the selected detectors.
        b : np.ndarray
            Measurement vector [cps].
        selected : List[str]
            Selected detector names.
        method : str
            Unfolding method name.
        **kwargs : dict
            Additional entries.
        """
        computed_readings = model.forward(run.spectrum)
        residual = b - computed_readings

        output = {
            "energy": self.E_MeV.copy(),
            "spectrum": run.spectrum.copy(),
            "ratio": {name: float(val) for name, val in zip(selected, run.ratio)},
            "effective_readings": {
                name: float(val) for name, val in zip(selected, computed_readings)
            },
            "residual": residual,
            "residual_norm": float(np.linalg.norm(residual)),
            "iterations": run.num_iterations,
            "converged": run.converged,
            "total_fluence": total_fluence(run.spectrum),
            "dose": None,
            "subdoses": None,
            "method": method,
        }
        if self.icrp_factors is not None:
            output["dose"] = total_dose(run.spectrum, self.icrp_factors)
            output["subdoses"] = subdoses(run.spectrum, self.icrp_factors)
        output.update(kwargs)
        return output

    def _attach_uncertainty(
        self,
        output: Dict[str, Any],
        model: ResponseModel,
        b: np.ndarray,
        initial_spectrum: np.ndarray,
        max_iterations: int,
        error_tolerance: float,
        num_samples: int,
        seed: Optional[int],
        max_workers: Optional[int],
    ) -> UncertaintyResult:
        if self.icrp_factors is None:
            raise ConfigurationError("Uncertainty estimation requires ICRP factors")
        uncertainty = estimate_uncertainty(
            model,
            b,
            initial_spectrum,
            output["spectrum"],
            self.icrp_factors,
            num_samples=num_samples,
            max_iterations=max_iterations,
            error_tolerance=error_tolerance,
            seed=seed,
            max_workers=max_workers,
        )
        output["spectrum_uncert"] = uncertainty.spectrum_uncertainty
        output["dose_uncert"] = uncertainty.dose_uncertainty
        output["uncertainty_seed"] = uncertainty.seed
        output["num_samples"] = uncertainty.num_samples
        return uncertainty

    def unfold_mlem(
        self,
        readings: Dict[str, float],
        initial_spectrum=None,
        max_iterations: int = 1000,
        error_tolerance: float = 0.1,
        calculate_errors: bool = False,
        num_samples: int = 1000,
        seed: Optional[int] = None,
        max_workers: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Unfold a spectrum with MLEM.

        Parameters
        ----------
        readings : Dict[str, float]
            Detector readings [cps] keyed by detector name.
        initial_spectrum : array-like, optional
            Strictly positive starting spectrum. Flat (ones) by default.
        max_iterations : int, optional
            Iteration cap (at most ``max_iterations - 1`` updates), default: 1000.
        error_tolerance : float, optional
            Ratio tolerance for early termination, default: 0.1.
        calculate_errors : bool, optional
            Also estimate uncertainties by Poisson resampling. Requires ICRP
            factors.
        num_samples : int, optional
            Replicates for the uncertainty estimate, default: 1000.
        seed : Optional[int], optional
            Base seed of the resampling.
        max_workers : Optional[int], optional
            Thread pool size for the resampling.

        Returns
        -------
        Dict[str, Any]
            Result dictionary with keys:
            - 'energy': Energy grid [MeV]
            - 'spectrum': Unfolded spectrum [n cm^-2 s^-1]
            - 'ratio': Measured / estimated ratio per detector
            - 'effective_readings': Reconstructed readings per detector
            - 'residual', 'residual_norm': Measured minus reconstructed
            - 'iterations', 'converged': Solver state
            - 'initial_spectrum': Starting spectrum of the run
            - 'dose', 'subdoses': Dose rate [mSv/h] when ICRP factors are set
            - 'spectrum_uncert', 'dose_uncert': With ``calculate_errors``

        Raises
        ------
        ConfigurationError
            On invalid readings or solver settings.
        DivergenceError
            If an estimated reading collapses to zero.
        """
        readings = self._validate_readings(readings)
        model, b, selected = self._build_system(readings)
        spectrum_initial = self._initial_spectrum(initial_spectrum)

        solver = MLEMSolver(model, b, spectrum_initial)
        run = solver.run(max_iterations, error_tolerance)
        logger.info(
            "MLEM finished after %d iterations (converged: %s)",
            run.num_iterations,
            run.converged,
        )

        output = self._standardize_output(
            run,
            model,
            b,
            selected,
            method="MLEM",
            initial_spectrum=spectrum_initial.copy(),
            max_iterations=max_iterations,
            error_tolerance=error_tolerance,
        )
        if calculate_errors:
            self._attach_uncertainty(
                output,
                model,
                b,
                spectrum_initial,
                max_iterations,
                error_tolerance,
                num_samples,
                seed,
                max_workers,
            )
        self._save_result(output)
        return output

    def unfold_map(
        self,
        readings: Dict[str, float],
        beta: float,
        prior="quadratic",
        initial_spectrum=None,
        max_iterations: int = 1000,
        error_tolerance: float = 0.1,
    ) -> Dict[str, Any]:
        """
        Unfold a spectrum with MAP (one-step-late MLEM with a prior).

        Parameters
        ----------
        readings : Dict[str, float]
            Detector readings [cps] keyed by detector name.
        beta : float
            Regularization strength (>= 0). ``beta=0`` reproduces MLEM.
        prior : str or callable, optional
            ``quadratic`` (default), ``gaussian``, ``entropy``,
            ``total_variation`` or a gradient callable.
        initial_spectrum : array-like, optional
            Strictly positive starting spectrum. Flat (ones) by default.
        max_iterations : int, optional
            Iteration cap, default: 1000.
        error_tolerance : float, optional
            Ratio tolerance, default: 0.1.

        Returns
        -------
        Dict[str, Any]
            Same keys as :meth:`unfold_mlem` plus ``energy_correction``,
            ``beta`` and ``prior``.
        """
        readings = self._validate_readings(readings)
        model, b, selected = self._build_system(readings)
        spectrum_initial = self._initial_spectrum(initial_spectrum)

        solver = MAPSolver(model, b, spectrum_initial, beta=beta, prior=prior)
        run = solver.run(max_iterations, error_tolerance)
        logger.info(
            "MAP (beta=%g) finished after %d iterations (converged: %s)",
            solver.beta,
            run.num_iterations,
            run.converged,
        )

        output = self._standardize_output(
            run,
            model,
            b,
            selected,
            method="MAP",
            initial_spectrum=spectrum_initial.copy(),
            energy_correction=run.energy_correction,
            beta=solver.beta,
            prior=prior if isinstance(prior, str) else getattr(prior, "__name__", "custom"),
            max_iterations=max_iterations,
            error_tolerance=error_tolerance,
        )
        self._save_result(output)
        return output

    def estimate_uncertainty(
        self,
        readings: Dict[str, float],
        result: Optional[Dict[str, Any]] = None,
        initial_spectrum=None,
        num_samples: int = 1000,
        seed: Optional[int] = None,
        max_workers: Optional[int] = None,
    ) -> UncertaintyResult:
        """
        Poisson resampling uncertainty of an MLEM result.

        Parameters
        ----------
        readings : Dict[str, float]
            The readings that produced ``result``.
        result : Optional[Dict[str, Any]], optional
            MLEM result to use as reference. The current result by default.
            Its ``spectrum_uncert`` and ``dose_uncert`` entries are updated.
        initial_spectrum : array-like, optional
            Starting spectrum of the replicates. Defaults to the
            ``initial_spectrum`` recorded in ``result``.
        num_samples : int, optional
            Number of replicates, default: 1000.
        seed : Optional[int], optional
            Base seed of the resampling.
        max_workers : Optional[int], optional
            Thread pool size.

        Raises
        ------
        ConfigurationError
            If there is no MLEM result or no ICRP factors.
        """
        if result is None:
            result = self.current_result
        if result is None or result.get("method") != "MLEM":
            raise ConfigurationError("An MLEM result is required as reference")

        readings = self._validate_readings(readings)
        model, b, _ = self._build_system(readings)
        if initial_spectrum is None:
            initial_spectrum = result.get("initial_spectrum")
        spectrum_initial = self._initial_spectrum(initial_spectrum)
        uncertainty = self._attach_uncertainty(
            result,
            model,
            b,
            spectrum_initial,
            result["max_iterations"],
            result["error_tolerance"],
            num_samples,
            seed,
            max_workers,
        )
        key = result.get("saved_key")
        if key in self.results_history:
            self.results_history[key] = result.copy()
        logger.info("Uncertainty calculation completed.")
        return uncertainty

    def unfold(
        self,
        readings: Dict[str, float],
        settings: UnfoldingSettings,
        initial_spectrum=None,
        calculate_errors: bool = True,
        max_workers: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        MLEM unfolding configured by an :class:`UnfoldingSettings`.

        Uses ``settings.policy`` for the cap and tolerance and, with
        ``calculate_errors``, ``num_poisson_samples`` and ``seed`` for the
        resampling (ICRP factors required).
        """
        policy = settings.validate().policy
        return self.unfold_mlem(
            readings,
            initial_spectrum=initial_spectrum,
            max_iterations=policy.max_iterations,
            error_tolerance=policy.error_tolerance,
            calculate_errors=calculate_errors,
            num_samples=settings.num_poisson_samples,
            seed=settings.seed,
            max_workers=max_workers,
        )
