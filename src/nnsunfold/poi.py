"""
Parameters of interest (POI): scalar reductions of reconstruction results.

All functions are pure; none of them modifies its inputs.
"""
from __future__ import annotations

from typing import Any, Callable, Dict, Optional

import numpy as np

from .exceptions import ConfigurationError, DimensionError
from .mlem import IterationRun
from .response import as_response_model

# fluence rate x [pSv cm^2] gives pSv/s; 3600 s/h and 1e-9 mSv/pSv
DOSE_CONVERSION = 3600 * 1e-9


def _vector(values) -> np.ndarray:
    return np.asarray(values, dtype=float).ravel()


def _same_length(a: np.ndarray, b: np.ndarray, a_name: str, b_name: str) -> None:
    if a.shape != b.shape:
        raise DimensionError(
            f"{a_name} has length {a.size} but {b_name} has length {b.size}"
        )


def total_fluence(spectrum) -> float:
    """Total fluence rate, the sum of all bins [n cm^-2 s^-1]."""
    return float(np.sum(_vector(spectrum)))


def subdoses(spectrum, icrp_factors) -> np.ndarray:
    """
    Dose rate contribution of every energy bin [mSv/h].

    Parameters
    ----------
    spectrum : array-like
        Fluence rate per bin [n cm^-2 s^-1].
    icrp_factors : array-like
        Fluence-to-ambient-dose-equivalent coefficients [pSv cm^2].
    """
    spectrum = _vector(spectrum)
    icrp_factors = _vector(icrp_factors)
    _same_length(icrp_factors, spectrum, "ICRP factors", "spectrum")
    return spectrum * icrp_factors * DOSE_CONVERSION


def total_dose(spectrum, icrp_factors) -> float:
    """
    Ambient dose equivalent rate [mSv/h].

    ``sum_b spectrum[b] * icrp_factors[b]`` gives pSv/s, which is converted
    to mSv/h.

    Raises
    ------
    DimensionError
        If ``icrp_factors`` does not have one entry per bin.
    """
    spectrum = _vector(spectrum)
    icrp_factors = _vector(icrp_factors)
    _same_length(icrp_factors, spectrum, "ICRP factors", "spectrum")
    return float(np.sum(spectrum * icrp_factors)) * DOSE_CONVERSION


def max_ratio(ratio, deviation: bool = True) -> float:
    """
    Worst-case channel disagreement.

    With ``deviation=True`` (default) returns ``max |1 - ratio|``; otherwise
    the largest raw ratio.
    """
    ratio = _vector(ratio)
    if deviation:
        return float(np.max(np.abs(1.0 - ratio)))
    return float(np.max(ratio))


def avg_ratio(ratio, deviation: bool = True) -> float:
    """Mean of ``|1 - ratio|`` (or of the raw ratio) over all channels."""
    ratio = _vector(ratio)
    if deviation:
        return float(np.mean(np.abs(1.0 - ratio)))
    return float(np.mean(ratio))


def rms_estimator(reference_spectrum, spectrum) -> float:
    """Root-mean-square deviation of ``spectrum`` from a reference."""
    reference_spectrum = _vector(reference_spectrum)
    spectrum = _vector(spectrum)
    _same_length(spectrum, reference_spectrum, "spectrum", "reference spectrum")
    return float(np.sqrt(np.mean((spectrum - reference_spectrum) ** 2)))


def nrmsd(reference_spectrum, spectrum) -> float:
    """
    RMS deviation normalized by the mean of the reference spectrum.

    Raises
    ------
    DimensionError
        If the lengths differ.
    ConfigurationError
        If the reference has zero mean.
    """
    rms = rms_estimator(reference_spectrum, spectrum)
    mean_reference = float(np.mean(_vector(reference_spectrum)))
    if mean_reference == 0:
        raise ConfigurationError("Reference spectrum has zero mean")
    return rms / mean_reference


def chi_squared(spectrum, measurements, response) -> float:
    """
    Reduced chi-squared of the measurements against the projected spectrum.

    ``sum_m (y_m - e_m)**2 / e_m`` with ``e = R @ spectrum``, divided by
    ``n_measurements - 1`` degrees of freedom. Channels with a zero
    projection carry no information and are skipped; with a single
    measurement the unreduced value is returned.
    """
    model = as_response_model(response)
    spectrum = model.check_spectrum(spectrum)
    measurements = model.check_measurements(measurements)
    estimate = model.forward(spectrum)
    used = estimate > 0
    chi2 = float(
        np.sum((measurements[used] - estimate[used]) ** 2 / estimate[used])
    )
    dof = model.num_measurements - 1
    if dof <= 0:
        return chi2
    return chi2 / dof


def chi_squared_g(reference_spectrum, spectrum) -> float:
    """
    Chi-squared distance of ``spectrum`` from a reference spectrum.

    ``sum_b (spectrum[b] - reference[b])**2 / reference[b]`` over the bins
    where the reference is positive.
    """
    reference_spectrum = _vector(reference_spectrum)
    spectrum = _vector(spectrum)
    _same_length(spectrum, reference_spectrum, "spectrum", "reference spectrum")
    used = reference_spectrum > 0
    return float(
        np.sum(
            (spectrum[used] - reference_spectrum[used]) ** 2
            / reference_spectrum[used]
        )
    )


def j_factor(spectrum, measurements, response) -> float:
    """
    GRAVEL-style figure of merit.

    Chi-square of the projection against the measurements, weighted by the
    measured values, over the total projected count rate::

        J = sum_m (e_m - y_m)**2 / y_m / sum_m e_m

    Zero measurements are weighted as 1e-10 counts.
    """
    model = as_response_model(response)
    spectrum = model.check_spectrum(spectrum)
    measurements = model.check_measurements(measurements)
    estimate = model.forward(spectrum)
    chi2 = np.sum((estimate - measurements) ** 2 / np.maximum(measurements, 1e-10))
    total = float(np.sum(estimate))
    if total <= 0:
        return float("inf")
    return float(chi2 / total)


def total_energy_correction(energy_correction) -> float:
    """Sum of the MAP energy-correction vector."""
    return float(np.sum(_vector(energy_correction)))


def _require(value, poi: str, what: str):
    if value is None:
        raise ConfigurationError(f"Parameter of interest '{poi}' requires {what}")
    return value


PARAMETERS_OF_INTEREST: Dict[str, Callable[..., float]] = {
    "total_fluence": lambda run, ctx: total_fluence(run.spectrum),
    "total_dose": lambda run, ctx: total_dose(
        run.spectrum, _require(ctx["icrp_factors"], "total_dose", "ICRP factors")
    ),
    "max_mlem_ratio": lambda run, ctx: max_ratio(run.ratio),
    "avg_mlem_ratio": lambda run, ctx: avg_ratio(run.ratio),
    "j_factor": lambda run, ctx: j_factor(
        run.spectrum,
        _require(ctx["measurements"], "j_factor", "measurements"),
        _require(ctx["response"], "j_factor", "a response matrix"),
    ),
    "reduced_chi_squared": lambda run, ctx: chi_squared(
        run.spectrum,
        _require(ctx["measurements"], "reduced_chi_squared", "measurements"),
        _require(ctx["response"], "reduced_chi_squared", "a response matrix"),
    ),
    "rms": lambda run, ctx: rms_estimator(
        _require(ctx["reference_spectrum"], "rms", "a reference spectrum"),
        run.spectrum,
    ),
    "nrmsd": lambda run, ctx: nrmsd(
        _require(ctx["reference_spectrum"], "nrmsd", "a reference spectrum"),
        run.spectrum,
    ),
    "chi_squared_g": lambda run, ctx: chi_squared_g(
        _require(ctx["reference_spectrum"], "chi_squared_g", "a reference spectrum"),
        run.spectrum,
    ),
    "total_energy_correction": lambda run, ctx: total_energy_correction(
        _require(
            run.energy_correction,
            "total_energy_correction",
            "a MAP run",
        )
    ),
}

# parameters that need a reference spectrum
REFERENCE_POIS = frozenset({"rms", "nrmsd", "chi_squared_g"})


def check_poi(name: str) -> str:
    """Raise :class:`ConfigurationError` for an unknown POI name."""
    if name not in PARAMETERS_OF_INTEREST:
        raise ConfigurationError(
            f"Unrecognized parameter of interest: '{name}'. "
            f"Available: {sorted(PARAMETERS_OF_INTEREST)}"
        )
    return name


def calculate_poi(
    name: str,
    run: IterationRun,
    measurements: Optional[Any] = None,
    response: Optional[Any] = None,
    icrp_factors: Optional[Any] = None,
    reference_spectrum: Optional[Any] = None,
) -> float:
    """
    Evaluate a named parameter of interest on a finished run.

    Parameters
    ----------
    name : str
        Key of :data:`PARAMETERS_OF_INTEREST`.
    run : IterationRun
        Solver result.
    measurements, response, icrp_factors, reference_spectrum : optional
        Extra inputs needed by some parameters.

    Returns
    -------
    float
        POI value.

    Raises
    ------
    ConfigurationError
        If the name is unknown or a required input is missing.
    """
    check_poi(name)
    context = {
        "measurements": measurements,
        "response": response,
        "icrp_factors": icrp_factors,
        "reference_spectrum": reference_spectrum,
    }
    return PARAMETERS_OF_INTEREST[name](run, context)
