"""
Automatic unfolding sweeps.

These helpers drive the solvers across increasing iteration counts (and,
for MAP, across regularization strengths) and tabulate a parameter of
interest, the correction factors or the reconstructed measurements at each
checkpoint. Results are returned as pandas objects indexed by the number
of iterations.
"""
from __future__ import annotations

import logging
from typing import Optional, Sequence, Union
import warnings

import numpy as np
import pandas as pd

from .derivatives import calculate_derivatives
from .exceptions import ConfigurationError, InsufficientDataError
from .map_solver import MAPSolver
from .mlem import MLEMSolver
from .poi import REFERENCE_POIS, calculate_poi, check_poi
from .response import as_response_model
from .settings import UnfoldingSettings

logger = logging.getLogger(__name__)

MAP_POIS = frozenset(
    {
        "total_fluence",
        "total_dose",
        "total_energy_correction",
        "max_mlem_ratio",
        "avg_mlem_ratio",
    }
)
TREND_TYPES = ("cps", "ratio")


def iteration_checkpoints(min_iterations: int, max_iterations: int, increment: int) -> np.ndarray:
    """
    Linearly spaced iteration counts from ``min_iterations`` to ``max_iterations``.

    Examples
    --------
    >>> iteration_checkpoints(1000, 5000, 1000).tolist()
    [1000, 2000, 3000, 4000, 5000]
    """
    if increment < 1:
        raise ConfigurationError(f"Iteration increment must be positive, got {increment}")
    if min_iterations < 1 or max_iterations < min_iterations:
        raise ConfigurationError(
            f"Invalid iteration range [{min_iterations}, {max_iterations}]"
        )
    num_increments = (max_iterations - min_iterations) // increment + 1
    if num_increments == 1:
        return np.array([min_iterations])
    step = (max_iterations - min_iterations) / (num_increments - 1)
    return np.array(
        [int(min_iterations + i * step) for i in range(num_increments)]
    )


def beta_values(min_beta: float, max_beta: float, per_decade: int = 10) -> np.ndarray:
    """
    Regularization strengths spanning whole decades.

    Each decade starting at ``min_beta`` contributes ``per_decade`` linearly
    spaced values ending at ten times its start; shared decade boundaries
    are kept once.

    Examples
    --------
    >>> beta_values(1e-3, 1e-1).size
    19
    """
    if not (min_beta > 0 and max_beta > min_beta):
        raise ConfigurationError(
            f"Beta range must satisfy 0 < min_beta < max_beta, got "
            f"[{min_beta}, {max_beta}]"
        )
    num_decades = int(round(np.log10(max_beta / min_beta)))
    if num_decades < 1:
        raise ConfigurationError(
            f"Beta range [{min_beta}, {max_beta}] spans less than one decade"
        )
    betas = []
    current = min_beta
    for decade in range(num_decades):
        values = np.linspace(current, current * 10, per_decade)
        if decade > 0:
            values = values[1:]
        betas.extend(values)
        current *= 10
    return np.array(betas)


def _increments(checkpoints: Sequence[int]) -> np.ndarray:
    checkpoints = np.asarray(checkpoints, dtype=int)
    if checkpoints.size == 0:
        raise ConfigurationError("No iteration checkpoints given")
    if checkpoints[0] < 1 or np.any(np.diff(checkpoints) <= 0):
        raise ConfigurationError(
            "Iteration checkpoints must be positive and strictly increasing"
        )
    return np.diff(checkpoints, prepend=0)


def _advance(solver: MLEMSolver, steps: int, error_tolerance: float):
    # a cap of steps + 1 applies exactly ``steps`` updates
    return solver.run(int(steps) + 1, error_tolerance)


def poi_trajectory(
    response,
    measurements,
    initial_spectrum,
    checkpoints: Sequence[int],
    parameter_of_interest: str,
    error_tolerance: float,
    icrp_factors=None,
    reference_spectrum=None,
    derivatives: bool = False,
    name: Optional[str] = None,
) -> pd.Series:
    """
    Evaluate a parameter of interest along an MLEM reconstruction.

    The reconstruction is resumed between checkpoints, so after checkpoint
    ``n`` the spectrum has received ``n`` updates (fewer if it converged).

    Parameters
    ----------
    response : ResponseModel or array-like
        Response model or matrix.
    measurements : array-like
        Measured count rates [cps].
    initial_spectrum : array-like
        Strictly positive starting spectrum.
    checkpoints : Sequence[int]
        Strictly increasing iteration counts.
    parameter_of_interest : str
        Name from :data:`nnsunfold.poi.PARAMETERS_OF_INTEREST`.
    error_tolerance : float
        Ratio tolerance passed to the solver.
    icrp_factors : array-like, optional
        Needed by ``total_dose``.
    reference_spectrum : array-like, optional
        Needed by ``rms``, ``nrmsd`` and ``chi_squared_g``.
    derivatives : bool, optional
        Return the finite-difference derivative of the trajectory instead.
    name : Optional[str]
        Series name, e.g. the irradiation conditions.

    Returns
    -------
    pd.Series
        POI (or derivative) indexed by iteration count.
    """
    check_poi(parameter_of_interest)
    if parameter_of_interest == "total_energy_correction":
        raise ConfigurationError("total_energy_correction is only defined for MAP")
    if parameter_of_interest in REFERENCE_POIS and reference_spectrum is None:
        raise ConfigurationError(
            f"Parameter of interest '{parameter_of_interest}' requires a "
            "reference spectrum"
        )
    if parameter_of_interest == "total_dose" and icrp_factors is None:
        raise ConfigurationError("Parameter of interest 'total_dose' requires ICRP factors")

    model = as_response_model(response)
    increments = _increments(checkpoints)
    if icrp_factors is not None:
        icrp_factors = model.check_spectrum(icrp_factors, "ICRP factors")
    if reference_spectrum is not None:
        reference_spectrum = model.check_spectrum(
            reference_spectrum, "Reference spectrum"
        )
    if derivatives and increments.size < 2:
        raise InsufficientDataError(
            f"At least 2 checkpoints are required for derivatives, got {increments.size}"
        )
    solver = MLEMSolver(model, measurements, initial_spectrum)

    values = []
    for checkpoint, steps in zip(checkpoints, increments):
        run = _advance(solver, steps, error_tolerance)
        value = calculate_poi(
            parameter_of_interest,
            run,
            measurements=solver.measurements,
            response=model,
            icrp_factors=icrp_factors,
            reference_spectrum=reference_spectrum,
        )
        logger.debug("N = %d: %s = %g", checkpoint, parameter_of_interest, value)
        values.append(value)

    index = pd.Index(np.asarray(checkpoints, dtype=int), name="iterations")
    if derivatives:
        values = calculate_derivatives(index.values, values)
    return pd.Series(values, index=index, name=name or parameter_of_interest)


def map_poi_surface(
    response,
    measurements,
    initial_spectrum,
    checkpoints: Sequence[int],
    betas: Sequence[float],
    parameter_of_interest: str,
    error_tolerance: float,
    prior="quadratic",
    icrp_factors=None,
) -> pd.DataFrame:
    """
    Tabulate a parameter of interest over regularization strength and iterations.

    Every beta starts from its own copy of the initial spectrum.

    Returns
    -------
    pd.DataFrame
        One row per beta (index ``beta``), one column per checkpoint.
    """
    check_poi(parameter_of_interest)
    if parameter_of_interest not in MAP_POIS:
        raise ConfigurationError(
            f"Parameter of interest '{parameter_of_interest}' is not available "
            f"for MAP. Available: {sorted(MAP_POIS)}"
        )
    if parameter_of_interest == "total_dose" and icrp_factors is None:
        raise ConfigurationError("Parameter of interest 'total_dose' requires ICRP factors")
    betas = np.asarray(betas, dtype=float)
    unique_betas = pd.unique(betas)
    if unique_betas.size != betas.size:
        warnings.warn(
            f"Dropped {betas.size - unique_betas.size} duplicated beta values"
        )
        betas = unique_betas
    model = as_response_model(response)
    increments = _increments(checkpoints)
    if icrp_factors is not None:
        icrp_factors = model.check_spectrum(icrp_factors, "ICRP factors")

    rows = []
    for beta in betas:
        solver = MAPSolver(model, measurements, initial_spectrum, beta=beta, prior=prior)
        row = []
        for steps in increments:
            run = _advance(solver, steps, error_tolerance)
            row.append(
                calculate_poi(
                    parameter_of_interest,
                    run,
                    measurements=solver.measurements,
                    response=model,
                    icrp_factors=icrp_factors,
                )
            )
        logger.debug("beta = %g done", beta)
        rows.append(row)

    return pd.DataFrame(
        rows,
        index=pd.Index(betas, name="beta"),
        columns=pd.Index(np.asarray(checkpoints, dtype=int), name="iterations"),
    )


def correction_factor_trend(
    response,
    measurements,
    initial_spectrum,
    checkpoints: Sequence[int],
    error_tolerance: float,
) -> pd.DataFrame:
    """
    MLEM correction factors (one per energy bin) at each checkpoint.

    Returns
    -------
    pd.DataFrame
        Index: iteration count; columns: energy bins (MeV when the model
        carries energies, bin indices otherwise).
    """
    model = as_response_model(response)
    increments = _increments(checkpoints)
    solver = MLEMSolver(model, measurements, initial_spectrum)

    rows = [_advance(solver, steps, error_tolerance).correction for steps in increments]
    columns = (
        pd.Index(model.energy_bins, name="E_MeV")
        if model.energy_bins is not None
        else pd.RangeIndex(model.num_bins, name="bin")
    )
    return pd.DataFrame(
        rows,
        index=pd.Index(np.asarray(checkpoints, dtype=int), name="iterations"),
        columns=columns,
    )


def measurement_trend(
    response,
    measurements,
    initial_spectrum,
    checkpoints: Sequence[int],
    error_tolerance: float,
    trend_type: str = "ratio",
) -> pd.DataFrame:
    """
    Reconstructed measurements (or ratios) at each checkpoint.

    The first row, labelled ``"measured"``, holds the measured count rates
    (``trend_type="cps"``) or ones (``trend_type="ratio"``). Every following
    row, labelled by the iteration count, holds ``measured / ratio`` or the
    ratio itself.
    """
    if trend_type not in TREND_TYPES:
        raise ConfigurationError(
            f"Unrecognized trend type '{trend_type}'. Available: {list(TREND_TYPES)}"
        )
    model = as_response_model(response)
    increments = _increments(checkpoints)
    solver = MLEMSolver(model, measurements, initial_spectrum)
    measured = solver.measurements

    if trend_type == "cps":
        rows = [measured.copy()]
    else:
        rows = [np.ones_like(measured)]
    for steps in increments:
        run = _advance(solver, steps, error_tolerance)
        if trend_type == "cps":
            # measured / ratio, defined also for zero measurements
            rows.append(run.estimate)
        else:
            rows.append(run.ratio)

    labels = ["measured"] + [int(n) for n in checkpoints]
    return pd.DataFrame(
        rows,
        index=pd.Index(labels, name="iterations"),
        columns=pd.Index(model.detector_names, name="detector"),
    )


def run_sweep(
    settings: UnfoldingSettings,
    response,
    measurements,
    initial_spectrum,
    icrp_factors=None,
    reference_spectrum=None,
    name: Optional[str] = None,
) -> Union[pd.Series, pd.DataFrame]:
    """
    Run the sweep selected by ``settings.algorithm``.

    Checkpoints come from ``min_num_iterations``, ``max_num_iterations`` and
    ``iteration_increment``; the ratio tolerance from ``settings.policy``.

    ======================  ===========================================
    algorithm               result
    ======================  ===========================================
    ``mlem``                :func:`poi_trajectory` of
                            ``parameter_of_interest`` (or derivatives)
    ``map``                 :func:`map_poi_surface` over
                            ``beta_values(min_beta, max_beta)``
    ``trend``               :func:`measurement_trend` of ``trend_type``
    ``correction_factors``  :func:`correction_factor_trend`
    ======================  ===========================================

    Raises
    ------
    ConfigurationError
        If the settings are invalid.
    """
    settings.validate()
    error_tolerance = settings.policy.error_tolerance
    checkpoints = iteration_checkpoints(
        settings.min_num_iterations,
        settings.max_num_iterations,
        settings.iteration_increment,
    )
    logger.info(
        "Running %s sweep over %d checkpoints", settings.algorithm, checkpoints.size
    )

    if settings.algorithm == "mlem":
        return poi_trajectory(
            response,
            measurements,
            initial_spectrum,
            checkpoints,
            settings.parameter_of_interest,
            error_tolerance,
            icrp_factors=icrp_factors,
            reference_spectrum=reference_spectrum,
            derivatives=settings.derivatives,
            name=name,
        )
    if settings.algorithm == "map":
        return map_poi_surface(
            response,
            measurements,
            initial_spectrum,
            checkpoints,
            beta_values(settings.min_beta, settings.max_beta),
            settings.parameter_of_interest,
            error_tolerance,
            prior=settings.prior,
            icrp_factors=icrp_factors,
        )
    if settings.algorithm == "trend":
        return measurement_trend(
            response,
            measurements,
            initial_spectrum,
            checkpoints,
            error_tolerance,
            trend_type=settings.trend_type,
        )
    return correction_factor_trend(
        response, measurements, initial_spectrum, checkpoints, error_tolerance
    )
