"""Spectrometer measurements and result tables."""
from __future__ import annotations

from dataclasses import dataclass
import logging
from pathlib import Path
from typing import List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from .exceptions import ConfigurationError, DimensionError
from .settings import UnfoldingSettings

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

DOSE_HEADERS = [
    "Irradiation Conditions",
    "Dose Rate (mSv/hr)",
    "RMS Error (mSv/hr)",
]
ENERGY_HEADER = "Energy (MeV)"
UNCERTAINTY_SUFFIX = "_ERROR"


@dataclass(frozen=True)
class NNSMeasurement:
    """
    One spectrometer acquisition read from a measurement file.

    Attributes
    ----------
    irradiation_conditions : str
        Free-text label of the acquisition.
    charges_nc : np.ndarray
        Collected charge per moderator configuration [nC], in file order
        (most moderators first).
    dose_mu : Optional[float]
        Delivered dose [MU].
    doserate_mu : Optional[float]
        Delivered dose rate [MU/min].
    duration : Optional[float]
        Acquisition time [s].
    """

    irradiation_conditions: str
    charges_nc: np.ndarray
    dose_mu: Optional[float] = None
    doserate_mu: Optional[float] = None
    duration: Optional[float] = None

    def to_cps(self, norm: float, f_factor: float, scale_by_dose: bool = True) -> np.ndarray:
        """Count rates ordered from 0 moderators upward, see :func:`charge_to_cps`."""
        return charge_to_cps(
            self.charges_nc,
            norm=norm,
            f_factor=f_factor,
            duration=self.duration,
            dose_mu=self.dose_mu if scale_by_dose else None,
            doserate_mu=self.doserate_mu if scale_by_dose else None,
        )


def charge_to_cps(
    charges_nc: Sequence[float],
    norm: float,
    f_factor: float,
    duration: float,
    dose_mu: Optional[float] = None,
    doserate_mu: Optional[float] = None,
) -> np.ndarray:
    """
    Convert collected charge to count rates.

    The acquisition lists moderators from most to fewest, so the order is
    reversed to start at 0 moderators.

    Parameters
    ----------
    charges_nc : Sequence[float]
        Charge per configuration [nC].
    norm : float
        Vendor normalization factor.
    f_factor : float
        Calibration factor [fA/cps].
    duration : float
        Acquisition time [s].
    dose_mu, doserate_mu : Optional[float]
        Delivered dose [MU] and dose rate [MU/min]; when both are given the
        rates are scaled by ``dose_mu / doserate_mu``.

    Returns
    -------
    np.ndarray
        Count rates [cps].
    """
    charges = np.asarray(charges_nc, dtype=float)[::-1]
    if f_factor <= 0:
        raise ConfigurationError(f"f_factor must be positive, got {f_factor}")
    if not duration or duration <= 0:
        raise ConfigurationError(f"Measurement duration must be positive, got {duration}")
    f_factor_na = f_factor / 1e6  # fA/cps -> nA/cps
    cps = charges * norm / f_factor_na / duration
    if dose_mu is not None and doserate_mu is not None:
        if doserate_mu <= 0:
            raise ConfigurationError(f"Dose rate must be positive, got {doserate_mu}")
        cps = cps * (dose_mu / doserate_mu)
    return cps


def _read_lines(path: PathLike) -> List[str]:
    try:
        text = Path(path).read_text()
    except OSError as exc:
        raise ConfigurationError(f"Unable to open input file: {path}") from exc
    return [line.replace("\r", "") for line in text.splitlines()]


def _parse_values(lines: Sequence[str], path: PathLike) -> np.ndarray:
    values = []
    for line in lines:
        for token in line.split(","):
            token = token.strip()
            if not token:
                continue
            try:
                values.append(float(token))
            except ValueError:
                raise ConfigurationError(
                    f"Invalid measurement value {token!r} in {path}"
                ) from None
    return np.array(values)


def read_measurements(path: PathLike) -> NNSMeasurement:
    """
    Read a charge measurement file.

    Layout: irradiation conditions, delivered dose [MU], dose rate
    [MU/min] and duration [s] on the first four lines, followed by
    comma-separated charges [nC].
    """
    lines = _read_lines(path)
    if len(lines) < 5:
        raise ConfigurationError(f"Measurement file {path} is incomplete")
    try:
        dose_mu, doserate_mu, duration = (float(lines[i]) for i in (1, 2, 3))
    except ValueError:
        raise ConfigurationError(
            f"Invalid dose, dose rate or duration header in {path}"
        ) from None
    measurement = NNSMeasurement(
        irradiation_conditions=lines[0].strip(),
        charges_nc=_parse_values(lines[4:], path),
        dose_mu=dose_mu,
        doserate_mu=doserate_mu,
        duration=duration,
    )
    logger.info("Data successfully retrieved from %s", path)
    return measurement


def read_measurements_cps(path: PathLike):
    """
    Read a count-rate measurement file.

    Layout: irradiation conditions on the first line followed by
    comma-separated count rates (most moderators first). Returns the
    conditions and the rates reordered from 0 moderators upward.
    """
    lines = _read_lines(path)
    if len(lines) < 2:
        raise ConfigurationError(f"Measurement file {path} is incomplete")
    values = _parse_values(lines[1:], path)[::-1]
    logger.info("Data successfully retrieved from %s", path)
    return lines[0].strip(), values


def load_count_rates(
    path: PathLike, settings: UnfoldingSettings
) -> Tuple[str, np.ndarray]:
    """
    Irradiation conditions and count rates of a measurement file.

    ``settings.meas_units`` selects the layout: ``nc`` files are read with
    :func:`read_measurements` and converted with ``settings.norm`` and
    ``settings.f_factor``; ``cps`` files with :func:`read_measurements_cps`.
    """
    if settings.meas_units == "cps":
        return read_measurements_cps(path)
    if settings.meas_units != "nc":
        raise ConfigurationError(
            f"Unrecognized measurement units '{settings.meas_units}'"
        )
    measurement = read_measurements(path)
    cps = measurement.to_cps(norm=settings.norm, f_factor=settings.f_factor)
    return measurement.irradiation_conditions, cps


def read_vector(path: PathLike) -> np.ndarray:
    """First column of a headerless CSV file."""
    try:
        frame = pd.read_csv(path, header=None)
    except (OSError, pd.errors.EmptyDataError) as exc:
        raise ConfigurationError(f"Unable to read input file: {path}") from exc
    return frame.iloc[:, 0].to_numpy(dtype=float)


def read_matrix(path: PathLike) -> np.ndarray:
    """
    Headerless CSV matrix, one row per line.

    Raises
    ------
    DimensionError
        If rows have different lengths.
    """
    try:
        frame = pd.read_csv(path, header=None, skip_blank_lines=True)
    except OSError as exc:
        raise ConfigurationError(f"Unable to read input file: {path}") from exc
    except pd.errors.EmptyDataError:
        raise DimensionError(f"Matrix file {path} is empty") from None
    except pd.errors.ParserError as exc:
        raise DimensionError(f"Matrix file {path} has rows of different lengths") from exc
    if frame.isna().to_numpy().any():
        raise DimensionError(f"Matrix file {path} has rows of different lengths")
    return frame.to_numpy(dtype=float)


def save_dose(
    path: PathLike,
    irradiation_conditions: str,
    dose: float,
    dose_uncertainty: float,
) -> None:
    """Append one dose row to a CSV file, writing the header for a new file."""
    path = Path(path)
    write_header = not path.exists() or path.stat().st_size == 0
    row = pd.DataFrame(
        [[irradiation_conditions, dose, dose_uncertainty]], columns=DOSE_HEADERS
    )
    row.to_csv(path, mode="a", header=write_header, index=False)
    logger.info("Saved calculated dose to %s", path)


def save_spectrum(
    path: PathLike,
    irradiation_conditions: str,
    energy_bins: Sequence[float],
    spectrum: Sequence[float],
    uncertainty: Sequence[float],
) -> pd.DataFrame:
    """
    Add an unfolded spectrum and its uncertainty to a spectra table.

    The table has an ``Energy (MeV)`` column and, per acquisition, a
    ``<conditions>`` and ``<conditions>_ERROR`` column. An existing file is
    extended; otherwise a new one is created.

    Returns
    -------
    pd.DataFrame
        The table written to ``path``.
    """
    path = Path(path)
    spectrum = np.asarray(spectrum, dtype=float)
    uncertainty = np.asarray(uncertainty, dtype=float)
    if uncertainty.shape != spectrum.shape:
        raise DimensionError("Spectrum and uncertainty lengths differ")

    if path.exists() and path.stat().st_size > 0:
        table = pd.read_csv(path)
        if len(table) != spectrum.size:
            raise DimensionError(
                f"{path} has {len(table)} energy bins, spectrum has {spectrum.size}"
            )
    else:
        energy_bins = np.asarray(energy_bins, dtype=float)
        if energy_bins.shape != spectrum.shape:
            raise DimensionError("Energy bins and spectrum lengths differ")
        table = pd.DataFrame({ENERGY_HEADER: energy_bins})

    table[irradiation_conditions] = spectrum
    table[irradiation_conditions + UNCERTAINTY_SUFFIX] = uncertainty
    table.to_csv(path, index=False)
    logger.info("Saved unfolded spectrum to %s", path)
    return table
