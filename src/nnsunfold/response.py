"""Detector response model."""
from __future__ import annotations

import logging
from typing import List, Optional, Sequence

import numpy as np
import pandas as pd

from .exceptions import ConfigurationError, DimensionError

logger = logging.getLogger(__name__)


def _as_matrix(response) -> np.ndarray:
    """Convert a response matrix to a 2-D float array, rejecting jagged input."""
    if isinstance(response, np.ndarray):
        matrix = np.asarray(response, dtype=float)
    else:
        rows = [np.asarray(row, dtype=float).ravel() for row in response]
        if not rows:
            raise DimensionError("Response matrix has no rows")
        n_bins = len(rows[0])
        for i, row in enumerate(rows):
            if len(row) != n_bins:
                raise DimensionError(
                    f"Response matrix row {i} has {len(row)} entries, "
                    f"expected {n_bins}"
                )
        matrix = np.vstack(rows)

    if matrix.ndim != 2:
        raise DimensionError(
            f"Response matrix must be 2-D, got {matrix.ndim} dimension(s)"
        )
    if matrix.shape[0] == 0 or matrix.shape[1] == 0:
        raise DimensionError(
            f"Response matrix must not be empty, got shape {matrix.shape}"
        )
    return matrix


def normalize(response) -> np.ndarray:
    """
    Column sums of the response matrix.

    Entry ``b`` is the summed sensitivity of all measurements to energy
    bin ``b``; it is the denominator of the MLEM update.

    Parameters
    ----------
    response : array-like
        Response matrix of shape (n_measurements, n_bins).

    Returns
    -------
    np.ndarray
        Normalized response of length n_bins.

    Raises
    ------
    DimensionError
        If the matrix is jagged, not 2-D or empty.
    """
    return _as_matrix(response).sum(axis=0)


class ResponseModel:
    """
    Fixed linear operator mapping a binned spectrum to measurements.

    The matrix and its normalized response are stored read-only so that a
    single model can be shared between concurrent reconstructions.

    Parameters
    ----------
    response : array-like
        Response matrix of shape (n_measurements, n_bins), units cm^2.
    detector_names : Optional[Sequence[str]]
        Names of the measurement channels (e.g. number of moderators).
    energy_bins : Optional[Sequence[float]]
        Energy of each bin in MeV.

    Raises
    ------
    DimensionError
        If the matrix is jagged, empty, or the names/energies do not match.
    ConfigurationError
        If the matrix holds negative or non-finite values, or a row or a
        column is entirely zero.
    """

    def __init__(
        self,
        response,
        detector_names: Optional[Sequence[str]] = None,
        energy_bins: Optional[Sequence[float]] = None,
    ):
        matrix = _as_matrix(response).copy()
        if not np.all(np.isfinite(matrix)):
            raise ConfigurationError("Response matrix contains non-finite values")
        if np.any(matrix < 0):
            raise ConfigurationError("Response matrix contains negative values")

        empty_rows = np.flatnonzero(~matrix.any(axis=1))
        if empty_rows.size:
            raise ConfigurationError(
                f"Measurements {empty_rows.tolist()} have no response in any bin"
            )
        empty_cols = np.flatnonzero(~matrix.any(axis=0))
        if empty_cols.size:
            raise ConfigurationError(
                f"Energy bins {empty_cols.tolist()} are not seen by any measurement"
            )

        if detector_names is None:
            detector_names = [str(i) for i in range(matrix.shape[0])]
        detector_names = [str(name) for name in detector_names]
        if len(detector_names) != matrix.shape[0]:
            raise DimensionError(
                f"Got {len(detector_names)} detector names for "
                f"{matrix.shape[0]} response rows"
            )

        if energy_bins is not None:
            energy_bins = np.asarray(energy_bins, dtype=float)
            if energy_bins.shape != (matrix.shape[1],):
                raise DimensionError(
                    f"Got {energy_bins.size} energy bins for "
                    f"{matrix.shape[1]} response columns"
                )
            energy_bins.setflags(write=False)

        normalized = matrix.sum(axis=0)
        matrix.setflags(write=False)
        normalized.setflags(write=False)

        self.matrix = matrix
        self.normalized = normalized
        self.detector_names: List[str] = detector_names
        self.energy_bins = energy_bins

    @classmethod
    def from_dataframe(
        cls,
        response_functions_df: pd.DataFrame,
        detector_names: Optional[Sequence[str]] = None,
    ) -> "ResponseModel":
        """
        Build a model from a response-function table.

        The table has one row per energy bin, an ``E_MeV`` column (or the
        first column when ``E_MeV`` is absent) and one column per detector
        configuration.

        Parameters
        ----------
        response_functions_df : pd.DataFrame
            Response functions table.
        detector_names : Optional[Sequence[str]]
            Subset and order of detector columns to use. All columns by default.
        """
        if "E_MeV" in response_functions_df.columns:
            energies = response_functions_df["E_MeV"].values
            rf_data = response_functions_df.drop("E_MeV", axis=1)
        else:
            energies = response_functions_df.iloc[:, 0].values
            rf_data = response_functions_df.iloc[:, 1:]

        if detector_names is None:
            detector_names = rf_data.columns.tolist()
        else:
            missing = [name for name in detector_names if name not in rf_data.columns]
            if missing:
                raise DimensionError(f"Unknown detector columns: {missing}")
            rf_data = rf_data[list(detector_names)]

        # table is (n_bins, n_detectors); the model is (n_detectors, n_bins)
        return cls(
            rf_data.values.T.astype(float),
            detector_names=detector_names,
            energy_bins=np.asarray(energies, dtype=float),
        )

    def __repr__(self) -> str:
        return (
            f"ResponseModel(measurements={self.num_measurements}, "
            f"bins={self.num_bins})"
        )

    @property
    def num_measurements(self) -> int:
        """Number of measurement channels."""
        return self.matrix.shape[0]

    @property
    def num_bins(self) -> int:
        """Number of energy bins."""
        return self.matrix.shape[1]

    @property
    def transposed(self) -> np.ndarray:
        """Read-only transposed view used for back-projection."""
        return self.matrix.T

    def forward(self, spectrum: np.ndarray) -> np.ndarray:
        """Project a spectrum into measurement space."""
        return self.matrix @ spectrum

    def back_project(self, ratio: np.ndarray) -> np.ndarray:
        """Back-project a measurement-space vector into the energy bins."""
        return self.transposed @ ratio

    def check_spectrum(self, spectrum, name: str = "spectrum") -> np.ndarray:
        """Return ``spectrum`` as a float array of length n_bins."""
        spectrum = np.asarray(spectrum, dtype=float)
        if spectrum.shape != (self.num_bins,):
            raise DimensionError(
                f"{name} has length {spectrum.size}, expected {self.num_bins} "
                "energy bins"
            )
        return spectrum

    def check_measurements(self, measurements) -> np.ndarray:
        """Validate a measurement vector against the model."""
        measurements = np.asarray(measurements, dtype=float)
        if measurements.shape != (self.num_measurements,):
            raise DimensionError(
                f"Got {measurements.size} measurements for a response with "
                f"{self.num_measurements} rows"
            )
        if not np.all(np.isfinite(measurements)):
            raise ConfigurationError("Measurements contain non-finite values")
        if np.any(measurements < 0):
            raise ConfigurationError(
                f"Measurements must be non-negative, got {measurements.tolist()}"
            )
        return measurements


def as_response_model(response) -> ResponseModel:
    """Wrap raw matrices in a :class:`ResponseModel`; pass models through."""
    if isinstance(response, ResponseModel):
        return response
    return ResponseModel(response)
