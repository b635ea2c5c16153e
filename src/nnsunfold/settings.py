"""Unfolding settings and configuration-file loading."""
from __future__ import annotations

from dataclasses import dataclass, fields, replace
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Union
import warnings

from .convergence import ConvergencePolicy
from .exceptions import ConfigurationError
from .poi import check_poi
from .priors import get_prior

logger = logging.getLogger(__name__)

ALGORITHMS = ("mlem", "map", "trend", "correction_factors")
MEASUREMENT_UNITS = ("nc", "cps")

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


@dataclass(frozen=True)
class UnfoldingSettings:
    """
    Settings for a reconstruction run.

    Attributes
    ----------
    max_iterations : int
        MLEM/MAP iteration cap ("cutoff"), default: 1000.
    error_tolerance : float
        Target agreement of every measured/estimated ratio, default: 0.1.
    norm : float
        Vendor normalization factor of the spectrometer, default: 1.0.
    f_factor : float
        Charge-to-count-rate calibration factor [fA/cps], default: 1.0.
    num_poisson_samples : int
        Replicates for the uncertainty estimate, default: 1000.
    algorithm : str
        Sweep to run: ``mlem``, ``map``, ``trend`` or ``correction_factors``.
    min_num_iterations, max_num_iterations, iteration_increment : int
        Iteration checkpoints of a sweep.
    min_beta, max_beta : float
        Regularization range of a MAP sweep.
    prior : str
        MAP prior selector, default: ``quadratic``.
    parameter_of_interest : str
        POI tabulated by sweeps, default: ``total_fluence``.
    derivatives : bool
        Tabulate derivatives of the POI instead of its values.
    trend_type : str
        ``cps`` or ``ratio`` for measurement trends.
    meas_units : str
        Units of the measurement file, ``nc`` or ``cps``.
    seed : Optional[int]
        Base seed for Poisson resampling.
    """

    max_iterations: int = 1000
    error_tolerance: float = 0.1
    norm: float = 1.0
    f_factor: float = 1.0
    num_poisson_samples: int = 1000
    algorithm: str = "mlem"
    min_num_iterations: int = 1000
    max_num_iterations: int = 10000
    iteration_increment: int = 1000
    min_beta: float = 1e-6
    max_beta: float = 1e-1
    prior: str = "quadratic"
    parameter_of_interest: str = "total_fluence"
    derivatives: bool = False
    trend_type: str = "ratio"
    meas_units: str = "nc"
    seed: Optional[int] = None

    def validate(self) -> "UnfoldingSettings":
        """
        Check every setting.

        Returns
        -------
        UnfoldingSettings
            ``self``, for chaining.

        Raises
        ------
        ConfigurationError
            If a value is out of range or a selector is unknown.
        """
        ConvergencePolicy(self.max_iterations, self.error_tolerance)
        if self.num_poisson_samples < 1:
            raise ConfigurationError(
                f"num_poisson_samples must be positive, got {self.num_poisson_samples}"
            )
        if self.norm <= 0:
            raise ConfigurationError(f"norm must be positive, got {self.norm}")
        if self.f_factor <= 0:
            raise ConfigurationError(f"f_factor must be positive, got {self.f_factor}")
        if self.algorithm not in ALGORITHMS:
            raise ConfigurationError(
                f"Unrecognized algorithm '{self.algorithm}'. Available: {list(ALGORITHMS)}"
            )
        if self.meas_units not in MEASUREMENT_UNITS:
            raise ConfigurationError(
                f"Unrecognized measurement units '{self.meas_units}'. "
                f"Available: {list(MEASUREMENT_UNITS)}"
            )
        if self.trend_type not in ("cps", "ratio"):
            raise ConfigurationError(f"Unrecognized trend type '{self.trend_type}'")
        if self.iteration_increment < 1:
            raise ConfigurationError("iteration_increment must be positive")
        if not 1 <= self.min_num_iterations <= self.max_num_iterations:
            raise ConfigurationError(
                f"Invalid iteration range [{self.min_num_iterations}, "
                f"{self.max_num_iterations}]"
            )
        if self.algorithm == "map" and not 0 < self.min_beta < self.max_beta:
            raise ConfigurationError(
                f"Invalid beta range [{self.min_beta}, {self.max_beta}]"
            )
        get_prior(self.prior)
        check_poi(self.parameter_of_interest)
        return self

    @property
    def policy(self) -> ConvergencePolicy:
        """Convergence policy built from ``max_iterations`` and ``error_tolerance``."""
        return ConvergencePolicy(self.max_iterations, self.error_tolerance)

    def updated(self, **changes: Any) -> "UnfoldingSettings":
        """Validated copy with some fields replaced."""
        return replace(self, **changes).validate()

    @classmethod
    def from_mapping(cls, values: Dict[str, Any]) -> "UnfoldingSettings":
        """
        Build settings from raw (string or typed) values.

        Unknown keys are ignored with a warning; values are coerced to the
        field types.
        """
        known = {f.name: f for f in fields(cls)}
        kwargs = {}
        for key, raw in values.items():
            key = key.strip()
            if key == "cutoff":
                key = "max_iterations"
            elif key == "error":
                key = "error_tolerance"
            if key not in known:
                warnings.warn(f"Ignored unknown setting '{key}'")
                continue
            kwargs[key] = _coerce(key, known[key].type, raw)
        return cls(**kwargs).validate()


def _coerce(key: str, type_name, raw: Any) -> Any:
    type_name = str(type_name)
    if not isinstance(raw, str):
        return raw
    text = raw.strip()
    try:
        if type_name == "bool":
            lowered = text.lower()
            if lowered in _TRUE:
                return True
            if lowered in _FALSE:
                return False
            raise ValueError(text)
        if type_name == "int":
            return int(float(text))
        if type_name == "Optional[int]":
            return None if text.lower() in ("", "none") else int(text)
        if type_name == "float":
            return float(text)
    except ValueError:
        raise ConfigurationError(f"Invalid value for '{key}': {raw!r}") from None
    return text


def load_settings(path: Union[str, Path]) -> UnfoldingSettings:
    """
    Read settings from a ``key=value`` configuration file.

    Blank lines and lines starting with ``#`` are skipped.

    Parameters
    ----------
    path : str or Path
        Configuration file.

    Raises
    ------
    ConfigurationError
        If the file cannot be read, a line has no ``=``, or a value is invalid.
    """
    path = Path(path)
    try:
        text = path.read_text()
    except OSError as exc:
        raise ConfigurationError(f"Unable to open configuration file: {path}") from exc

    values: Dict[str, str] = {}
    for number, line in enumerate(text.splitlines(), start=1):
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            raise ConfigurationError(f"{path}:{number}: expected 'key=value', got {line!r}")
        key, value = line.split("=", 1)
        values[key.strip()] = value.strip()

    settings = UnfoldingSettings.from_mapping(values)
    logger.info("Loaded settings from %s", path)
    return settings
