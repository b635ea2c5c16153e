# nnsunfold/__init__.py
__all__ = [
    "Spectrometer",
    "ResponseModel",
    "ConvergencePolicy",
    "MLEMSolver",
    "MAPSolver",
    "IterationRun",
    "run_mlem",
    "run_map",
    "calculate_poi",
    "estimate_uncertainty",
    "calculate_derivatives",
    "UnfoldingSettings",
    "load_settings",
    "UnfoldingError",
    "DimensionError",
    "ConfigurationError",
    "DivergenceError",
    "InsufficientDataError",
]

from .convergence import ConvergencePolicy
from .derivatives import calculate_derivatives
from .exceptions import (
    ConfigurationError,
    DimensionError,
    DivergenceError,
    InsufficientDataError,
    UnfoldingError,
)
from .map_solver import MAPSolver, run_map
from .mlem import IterationRun, MLEMSolver, run_mlem
from .poi import calculate_poi
from .response import ResponseModel
from .settings import UnfoldingSettings, load_settings
from .spectrometer import Spectrometer
from .uncertainty import estimate_uncertainty
