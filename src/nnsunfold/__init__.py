# nnsunfold/__init__.py
__all__ = [
    "Detector",
    "DomainError",
    "ResponseModel",
    "ShapeError",
    "SourceStrengthModel",
    "UnfoldingError",
    "average_energy",
    "build_normalization",
    "dose",
    "energy_correction",
    "energy_uncertainty",
    "iterate",
    "make_generator",
    "needs_iteration",
    "poisson",
    "rms_deviation",
    "rms_deviation_vector",
    "run_map",
    "run_mlem",
    "sample_measurements",
    "source_strength",
    "sum_uncertainty",
    "total_charge",
    "total_flux",
]

from .detector import Detector
from .exceptions import DomainError, ShapeError, UnfoldingError
from .quantities import (
    SourceStrengthModel,
    average_energy,
    dose,
    energy_uncertainty,
    rms_deviation,
    rms_deviation_vector,
    source_strength,
    sum_uncertainty,
    total_charge,
    total_flux,
)
from .response import ResponseModel, build_normalization
from .sampling import make_generator, poisson, sample_measurements
from .unfolding import energy_correction, iterate, needs_iteration, run_map, run_mlem
