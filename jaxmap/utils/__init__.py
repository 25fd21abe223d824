"""Utility functions for JaxMap."""

from .config import FieldConfig, angular_unit_to_radian
from .fits_io import load_array_from_fits, save_arrays_to_fits
from .integration import integrate, trapezoid_integral

__all__ = [
    "FieldConfig",
    "angular_unit_to_radian",
    "integrate",
    "trapezoid_integral",
    "load_array_from_fits",
    "save_arrays_to_fits",
]
