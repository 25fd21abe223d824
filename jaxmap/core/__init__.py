"""Core algorithms for JaxMap reconstructions."""

from .cosmology import CosmologyModel
from .field import Field, ResidualBuffers
from .lensing_kernel import (
    efficiency_table,
    lensing_kernel,
    surface_lensing_kernel,
    svd_preconditioner,
    tomographic_lensing_kernel,
)

__all__ = [
    "CosmologyModel",
    "Field",
    "ResidualBuffers",
    "efficiency_table",
    "lensing_kernel",
    "surface_lensing_kernel",
    "svd_preconditioner",
    "tomographic_lensing_kernel",
]
