"""
JaxMap: sparse weak-lensing mass mapping with JAX

Forward and adjoint operators linking a spectral density field to the shear
and flexion measured on an irregular galaxy catalog, for use by iterative
sparse reconstruction solvers.
"""

import jax

# Spectral coefficients and NUFFT buffers are complex128
jax.config.update("jax_enable_x64", True)

__version__ = "0.1.0"

from .core.cosmology import CosmologyModel
from .core.field import Field, ResidualBuffers
from .core.lensing_kernel import lensing_kernel
from .exceptions import ConfigurationError, CosmologyError, DegenerateVarianceError, NUFFTError
from .maps.convergence_map import ConvergenceMap
from .survey import Catalog, PdfRedshift, SpectroscopicRedshift, Survey
from .utils.config import FieldConfig

__all__ = [
    "Field",
    "ResidualBuffers",
    "FieldConfig",
    "CosmologyModel",
    "lensing_kernel",
    "ConvergenceMap",
    "Catalog",
    "Survey",
    "SpectroscopicRedshift",
    "PdfRedshift",
    "ConfigurationError",
    "CosmologyError",
    "DegenerateVarianceError",
    "NUFFTError",
]
