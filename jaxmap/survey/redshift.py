"""
Per-galaxy redshift information.

A galaxy either has a point redshift (spectroscopic) or a tabulated
probability density (photometric). Both variants carry a ``kind`` tag and
expose the same ``zmin``/``zmax``/``pdf`` interface; consumers dispatch on
``kind``.
"""

import enum
from typing import Union

import numpy as np
from scipy.integrate import trapezoid


class RedshiftKind(enum.Enum):
    SPECTROSCOPIC = "spectroscopic"
    PDF = "pdf"


class SpectroscopicRedshift:
    """Point redshift estimate."""

    kind = RedshiftKind.SPECTROSCOPIC

    def __init__(self, z: float):
        if not np.isfinite(z) or z < 0:
            raise ValueError(f"Redshift must be finite and non-negative, got {z}")
        self.z = float(z)

    @property
    def zmin(self) -> float:
        return self.z

    @property
    def zmax(self) -> float:
        return self.z

    def pdf(self, z):
        """Zero everywhere except at the point redshift, where it is infinite."""
        z = np.asarray(z, dtype=np.float64)
        return np.where(z == self.z, np.inf, 0.0)

    def __repr__(self) -> str:
        return f"SpectroscopicRedshift(z={self.z})"


class PdfRedshift:
    """
    Tabulated redshift probability density.

    The table is linearly interpolated and normalised to unit integral over
    its support. A table whose support collapses to a single redshift is
    tagged as spectroscopic.

    Args:
        z_grid: Increasing redshift samples
        pdf_values: Density values at ``z_grid`` (non-negative)
    """

    def __init__(self, z_grid: np.ndarray, pdf_values: np.ndarray):
        z_grid = np.asarray(z_grid, dtype=np.float64).reshape(-1)
        pdf_values = np.asarray(pdf_values, dtype=np.float64).reshape(-1)
        if z_grid.shape != pdf_values.shape or z_grid.size == 0:
            raise ValueError("z_grid and pdf_values must be non-empty with matching shapes")
        if np.any(np.diff(z_grid) < 0):
            raise ValueError("z_grid must be increasing")
        if np.any(pdf_values < 0) or not np.all(np.isfinite(pdf_values)):
            raise ValueError("pdf_values must be finite and non-negative")

        self.z_grid = z_grid
        self._zmin = float(z_grid[0])
        self._zmax = float(z_grid[-1])

        if self._zmax > self._zmin:
            norm = trapezoid(pdf_values, z_grid)
            if not norm > 0:
                raise ValueError("pdf_values must have a positive integral")
            self.pdf_values = pdf_values / norm
            self.kind = RedshiftKind.PDF
        else:
            self.pdf_values = pdf_values
            self.kind = RedshiftKind.SPECTROSCOPIC

    @property
    def zmin(self) -> float:
        return self._zmin

    @property
    def zmax(self) -> float:
        return self._zmax

    @property
    def z(self) -> float:
        """Point redshift, only meaningful when the support is collapsed."""
        return 0.5 * (self._zmin + self._zmax)

    def pdf(self, z):
        return np.interp(z, self.z_grid, self.pdf_values, left=0.0, right=0.0)

    @classmethod
    def gaussian(cls, mean: float, sigma: float, nsigma: float = 5.0, nsamples: int = 256) -> "PdfRedshift":
        """Gaussian density truncated at ``nsigma`` and at z = 0."""
        zlow = max(0.0, mean - nsigma * sigma)
        z_grid = np.linspace(zlow, mean + nsigma * sigma, nsamples)
        return cls(z_grid, np.exp(-0.5 * ((z_grid - mean) / sigma) ** 2))

    def __repr__(self) -> str:
        return f"PdfRedshift(zmin={self._zmin}, zmax={self._zmax}, n={self.z_grid.size})"


Redshift = Union[SpectroscopicRedshift, PdfRedshift]
