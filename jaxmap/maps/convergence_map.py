"""
Convergence map utilities for mass-map reconstructions.

This module provides a container for real-space convergence (or density
contrast) maps produced from a reconstructed spectral field.
"""

import jax.numpy as jnp
import numpy as np
from typing import Optional, Tuple


class ConvergenceMap:
    """
    Reconstructed convergence maps, one per lens plane.

    Pixel (i, j) sits at tangent-plane offsets ((i - n/2) * pixel_size,
    (j - n/2) * pixel_size) from the field centre; axis 0 grows with right
    ascension.
    """

    def __init__(
        self,
        convergence_map: jnp.ndarray,
        pixel_size_rad: float,
        plane_redshifts: Optional[Tuple[np.ndarray, np.ndarray]] = None,
    ):
        """
        Initialize a convergence map.

        Args:
            convergence_map: Convergence field [n_pix, n_pix] or [n_planes, n_pix, n_pix]
            pixel_size_rad: Pixel size in radians
            plane_redshifts: Optional (lower, upper) redshift edges of each plane
        """
        convergence_map = jnp.asarray(convergence_map)
        if convergence_map.ndim == 2:
            convergence_map = convergence_map[None]
        if convergence_map.ndim != 3 or convergence_map.shape[1] != convergence_map.shape[2]:
            raise ValueError(f"convergence_map must be square, got shape {convergence_map.shape}")

        self.convergence_map = convergence_map
        self.pixel_size_rad = float(pixel_size_rad)
        self.plane_redshifts = plane_redshifts
        self.n_planes = convergence_map.shape[0]
        self.resolution = convergence_map.shape[1]

    @property
    def map_size_rad(self) -> float:
        """Angular size of the map in radians."""
        return self.pixel_size_rad * self.resolution

    @property
    def pixel_size_arcmin(self) -> float:
        """Pixel size in arcminutes."""
        return self.pixel_size_rad * 180.0 * 60.0 / jnp.pi

    @property
    def pixel_size_arcsec(self) -> float:
        """Pixel size in arcseconds."""
        return self.pixel_size_arcmin * 60.0

    def plane(self, index: int = 0) -> jnp.ndarray:
        """Map of a single lens plane."""
        return self.convergence_map[index]

    def statistics(self, index: int = 0) -> dict:
        """
        Compute basic statistics of one plane.

        Returns:
            Dictionary with mean, std, min, max, rms
        """
        m = self.convergence_map[index]
        return {
            'mean': float(jnp.mean(m)),
            'std': float(jnp.std(m)),
            'min': float(jnp.min(m)),
            'max': float(jnp.max(m)),
            'rms': float(jnp.sqrt(jnp.mean(m**2)))
        }

    def peak_position(self, index: int = 0) -> Tuple[int, int]:
        """Pixel indices of the maximum of one plane."""
        m = self.convergence_map[index]
        flat = int(jnp.argmax(m))
        return divmod(flat, self.resolution)

    def pixel_offsets(self) -> jnp.ndarray:
        """
        Tangent-plane offsets of the pixel centres.

        Returns:
            Offsets [2, n_pix**2] in radians
        """
        coords_1d = (jnp.arange(self.resolution) - self.resolution // 2) * self.pixel_size_rad
        xx, yy = jnp.meshgrid(coords_1d, coords_1d, indexing='ij')
        return jnp.stack([xx.flatten(), yy.flatten()], axis=0)
