"""
Cosmological distances for lensing efficiency integrals.

The distance solver is jax-cosmo. Distances are tabulated once on a
logarithmic grid of scale factors and interpolated with numpy afterwards,
since the lensing kernels evaluate them one scalar at a time inside adaptive
quadrature.
"""

from typing import Optional

import jax_cosmo as jc
import numpy as np

from ..exceptions import CosmologyError

# Fixed parameters of the fiducial model, only Omega_m and h are configurable
OMEGA_B = 0.044
SIGMA8 = 0.80
N_S = 0.96

LOG10_AMIN = -3.0


class CosmologyModel:
    """
    Distance measures of a jax-cosmo cosmology.

    Distances are comoving, in Mpc/h, as returned by jax-cosmo.

    Args:
        cosmology: JAX-Cosmo cosmology (default: Planck18)
        steps: Number of scale factor samples in the distance table
    """

    def __init__(self, cosmology: Optional[jc.Cosmology] = None, steps: int = 2048):
        if cosmology is None:
            cosmology = jc.Planck18()
        self.cosmology = cosmology

        self.a_min = 10.0 ** LOG10_AMIN
        self._a_tab = np.logspace(LOG10_AMIN, 0.0, int(steps))
        chi = jc.background.radial_comoving_distance(
            cosmology, self._a_tab, log10_amin=LOG10_AMIN, steps=int(steps)
        )
        esqr = jc.background.Esqr(cosmology, self._a_tab)
        self._chi_tab = np.asarray(chi, dtype=np.float64)
        self._e_tab = np.sqrt(np.asarray(esqr, dtype=np.float64))
        if not (np.all(np.isfinite(self._chi_tab)) and np.all(np.isfinite(self._e_tab))):
            raise CosmologyError("jax-cosmo returned non-finite distances")
        if np.any(self._e_tab <= 0):
            raise CosmologyError("Expansion rate must be positive")

        self.omega_m = float(cosmology.Omega_m)
        self.hubble_radius = float(jc.constants.rh)
        self._k = int(cosmology.k)
        self._sqrtk = float(cosmology.sqrtk)

    @classmethod
    def from_parameters(cls, omega_m: float = 0.25, h: float = 0.70, **kwargs) -> "CosmologyModel":
        """Flat LCDM model with the given matter density and Hubble parameter."""
        if not OMEGA_B < omega_m < 1.0:
            raise CosmologyError(f"Omega_m must be in ({OMEGA_B}, 1), got {omega_m}")
        cosmology = jc.Cosmology(
            Omega_c=omega_m - OMEGA_B,
            Omega_b=OMEGA_B,
            h=h,
            n_s=N_S,
            sigma8=SIGMA8,
            Omega_k=0.0,
            w0=-1.0,
            wa=0.0,
        )
        return cls(cosmology, **kwargs)

    def _check_scale_factor(self, a) -> np.ndarray:
        a = np.asarray(a, dtype=np.float64)
        if np.any(a < self.a_min * (1.0 - 1e-12)) or np.any(a > 1.0 + 1e-12):
            raise CosmologyError(
                f"Scale factor outside of the valid range [{self.a_min}, 1]: "
                f"min={np.min(a)}, max={np.max(a)}"
            )
        return a

    def w(self, a):
        """Radial comoving distance to scale factor ``a``."""
        a = self._check_scale_factor(a)
        return np.interp(a, self._a_tab, self._chi_tab)

    def dwda(self, a):
        """Absolute derivative of the comoving distance with respect to ``a``."""
        a = self._check_scale_factor(a)
        e = np.interp(a, self._a_tab, self._e_tab)
        return self.hubble_radius / (a * a * e)

    def f_K(self, chi):
        """Transverse comoving distance for a radial comoving distance ``chi``."""
        chi = np.asarray(chi, dtype=np.float64)
        if self._k == 0:
            return chi
        x = self._sqrtk * chi / self.hubble_radius
        if self._k < 0:
            return self.hubble_radius / self._sqrtk * np.sinh(x)
        return self.hubble_radius / self._sqrtk * np.sin(x)

    def w_at_redshift(self, z):
        """Radial comoving distance to redshift ``z``."""
        return self.w(1.0 / (1.0 + np.asarray(z, dtype=np.float64)))
