"""
Lensing efficiency kernels.

For every galaxy and every lens plane this module computes the weight with
which mass in the plane contributes to the galaxy's shear, marginalised over
the galaxy's redshift distribution:

- single lens plane: ratio of critical surface densities between the galaxy
  and a source at infinity (``surface_lensing_kernel``);
- several lens planes: the cosmological efficiency kernel integrated over
  each plane's redshift slice (``tomographic_lensing_kernel``), followed by
  an SVD preconditioning of the resulting operator (``svd_preconditioner``).
"""

import logging
from typing import Sequence, Tuple

import jax
import jax.numpy as jnp
import numpy as np
from scipy.interpolate import CubicSpline
from scipy.linalg import inv, svd

from ..survey.redshift import Redshift, RedshiftKind
from ..utils.integration import integrate
from .cosmology import CosmologyModel

logger = logging.getLogger(__name__)

# Redshift treated as infinity, and upper end of the efficiency tables
Z_MAX = 10.0
SAMPLES_PER_UNIT_REDSHIFT = 100

# Values of f_K(w - w') below this are set to zero in the efficiency integrand
EPS_GW_INT = 1.0e-14

# Maximum number of galaxies used to compute the SVD of the kernel
MAX_SVD_ROWS = 20000


@jax.jit
def lensing_kernel(chi: jnp.ndarray, chi_source: float) -> jnp.ndarray:
    """
    Compute the lensing kernel W(chi, chi_source).

    The lensing kernel is: W(chi, chi_source) = (1 - chi/chi_source)

    Args:
        chi: Comoving distances to lens planes [Mpc/h]
        chi_source: Comoving distance to source [Mpc/h]

    Returns:
        Lensing kernel values
    """
    return jnp.where(chi < chi_source, 1.0 - chi / chi_source, 0.0)


def _surface_integrand(a_s, redshift: Redshift, w_l: float, w_inf: float, cosmology: CosmologyModel):
    """Critical density ratio weighted by the redshift density, in scale factor."""
    w_s = cosmology.w(a_s)
    p = redshift.pdf(1.0 / a_s - 1.0) / (a_s * a_s)
    ratio = ((w_s - w_l) * w_inf) / ((w_inf - w_l) * w_s)
    return np.where(w_s - w_l > 0, p * ratio, 0.0)


def surface_lensing_kernel(
    redshifts: Sequence[Redshift],
    zlens: float,
    cosmology: CosmologyModel,
    epsrel: float = 1.0e-5,
    limit: int = 1024,
) -> np.ndarray:
    """
    Single-plane lensing weights.

    Each weight is Sigma_crit(z=infinity) / Sigma_crit(z_galaxy) for a lens at
    ``zlens``, averaged over the galaxy redshift density.

    Args:
        redshifts: Redshift variant of each galaxy
        zlens: Lens redshift (> 0)
        cosmology: Distance measures
        epsrel: Relative tolerance of the adaptive quadrature
        limit: Maximum number of subintervals

    Returns:
        Lensing weights [ngal]
    """
    if zlens <= 0:
        raise ValueError(f"zlens must be positive, got {zlens}")

    a_inf = max(cosmology.a_min, 1.0 / (1.0 + Z_MAX))
    a_lens = 1.0 / (1.0 + zlens)
    w_l = float(cosmology.w(a_lens))
    w_inf = float(cosmology.w(a_inf))
    norm = float(lensing_kernel(w_l, w_inf))

    kernel = np.zeros(len(redshifts))

    point = np.array([r.kind is RedshiftKind.SPECTROSCOPIC for r in redshifts], dtype=bool)
    if np.any(point):
        z_point = np.array([r.z for r, s in zip(redshifts, point) if s])
        a_point = 1.0 / (1.0 + z_point)
        w_s = cosmology.w(np.clip(a_point, a_inf, 1.0))
        weights = np.asarray(lensing_kernel(w_l, w_s)) / norm
        kernel[point] = np.where(a_point >= a_lens, 0.0, weights)

    for i in np.flatnonzero(~point):
        redshift = redshifts[i]
        lower = max(cosmology.a_min, a_inf, 1.0 / (redshift.zmax + 1.0))
        upper = min(a_lens, 1.0 / (redshift.zmin + 1.0))
        kernel[i], _ = integrate(
            lambda a: _surface_integrand(a, redshift, w_l, w_inf, cosmology),
            lower,
            upper,
            epsrel=epsrel,
            limit=limit,
        )

    return kernel


def _efficiency_integrand(aprime, w: float, cosmology: CosmologyModel):
    """Lensing efficiency of mass at scale factor ``aprime`` for a source at distance ``w``."""
    fac = 1.5 / cosmology.hubble_radius ** 2 * cosmology.omega_m / aprime
    wprime = cosmology.w(aprime)
    fkwp = cosmology.f_K(wprime)
    fkw = cosmology.f_K(w)
    fkwwp = cosmology.f_K(np.maximum(w - wprime, 0.0))
    # Prevent very small values from perturbing the integration
    fkwwp = np.where(fkwwp < EPS_GW_INT, 0.0, fkwwp)
    value = fac * fkwp * fkwwp / fkw * cosmology.dwda(aprime)
    return np.where(wprime >= w, 0.0, value)


def efficiency_table(
    cosmology: CosmologyModel,
    zlp_low: np.ndarray,
    zlp_up: np.ndarray,
    z_max: float = Z_MAX,
    epsrel: float = 1.0e-5,
    limit: int = 2048,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Tabulate the lensing efficiency of each lens plane as a function of source redshift.

    Args:
        cosmology: Distance measures
        zlp_low, zlp_up: Redshift bounds of each lens plane [nlp]
        z_max: Largest tabulated source redshift
        epsrel: Relative tolerance of the adaptive quadrature
        limit: Maximum number of subintervals

    Returns:
        Tuple of (z_samples [nzsamp], table [nlp, nzsamp])
    """
    zlp_low = np.asarray(zlp_low, dtype=np.float64)
    zlp_up = np.asarray(zlp_up, dtype=np.float64)
    nzsamp = int(z_max * SAMPLES_PER_UNIT_REDSHIFT)
    z_samples = np.linspace(0.0, z_max, nzsamp)
    w_samples = cosmology.w_at_redshift(z_samples)

    table = np.zeros((zlp_low.size, nzsamp))
    for i, w in enumerate(w_samples):
        if w <= 0:
            continue
        for z in range(zlp_low.size):
            # Planes entirely behind the source do not contribute
            if zlp_low[z] >= z_samples[i]:
                continue
            table[z, i], _ = integrate(
                lambda a: _efficiency_integrand(a, w, cosmology),
                1.0 / (zlp_up[z] + 1.0),
                1.0 / (zlp_low[z] + 1.0),
                epsrel=epsrel,
                limit=limit,
            )
    return z_samples, table


def tomographic_lensing_kernel(
    redshifts: Sequence[Redshift],
    zlp_low: np.ndarray,
    zlp_up: np.ndarray,
    cosmology: CosmologyModel,
    epsrel: float = 1.0e-4,
    limit: int = 1024,
) -> np.ndarray:
    """
    Lensing efficiency of each lens plane for each galaxy.

    The efficiency is tabulated in source redshift, interpolated with a
    natural cubic spline and integrated against each galaxy's redshift
    density. Spectroscopic galaxies read the spline directly.

    Args:
        redshifts: Redshift variant of each galaxy
        zlp_low, zlp_up: Redshift bounds of each lens plane [nlp]
        cosmology: Distance measures
        epsrel: Relative tolerance of the marginalisation
        limit: Maximum number of subintervals of the marginalisation

    Returns:
        Non-negative kernel [ngal, nlp]
    """
    z_samples, table = efficiency_table(cosmology, zlp_low, zlp_up)
    splines = [CubicSpline(z_samples, row, bc_type="natural") for row in table]
    nlp = len(splines)
    ngal = len(redshifts)

    kernel = np.zeros((ngal, nlp))
    n_fallback = 0
    for i, redshift in enumerate(redshifts):
        if i % 100 == 0:
            logger.debug("Processed %d/%d galaxies", i, ngal)

        if redshift.kind is RedshiftKind.SPECTROSCOPIC:
            z_point = float(np.clip(redshift.z, 0.0, Z_MAX))
            kernel[i] = [float(spline(z_point)) for spline in splines]
            continue

        lower = max(0.0, redshift.zmin)
        upper = min(Z_MAX, redshift.zmax)
        for z, spline in enumerate(splines):
            kernel[i, z], converged = integrate(
                lambda x: redshift.pdf(x) * spline(x),
                lower,
                upper,
                epsrel=epsrel,
                limit=limit,
            )
            n_fallback += not converged

    logger.debug("Processed %d/%d galaxies", ngal, ngal)
    if n_fallback:
        logger.info("Trapezoidal fallback used for %d redshift marginalisations", n_fallback)
    return np.maximum(kernel, 0.0)


def svd_preconditioner(
    kernel: np.ndarray,
    r_cond: float,
    rng: np.random.Generator,
    max_rows: int = MAX_SVD_ROWS,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    """
    Truncated-SVD preconditioning of the tomographic lensing operator.

    The SVD is computed on a random subset of at most ``max_rows`` galaxies.
    Singular values below ``r_cond`` times the largest one are replaced by
    that threshold before inversion.

    Args:
        kernel: Physical lensing kernel A [ngal, nlp]
        r_cond: Relative threshold on singular values
        rng: Random stream used to draw the galaxy subset
        max_rows: Maximum size of the subset

    Returns:
        Tuple of (A P, P, P^-1, P P^T)
    """
    kernel = np.asarray(kernel, dtype=np.float64)
    if kernel.ndim != 2:
        raise ValueError(f"kernel must be 2D, got shape {kernel.shape}")
    ngal, nlp = kernel.shape

    nsmall = min(ngal, int(max_rows))
    rows = rng.permutation(ngal)[:nsmall]
    _, s, vt = svd(kernel[rows], full_matrices=nsmall < nlp)

    s_full = np.zeros(nlp)
    s_full[: s.size] = s
    max_s = s_full[0]
    if not max_s > 0:
        raise ValueError("Lensing kernel is identically zero, cannot build a preconditioner")

    s_inv = np.full(nlp, 1.0 / (r_cond * max_s))
    keep = s_full > r_cond * max_s
    s_inv[keep] = 1.0 / s_full[keep]
    s_inv[nsmall:] = 1.0

    v = vt.T
    P = v @ np.diag(s_inv) @ v.T
    iP = inv(P)
    PP = P @ P.T
    return kernel @ P, P, iP, PP
