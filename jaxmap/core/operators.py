"""
Spectral-domain lensing operators.

All spectral planes are (npix, npix) arrays in FFT order with axis 0 along
the tangent-plane x axis (growing with right ascension) and axis 1 along y.
Stacks of planes carry the plane index on the leading axis.
"""

from typing import Tuple

import jax
import jax.numpy as jnp
import numpy as np


def wavenumbers(npix: int, pixel_size: float) -> Tuple[np.ndarray, np.ndarray]:
    """
    Angular wavenumber grids of an npix x npix field.

    Args:
        npix: Number of pixels per side
        pixel_size: Pixel size in radians

    Returns:
        Tuple of (k1, k2) grids [npix, npix] in rad^-1, FFT order
    """
    freq = 2.0 * np.pi * np.fft.fftfreq(npix, d=pixel_size)
    k1, k2 = np.meshgrid(freq, freq, indexing="ij")
    return k1, k2


@jax.jit
def shear_multiplier(k1: jnp.ndarray, k2: jnp.ndarray) -> jnp.ndarray:
    """
    Fourier multiplier mapping convergence to complex shear.

    gamma_hat = (k1 - i k2)^2 / |k|^2 * kappa_hat, i.e.
    gamma1 = (k1^2 - k2^2)/|k|^2 kappa and gamma2 = -2 k1 k2/|k|^2 kappa.
    The sign of gamma2 follows from x growing with right ascension.
    The zero mode maps to zero.
    """
    ksqr = k1 * k1 + k2 * k2
    safe = jnp.where(ksqr == 0, 1.0, ksqr)
    m = ((k1 * k1 - k2 * k2) - 2j * k1 * k2) / safe
    return jnp.where(ksqr == 0, 0.0 + 0.0j, m)


@jax.jit
def zero_mode_mask(k1: jnp.ndarray, k2: jnp.ndarray) -> jnp.ndarray:
    """1 everywhere except at the zero spatial frequency."""
    return jnp.where((k1 == 0) & (k2 == 0), 0.0, 1.0)


@jax.jit
def combine_components(
    kappa: jnp.ndarray,
    flexion: jnp.ndarray,
    k1: jnp.ndarray,
    k2: jnp.ndarray,
    sig_frac: float,
) -> jnp.ndarray:
    """
    Merge convergence and flexion spectral planes into one convergence estimate.

    The flexion-derived convergence (k1 + i k2) F / |k|^2 and the direct
    convergence are averaged with inverse-variance weights, ``sig_frac``
    being the flexion to shear variance ratio:

        kappa_comb = (sig_frac kappa + (k1 + i k2) F) / (|k|^2 + sig_frac)

    Args:
        kappa: Convergence planes [nlp, npix, npix]
        flexion: Flexion planes [nlp, npix, npix]
        k1, k2: Wavenumber grids [npix, npix]
        sig_frac: Flexion to shear variance ratio

    Returns:
        Combined planes [nlp, npix, npix], zero mode set to 0
    """
    ksqr = k1 * k1 + k2 * k2
    denom = 1.0 / (ksqr + sig_frac)
    combined = ((k1 + 1j * k2) * flexion + sig_frac * kappa) * denom
    return combined.at[..., 0, 0].set(0.0)


@jax.jit
def combine_components_inverse(
    combined: jnp.ndarray,
    k1: jnp.ndarray,
    k2: jnp.ndarray,
) -> Tuple[jnp.ndarray, jnp.ndarray]:
    """
    Split a combined convergence into consistent convergence and flexion planes.

    Returns:
        Tuple of (kappa, flexion) with flexion = (k1 - i k2) kappa
    """
    return combined, (k1 - 1j * k2) * combined


@jax.jit
def spectral_to_pixels(planes: jnp.ndarray) -> jnp.ndarray:
    """
    Real pixel maps of spectral planes.

    Pixel j on each axis sits at tangent-plane offset (j - npix/2) * pixel_size,
    matching the normalisation of the forward lensing operator.
    """
    npix = planes.shape[-1]
    maps = jnp.fft.fftshift(jnp.fft.fft2(planes, axes=(-2, -1)), axes=(-2, -1))
    return jnp.real(maps) / (npix * npix)


@jax.jit
def pixels_to_spectral(maps: jnp.ndarray) -> jnp.ndarray:
    """Inverse of ``spectral_to_pixels`` for real maps."""
    npix = maps.shape[-1]
    unshifted = jnp.fft.ifftshift(maps, axes=(-2, -1)).astype(jnp.complex128)
    return jnp.fft.ifft2(unshifted, axes=(-2, -1)) * (npix * npix)
