"""
Lens plane geometry: redshift slices and galaxy node coordinates.
"""

from typing import Tuple

import numpy as np

from ..survey.catalog import gnomonic_projection


def lens_plane_edges(zlp_min: float, zlp_max: float, nlp: int) -> Tuple[np.ndarray, np.ndarray]:
    """
    Regularly spaced redshift slices between ``zlp_min`` and ``zlp_max``.

    Args:
        zlp_min: Lower redshift of the first plane
        zlp_max: Upper redshift of the last plane
        nlp: Number of lens planes

    Returns:
        Tuple of (lower edges [nlp], upper edges [nlp])
    """
    if nlp < 1:
        raise ValueError(f"nlp must be >= 1, got {nlp}")
    if not zlp_max > zlp_min:
        raise ValueError(f"zlp_max must exceed zlp_min, got {zlp_min}, {zlp_max}")
    edges = zlp_min + (zlp_max - zlp_min) * np.arange(nlp + 1) / nlp
    return edges[:-1], edges[1:]


def field_size_in_pixels(survey_size: float, pixel_size: float, padding: int) -> int:
    """Even number of pixels covering the survey plus ``padding`` on each side."""
    npix = int(survey_size / pixel_size)
    return npix + (npix % 2) + 2 * int(padding)


def _wrap(u: np.ndarray) -> np.ndarray:
    u = np.where(u < -0.5, u + 1.0, u)
    return np.where(u >= 0.5, u - 1.0, u)


def tangent_plane_nodes(
    ra: np.ndarray,
    dec: np.ndarray,
    center_ra: float,
    center_dec: float,
    size: float,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Galaxy positions as NUFFT nodes.

    Positions are projected on the tangent plane at the field centre and
    expressed in units of the field size, wrapped into [-0.5, 0.5).

    Args:
        ra, dec: Galaxy positions in radians
        center_ra, center_dec: Field centre in radians
        size: Angular size of the (padded) field in radians

    Returns:
        Node coordinates (x, y)
    """
    x, y = gnomonic_projection(ra, dec, center_ra, center_dec)
    return _wrap(x / size), _wrap(y / size)
