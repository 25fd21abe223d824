"""
Survey interface consumed by the reconstruction field.

Catalog parsing lives outside jaxmap; any object exposing the attributes of
:class:`Survey` can be used. :class:`Catalog` is a plain in-memory
implementation built from numpy arrays.
"""

from dataclasses import dataclass, field
from typing import Optional, Protocol, Sequence

import numpy as np

from .redshift import Redshift, SpectroscopicRedshift


class Survey(Protocol):
    """Galaxy survey as seen by :class:`jaxmap.core.field.Field`.

    Angles (``center_ra``, ``center_dec``, ``size``, ``ra``, ``dec``) are in
    radians.
    """

    center_ra: float
    center_dec: float
    size: float
    ra: np.ndarray
    dec: np.ndarray
    gamma1: np.ndarray
    gamma2: np.ndarray
    shear_weight: np.ndarray
    flexion1: Optional[np.ndarray]
    flexion2: Optional[np.ndarray]
    flexion_weight: Optional[np.ndarray]
    redshifts: Sequence[Redshift]

    @property
    def ngal(self) -> int: ...

    @property
    def has_flexion(self) -> bool: ...


def _column(values, ngal: int, name: str) -> np.ndarray:
    arr = np.asarray(values, dtype=np.float64).reshape(-1)
    if arr.shape != (ngal,):
        raise ValueError(f"{name} must have shape ({ngal},), got {arr.shape}")
    if not np.all(np.isfinite(arr)):
        raise ValueError(f"{name} contains NaN or infinite values")
    return arr


@dataclass
class Catalog:
    """
    In-memory galaxy catalog.

    Args:
        ra, dec: Galaxy positions [ngal] in radians
        gamma1, gamma2: Shear measurements [ngal]
        redshifts: One redshift variant per galaxy
        shear_weight: Statistical weights [ngal] (default: ones)
        flexion1, flexion2: Optional flexion measurements [ngal]
        flexion_weight: Flexion weights [ngal] (default: ones when flexion is given)
        center_ra, center_dec: Field centre in radians (default: mean position)
        size: Angular size of the survey in radians (default: largest extent
            of the tangent-plane positions)
    """

    ra: np.ndarray
    dec: np.ndarray
    gamma1: np.ndarray
    gamma2: np.ndarray
    redshifts: Sequence[Redshift]
    shear_weight: Optional[np.ndarray] = None
    flexion1: Optional[np.ndarray] = None
    flexion2: Optional[np.ndarray] = None
    flexion_weight: Optional[np.ndarray] = None
    center_ra: Optional[float] = None
    center_dec: Optional[float] = None
    size: Optional[float] = None
    _ngal: int = field(init=False, repr=False)

    def __post_init__(self) -> None:
        ngal = np.asarray(self.ra).size
        self._ngal = int(ngal)
        self.ra = _column(self.ra, ngal, "ra")
        self.dec = _column(self.dec, ngal, "dec")
        self.gamma1 = _column(self.gamma1, ngal, "gamma1")
        self.gamma2 = _column(self.gamma2, ngal, "gamma2")
        if self.shear_weight is None:
            self.shear_weight = np.ones(ngal)
        self.shear_weight = _column(self.shear_weight, ngal, "shear_weight")
        if len(self.redshifts) != ngal:
            raise ValueError(f"Expected {ngal} redshifts, got {len(self.redshifts)}")

        if (self.flexion1 is None) != (self.flexion2 is None):
            raise ValueError("flexion1 and flexion2 must be given together")
        if self.flexion1 is not None:
            self.flexion1 = _column(self.flexion1, ngal, "flexion1")
            self.flexion2 = _column(self.flexion2, ngal, "flexion2")
            if self.flexion_weight is None:
                self.flexion_weight = np.ones(ngal)
            self.flexion_weight = _column(self.flexion_weight, ngal, "flexion_weight")

        if self.center_ra is None:
            self.center_ra = float(np.mean(self.ra))
        if self.center_dec is None:
            self.center_dec = float(np.mean(self.dec))
        if self.size is None:
            x, y = gnomonic_projection(self.ra, self.dec, self.center_ra, self.center_dec)
            self.size = float(max(np.ptp(x), np.ptp(y)))

    @property
    def ngal(self) -> int:
        return self._ngal

    @property
    def has_flexion(self) -> bool:
        return self.flexion1 is not None

    @classmethod
    def at_redshift(cls, ra, dec, gamma1, gamma2, z: float, **kwargs) -> "Catalog":
        """Catalog where every galaxy sits at the same spectroscopic redshift."""
        redshift = SpectroscopicRedshift(z)
        return cls(ra, dec, gamma1, gamma2, [redshift] * np.asarray(ra).size, **kwargs)


def gnomonic_projection(ra, dec, center_ra: float, center_dec: float):
    """
    Project sky positions onto the tangent plane at the field centre.

    Returns:
        Tangent-plane coordinates (x, y) in radians, x growing with ra
    """
    ra = np.asarray(ra, dtype=np.float64)
    dec = np.asarray(dec, dtype=np.float64)
    cos_dra = np.cos(ra - center_ra)
    denom = np.cos(center_dec) * np.cos(dec) * cos_dra + np.sin(center_dec) * np.sin(dec)
    x = np.cos(dec) * np.sin(ra - center_ra) / denom
    y = (np.cos(center_dec) * np.sin(dec) - np.cos(dec) * np.sin(center_dec) * cos_dra) / denom
    return x, y


def inverse_gnomonic_projection(x, y, center_ra: float, center_dec: float):
    """
    Sky positions (ra, dec) in radians of tangent-plane coordinates.
    """
    x = np.asarray(x, dtype=np.float64)
    y = np.asarray(y, dtype=np.float64)
    rho = np.sqrt(x * x + y * y)
    c = np.arctan(rho)
    safe_rho = np.where(rho > 0, rho, 1.0)
    dec = np.arcsin(np.cos(c) * np.sin(center_dec) + y / safe_rho * np.sin(c) * np.cos(center_dec))
    denom = rho * np.cos(center_dec) * np.cos(c) - y * np.sin(center_dec) * np.sin(c)
    ra = center_ra + np.arctan2(x * np.sin(c), denom)
    # Tangent point itself
    dec = np.where(rho > 0, dec, center_dec)
    ra = np.where(rho > 0, ra, center_ra)
    return ra, dec
