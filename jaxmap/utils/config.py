"""
Configuration surface consumed by the reconstruction field.

Options are grouped in two sections, ``cosmology`` and ``field``. They can be
given either as nested mappings or with dotted keys::

    {"field": {"pixel_size": 1.0, "units": "arcmin"}}
    {"field.pixel_size": 1.0, "field.units": "arcmin"}
"""

import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional

import astropy.units as u

from ..exceptions import ConfigurationError

logger = logging.getLogger(__name__)

# Matched in order against the configured unit string
_ANGULAR_UNITS = (
    ("radian", u.rad),
    ("arcsec", u.arcsec),
    ("arcmin", u.arcmin),
    ("degree", u.deg),
)

_MISSING = object()


def angular_unit_to_radian(units: str) -> float:
    """
    Conversion factor from an angular unit name to radians.

    Unknown names are reported and treated as radians.
    """
    for name, unit in _ANGULAR_UNITS:
        if name in units:
            return float((1.0 * unit).to_value(u.rad))
    logger.warning("Unknown coordinates units %r, assuming radians.", units)
    return 1.0


def _lookup(config: Mapping[str, Any], key: str, default: Any = _MISSING) -> Any:
    """Fetch ``section.option`` from a dotted or nested mapping."""
    if key in config:
        return config[key]
    section, option = key.split(".", 1)
    nested = config.get(section)
    if isinstance(nested, Mapping) and option in nested:
        return nested[option]
    if default is _MISSING:
        raise ConfigurationError(f"Missing required configuration parameter '{key}'")
    return default


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


@dataclass(frozen=True)
class FieldConfig:
    """
    Reconstruction field configuration.

    Args:
      pixel_size: pixel size, expressed in ``units``.
      omega_m: matter density parameter.
      h: reduced Hubble constant.
      padding: number of padding pixels added on each side of the field.
      units: angular unit of ``pixel_size`` (radian, arcsec, arcmin, degree).
      nlp: number of lens planes.
      zlens: lens redshift for single-plane reconstructions; <= 0 means unknown.
      zlp_min, zlp_max: redshift range covered by the lens planes (nlp > 1).
      r_cond: relative cut on singular values of the tomographic kernel.
      include_flexion: reconstruct from flexion as well as shear.
      nufft_eps: requested accuracy of the non-uniform transforms.
      nthreads: size of the thread pool used for plane-parallel work.
      seed: seed of the field's random number stream.
    """

    pixel_size: float
    omega_m: float = 0.25
    h: float = 0.70
    padding: int = 0
    units: str = "radian"
    nlp: int = 1
    zlens: float = -1.0
    zlp_min: Optional[float] = None
    zlp_max: Optional[float] = None
    r_cond: float = 0.1
    include_flexion: bool = False
    nufft_eps: float = 1e-12
    nthreads: Optional[int] = None
    seed: Optional[int] = None

    def __post_init__(self) -> None:
        if self.pixel_size is None or not self.pixel_size > 0:
            raise ConfigurationError(f"field.pixel_size must be positive, got {self.pixel_size}")
        if int(self.nlp) < 1:
            raise ConfigurationError(f"field.nlp must be >= 1, got {self.nlp}")
        if int(self.padding) < 0:
            raise ConfigurationError(f"field.padding must be >= 0, got {self.padding}")
        if not 0.0 < float(self.r_cond) <= 1.0:
            raise ConfigurationError(f"field.r_cond must be in (0, 1], got {self.r_cond}")
        if int(self.nlp) > 1:
            if self.zlp_min is None or self.zlp_max is None:
                raise ConfigurationError(
                    "field.zlp_min and field.zlp_max are required when field.nlp > 1"
                )
            if not 0.0 <= float(self.zlp_min) < float(self.zlp_max):
                raise ConfigurationError(
                    f"Invalid lens plane range: zlp_min={self.zlp_min}, zlp_max={self.zlp_max}"
                )

    @property
    def pixel_size_rad(self) -> float:
        """Pixel size in radians."""
        return float(self.pixel_size) * angular_unit_to_radian(self.units)

    @classmethod
    def from_mapping(cls, config: Mapping[str, Any]) -> "FieldConfig":
        """Build a configuration from a nested or dotted-key mapping."""
        nlp = int(_lookup(config, "field.nlp", 1))
        zlp_min = _lookup(config, "field.zlp_min", None)
        zlp_max = _lookup(config, "field.zlp_max", None)
        if nlp > 1:
            # Required in the tomographic case, raises if absent
            zlp_min = _lookup(config, "field.zlp_min")
            zlp_max = _lookup(config, "field.zlp_max")
        nthreads = _lookup(config, "field.nthreads", None)
        seed = _lookup(config, "field.seed", None)
        return cls(
            pixel_size=float(_lookup(config, "field.pixel_size")),
            omega_m=float(_lookup(config, "cosmology.Omega_m", 0.25)),
            h=float(_lookup(config, "cosmology.h", 0.70)),
            padding=int(_lookup(config, "field.padding", 0)),
            units=str(_lookup(config, "field.units", "radian")),
            nlp=nlp,
            zlens=float(_lookup(config, "field.zlens", -1.0)),
            zlp_min=None if zlp_min is None else float(zlp_min),
            zlp_max=None if zlp_max is None else float(zlp_max),
            r_cond=float(_lookup(config, "field.r_cond", 0.1)),
            include_flexion=_as_bool(_lookup(config, "field.include_flexion", False)),
            nufft_eps=float(_lookup(config, "field.nufft_eps", 1e-12)),
            nthreads=None if nthreads is None else int(nthreads),
            seed=None if seed is None else int(seed),
        )
