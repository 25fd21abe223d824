"""Lens plane utilities for JaxMap."""

from .lens_planes import field_size_in_pixels, lens_plane_edges, tangent_plane_nodes
from .nufft import NUFFTPlan

__all__ = [
    "NUFFTPlan",
    "field_size_in_pixels",
    "lens_plane_edges",
    "tangent_plane_nodes",
]
