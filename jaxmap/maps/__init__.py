"""Convergence map containers for JaxMap."""

from .convergence_map import ConvergenceMap

__all__ = ["ConvergenceMap"]
