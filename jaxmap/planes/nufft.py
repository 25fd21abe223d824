"""
Non-uniform FFT between a lens plane's spectral grid and galaxy positions.

Thin stateful wrapper around two FINUFFT plans sharing the same nodes:

- forward (type 2):  f_j = sum_k f_hat_k exp(-2 pi i k.x_j)
- adjoint (type 1):  f_hat_k = sum_j f_j exp(+2 pi i k.x_j)

Nodes live in [-0.5, 0.5)^2 and modes are stored in FFT order
(0, 1, ..., N/2-1, -N/2, ..., -1) on both axes. Neither direction is
normalised.
"""

import logging
from typing import Optional

import finufft
import numpy as np

logger = logging.getLogger(__name__)

_TWO_PI = 2.0 * np.pi

# Number of nodes compared against a direct DFT in check()
_N_SAMPLE = 8


class NUFFTPlan:
    """
    Non-uniform transform for one lens plane.

    Args:
        n1, n2: Number of Fourier modes along each axis
        n_nodes: Number of non-uniform nodes (galaxies)
        eps: Requested relative accuracy
        nthreads: Threads used by FINUFFT inside one transform
    """

    def __init__(self, n1: int, n2: int, n_nodes: int, eps: float = 1e-12, nthreads: int = 1):
        if n1 <= 0 or n2 <= 0 or n_nodes <= 0:
            raise ValueError(f"Invalid plan size: modes=({n1}, {n2}), nodes={n_nodes}")
        self.n_modes = (int(n1), int(n2))
        self.n_nodes = int(n_nodes)
        self.eps = float(eps)
        self.nthreads = int(nthreads)

        self.x: Optional[np.ndarray] = None
        self.y: Optional[np.ndarray] = None
        self.f_hat = np.zeros(self.n_modes, dtype=np.complex128)
        self.f = np.zeros(self.n_nodes, dtype=np.complex128)

        self._forward_plan = None
        self._adjoint_plan = None

    def set_nodes(self, x: np.ndarray, y: np.ndarray) -> None:
        """Set node coordinates, each in [-0.5, 0.5)."""
        x = np.ascontiguousarray(x, dtype=np.float64).reshape(-1)
        y = np.ascontiguousarray(y, dtype=np.float64).reshape(-1)
        if x.shape != (self.n_nodes,) or y.shape != (self.n_nodes,):
            raise ValueError(f"Expected {self.n_nodes} nodes, got {x.shape} and {y.shape}")
        self.x = x
        self.y = y

    def precompute(self) -> None:
        """Build the FINUFFT plans for the current nodes."""
        if self.x is None:
            raise RuntimeError("set_nodes() must be called before precompute()")
        self._forward_plan = finufft.Plan(
            2, self.n_modes, eps=self.eps, isign=-1, modeord=1, nthreads=self.nthreads
        )
        self._adjoint_plan = finufft.Plan(
            1, self.n_modes, eps=self.eps, isign=1, modeord=1, nthreads=self.nthreads
        )
        self._xs = _TWO_PI * self.x
        self._ys = _TWO_PI * self.y
        self._forward_plan.setpts(self._xs, self._ys)
        self._adjoint_plan.setpts(self._xs, self._ys)

    def forward(self) -> np.ndarray:
        """Evaluate ``f_hat`` at the nodes into ``f``."""
        self._forward_plan.execute(self.f_hat, out=self.f)
        return self.f

    def adjoint(self) -> np.ndarray:
        """Spread ``f`` back onto the modes into ``f_hat``."""
        self._adjoint_plan.execute(self.f, out=self.f_hat)
        return self.f_hat

    def direct_forward(self, f_hat: np.ndarray, nodes: slice = slice(None)) -> np.ndarray:
        """Exact (slow) evaluation of the forward transform at selected nodes."""
        k1 = np.fft.fftfreq(self.n_modes[0]) * self.n_modes[0]
        k2 = np.fft.fftfreq(self.n_modes[1]) * self.n_modes[1]
        x = self.x[nodes]
        y = self.y[nodes]
        phase1 = np.exp(-_TWO_PI * 1j * np.outer(x, k1))
        phase2 = np.exp(-_TWO_PI * 1j * np.outer(y, k2))
        return np.einsum("ja,jb,ab->j", phase1, phase2, f_hat)

    def check(self) -> bool:
        """
        Validate nodes and plans.

        Returns False when nodes are outside [-0.5, 0.5), plans are missing,
        or a sample transform disagrees with a direct evaluation.
        """
        if self.x is None or self._forward_plan is None or self._adjoint_plan is None:
            return False
        for coords in (self.x, self.y):
            if not np.all(np.isfinite(coords)) or np.any(coords < -0.5) or np.any(coords >= 0.5):
                return False

        # Sampled on a private stream, the field's random state is left untouched
        rng = np.random.default_rng(0)
        sample = rng.standard_normal(self.n_modes) + 1j * rng.standard_normal(self.n_modes)
        n_sample = min(_N_SAMPLE, self.n_nodes)
        saved = self.f_hat.copy(), self.f.copy()
        self.f_hat[...] = sample
        fast = self.forward()[:n_sample].copy()
        self.f_hat[...], self.f[...] = saved

        exact = self.direct_forward(sample, slice(0, n_sample))
        tol = max(1e-6, 100.0 * self.eps)
        err = np.linalg.norm(fast - exact) / max(np.linalg.norm(exact), np.finfo(float).tiny)
        if err > tol:
            logger.error("NUFFT sample error %.3e exceeds tolerance %.1e", err, tol)
            return False
        return True

    def finalize(self) -> None:
        """Release the FINUFFT plans."""
        self._forward_plan = None
        self._adjoint_plan = None
