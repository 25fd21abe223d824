"""
Reconstruction field: the weak-lensing forward model and its adjoint.

A :class:`Field` holds the pixelisation of the survey area, the galaxy
measurements, the per-galaxy lensing kernels and one non-uniform FFT plan per
lens plane. The unknown is a spectral field (see :meth:`Field.new_spectral_field`)
whose convergence block is mapped to shear at the galaxy positions, and whose
optional flexion block is mapped to flexion.

Outer solvers only need :meth:`Field.gradient`, :meth:`Field.get_spectral_norm`
and, for the reduced-shear correction, :meth:`Field.update_covariance`.

The field's random stream (``Field.rng``) is not thread-safe; it is only
drawn from on the calling thread, plane-parallel work never touches it.
"""

import logging
import os
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Iterator, Mapping, Optional, Union

import numpy as np

from ..exceptions import DegenerateVarianceError, NUFFTError
from ..maps.convergence_map import ConvergenceMap
from ..planes.lens_planes import field_size_in_pixels, lens_plane_edges, tangent_plane_nodes
from ..planes.nufft import NUFFTPlan
from ..survey.catalog import Survey, inverse_gnomonic_projection
from ..utils.config import FieldConfig
from ..utils.fits_io import save_arrays_to_fits
from . import operators
from .cosmology import CosmologyModel
from .lensing_kernel import surface_lensing_kernel, svd_preconditioner, tomographic_lensing_kernel

logger = logging.getLogger(__name__)

# Floor on 1 - kappa in the covariance update
MIN_REDUCED_SHEAR_FACTOR = 0.3


@dataclass
class ResidualBuffers:
    """Per-galaxy shear, flexion and convergence values."""

    gamma1: np.ndarray
    gamma2: np.ndarray
    convergence: np.ndarray
    flexion1: Optional[np.ndarray] = None
    flexion2: Optional[np.ndarray] = None

    @classmethod
    def allocate(cls, ngal: int, include_flexion: bool) -> "ResidualBuffers":
        return cls(
            gamma1=np.zeros(ngal),
            gamma2=np.zeros(ngal),
            convergence=np.zeros(ngal),
            flexion1=np.zeros(ngal) if include_flexion else None,
            flexion2=np.zeros(ngal) if include_flexion else None,
        )

    @property
    def include_flexion(self) -> bool:
        return self.flexion1 is not None

    def shear(self) -> np.ndarray:
        return self.gamma1 + 1j * self.gamma2

    def flexion(self) -> np.ndarray:
        return self.flexion1 + 1j * self.flexion2

    def as_complex(self) -> np.ndarray:
        """Shear, followed by flexion when present, as one complex vector."""
        if self.include_flexion:
            return np.concatenate([self.shear(), self.flexion()])
        return self.shear()

    def copy(self) -> "ResidualBuffers":
        return ResidualBuffers(
            gamma1=self.gamma1.copy(),
            gamma2=self.gamma2.copy(),
            convergence=self.convergence.copy(),
            flexion1=None if self.flexion1 is None else self.flexion1.copy(),
            flexion2=None if self.flexion2 is None else self.flexion2.copy(),
        )


def flexion_variance_ratio(gamma1: np.ndarray, flexion1: np.ndarray) -> float:
    """
    Ratio of the empirical variances of the first flexion and shear components.

    Raises:
        DegenerateVarianceError: If the ratio cannot be formed
    """
    if gamma1.size < 2:
        raise DegenerateVarianceError("At least two galaxies are needed to estimate variances")
    shear_sigma = np.var(gamma1, ddof=1)
    flexion_sigma = np.var(flexion1, ddof=1)
    if not np.isfinite(shear_sigma) or shear_sigma <= 0:
        raise DegenerateVarianceError(f"Degenerate shear variance: {shear_sigma}")
    if not np.isfinite(flexion_sigma):
        raise DegenerateVarianceError(f"Degenerate flexion variance: {flexion_sigma}")
    return float(flexion_sigma / shear_sigma)


class Field:
    """
    Weak-lensing reconstruction field.

    Args:
        config: Field configuration, or a mapping accepted by
            :meth:`FieldConfig.from_mapping`
        survey: Galaxy survey
        cosmology: Distance measures (default: built from the configured
            Omega_m and h, only when lensing kernels need it)
    """

    def __init__(
        self,
        config: Union[FieldConfig, Mapping[str, Any]],
        survey: Survey,
        cosmology: Optional[CosmologyModel] = None,
    ):
        if not isinstance(config, FieldConfig):
            config = FieldConfig.from_mapping(config)
        self.config = config
        self._closed = False
        self._pool = None

        self.pixel_size = config.pixel_size_rad
        self.nlp = int(config.nlp)
        self.r_cond = float(config.r_cond)
        self.zlens = -1.0
        self.zlp_low = self.zlp_up = None
        if self.nlp == 1:
            self.zlens = float(config.zlens)
            if self.zlens <= 0:
                logger.warning("No redshift specified for the lens, ignoring source redshifts")
        else:
            self.zlp_low, self.zlp_up = lens_plane_edges(config.zlp_min, config.zlp_max, self.nlp)

        # The field is enlarged by the padding to limit border effects
        self.center_ra = float(survey.center_ra)
        self.center_dec = float(survey.center_dec)
        self.npix = field_size_in_pixels(float(survey.size), self.pixel_size, config.padding)
        self.size = self.npix * self.pixel_size
        logger.info("Number of pixels : %d Pixel size : %g rad", self.npix, self.pixel_size)

        self.include_flexion = bool(config.include_flexion)
        if self.include_flexion and not survey.has_flexion:
            logger.warning("No flexion measurements provided, reconstructing from shear alone")
            self.include_flexion = False

        self.rng = np.random.default_rng(config.seed)

        self.ngal = int(survey.ngal)
        if self.ngal <= 0:
            raise ValueError("Survey contains no galaxies")
        self.gamma1 = np.array(survey.gamma1, dtype=np.float64)
        self.gamma2 = np.array(survey.gamma2, dtype=np.float64)
        self.shear_weight = np.array(survey.shear_weight, dtype=np.float64)
        self.flexion1 = self.flexion2 = self.flexion_weight = None
        if self.include_flexion:
            self.flexion1 = np.array(survey.flexion1, dtype=np.float64)
            self.flexion2 = np.array(survey.flexion2, dtype=np.float64)
            self.flexion_weight = np.array(survey.flexion_weight, dtype=np.float64)
        self.cov = np.ones(self.ngal)
        self.residuals = ResidualBuffers.allocate(self.ngal, self.include_flexion)

        self.fft_factor = 1.0 / (float(self.npix) * self.npix)
        self._k1, self._k2 = operators.wavenumbers(self.npix, self.pixel_size)
        self._shear_multiplier = np.asarray(operators.shear_multiplier(self._k1, self._k2))
        self._shear_multiplier_conj = np.conj(self._shear_multiplier)
        self._zero_mode_mask = np.asarray(operators.zero_mode_mask(self._k1, self._k2))

        nthreads = config.nthreads or os.cpu_count() or 1
        n_workers = max(1, min(nthreads, self.nlp))
        x, y = tangent_plane_nodes(survey.ra, survey.dec, self.center_ra, self.center_dec, self.size)
        self.plans = []
        for z in range(self.nlp):
            plan = NUFFTPlan(
                self.npix, self.npix, self.ngal,
                eps=config.nufft_eps,
                nthreads=max(1, nthreads // n_workers),
            )
            plan.set_nodes(x, y)
            plan.precompute()
            if not plan.check():
                raise NUFFTError(f"Non-uniform FFT plan of lens plane {z} failed its validity check")
            self.plans.append(plan)

        if cosmology is None and (self.nlp > 1 or self.zlens > 0):
            cosmology = CosmologyModel.from_parameters(config.omega_m, config.h)
        self.cosmology = cosmology
        self._build_lensing_kernels(survey)

        self.sig_frac = 1.0
        if self.include_flexion:
            self.sig_frac = flexion_variance_ratio(self.gamma1, self.flexion1)

        self._pool = ThreadPoolExecutor(max_workers=n_workers) if n_workers > 1 else None

    def _build_lensing_kernels(self, survey: Survey) -> None:
        if self.nlp == 1:
            if self.zlens <= 0:
                # Unweighted reconstruction
                kernel = np.ones((self.ngal, 1))
            else:
                # The kernel reduces to a weight based on the critical surface density
                kernel = surface_lensing_kernel(survey.redshifts, self.zlens, self.cosmology)[:, None]
            lens_kernel = kernel.copy()
            P = np.ones((1, 1))
            iP = np.ones((1, 1))
            PP = np.ones((1, 1))
        else:
            logger.info("Starting computation of lensing kernels")
            kernel = tomographic_lensing_kernel(survey.redshifts, self.zlp_low, self.zlp_up, self.cosmology)
            lens_kernel, P, iP, PP = svd_preconditioner(kernel, self.r_cond, self.rng)
            logger.info("Done computing lensing kernels")

        self.lens_kernel_true = kernel
        self.lens_kernel = lens_kernel
        for arr in (self.lens_kernel_true, P, iP, PP):
            arr.setflags(write=False)
        self._P, self._iP, self._PP = P, iP, PP

    @property
    def P(self) -> np.ndarray:
        """Preconditioning matrix [nlp, nlp]."""
        return self._P

    @property
    def iP(self) -> np.ndarray:
        """Inverse of the preconditioning matrix [nlp, nlp]."""
        return self._iP

    @property
    def PP(self) -> np.ndarray:
        """P P^T [nlp, nlp]."""
        return self._PP

    @property
    def nblocks(self) -> int:
        return 2 if self.include_flexion else 1

    @property
    def n_coefficients(self) -> int:
        """Length of a spectral field vector."""
        return self.nblocks * self.nlp * self.npix * self.npix

    def new_spectral_field(self) -> np.ndarray:
        """Zero spectral field."""
        return np.zeros(self.n_coefficients, dtype=np.complex128)

    def _planes(self, delta: np.ndarray, nblocks: Optional[int] = None) -> np.ndarray:
        """View of a flat spectral vector as [nblocks * nlp, npix, npix] planes."""
        nblocks = self.nblocks if nblocks is None else nblocks
        size = nblocks * self.nlp * self.npix * self.npix
        if not isinstance(delta, np.ndarray) or delta.dtype != np.complex128:
            raise ValueError("Spectral fields must be complex128 numpy arrays")
        if delta.shape != (size,):
            raise ValueError(f"Spectral field must have shape ({size},), got {delta.shape}")
        if not delta.flags.c_contiguous:
            raise ValueError("Spectral field must be contiguous")
        return delta.reshape(nblocks * self.nlp, self.npix, self.npix)

    def _check_open(self) -> None:
        if self._closed:
            raise RuntimeError("Field has been closed")

    def _run_planes(self, work: Callable[[int], None]) -> None:
        """Run ``work(z)`` for every lens plane."""
        if self._pool is None:
            for z in range(self.nlp):
                work(z)
        else:
            list(self._pool.map(work, range(self.nlp)))

    def _evaluate_at_galaxies(
        self,
        planes: np.ndarray,
        multiplier: Optional[np.ndarray],
        kernel: np.ndarray,
    ) -> np.ndarray:
        """Kernel-weighted sum over planes of the spectral planes evaluated at galaxies."""

        def work(z: int) -> None:
            plan = self.plans[z]
            if multiplier is None:
                plan.f_hat[...] = planes[z]
            else:
                np.multiply(planes[z], multiplier, out=plan.f_hat)
            plan.forward()

        self._run_planes(work)
        values = np.stack([plan.f for plan in self.plans])
        return np.einsum("gz,zg->g", kernel, values) * self.fft_factor

    def _combine(self, planes: np.ndarray) -> np.ndarray:
        kappa = planes[: self.nlp]
        if self.include_flexion:
            flexion = planes[self.nlp:]
            return np.asarray(
                operators.combine_components(kappa, flexion, self._k1, self._k2, self.sig_frac)
            )
        combined = kappa.copy()
        combined[:, 0, 0] = 0.0
        return combined

    def combine_components(self, delta: np.ndarray) -> np.ndarray:
        """
        Signal-combined convergence of a spectral field.

        Returns:
            Flat complex vector of nlp * npix**2 coefficients
        """
        return np.array(self._combine(self._planes(delta))).reshape(-1)

    def combine_components_inverse(self, combined: np.ndarray, out: Optional[np.ndarray] = None) -> np.ndarray:
        """
        Spectral field whose combination is ``combined``.

        Args:
            combined: Flat complex vector of nlp * npix**2 coefficients
            out: Spectral field written in place (default: newly allocated)

        Returns:
            The spectral field
        """
        c = self._planes(np.asarray(combined), nblocks=1)
        out = self.new_spectral_field() if out is None else out
        planes = self._planes(out)
        if self.include_flexion:
            kappa, flexion = operators.combine_components_inverse(c, self._k1, self._k2)
            planes[: self.nlp] = np.asarray(kappa)
            planes[self.nlp:] = np.asarray(flexion)
        else:
            planes[...] = c
        return out

    def forward_operator(self, delta: np.ndarray, out: Optional[ResidualBuffers] = None) -> ResidualBuffers:
        """
        Predicted shear, flexion and convergence at the galaxy positions.

        Args:
            delta: Spectral field
            out: Buffers receiving the prediction (default: the field's residual buffers)

        Returns:
            The filled buffers
        """
        self._check_open()
        out = self.residuals if out is None else out
        planes = self._planes(delta)

        gamma = self._evaluate_at_galaxies(planes[: self.nlp], self._shear_multiplier, self.lens_kernel)
        out.gamma1[:] = gamma.real
        out.gamma2[:] = gamma.imag

        if self.include_flexion:
            flexion = self._evaluate_at_galaxies(planes[self.nlp:], self._zero_mode_mask, self.lens_kernel)
            out.flexion1[:] = flexion.real
            out.flexion2[:] = flexion.imag

        # Convergence at each galaxy, for the reduced shear correction
        combined = self._combine(planes)
        kappa = self._evaluate_at_galaxies(combined, None, self.lens_kernel_true)
        out.convergence[:] = kappa.real
        return out

    def adjoint_operator(
        self,
        residuals: Optional[ResidualBuffers] = None,
        out: Optional[np.ndarray] = None,
        preconditioned: bool = True,
    ) -> np.ndarray:
        """
        Adjoint of :meth:`forward_operator`, without the 1/npix**2 normalisation.

        Args:
            residuals: Per-galaxy values (default: the field's residual buffers)
            out: Spectral field overwritten with the result (default: newly allocated)
            preconditioned: Use the preconditioned kernel rather than the physical one

        Returns:
            The spectral field
        """
        self._check_open()
        residuals = self.residuals if residuals is None else residuals
        out = self.new_spectral_field() if out is None else out
        planes = self._planes(out)
        kernel = self.lens_kernel if preconditioned else self.lens_kernel_true

        shear = residuals.shear()
        flexion = residuals.flexion() if self.include_flexion else None

        def work(z: int) -> None:
            plan = self.plans[z]
            np.multiply(shear, kernel[:, z], out=plan.f)
            plan.adjoint()
            np.multiply(plan.f_hat, self._shear_multiplier_conj, out=planes[z])
            planes[z, 0, 0] = 0.0

            if flexion is not None:
                np.multiply(flexion, kernel[:, z], out=plan.f)
                plan.adjoint()
                np.multiply(plan.f_hat, self._zero_mode_mask, out=planes[self.nlp + z])
                planes[self.nlp + z, 0, 0] = 0.0

        self._run_planes(work)
        return out

    def gradient(self, delta: np.ndarray) -> np.ndarray:
        """
        Gradient of the data fidelity term, written into ``delta``.

        Residuals are weighted by the covariance correction and the galaxy
        weights; the data are multiplied by (1 - kappa) for the reduced shear
        correction, which is not differentiated.
        """
        self.forward_operator(delta)

        r = self.residuals
        factor = np.maximum(1.0 - r.convergence, 0.0)
        weight = self.cov * self.shear_weight
        r.gamma1[:] = weight * (factor * self.gamma1 - r.gamma1)
        r.gamma2[:] = weight * (factor * self.gamma2 - r.gamma2)
        if self.include_flexion:
            weight = self.cov * self.flexion_weight
            r.flexion1[:] = weight * (factor * self.flexion1 - r.flexion1)
            r.flexion2[:] = weight * (factor * self.flexion2 - r.flexion2)

        return self.adjoint_operator(r, out=delta)

    def gradient_noise(self, delta: np.ndarray) -> np.ndarray:
        """
        Adjoint of a noise realisation, written into ``delta``.

        Measurements are randomly rotated to produce a shape-noise realisation,
        which is propagated with the physical (unpreconditioned) kernel.
        """
        theta1 = self.rng.uniform(0.0, 2.0 * np.pi, self.ngal)
        theta2 = self.rng.uniform(0.0, 2.0 * np.pi, self.ngal)

        r = self.residuals
        scale = np.sqrt(self.cov)
        c, s = np.cos(theta1), np.sin(theta1)
        r.gamma1[:] = scale * self.shear_weight * (self.gamma1 * c - self.gamma2 * s)
        r.gamma2[:] = scale * self.shear_weight * (self.gamma2 * c + self.gamma1 * s)
        if self.include_flexion:
            c, s = np.cos(theta2), np.sin(theta2)
            r.flexion1[:] = scale * self.flexion_weight * (self.flexion1 * c - self.flexion2 * s)
            r.flexion2[:] = scale * self.flexion_weight * (self.flexion2 * c + self.flexion1 * s)

        return self.adjoint_operator(r, out=delta, preconditioned=False)

    def _apply_weights(self, r: ResidualBuffers) -> None:
        r.gamma1 *= self.cov * self.shear_weight
        r.gamma2 *= self.cov * self.shear_weight
        if self.include_flexion:
            r.flexion1 *= self.cov * self.flexion_weight
            r.flexion2 *= self.cov * self.flexion_weight

    def _power_iteration(self, max_iterations: int, tolerance: float) -> Iterator[float]:
        """Power iteration on A^H W A, yielding the norm estimate at each step."""
        n = self.n_coefficients
        kap = self.rng.standard_normal(n) + 1j * self.rng.standard_normal(n)
        kap /= np.linalg.norm(kap)
        tmp = self.new_spectral_field()

        norm_old = 0.0
        for _ in range(max_iterations):
            r = self.forward_operator(kap)
            self._apply_weights(r)
            self.adjoint_operator(r, out=tmp)

            norm = float(np.linalg.norm(tmp))
            yield norm
            if norm == 0 or abs(norm - norm_old) / norm <= tolerance:
                return
            np.divide(tmp, norm, out=kap)
            norm_old = norm

        logger.warning("Reached maximum number of iterations (%d) in spectral norm estimation", max_iterations)

    def get_spectral_norm(self, max_iterations: int = 100, tolerance: float = 1e-4) -> float:
        """
        Upper bound on the spectral norm of A^H W A.

        Returns:
            Power-iteration estimate multiplied by (1 + tolerance)
        """
        norm = 0.0
        for norm in self._power_iteration(max_iterations, tolerance):
            logger.debug("Spectral norm estimate: %g", norm)
        return norm * (1.0 + tolerance)

    def update_covariance(self, delta: np.ndarray) -> None:
        """Update the reduced-shear covariance correction from the current field."""
        self._check_open()
        combined = self._combine(self._planes(delta))
        kappa = self._evaluate_at_galaxies(combined, None, self.lens_kernel_true).real
        self.residuals.convergence[:] = kappa

        factor = np.maximum(1.0 - kappa, MIN_REDUCED_SHEAR_FACTOR)
        self.cov[:] = 1.0 / (factor * factor)

    def check_adjoint(self, rtol: float = 1e-6) -> bool:
        """
        Compare <A a, b> with <a, A^H b> for random a and b.

        The complex inner product checks both the real and the rotated
        products at once. The field's residual buffers are left untouched.
        """
        n = self.n_coefficients
        a = self.rng.standard_normal(n) + 1j * self.rng.standard_normal(n)
        forward = self.forward_operator(a, out=ResidualBuffers.allocate(self.ngal, self.include_flexion))

        b = ResidualBuffers.allocate(self.ngal, self.include_flexion)
        b.gamma1[:] = self.rng.standard_normal(self.ngal)
        b.gamma2[:] = self.rng.standard_normal(self.ngal)
        if self.include_flexion:
            b.flexion1[:] = self.rng.standard_normal(self.ngal)
            b.flexion2[:] = self.rng.standard_normal(self.ngal)
        adjoint = self.adjoint_operator(b)

        lhs = np.vdot(forward.as_complex(), b.as_complex())
        rhs = self.fft_factor * np.vdot(a, adjoint)
        logger.info("Results of check: %g against %g", lhs.real, rhs.real)
        logger.info("Results of check: %g against %g", lhs.imag, rhs.imag)
        return bool(abs(lhs - rhs) <= rtol * max(abs(lhs), abs(rhs)))

    def spectral_to_maps(self, delta: np.ndarray, precondition: bool = True) -> ConvergenceMap:
        """
        Real-space maps of the combined convergence of each plane.

        Args:
            delta: Spectral field
            precondition: Mix planes with P to obtain the physical density

        Returns:
            ConvergenceMap with one plane per lens plane
        """
        combined = self._combine(self._planes(delta))
        maps = np.asarray(operators.spectral_to_pixels(combined))
        if precondition and self.nlp > 1:
            maps = np.einsum("zy,yij->zij", self.P, maps)
        bins = None if self.nlp == 1 else (self.zlp_low, self.zlp_up)
        return ConvergenceMap(maps, self.pixel_size, plane_redshifts=bins)

    def maps_to_spectral(
        self,
        maps: np.ndarray,
        out: Optional[np.ndarray] = None,
        precondition: bool = True,
    ) -> np.ndarray:
        """
        Spectral field reproducing real-space convergence maps.

        Args:
            maps: Real maps [nlp, npix, npix] (or [npix, npix] for one plane)
            out: Spectral field written in place (default: newly allocated)
            precondition: Treat ``maps`` as physical densities and apply P^-1

        Returns:
            The spectral field
        """
        maps = np.asarray(maps, dtype=np.float64).reshape(self.nlp, self.npix, self.npix)
        if precondition and self.nlp > 1:
            maps = np.einsum("zy,yij->zij", self.iP, maps)
        combined = np.array(operators.pixels_to_spectral(maps))
        combined[:, 0, 0] = 0.0
        return self.combine_components_inverse(combined.reshape(-1), out=out)

    def pixel_coordinates(self):
        """
        Sky coordinates of the pixel centres.

        Returns:
            Tuple of (ra, dec) arrays [npix, npix] in degrees
        """
        offsets = (np.arange(self.npix) - self.npix // 2) * self.pixel_size
        x, y = np.meshgrid(offsets, offsets, indexing="ij")
        ra, dec = inverse_gnomonic_projection(x, y, self.center_ra, self.center_dec)
        return np.degrees(ra), np.degrees(dec)

    def write_diagnostics(self, prefix: str):
        """Dump lensing kernels and preconditioning matrices to FITS files."""
        return save_arrays_to_fits(
            {
                "lensKernel": self.lens_kernel,
                "lensKernelTrue": self.lens_kernel_true,
                "P": self.P,
                "iP": self.iP,
                "PP": self.PP,
            },
            prefix,
            header={"NLP": self.nlp, "NGAL": self.ngal, "NPIX": self.npix},
        )

    def close(self) -> None:
        """Release the thread pool and the NUFFT plans."""
        if self._closed:
            return
        if self._pool is not None:
            self._pool.shutdown(wait=True)
            self._pool = None
        for plan in self.plans:
            plan.finalize()
        self._closed = True

    def __enter__(self) -> "Field":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
