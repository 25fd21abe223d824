"""Tests for the reconstruction field operators."""

import copy
import logging

import numpy as np
import pytest

from jaxmap import Catalog, Field, FieldConfig
from jaxmap.core.field import MIN_REDUCED_SHEAR_FACTOR, ResidualBuffers
from jaxmap.exceptions import DegenerateVarianceError
from jaxmap.survey import SpectroscopicRedshift
from jaxmap.utils.fits_io import load_array_from_fits


@pytest.fixture
def field(single_plane_config, shear_catalog):
    with Field(single_plane_config, shear_catalog) as f:
        yield f


@pytest.fixture
def flexion_field(single_plane_config, flexion_catalog):
    config = FieldConfig(pixel_size=3.0, units="arcmin", zlens=0.3, seed=42, include_flexion=True)
    with Field(config, flexion_catalog) as f:
        yield f


def dense_operator(field):
    """A^H W A as a dense matrix, built column by column."""
    n = field.n_coefficients
    columns = []
    for j in range(n):
        e = field.new_spectral_field()
        e[j] = 1.0
        r = field.forward_operator(e)
        field._apply_weights(r)
        columns.append(field.adjoint_operator(r))
    return np.stack(columns, axis=1)


class TestConstruction:
    """Field set-up."""

    def test_grid(self, field):
        assert field.npix == 20
        assert field.ngal == 500
        assert field.nlp == 1
        assert field.n_coefficients == 400
        assert field.fft_factor == pytest.approx(1 / 400)

    def test_single_plane_preconditioner(self, field):
        np.testing.assert_array_equal(field.P, [[1.0]])
        np.testing.assert_array_equal(field.iP, [[1.0]])
        np.testing.assert_array_equal(field.PP, [[1.0]])
        assert not field.P.flags.writeable
        np.testing.assert_array_equal(field.lens_kernel, field.lens_kernel_true)
        assert np.all(field.lens_kernel > 0)

    def test_from_mapping(self, shear_catalog):
        config = {"field": {"pixel_size": 3.0, "units": "arcmin", "padding": 2, "seed": 1}}
        with Field(config, shear_catalog) as f:
            assert f.npix == 24

    def test_unweighted_without_lens_redshift(self, shear_catalog, caplog):
        with caplog.at_level(logging.WARNING):
            with Field(FieldConfig(pixel_size=3.0, units="arcmin"), shear_catalog) as f:
                np.testing.assert_array_equal(f.lens_kernel_true, np.ones((500, 1)))
                assert f.cosmology is None
        assert "No redshift specified" in caplog.text

    def test_flexion_fallback(self, shear_catalog, caplog):
        config = FieldConfig(pixel_size=3.0, units="arcmin", zlens=0.3, include_flexion=True)
        with caplog.at_level(logging.WARNING):
            with Field(config, shear_catalog) as f:
                assert not f.include_flexion
                assert f.n_coefficients == 400
                assert f.residuals.flexion1 is None
        assert "No flexion measurements" in caplog.text

    def test_flexion_layout(self, flexion_field):
        assert flexion_field.include_flexion
        assert flexion_field.n_coefficients == 800
        expected = np.var(flexion_field.flexion1, ddof=1) / np.var(flexion_field.gamma1, ddof=1)
        assert flexion_field.sig_frac == pytest.approx(expected)

    def test_degenerate_shear_variance(self, make_positions):
        ra, dec = make_positions(50)
        catalog = Catalog.at_redshift(
            ra, dec, np.zeros(50), np.zeros(50), 1.0,
            flexion1=np.ones(50), flexion2=np.ones(50),
        )
        config = FieldConfig(pixel_size=3.0, units="arcmin", include_flexion=True)
        with pytest.raises(DegenerateVarianceError):
            Field(config, catalog)

    def test_closed_field(self, single_plane_config, shear_catalog):
        f = Field(single_plane_config, shear_catalog)
        f.close()
        with pytest.raises(RuntimeError):
            f.forward_operator(f.new_spectral_field())
        # Closing twice is harmless
        f.close()


class TestOperators:
    """Forward and adjoint operators."""

    def test_check_adjoint(self, field):
        assert field.check_adjoint()

    def test_check_adjoint_with_flexion(self, flexion_field):
        assert flexion_field.check_adjoint()

    def test_check_adjoint_keeps_residuals(self, field):
        field.residuals.gamma1[:] = 3.0
        field.check_adjoint()
        np.testing.assert_array_equal(field.residuals.gamma1, 3.0)

    def test_forward_of_zero(self, field):
        r = field.forward_operator(field.new_spectral_field())
        assert np.all(r.gamma1 == 0) and np.all(r.gamma2 == 0)
        assert np.all(r.convergence == 0)

    def test_adjoint_zero_mode(self, flexion_field):
        r = ResidualBuffers.allocate(flexion_field.ngal, True)
        r.gamma1[:] = 1.0
        r.flexion2[:] = 1.0
        delta = flexion_field.adjoint_operator(r)
        planes = delta.reshape(2, 20, 20)
        assert planes[0, 0, 0] == 0
        assert planes[1, 0, 0] == 0

    def test_rejects_wrong_layout(self, field):
        with pytest.raises(ValueError):
            field.forward_operator(np.zeros(10, dtype=np.complex128))
        with pytest.raises(ValueError):
            field.forward_operator(np.zeros(400))

    def test_operator_is_hermitian(self, field):
        B = dense_operator(field)
        np.testing.assert_allclose(B, B.conj().T, atol=1e-8 * np.abs(B).max())


class TestCombination:
    """Signal combination of convergence and flexion."""

    def test_round_trip_with_flexion(self, flexion_field):
        rng = np.random.default_rng(0)
        combined = rng.standard_normal(400) + 1j * rng.standard_normal(400)
        combined[0] = 0
        delta = flexion_field.combine_components_inverse(combined)
        np.testing.assert_allclose(flexion_field.combine_components(delta), combined, atol=1e-10)

    def test_without_flexion_is_copy(self, field):
        rng = np.random.default_rng(1)
        delta = rng.standard_normal(400) + 1j * rng.standard_normal(400)
        combined = field.combine_components(delta)
        assert combined[0] == 0
        np.testing.assert_array_equal(combined[1:], delta[1:])
        np.testing.assert_array_equal(field.combine_components_inverse(combined), combined)


class TestSolverHooks:
    """Gradient, noise, spectral norm and covariance update."""

    def test_zero_gradient_for_zero_data(self, single_plane_config, make_positions):
        ra, dec = make_positions(1000)
        catalog = Catalog.at_redshift(ra, dec, np.zeros(1000), np.zeros(1000), 1.0)
        with Field(single_plane_config, catalog) as f:
            delta = f.new_spectral_field()
            f.gradient(delta)
            np.testing.assert_array_equal(delta, 0)

    def test_gradient_at_zero_is_adjoint_of_data(self, field):
        delta = field.gradient(field.new_spectral_field())
        r = ResidualBuffers.allocate(field.ngal, False)
        r.gamma1[:] = field.shear_weight * field.gamma1
        r.gamma2[:] = field.shear_weight * field.gamma2
        np.testing.assert_allclose(delta, field.adjoint_operator(r), atol=1e-12)

    def test_gradient_noise_reproducible(self, single_plane_config, shear_catalog):
        results = []
        for _ in range(2):
            with Field(single_plane_config, shear_catalog) as f:
                results.append(f.gradient_noise(f.new_spectral_field()))
        np.testing.assert_array_equal(results[0], results[1])
        assert np.any(results[0] != 0)

    def test_gradient_noise_rotates_measurements(self, field):
        rng = np.random.default_rng(10)
        field.cov[:] = rng.uniform(1.0, 2.0, field.ngal)
        field.shear_weight[:] = rng.uniform(0.5, 1.5, field.ngal)
        stream = copy.deepcopy(field.rng)

        delta = field.gradient_noise(field.new_spectral_field())
        r = field.residuals.copy()

        theta = stream.uniform(0.0, 2.0 * np.pi, field.ngal)
        data = field.gamma1 + 1j * field.gamma2
        scale = np.sqrt(field.cov) * field.shear_weight
        np.testing.assert_allclose(np.abs(r.shear()), scale * np.abs(data), rtol=1e-12)
        np.testing.assert_allclose(r.shear(), scale * data * np.exp(1j * theta), atol=1e-14)
        # Every galaxy is rotated away from its observed orientation
        turned = np.angle(r.shear() / data)
        assert np.all(np.abs(turned) > 1e-8)
        np.testing.assert_allclose(delta, field.adjoint_operator(r, preconditioned=False), atol=1e-12)

    def test_gradient_noise_rotates_flexion(self, flexion_field):
        f = flexion_field
        rng = np.random.default_rng(11)
        f.cov[:] = rng.uniform(1.0, 2.0, f.ngal)
        stream = copy.deepcopy(f.rng)

        f.gradient_noise(f.new_spectral_field())
        r = f.residuals

        theta1 = stream.uniform(0.0, 2.0 * np.pi, f.ngal)
        theta2 = stream.uniform(0.0, 2.0 * np.pi, f.ngal)
        shear = f.gamma1 + 1j * f.gamma2
        flexion = f.flexion1 + 1j * f.flexion2
        np.testing.assert_allclose(np.abs(r.flexion()), np.sqrt(f.cov) * f.flexion_weight * np.abs(flexion))
        np.testing.assert_allclose(
            r.flexion(), np.sqrt(f.cov) * f.flexion_weight * flexion * np.exp(1j * theta2), atol=1e-14
        )
        np.testing.assert_allclose(r.shear(), np.sqrt(f.cov) * shear * np.exp(1j * theta1), atol=1e-14)
        assert np.all(np.abs(np.angle(r.flexion() / flexion)) > 1e-8)

    def test_spectral_norm_monotone(self, field):
        estimates = list(field._power_iteration(max_iterations=30, tolerance=1e-12))
        assert len(estimates) >= 2
        assert np.all(np.diff(estimates) >= -1e-8 * estimates[-1])

    def test_spectral_norm_matches_dense(self, field):
        largest = np.linalg.eigvalsh(dense_operator(field)).max()
        norm = field.get_spectral_norm(max_iterations=1000, tolerance=1e-9)
        assert norm == pytest.approx(largest, rel=1e-2)

    def test_spectral_norm_iteration_cap(self, field, caplog):
        with caplog.at_level(logging.WARNING):
            field.get_spectral_norm(max_iterations=2, tolerance=1e-15)
        assert "maximum number of iterations" in caplog.text

    def test_update_covariance(self, field):
        field.update_covariance(field.new_spectral_field())
        np.testing.assert_array_equal(field.cov, 1.0)

        rng = np.random.default_rng(3)
        delta = field.maps_to_spectral(100.0 * rng.standard_normal((20, 20)))
        field.update_covariance(delta)
        assert np.all(field.cov >= 0)
        assert field.cov.max() == pytest.approx(1.0 / MIN_REDUCED_SHEAR_FACTOR**2)

    def test_point_mass_recovery(self, single_plane_config, make_positions):
        ra, dec = make_positions(1000, seed=5)
        blank = Catalog.at_redshift(
            ra, dec, np.zeros(ra.size), np.zeros(ra.size), 1.0,
            center_ra=0.0, center_dec=0.0, size=np.radians(1.0),
        )
        truth = np.zeros((20, 20))
        truth[13, 7] = 1.0
        with Field(single_plane_config, blank) as f:
            shear = f.forward_operator(f.maps_to_spectral(truth))
            g1, g2 = shear.gamma1.copy(), shear.gamma2.copy()

            # Without data the gradient pulls the overdensity back down
            gradient = f.gradient(f.maps_to_spectral(truth))
            pulled = -np.asarray(f.spectral_to_maps(gradient).plane(0))
            i, j = np.unravel_index(np.argmax(pulled), pulled.shape)
            assert abs(i - 13) <= 1 and abs(j - 7) <= 1

        catalog = Catalog.at_redshift(
            ra, dec, g1, g2, 1.0, center_ra=0.0, center_dec=0.0, size=np.radians(1.0)
        )
        with Field(single_plane_config, catalog) as f:
            gradient = f.gradient(f.new_spectral_field())
            i, j = f.spectral_to_maps(gradient).peak_position()
        assert abs(i - 13) <= 1 and abs(j - 7) <= 1


class TestMaps:
    """Pixel-space helpers and diagnostics."""

    def test_map_round_trip(self, flexion_field):
        rng = np.random.default_rng(4)
        maps = rng.standard_normal((20, 20))
        maps -= maps.mean()
        delta = flexion_field.maps_to_spectral(maps)
        recovered = flexion_field.spectral_to_maps(delta)
        assert recovered.n_planes == 1
        np.testing.assert_allclose(np.asarray(recovered.plane(0)), maps, atol=1e-10)

    def test_pixel_coordinates(self, field):
        ra, dec = field.pixel_coordinates()
        assert ra.shape == (20, 20)
        assert ra[10, 10] == pytest.approx(0.0, abs=1e-12)
        assert dec[10, 10] == pytest.approx(0.0, abs=1e-12)
        assert ra[11, 10] > ra[10, 10]
        assert dec[10, 11] > dec[10, 10]
        assert ra[11, 10] == pytest.approx(0.05, rel=1e-3)

    def test_write_diagnostics(self, field, tmp_path):
        files = field.write_diagnostics(str(tmp_path / "run_"))
        assert len(files) == 5
        np.testing.assert_array_equal(load_array_from_fits(str(tmp_path / "run_P.fits")), [[1.0]])
        kernel = load_array_from_fits(str(tmp_path / "run_lensKernelTrue.fits"))
        np.testing.assert_allclose(kernel, field.lens_kernel_true)


@pytest.fixture(scope="module")
def tomographic_field(make_positions):
    """Two lens planes, galaxies at z = 0.8 and z = 1.5."""
    ra, dec = make_positions(400, seed=7)
    rng = np.random.default_rng(8)
    redshifts = rng.choice([0.8, 1.5], ra.size)
    catalog = Catalog(
        ra, dec,
        0.05 * rng.standard_normal(ra.size),
        0.05 * rng.standard_normal(ra.size),
        [SpectroscopicRedshift(z) for z in redshifts],
        center_ra=0.0, center_dec=0.0, size=np.radians(1.0),
    )
    config = FieldConfig(
        pixel_size=3.0, units="arcmin", nlp=2, zlp_min=0.0, zlp_max=1.0, seed=0, nthreads=2
    )
    with Field(config, catalog) as f:
        yield f


class TestTomography:
    """Several lens planes."""

    def test_plane_edges(self, tomographic_field):
        np.testing.assert_allclose(tomographic_field.zlp_low, [0.0, 0.5])
        np.testing.assert_allclose(tomographic_field.zlp_up, [0.5, 1.0])

    def test_preconditioned_kernel(self, tomographic_field):
        f = tomographic_field
        assert f.P.shape == (2, 2)
        np.testing.assert_allclose(f.lens_kernel, f.lens_kernel_true @ f.P)
        np.testing.assert_allclose(f.P @ f.iP, np.eye(2), atol=1e-10)
        assert np.all(f.lens_kernel_true >= 0)

    def test_check_adjoint(self, tomographic_field):
        assert tomographic_field.check_adjoint()
        assert tomographic_field.n_coefficients == 800

    def test_physical_maps(self, tomographic_field):
        f = tomographic_field
        rng = np.random.default_rng(9)
        maps = rng.standard_normal((2, 20, 20))
        maps -= maps.mean(axis=(1, 2), keepdims=True)
        delta = f.maps_to_spectral(maps)
        np.testing.assert_allclose(np.asarray(f.spectral_to_maps(delta).convergence_map), maps, atol=1e-10)
        raw = f.spectral_to_maps(delta, precondition=False)
        np.testing.assert_allclose(
            np.asarray(raw.convergence_map), np.einsum("zy,yij->zij", f.iP, maps), atol=1e-10
        )


def direct_adjoint(plan, values):
    """Exact (slow) type 1 transform of node values onto the modes of a plan."""
    n1, n2 = plan.n_modes
    k1 = np.fft.fftfreq(n1) * n1
    k2 = np.fft.fftfreq(n2) * n2
    phase1 = np.exp(2j * np.pi * np.outer(plan.x, k1))
    phase2 = np.exp(2j * np.pi * np.outer(plan.y, k2))
    return np.einsum("ja,jb,j->ab", phase1, phase2, values)


def convergence_at_galaxies(field, delta, kernel):
    """Kernel-weighted convergence of the combined field, evaluated by direct sums."""
    combined = field.combine_components(delta).reshape(field.nlp, field.npix, field.npix)
    values = np.stack([plan.direct_forward(combined[z]) for z, plan in enumerate(field.plans)])
    return field.fft_factor * np.einsum("gz,zg->g", kernel, values).real


class TestPhysicalKernel:
    """Convergence, noise and covariance paths use the unpreconditioned kernel."""

    @pytest.fixture
    def delta(self, tomographic_field):
        rng = np.random.default_rng(12)
        n = tomographic_field.n_coefficients
        return 0.5 * (rng.standard_normal(n) + 1j * rng.standard_normal(n))

    def test_kernels_differ(self, tomographic_field):
        f = tomographic_field
        assert not np.allclose(f.lens_kernel, f.lens_kernel_true)

    def test_forward_convergence(self, tomographic_field, delta):
        f = tomographic_field
        out = ResidualBuffers.allocate(f.ngal, f.include_flexion)
        f.forward_operator(delta, out=out)
        expected = convergence_at_galaxies(f, delta, f.lens_kernel_true)
        np.testing.assert_allclose(out.convergence, expected, atol=1e-9 * np.abs(expected).max())
        assert not np.allclose(out.convergence, convergence_at_galaxies(f, delta, f.lens_kernel))

    def test_unpreconditioned_adjoint(self, tomographic_field):
        f = tomographic_field
        rng = np.random.default_rng(13)
        r = ResidualBuffers.allocate(f.ngal, f.include_flexion)
        r.gamma1[:] = rng.standard_normal(f.ngal)
        r.gamma2[:] = rng.standard_normal(f.ngal)

        planes = f.adjoint_operator(r, preconditioned=False).reshape(f.nlp, f.npix, f.npix)
        multiplier = np.conj(f._shear_multiplier)
        for z, plan in enumerate(f.plans):
            expected = direct_adjoint(plan, r.shear() * f.lens_kernel_true[:, z]) * multiplier
            expected[0, 0] = 0
            np.testing.assert_allclose(planes[z], expected, atol=1e-9 * np.abs(expected).max())

        # The preconditioned adjoint mixes the physical planes through P
        preconditioned = f.adjoint_operator(r).reshape(f.nlp, f.npix, f.npix)
        np.testing.assert_allclose(
            preconditioned, np.einsum("yz,yij->zij", f.P, planes), atol=1e-9 * np.abs(planes).max()
        )
        assert not np.allclose(preconditioned, planes)

    def test_update_covariance(self, tomographic_field, delta):
        f = tomographic_field
        try:
            f.update_covariance(delta)
            kappa = convergence_at_galaxies(f, delta, f.lens_kernel_true)
            np.testing.assert_allclose(f.residuals.convergence, kappa, atol=1e-9 * np.abs(kappa).max())
            expected = 1.0 / np.maximum(1.0 - kappa, MIN_REDUCED_SHEAR_FACTOR) ** 2
            np.testing.assert_allclose(f.cov, expected, rtol=1e-9)
            assert not np.allclose(kappa, convergence_at_galaxies(f, delta, f.lens_kernel))
        finally:
            f.cov[:] = 1.0
