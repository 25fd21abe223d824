"""Shared fixtures for jaxmap tests."""

import numpy as np
import pytest
import jax_cosmo as jc

import jaxmap  # noqa: F401  enables float64 in JAX
from jaxmap import Catalog, CosmologyModel, FieldConfig


@pytest.fixture
def mock_cosmology():
    """Create mock cosmology for testing."""
    return jc.Cosmology(
        Omega_c=0.206,
        Omega_b=0.044,
        h=0.7,
        sigma8=0.8,
        n_s=0.96,
        Omega_k=0.0,
        w0=-1.0,
        wa=0.0
    )


@pytest.fixture
def cosmology_model(mock_cosmology):
    return CosmologyModel(mock_cosmology)


def random_positions(n, size_deg=1.0, seed=0):
    """Uniform positions in a square of ``size_deg`` centred on (0, 0), in radians."""
    rng = np.random.default_rng(seed)
    half = np.radians(size_deg) / 2
    return rng.uniform(-half, half, n), rng.uniform(-half, half, n)


@pytest.fixture(scope="session")
def make_positions():
    """Factory for uniform galaxy positions, see ``random_positions``."""
    return random_positions


@pytest.fixture
def shear_catalog():
    """500 galaxies at z = 1 with random shear."""
    ra, dec = random_positions(500)
    rng = np.random.default_rng(1)
    return Catalog.at_redshift(
        ra, dec,
        0.05 * rng.standard_normal(ra.size),
        0.05 * rng.standard_normal(ra.size),
        1.0,
        center_ra=0.0,
        center_dec=0.0,
        size=np.radians(1.0),
    )


@pytest.fixture
def flexion_catalog():
    """500 galaxies at z = 1 with random shear and flexion."""
    ra, dec = random_positions(500)
    rng = np.random.default_rng(2)
    return Catalog.at_redshift(
        ra, dec,
        0.05 * rng.standard_normal(ra.size),
        0.05 * rng.standard_normal(ra.size),
        1.0,
        flexion1=0.5 * rng.standard_normal(ra.size),
        flexion2=0.5 * rng.standard_normal(ra.size),
        center_ra=0.0,
        center_dec=0.0,
        size=np.radians(1.0),
    )


@pytest.fixture
def single_plane_config():
    """Single lens plane at z = 0.3 with 3 arcmin pixels (20x20 grid on 1 deg)."""
    return FieldConfig(pixel_size=3.0, units="arcmin", zlens=0.3, seed=42, nthreads=2)
