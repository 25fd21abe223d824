"""Tests for the jax-cosmo distance adapter."""

import numpy as np
import pytest
import jax_cosmo as jc

from jaxmap.core.cosmology import CosmologyModel
from jaxmap.exceptions import CosmologyError


def test_distances_match_jax_cosmo(mock_cosmology, cosmology_model):
    a = np.array([0.3, 0.5, 0.9])
    expected = jc.background.radial_comoving_distance(mock_cosmology, a)
    np.testing.assert_allclose(cosmology_model.w(a), np.asarray(expected), rtol=1e-3)


def test_distance_monotonic(cosmology_model):
    z = np.linspace(0.0, 5.0, 50)
    w = cosmology_model.w_at_redshift(z)
    assert w[0] == pytest.approx(0.0, abs=1e-6)
    assert np.all(np.diff(w) > 0)


def test_dwda_matches_finite_difference(cosmology_model):
    a, da = 0.5, 1e-2
    numerical = (cosmology_model.w(a - da) - cosmology_model.w(a + da)) / (2 * da)
    assert cosmology_model.dwda(a) == pytest.approx(numerical, rel=5e-3)


def test_flat_transverse_distance(cosmology_model):
    chi = np.array([10.0, 1000.0])
    np.testing.assert_array_equal(cosmology_model.f_K(chi), chi)


def test_open_transverse_distance():
    model = CosmologyModel(jc.Cosmology(
        Omega_c=0.2, Omega_b=0.05, h=0.7, sigma8=0.8, n_s=0.96, Omega_k=0.1, w0=-1.0, wa=0.0
    ))
    # sinh grows faster than its argument
    assert model.f_K(3000.0) > 3000.0


def test_scale_factor_range(cosmology_model):
    with pytest.raises(CosmologyError):
        cosmology_model.w(1e-4)
    with pytest.raises(CosmologyError):
        cosmology_model.dwda(1.5)


def test_from_parameters():
    model = CosmologyModel.from_parameters(omega_m=0.3, h=0.7)
    assert model.omega_m == pytest.approx(0.3)
    with pytest.raises(CosmologyError):
        CosmologyModel.from_parameters(omega_m=0.01)
