"""Tests for the non-uniform FFT plan."""

import numpy as np
import pytest

from jaxmap.planes.nufft import NUFFTPlan


@pytest.fixture
def plan():
    rng = np.random.default_rng(0)
    n_nodes = 200
    p = NUFFTPlan(16, 16, n_nodes)
    p.set_nodes(rng.uniform(-0.5, 0.5, n_nodes), rng.uniform(-0.5, 0.5, n_nodes))
    p.precompute()
    return p


def test_forward_matches_direct_sum(plan):
    rng = np.random.default_rng(1)
    f_hat = rng.standard_normal((16, 16)) + 1j * rng.standard_normal((16, 16))
    plan.f_hat[...] = f_hat
    fast = plan.forward().copy()
    np.testing.assert_allclose(fast, plan.direct_forward(f_hat), rtol=1e-9, atol=1e-9)


def test_adjointness(plan):
    rng = np.random.default_rng(2)
    f_hat = rng.standard_normal((16, 16)) + 1j * rng.standard_normal((16, 16))
    f = rng.standard_normal(plan.n_nodes) + 1j * rng.standard_normal(plan.n_nodes)

    plan.f_hat[...] = f_hat
    forward = plan.forward().copy()
    plan.f[...] = f
    adjoint = plan.adjoint().copy()

    assert np.vdot(forward, f) == pytest.approx(np.vdot(f_hat, adjoint), rel=1e-9)


def test_zero_mode_is_sum(plan):
    plan.f[...] = 1.0
    plan.adjoint()
    assert plan.f_hat[0, 0] == pytest.approx(plan.n_nodes)


def test_check(plan):
    saved = plan.f.copy()
    assert plan.check()
    np.testing.assert_array_equal(plan.f, saved)


def test_check_rejects_out_of_range_nodes():
    p = NUFFTPlan(8, 8, 3)
    assert not p.check()
    p.set_nodes([0.0, 0.1, 0.5], [0.0, 0.0, 0.0])
    p.precompute()
    assert not p.check()


def test_invalid_sizes():
    with pytest.raises(ValueError):
        NUFFTPlan(0, 8, 10)
    p = NUFFTPlan(8, 8, 10)
    with pytest.raises(ValueError):
        p.set_nodes(np.zeros(5), np.zeros(5))
    with pytest.raises(RuntimeError):
        p.precompute()
