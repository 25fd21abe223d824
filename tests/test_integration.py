"""Tests for quadrature helpers."""

import numpy as np
import pytest

from jaxmap.utils.integration import integrate, trapezoid_integral


def test_trapezoid_integral_covers_whole_interval():
    # Linear integrands are integrated exactly, including the last interval
    assert trapezoid_integral(lambda x: 2.0 * x, 0.0, 3.0, 7) == pytest.approx(9.0)


def test_integrate_converges():
    value, converged = integrate(np.sin, 0.0, np.pi, epsrel=1e-8, limit=100)
    assert converged
    assert value == pytest.approx(2.0, rel=1e-8)


def test_empty_interval():
    assert integrate(np.exp, 1.0, 1.0, epsrel=1e-6, limit=10) == (0.0, True)
    assert integrate(np.exp, 2.0, 1.0, epsrel=1e-6, limit=10) == (0.0, True)


def test_fallback_to_trapezoid():
    # Oscillatory integrand with a single allowed subinterval cannot converge
    func = lambda x: np.sin(200.0 * x) ** 2
    value, converged = integrate(func, 0.0, 1.0, epsrel=1e-12, limit=1)
    assert not converged
    assert value == pytest.approx(trapezoid_integral(func, 0.0, 1.0, 1024))
