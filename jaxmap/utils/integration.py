"""
Adaptive quadrature with a deterministic fallback.
"""

import logging
from typing import Callable, Tuple

import numpy as np
from scipy.integrate import quad, trapezoid

logger = logging.getLogger(__name__)


def trapezoid_integral(func: Callable, a: float, b: float, n_intervals: int = 1024) -> float:
    """
    Trapezoidal rule on ``n_intervals`` equal subintervals.

    ``func`` must accept numpy arrays.
    """
    x = np.linspace(a, b, int(n_intervals) + 1)
    return float(trapezoid(func(x), x))


def integrate(
    func: Callable,
    a: float,
    b: float,
    epsrel: float,
    limit: int,
    fallback_intervals: int = 1024,
) -> Tuple[float, bool]:
    """
    Integrate ``func`` between ``a`` and ``b``.

    Uses QUADPACK adaptive quadrature (relative tolerance only). When it
    reports a failure to converge, the integral is recomputed with the
    trapezoidal rule, which requires ``func`` to accept numpy arrays.

    Args:
        func: Integrand
        a, b: Integration bounds
        epsrel: Requested relative accuracy
        limit: Maximum number of subintervals
        fallback_intervals: Number of subintervals of the trapezoidal fallback

    Returns:
        Tuple of (integral, converged)
    """
    if b <= a:
        return 0.0, True
    out = quad(func, a, b, epsabs=0.0, epsrel=epsrel, limit=int(limit), full_output=1)
    # quad appends a message to its output when ier > 0
    if len(out) == 3:
        return float(out[0]), True
    logger.debug("Adaptive integration on [%g, %g] did not converge: %s", a, b, out[3])
    return trapezoid_integral(func, a, b, fallback_intervals), False
