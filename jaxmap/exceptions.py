"""Exceptions raised by jaxmap."""


class ConfigurationError(ValueError):
    """Missing or invalid configuration parameter."""


class DegenerateVarianceError(ValueError):
    """Shear or flexion variance is zero or not finite."""


class NUFFTError(RuntimeError):
    """Non-uniform FFT plan failed its validity check."""


class CosmologyError(RuntimeError):
    """Cosmological distance evaluation returned an invalid result."""
