"""Exception types raised by GyroTune.

Only structurally invalid input raises.  Noisy or sparse data degrades to
bounded default values, reported through confidence fields and notes.
"""


class GyroTuneError(Exception):
    """Base class for all GyroTune errors."""


class InsufficientSamples(GyroTuneError, ValueError):
    """Too few samples for a meaningful transform or PID estimate."""


class InvalidTransformSize(GyroTuneError, ValueError):
    """Transform size is not a power of two, or the window length does not match."""


class InvalidControllerType(GyroTuneError, LookupError):
    """Unknown Ziegler-Nichols controller type tag."""
