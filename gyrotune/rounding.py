"""Integer rounding shared by the analyzers, filter and PID code."""
import math


def round_half_up(value: float) -> int:
    """Nearest integer with halves rounded up (22.5 -> 23, -2.5 -> -2).

    Raises ValueError for NaN and OverflowError for infinities.
    """
    return int(math.floor(value + 0.5))
