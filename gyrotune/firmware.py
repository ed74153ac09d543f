"""Firmware capability profiles keyed by Betaflight version bucket."""
from __future__ import annotations

import re
from typing import Optional

from .models import FirmwareCapabilityProfile


# ── Constants ────────────────────────────────────────────────────────────────

# (version_floor, profile), highest floor first
_CAPABILITY_TABLE = [
    ((4, 4), FirmwareCapabilityProfile(
        version="4.4",
        max_notch_q=600,
        default_dterm_cutoff=150,
        default_gyro_cutoff=180,
        supports_dynamic_lowpass=True,
        supports_improved_notch=True,
        supports_biquad_dterm=True,
    )),
    ((4, 3), FirmwareCapabilityProfile(
        version="4.3",
        max_notch_q=500,
        default_dterm_cutoff=150,
        default_gyro_cutoff=150,
        supports_dynamic_lowpass=True,
        supports_improved_notch=False,
        supports_biquad_dterm=True,
    )),
    ((4, 2), FirmwareCapabilityProfile(
        version="4.2",
        max_notch_q=250,
        default_dterm_cutoff=100,
        default_gyro_cutoff=120,
        supports_dynamic_lowpass=False,
        supports_improved_notch=False,
        supports_biquad_dterm=True,
    )),
]

DEFAULT_VERSION = (4, 3)

_VERSION_RE = re.compile(r"(\d+)\.(\d+)")


# ── Public API ───────────────────────────────────────────────────────────────

def parse_version(version: Optional[str]) -> Optional[tuple]:
    """Extract ``(major, minor)`` from a free-form firmware string.

    >>> parse_version("Betaflight 4.4.2 (STM32F7X2)")
    (4, 4)

    Returns None when no ``N.N`` token is present.
    """
    if not version:
        return None
    match = _VERSION_RE.search(str(version))
    if match is None:
        return None
    return int(match.group(1)), int(match.group(2))


def select_profile(version: Optional[str]) -> FirmwareCapabilityProfile:
    """Pick the capability profile for a firmware version string.

    Versions are rounded down to the nearest known bucket.  Versions newer
    than the highest bucket use it; older ones fall back to the lowest.
    Unparseable strings (and None) select the 4.3 profile.
    """
    parsed = parse_version(version)
    if parsed is None:
        parsed = DEFAULT_VERSION

    for floor, profile in _CAPABILITY_TABLE:
        if parsed >= floor:
            return profile
    return _CAPABILITY_TABLE[-1][1]


def known_versions() -> list:
    return [profile.version for _, profile in _CAPABILITY_TABLE]
