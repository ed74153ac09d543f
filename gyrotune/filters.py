"""Filter recommender: gyro/D-term low-pass, dynamic notch and extras.

Takes the dominant frequencies of one gyro axis, a 0-100 noise level and a
firmware capability profile, and produces bounded filter settings as
Betaflight CLI commands.
"""
from __future__ import annotations

import logging
import math
from typing import Optional

from .models import (
    DominantFrequency,
    DroneProfile,
    DynamicRange,
    FilterRecommendation,
    FilterRecommendationSet,
    FirmwareCapabilityProfile,
    SupplementaryFilter,
)
from .rounding import round_half_up

logger = logging.getLogger(__name__)


# ── Constants ────────────────────────────────────────────────────────────────

# Per-target low-pass policy
_GYRO_LPF = {
    "prefix": "gyro",
    "peak_floor": 50,           # ignore peaks at or below this (Hz)
    "ratio": 0.7,               # cutoff = peak * ratio
    "clamp": (80, 200),
    "no_peak_cutoffs": (90, 120, 150),   # noise > 50, > 25, otherwise
    "biquad_noise": 50,
    "dynamic_noise": 20,
    "dynamic_scale": (0.7, 1.5),
    "dynamic_clamp": (80, 500),
}

_DTERM_LPF = {
    "prefix": "dterm",
    "peak_floor": 40,
    "ratio": 0.6,
    "clamp": (60, 150),
    "no_peak_cutoffs": (70, 100, 120),
    "biquad_noise": 40,
    "dynamic_noise": 30,
    "dynamic_scale": (0.7, 1.3),
    "dynamic_clamp": (60, 250),
}

_NO_PEAK_HIGH_NOISE = 50
_NO_PEAK_MID_NOISE = 25

_NOTCH_MIN_NOISE = 20
_NOTCH_HIGH_NOISE = 60
_NOTCH_CLAMP = (80, 500)            # improved mode
_NOTCH_LEGACY_CLAMP = (80, 1000)
_NOTCH_MIN_SPAN = 20                # Hz, keeps min < max
_NOTCH_LEGACY_MIN_WIDTH = 20
_NOTCH_LEGACY_WIDTH_RATIO = 0.15

_SEVERE_BAND = 7
_SEVERE_LOW_BAND = 8
_VERY_HIGH_NOISE = 70
_DTERM_LPF2_RATIO = 0.7
_HEAVY_DRONE_G = 500

_RPM_FILTER_COMMAND = (
    "set dshot_bidir = ON\n"
    "set motor_pwm_protocol = DSHOT600\n"
    "set rpm_filter_harmonics = 3\n"
    "set dyn_notch_enable = OFF"
)


# ── Helpers ──────────────────────────────────────────────────────────────────

def _clamp(value: float, lo: float, hi: float) -> float:
    """Clamp value to [lo, hi]."""
    return max(lo, min(hi, value))


def normalize_noise_level(noise_level) -> float:
    """Caller noise level clamped to [0, 100]; None and NaN read as 0."""
    if noise_level is None:
        return 0.0
    try:
        level = float(noise_level)
    except TypeError as exc:
        raise ValueError(f"noise level must be a number, got {noise_level!r}") from exc
    if not math.isfinite(level):
        return 0.0
    return _clamp(level, 0.0, 100.0)


def _lowest_peak_above(dominant: list, floor: float) -> Optional[DominantFrequency]:
    candidates = [d for d in dominant if d.frequency > floor]
    if not candidates:
        return None
    return min(candidates, key=lambda d: d.frequency)


def _enforce_span(lo: int, hi: int, bounds: tuple) -> tuple:
    """Widen [lo, hi] to at least the minimum span inside ``bounds``."""
    if hi - lo >= _NOTCH_MIN_SPAN:
        return lo, hi
    if lo + _NOTCH_MIN_SPAN <= bounds[1]:
        return lo, lo + _NOTCH_MIN_SPAN
    return hi - _NOTCH_MIN_SPAN, hi


def _lowpass_command(prefix: str, filter_type: str, cutoff: int,
                     dynamic: Optional[DynamicRange]) -> str:
    if dynamic is not None:
        return (
            f"set {prefix}_lowpass_type = {filter_type}\n"
            f"set {prefix}_lowpass_hz = 0\n"
            f"set dyn_lpf_{prefix}_min_hz = {dynamic.min_hz}\n"
            f"set dyn_lpf_{prefix}_max_hz = {dynamic.max_hz}"
        )
    return (
        f"set {prefix}_lowpass_type = {filter_type}\n"
        f"set {prefix}_lowpass_hz = {cutoff}"
    )


def _recommend_lowpass(policy: dict, dominant: list, noise_level: float,
                       allow_biquad: bool, allow_dynamic: bool) -> FilterRecommendation:
    filter_type = "PT1"
    peak = _lowest_peak_above(dominant, policy["peak_floor"])

    if peak is None:
        aggressive, moderate, mild = policy["no_peak_cutoffs"]
        if noise_level > _NO_PEAK_HIGH_NOISE:
            cutoff = aggressive
        elif noise_level > _NO_PEAK_MID_NOISE:
            cutoff = moderate
        else:
            cutoff = mild
        reason = f"no resonance above {policy['peak_floor']} Hz, noise level {noise_level:.0f}"
    else:
        cutoff = int(_clamp(round_half_up(peak.frequency * policy["ratio"]), *policy["clamp"]))
        if allow_biquad and noise_level > policy["biquad_noise"]:
            filter_type = "BIQUAD"
        reason = f"first resonance at {peak.frequency:.1f} Hz"

    dynamic = None
    if allow_dynamic and noise_level > policy["dynamic_noise"]:
        lo_scale, hi_scale = policy["dynamic_scale"]
        lo_bound, hi_bound = policy["dynamic_clamp"]
        dynamic = DynamicRange(
            min_hz=int(max(lo_bound, round_half_up(cutoff * lo_scale))),
            max_hz=int(min(hi_bound, round_half_up(cutoff * hi_scale))),
        )

    label = "Gyro" if policy["prefix"] == "gyro" else "D-term"
    if dynamic is not None:
        description = (
            f"{label} dynamic {filter_type} low-pass "
            f"{dynamic.min_hz}-{dynamic.max_hz} Hz ({reason})"
        )
    else:
        description = f"{label} {filter_type} low-pass at {cutoff} Hz ({reason})"

    return FilterRecommendation(
        enabled=True,
        kind="lowpass-dynamic" if dynamic is not None else "lowpass-static",
        cutoff_or_center=cutoff,
        filter_type=filter_type,
        dynamic_range=dynamic,
        title=f"{label} low-pass filter",
        description=description,
        command=_lowpass_command(policy["prefix"], filter_type, cutoff, dynamic),
    )


# ── Public API ───────────────────────────────────────────────────────────────

def recommend_gyro_lowpass(dominant: list, noise_level: float,
                           profile: FirmwareCapabilityProfile) -> FilterRecommendation:
    """Gyro low-pass from the lowest resonance above 50 Hz."""
    return _recommend_lowpass(
        _GYRO_LPF, dominant, normalize_noise_level(noise_level),
        allow_biquad=True,
        allow_dynamic=profile.supports_dynamic_lowpass,
    )


def recommend_dterm_lowpass(dominant: list, noise_level: float,
                            profile: FirmwareCapabilityProfile) -> FilterRecommendation:
    """D-term low-pass from the lowest resonance above 40 Hz.

    BIQUAD is only used when the firmware supports it for the D-term.
    """
    return _recommend_lowpass(
        _DTERM_LPF, dominant, normalize_noise_level(noise_level),
        allow_biquad=profile.supports_biquad_dterm,
        allow_dynamic=profile.supports_dynamic_lowpass,
    )


def recommend_notch(dominant: list, noise_level: float,
                    profile: FirmwareCapabilityProfile) -> FilterRecommendation:
    """Dynamic notch around the strongest resonance.

    Disabled when noise is below 20 or there is no dominant frequency.
    Firmware with the improved dynamic notch gets a min/max range around
    the peak (0.5x to 2x) and 3 or 5 notches; older firmware gets a
    center/width setting.
    """
    noise_level = normalize_noise_level(noise_level)
    if noise_level < _NOTCH_MIN_NOISE or not dominant:
        return FilterRecommendation(
            enabled=False,
            kind="notch-dynamic",
            title="Dynamic notch filter",
            description="Noise is low or no resonance was found; dynamic notch not needed.",
            command="set dyn_notch_enable = OFF",
        )

    peak = dominant[0]
    q = profile.max_notch_q

    if profile.supports_improved_notch:
        lo_bound, hi_bound = _NOTCH_CLAMP
        min_hz = int(_clamp(round_half_up(peak.frequency * 0.5), lo_bound, hi_bound))
        max_hz = int(_clamp(round_half_up(peak.frequency * 2.0), lo_bound, hi_bound))
        min_hz, max_hz = _enforce_span(min_hz, max_hz, _NOTCH_CLAMP)
        count = 5 if noise_level > _NOTCH_HIGH_NOISE else 3
        return FilterRecommendation(
            enabled=True,
            kind="notch-dynamic",
            cutoff_or_center=round_half_up(peak.frequency),
            q_factor=q,
            min_hz=min_hz,
            max_hz=max_hz,
            width_hz=round_half_up((max_hz - min_hz) / 2),
            notch_count=count,
            title="Dynamic notch filter",
            description=(
                f"{count} dynamic notches tracking {min_hz}-{max_hz} Hz "
                f"around the {peak.frequency:.1f} Hz resonance"
            ),
            command=(
                "set dyn_notch_enable = ON\n"
                f"set dyn_notch_count = {count}\n"
                f"set dyn_notch_q = {q}\n"
                f"set dyn_notch_min_hz = {min_hz}\n"
                f"set dyn_notch_max_hz = {max_hz}"
            ),
        )

    center = round_half_up(peak.frequency)
    width = max(_NOTCH_LEGACY_MIN_WIDTH, round_half_up(center * _NOTCH_LEGACY_WIDTH_RATIO))
    lo_bound, hi_bound = _NOTCH_LEGACY_CLAMP
    min_hz = int(max(lo_bound, center - width))
    max_hz = int(min(hi_bound, center + 2 * width))
    min_hz, max_hz = _enforce_span(min_hz, max_hz, _NOTCH_LEGACY_CLAMP)
    width_percent = round_half_up(width / center * 100) if center > 0 else 0

    return FilterRecommendation(
        enabled=True,
        kind="notch-dynamic",
        cutoff_or_center=center,
        q_factor=q,
        min_hz=min_hz,
        max_hz=max_hz,
        width_hz=width,
        title="Dynamic notch filter",
        description=f"Dynamic notch centred on {center} Hz, {width} Hz wide",
        command=(
            "set dyn_notch_enable = ON\n"
            f"set dyn_notch_width_percent = {width_percent}\n"
            f"set dyn_notch_q = {q}\n"
            f"set dyn_notch_min_hz = {min_hz}\n"
            f"set dyn_notch_max_hz = {max_hz}"
        ),
    )


def _static_notch(freq: float, ratio: float, title: str, description: str) -> SupplementaryFilter:
    return SupplementaryFilter(
        title=title,
        description=description,
        command=(
            "set gyro_notch1_enable = ON\n"
            f"set gyro_notch1_hz = {round_half_up(freq)}\n"
            f"set gyro_notch1_cutoff = {round_half_up(freq * ratio)}"
        ),
    )


def supplementary_recommendations(noise_bands: list, noise_level: float,
                                  notch: FilterRecommendation,
                                  dterm_lowpass: FilterRecommendation,
                                  drone: Optional[DroneProfile] = None) -> tuple:
    """Source-specific extras for severe noise bands.

    Returns ``(additional_filters, notes)``.
    """
    additional = []
    notes = []

    for band in noise_bands or []:
        if band.severity <= _SEVERE_BAND or band.dominant_peak is None:
            continue
        freq = band.dominant_peak.frequency
        span = f"{band.min_hz:g}-{band.max_hz:g} Hz"

        if band.category == "low":
            if band.severity > _SEVERE_LOW_BAND:
                additional.append(_static_notch(
                    freq, 0.7,
                    title="Static notch for low-frequency noise",
                    description=(
                        f"Extra static notch at the problem frequency {round_half_up(freq)} Hz "
                        f"(related to {band.source})"
                    ),
                ))
                notes.append(
                    f"Significant low-frequency noise ({span}). Check the FC mounting, "
                    "propeller balance and motors."
                )
        elif band.category == "mid":
            if not notch.enabled:
                additional.append(_static_notch(
                    freq, 0.65,
                    title="Static notch for propellers",
                    description=f"Extra notch for the propeller frequency {round_half_up(freq)} Hz",
                ))
            notes.append(
                f"Propeller noise detected ({span}). Check the props; they may need replacing."
            )
        elif band.category == "high":
            additional.append(SupplementaryFilter(
                title="RPM filter",
                description=(
                    "Enable the RPM filter to remove motor noise more effectively; "
                    "the dynamic notch is turned off when RPM filtering is used"
                ),
                command=_RPM_FILTER_COMMAND,
            ))
            notes.append(
                f"Motor/ESC noise detected ({span}). An RPM filter can improve this considerably."
            )

    if noise_level > _VERY_HIGH_NOISE:
        notes.append(
            "Very high noise level! Check for mechanical problems before tuning PIDs."
        )
        cutoff = dterm_lowpass.cutoff_or_center or 0
        additional.append(SupplementaryFilter(
            title="Second D-term filter",
            description="Additional D-term low-pass to keep motors from running hot",
            command=(
                "set dterm_lowpass2_type = PT1\n"
                f"set dterm_lowpass2_hz = {round_half_up(cutoff * _DTERM_LPF2_RATIO)}"
            ),
        ))

    if drone is not None and drone.weight_g and drone.weight_g > _HEAVY_DRONE_G:
        notes.append(
            f"Heavy drone ({drone.weight_g:g} g). A higher I term may improve stability."
        )

    return additional, notes


def default_filters(profile: FirmwareCapabilityProfile, note: str = "",
                    noise_level: float = 0.0) -> FilterRecommendationSet:
    """Profile-default filter set used when a recommendation cannot be computed."""
    gyro = profile.default_gyro_cutoff
    dterm = profile.default_dterm_cutoff
    notes = [note] if note else []
    return FilterRecommendationSet(
        gyro_lowpass=FilterRecommendation(
            enabled=True,
            kind="lowpass-static",
            cutoff_or_center=gyro,
            filter_type="PT1",
            title="Gyro low-pass filter",
            description=f"Firmware default gyro PT1 low-pass at {gyro} Hz",
            command=_lowpass_command("gyro", "PT1", gyro, None),
        ),
        dterm_lowpass=FilterRecommendation(
            enabled=True,
            kind="lowpass-static",
            cutoff_or_center=dterm,
            filter_type="PT1",
            title="D-term low-pass filter",
            description=f"Firmware default D-term PT1 low-pass at {dterm} Hz",
            command=_lowpass_command("dterm", "PT1", dterm, None),
        ),
        notch=FilterRecommendation(
            enabled=False,
            kind="notch-dynamic",
            title="Dynamic notch filter",
            description="Dynamic notch left disabled",
            command="set dyn_notch_enable = OFF",
        ),
        profile=profile,
        notes=notes,
        noise_level=noise_level,
    )


def recommend_filters(
    dominant: list,
    noise_level: float,
    profile: FirmwareCapabilityProfile,
    noise_bands: Optional[list] = None,
    drone: Optional[DroneProfile] = None,
) -> FilterRecommendationSet:
    """Full filter recommendation for one axis.

    Numeric failures never reach the caller: they are logged and replaced
    by the profile defaults with an explanatory note.
    """
    level = 0.0
    try:
        level = normalize_noise_level(noise_level)
        gyro = recommend_gyro_lowpass(dominant, level, profile)
        dterm = recommend_dterm_lowpass(dominant, level, profile)
        notch = recommend_notch(dominant, level, profile)
        additional, notes = supplementary_recommendations(
            noise_bands, level, notch, dterm, drone=drone
        )
    except (ValueError, ArithmeticError) as exc:
        logger.warning("Filter recommendation failed, using firmware defaults: %s", exc)
        return default_filters(
            profile,
            note=f"Filter analysis failed ({exc}); firmware {profile.version} defaults used.",
            noise_level=level,
        )

    return FilterRecommendationSet(
        gyro_lowpass=gyro,
        dterm_lowpass=dterm,
        notch=notch,
        profile=profile,
        additional=additional,
        notes=notes,
        noise_level=level,
    )
