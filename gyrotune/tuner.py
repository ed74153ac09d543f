"""Critical-parameter estimation and Ziegler-Nichols PID synthesis.

Each axis' stick command is compared with the gyro response; the error
oscillation gives an ultimate gain (Ku) and period (Tu) which a tabulated
Ziegler-Nichols rule turns into bounded P/I/D values.
"""
from __future__ import annotations

import logging
import math
from dataclasses import replace
from typing import Optional

import numpy as np

from .errors import InsufficientSamples, InvalidControllerType
from .rounding import round_half_up
from .models import (
    CriticalParameters,
    DroneProfile,
    GainLimits,
    PIDRecommendation,
    PIDTuneResult,
    Trace,
)

logger = logging.getLogger(__name__)


# ── Constants ────────────────────────────────────────────────────────────────

# controller type -> (Kp, Ki, Kd) multipliers
ZN_COEFFICIENTS = {
    "P": (0.5, 0.0, 0.0),
    "PI": (0.45, 0.54, 0.0),
    "PD": (0.8, 0.0, 0.1),
    "PID": (0.6, 1.2, 0.075),
    # softened for multirotors
    "PIDQuad": (0.45, 0.9, 0.06),
}

_MIN_SAMPLES = 10
_PEAK_THRESHOLD_RATIO = 0.05    # of the error series' range

_DEFAULT_CRITICAL = CriticalParameters(ku=60, tu=0.25, confidence="low")
_CLAMP_KU = (30, 120)
_CLAMP_TU = (0.05, 0.5)         # seconds

# Safety clamp ranges per axis
_ROLL_PITCH_LIMITS = GainLimits(p=(20, 80), i=(30, 120), d=(10, 50))
_YAW_LIMITS = GainLimits(p=(20, 100), i=(40, 120), d=(0, 20))

_AXIS_POLICY = {
    "roll": ("PIDQuad", _ROLL_PITCH_LIMITS),
    "pitch": ("PIDQuad", _ROLL_PITCH_LIMITS),
    # yaw needs little or no D
    "yaw": ("PI", _YAW_LIMITS),
}

# axis -> (rc key, gyro key)
_AXIS_CHANNELS = {
    "roll": ("roll", "x"),
    "pitch": ("pitch", "y"),
    "yaw": ("yaw", "z"),
}

_FALLBACK_GAINS = {
    "roll": (40, 80, 25),
    "pitch": (40, 80, 25),
    "yaw": (50, 80, 0),
}

_CONFIDENCE_NOTES = {
    "low": "Low confidence in the PID recommendations. Use them as a starting point and tune gradually.",
    "medium": "Medium confidence in the PID recommendations. Some fine tuning may be needed.",
    "high": "High confidence in the PID recommendations. Values should be close to optimal.",
}

# Drone-profile scaling, relative to a 5" 4S freestyle quad
_VOLTAGE_SCALE = {3: 1.15, 4: 1.0, 5: 0.85, 6: 0.70}
_PROP_SIZE_FACTOR = {2: 0.75, 3: 0.85, 4: 0.92, 5: 1.0, 6: 1.10, 7: 1.20}
_STYLE_SCALE = {
    "freestyle": 1.0,
    "race": 1.15,
    "cinematic": 0.80,
    "long_range": 0.75,
}


# ── Helpers ──────────────────────────────────────────────────────────────────

def _clamp(value: float, lo: float, hi: float) -> float:
    """Clamp value to [lo, hi]."""
    return max(lo, min(hi, value))


def _as_series(data) -> np.ndarray:
    if data is None:
        return np.zeros(0)
    return np.asarray(data, dtype=np.float64).ravel()


def find_error_peaks(error: np.ndarray) -> np.ndarray:
    """Indices of strict interior local maxima above 5 % of the value range."""
    if len(error) < 3:
        return np.zeros(0, dtype=int)
    threshold = (np.max(error) - np.min(error)) * _PEAK_THRESHOLD_RATIO
    centre = error[1:-1]
    is_peak = (
        (centre > error[:-2])
        & (centre > error[2:])
        & (np.abs(centre) > threshold)
    )
    return np.nonzero(is_peak)[0] + 1


def _interpolate_prop_scale(prop_size: float) -> float:
    """PID scale for a prop size (inverse of the physical size factor).

    Physical factor: 2"->0.75, 3"->0.85, ..., 7"->1.20, so smaller props
    get higher gains.
    """
    sizes = sorted(_PROP_SIZE_FACTOR)
    prop = _clamp(prop_size, sizes[0], sizes[-1])
    for lo, hi in zip(sizes, sizes[1:]):
        if lo <= prop <= hi:
            t = (prop - lo) / (hi - lo)
            phys = _PROP_SIZE_FACTOR[lo] + t * (_PROP_SIZE_FACTOR[hi] - _PROP_SIZE_FACTOR[lo])
            return 1.0 / phys
    return 1.0


def _get_voltage_scale(cell_count: int) -> float:
    """Voltage scale, linearly interpolated for non-standard cell counts."""
    if cell_count in _VOLTAGE_SCALE:
        return _VOLTAGE_SCALE[cell_count]
    cells = sorted(_VOLTAGE_SCALE)
    clamped = _clamp(cell_count, cells[0], cells[-1])
    for lo, hi in zip(cells, cells[1:]):
        if lo <= clamped <= hi:
            t = (clamped - lo) / (hi - lo)
            return _VOLTAGE_SCALE[lo] + t * (_VOLTAGE_SCALE[hi] - _VOLTAGE_SCALE[lo])
    return 1.0


def _get_style_scale(style: str) -> float:
    return _STYLE_SCALE.get((style or "").lower(), 1.0)


def _pid_command(axis: str, p: int, i: int, d: int) -> str:
    return f"set p_{axis} = {p}\nset i_{axis} = {i}\nset d_{axis} = {d}"


def _recommendation(axis: str, p: float, i: float, d: float, bounds: GainLimits,
                    confidence_note: str, description: str) -> PIDRecommendation:
    p = int(_clamp(round_half_up(p), *bounds.p))
    i = int(_clamp(round_half_up(i), *bounds.i))
    d = int(_clamp(round_half_up(d), *bounds.d))
    return PIDRecommendation(
        axis=axis,
        p=p,
        i=i,
        d=d,
        bounds=bounds,
        confidence_note=confidence_note,
        title=f"{axis.capitalize()} PID",
        description=description,
        command=_pid_command(axis, p, i, d),
    )


# ── Public API ───────────────────────────────────────────────────────────────

def estimate_critical_parameters(command, response, sample_rate: float,
                                 trace: Optional[Trace] = None) -> CriticalParameters:
    """Estimate Ku and Tu from the command-minus-response error series.

    Parameters
    ----------
    command : 1-D array
        Stick command for the axis.
    response : 1-D array
        Gyro response for the same axis.
    sample_rate : float
        Sampling frequency in Hz.

    Returns
    -------
    CriticalParameters
        ``(60, 0.25, "low")`` when fewer than two error peaks are found.
        Otherwise Ku in [30, 120] (integer) and Tu in [0.05, 0.5] s
        (rounded to ms).

    Raises
    ------
    InsufficientSamples
        Either series has fewer than 10 samples.
    ValueError
        Non-finite samples or a non-positive sample rate.
    """
    cmd = _as_series(command)
    resp = _as_series(response)
    if len(cmd) < _MIN_SAMPLES or len(resp) < _MIN_SAMPLES:
        raise InsufficientSamples(
            f"need at least {_MIN_SAMPLES} samples, got {len(cmd)} command / {len(resp)} response"
        )
    if not (sample_rate > 0 and math.isfinite(sample_rate)):
        raise ValueError(f"invalid sample rate {sample_rate!r}")

    n = min(len(cmd), len(resp))
    error = cmd[:n] - resp[:n]
    if not np.all(np.isfinite(error)):
        raise ValueError("command/response series contain non-finite values")

    peaks = find_error_peaks(error)
    if len(peaks) < 2:
        if trace is not None:
            trace.record("critical_parameters", peaks=len(peaks), default=True)
        return _DEFAULT_CRITICAL

    avg_period = float(np.mean(np.diff(peaks))) / sample_rate
    avg_amplitude = float(np.mean(np.abs(error[peaks])))

    ku = round_half_up(_clamp(100.0 / (avg_amplitude + 0.1), *_CLAMP_KU))
    tu = round_half_up(_clamp(avg_period, *_CLAMP_TU) * 1000) / 1000

    if len(peaks) > 5 and avg_amplitude > 1:
        confidence = "high"
    elif len(peaks) < 3 or avg_amplitude < 0.5:
        confidence = "low"
    else:
        confidence = "medium"

    if trace is not None:
        trace.record(
            "critical_parameters",
            peaks=len(peaks),
            avg_amplitude=avg_amplitude,
            avg_period=avg_period,
            ku=ku,
            tu=tu,
            confidence=confidence,
        )
    return CriticalParameters(ku=ku, tu=tu, confidence=confidence)


def calculate_gains(ku: float, tu: float, controller_type: str = "PIDQuad") -> tuple:
    """Raw Ziegler-Nichols ``(P, I, D)`` integers for a controller type.

    Raises InvalidControllerType for unknown tags and ValueError for
    non-positive or non-finite Ku/Tu.
    """
    if controller_type not in ZN_COEFFICIENTS:
        raise InvalidControllerType(f"unknown controller type {controller_type!r}")
    if not (math.isfinite(ku) and math.isfinite(tu)) or ku <= 0 or tu <= 0:
        raise ValueError(f"Ku and Tu must be positive, got Ku={ku!r}, Tu={tu!r}")

    kp, ki, kd = ZN_COEFFICIENTS[controller_type]
    return round_half_up(kp * ku), round_half_up(ki * ku / tu), round_half_up(kd * ku * tu)


def synthesize_axis(axis: str, critical: CriticalParameters,
                    confidence_note: str = "") -> PIDRecommendation:
    """Bounded PID recommendation for one axis from its critical parameters."""
    controller, bounds = _AXIS_POLICY[axis]
    p, i, d = calculate_gains(critical.ku, critical.tu, controller)
    return _recommendation(
        axis, p, i, d, bounds,
        confidence_note=confidence_note,
        description=(
            f"{controller} rule from Ku={critical.ku:g}, Tu={critical.tu:g}s "
            f"({critical.confidence} confidence)"
        ),
    )


def overall_confidence(roll: CriticalParameters, pitch: CriticalParameters) -> str:
    if roll.confidence == "low" or pitch.confidence == "low":
        return "low"
    if roll.confidence == "high" and pitch.confidence == "high":
        return "high"
    return "medium"


def fallback_recommendations(reason: str = "") -> PIDTuneResult:
    """Fixed safe gains used when estimation fails."""
    note = "Typical PID values used because the flight data could not be analysed."
    if reason:
        note = f"{note} ({reason})"
    recs = {}
    for axis, (p, i, d) in _FALLBACK_GAINS.items():
        _, bounds = _AXIS_POLICY[axis]
        recs[axis] = _recommendation(
            axis, p, i, d, bounds,
            confidence_note=_CONFIDENCE_NOTES["low"],
            description="Fallback gains",
        )
    return PIDTuneResult(
        roll=recs["roll"],
        pitch=recs["pitch"],
        yaw=recs["yaw"],
        critical={},
        confidence="low",
        notes=[note],
        degraded=True,
    )


def generate_pid_recommendations(gyro: dict, rc: dict, sample_rate: float = 1000,
                                 trace: Optional[Trace] = None) -> PIDTuneResult:
    """PID recommendations for roll, pitch and yaw.

    ``gyro`` maps ``x``/``y``/``z`` and ``rc`` maps ``roll``/``pitch``/``yaw``
    to 1-D series.  Roll is tuned from rc roll vs gyro x, pitch from rc
    pitch vs gyro y and yaw from rc yaw vs gyro z.

    Missing or short channels and non-finite data never raise: the fixed
    fallback gains are returned with ``degraded=True``.
    """
    try:
        critical = {}
        for axis, (rc_key, gyro_key) in _AXIS_CHANNELS.items():
            critical[axis] = estimate_critical_parameters(
                rc.get(rc_key), gyro.get(gyro_key), sample_rate, trace=trace
            )

        confidence = overall_confidence(critical["roll"], critical["pitch"])
        note = _CONFIDENCE_NOTES[confidence]
        recs = {
            axis: synthesize_axis(axis, params, confidence_note=note)
            for axis, params in critical.items()
        }
    except (ValueError, ArithmeticError) as exc:
        logger.warning("PID estimation failed, using fallback gains: %s", exc)
        if trace is not None:
            trace.record("pid_fallback", reason=str(exc))
        return fallback_recommendations(str(exc))

    roll, pitch = critical["roll"], critical["pitch"]
    notes = [
        note,
        (
            f"Based on critical parameters: Roll (Ku={roll.ku:g}, Tu={roll.tu:g}s), "
            f"Pitch (Ku={pitch.ku:g}, Tu={pitch.tu:g}s)"
        ),
    ]
    return PIDTuneResult(
        roll=recs["roll"],
        pitch=recs["pitch"],
        yaw=recs["yaw"],
        critical=critical,
        confidence=confidence,
        notes=notes,
    )


def apply_drone_profile(result: PIDTuneResult, profile: DroneProfile) -> PIDTuneResult:
    """Scale a tuning result for the airframe, then re-apply the clamps.

    P and I scale by voltage x prop size x style; D uses the square root
    of the prop factor because inertia already helps damping.  Never
    applied implicitly.
    """
    v_scale = _get_voltage_scale(profile.cell_count)
    prop_scale = _interpolate_prop_scale(profile.prop_size)
    style_scale = _get_style_scale(profile.flying_style)
    combined = v_scale * style_scale
    d_scale = combined * math.sqrt(prop_scale)

    scaled = {}
    for rec in result.axes():
        scaled[rec.axis] = _recommendation(
            rec.axis,
            rec.p * combined * prop_scale,
            rec.i * combined * prop_scale,
            rec.d * d_scale,
            rec.bounds,
            confidence_note=rec.confidence_note,
            description=f"{rec.description}; scaled for {profile.cell_count}S "
                        f"{profile.prop_size:g}\" {profile.flying_style}",
        )

    notes = list(result.notes)
    notes.append(
        f"Gains scaled for a {profile.cell_count}S {profile.prop_size:g}\" "
        f"{profile.flying_style} drone"
    )
    return replace(
        result,
        roll=scaled["roll"],
        pitch=scaled["pitch"],
        yaw=scaled["yaw"],
        notes=notes,
    )
