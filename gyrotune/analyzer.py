"""Full analysis pipeline -- wires all analyzers together.

This is the main entry point for GyroTune.  A reporting layer calls
``run_analysis()`` with a FlightLog and gets back an AnalysisReport holding
the spectra, noise bands, filter and PID recommendations, the ``metrics``
map and the complete CLI command script.
"""
from __future__ import annotations

import logging
from typing import Optional

import numpy as np

from .errors import InsufficientSamples
from .models import (
    AnalysisReport,
    AxisSpectrum,
    DroneProfile,
    FilterRecommendationSet,
    FlightLog,
    PIDTuneResult,
    Trace,
)
from .firmware import select_profile
from .analyzers.spectrum import analyze_axis
from .analyzers.coupling import (
    find_common_frequencies,
    analyze_oscillation_propagation,
    analyze_axis_interactions,
)
from .analyzers.noise import classify_noise_bands, fft_noise_index, estimate_noise_level
from .filters import recommend_filters
from .tuner import generate_pid_recommendations

logger = logging.getLogger(__name__)


_STEP_SPAN = 10                 # samples
_MIN_STEP = 50                  # command units
_RISE_FRACTION = 0.63
_RESPONSE_WINDOW_S = 0.3
_DEFAULT_RESPONSE_S = 0.1
_CLAMP_RESPONSE_S = (0.01, 0.3)
_TOP_PEAKS = 3


# ── Metrics ──────────────────────────────────────────────────────────────────

def _std(values: np.ndarray) -> float:
    return float(np.std(values)) if len(values) else 0.0


def _rms_error(command: np.ndarray, response: np.ndarray) -> float:
    n = min(len(command), len(response))
    if n == 0:
        return 0.0
    diff = command[:n] - response[:n]
    return float(np.sqrt(np.mean(diff * diff)))


def estimate_response_time(command, response, sample_rate: float) -> float:
    """63 % rise time (seconds) after the largest command step.

    The step is the largest change over a 10-sample span; steps smaller
    than 50 units, or a response that does not move, give the 0.1 s
    default.  The result is clamped to [0.01, 0.3] s.
    """
    cmd = np.asarray(command, dtype=np.float64)
    resp = np.asarray(response, dtype=np.float64)
    n = min(len(cmd), len(resp))
    if n <= _STEP_SPAN or sample_rate <= 0:
        return _DEFAULT_RESPONSE_S

    deltas = cmd[_STEP_SPAN:n] - cmd[:n - _STEP_SPAN]
    start = int(np.argmax(np.abs(deltas)))
    if abs(deltas[start]) < _MIN_STEP:
        return _DEFAULT_RESPONSE_S
    # onset = sample right after the sharpest single-sample jump in the span
    start += int(np.argmax(np.abs(np.diff(cmd[start:start + _STEP_SPAN + 1])))) + 1

    end = min(n, start + max(_STEP_SPAN + 1, int(_RESPONSE_WINDOW_S * sample_rate)))
    window = resp[start:end]
    baseline = window[0]
    final = float(np.mean(window[-_STEP_SPAN:]))
    change = final - baseline
    if change == 0 or not np.isfinite(change):
        return _DEFAULT_RESPONSE_S

    progress = (window - baseline) / change
    crossed = np.nonzero(progress >= _RISE_FRACTION)[0]
    if len(crossed) == 0:
        return _CLAMP_RESPONSE_S[1]

    seconds = crossed[0] / sample_rate
    return float(min(_CLAMP_RESPONSE_S[1], max(_CLAMP_RESPONSE_S[0], seconds)))


def compute_metrics(log: FlightLog, axis_spectrum: Optional[AxisSpectrum] = None,
                    noise_index: Optional[int] = None) -> dict:
    """Human-readable metric labels mapped to formatted numbers."""
    metrics = {}
    for axis in log.axes():
        metrics[f"Gyro Noise ({axis.name.capitalize()})"] = f"{_std(axis.gyro):.2f}"
    for axis in log.axes():
        metrics[f"PID Error ({axis.name.capitalize()})"] = (
            f"{_rms_error(axis.rc_command, axis.gyro):.2f}"
        )

    motors = np.asarray(log.motors, dtype=np.float64).ravel()
    metrics["Motor Balance"] = f"{float(np.var(motors)) if len(motors) else 0.0:.2f}"

    response_s = estimate_response_time(log.roll.rc_command, log.roll.gyro, log.sample_rate)
    metrics["Response Time (ms)"] = f"{response_s * 1000:.2f}"

    if axis_spectrum is not None and axis_spectrum.dominant:
        metrics["Dominant Frequency (Hz)"] = f"{axis_spectrum.dominant[0].frequency:.1f}"
        if noise_index is not None:
            metrics["FFT Noise Level"] = f"{noise_index:.1f}"
        for idx, peak in enumerate(axis_spectrum.dominant[:_TOP_PEAKS], start=1):
            metrics[f"Peak {idx} ({peak.frequency:.1f} Hz)"] = f"{peak.magnitude:.3f}"

    return metrics


def build_command_script(pids: PIDTuneResult, filters: FilterRecommendationSet) -> str:
    """PID block, blank line, filter block, blank line, ``save``."""
    lines = ["# PID Settings"]
    lines.extend(pids.commands())
    lines.append("")
    lines.append("# Filter Settings")
    lines.extend(filters.commands())
    lines.append("")
    lines.append("save")
    return "\n".join(lines)


# ── Pipeline ─────────────────────────────────────────────────────────────────

def run_analysis(
    log: FlightLog,
    firmware_version: Optional[str] = None,
    noise_level: Optional[float] = None,
    profile: Optional[DroneProfile] = None,
    fft_size: int = 1024,
    trace: Optional[Trace] = None,
) -> AnalysisReport:
    """Run the full analysis pipeline on a flight log.

    For each axis (roll, pitch, yaw):
    1. Compute the gyro spectrum, dominant frequencies and THD

    Then:
    2. Common frequencies, propagation and axis interactions
    3. Noise bands from the roll spectrum (first analysed axis if roll
       was skipped)
    4. Filter recommendations from the same axis
    5. PID recommendations from stick commands vs gyro
    6. Metrics and the CLI command script

    An axis too short for the transform is recorded in ``skipped_axes``
    instead of aborting the analysis.
    """
    capability = select_profile(firmware_version or log.firmware)
    logger.debug("Analysing %d Hz log with firmware profile %s", log.sample_rate, capability.version)

    # 1. Per-axis spectra
    spectra = {}
    skipped = {}
    for axis in log.axes():
        try:
            spectra[axis.name] = analyze_axis(axis.name, axis.gyro, log.sample_rate, fft_size=fft_size)
        except InsufficientSamples as exc:
            logger.warning("Skipping %s axis: %s", axis.name, exc)
            skipped[axis.name] = str(exc)
            if trace is not None:
                trace.record("axis_skipped", axis=axis.name, reason=str(exc))
            continue
        if trace is not None:
            result = spectra[axis.name]
            trace.record(
                "axis_spectrum",
                axis=axis.name,
                dominant=len(result.dominant),
                thd=result.harmonics.thd,
                oscillation=result.harmonics.oscillation_detected,
            )

    # 2. Cross-axis coupling
    dominant_by_axis = {name: s.dominant for name, s in spectra.items()}
    common = find_common_frequencies(dominant_by_axis)
    propagation = analyze_oscillation_propagation(
        {name: s.spectrum for name, s in spectra.items()}, common
    )
    interactions = analyze_axis_interactions(
        {name: log.axis(name).gyro for name in spectra}, dominant_by_axis
    )

    # 3. Noise bands
    primary = next(iter(spectra.values()), None)
    if noise_level is None:
        noise_level = estimate_noise_level(axis.gyro for axis in log.axes())
    if primary is not None:
        noise_bands = classify_noise_bands(primary.spectrum)
        noise_index = fft_noise_index(primary.spectrum)
        dominant = primary.dominant
    else:
        noise_bands = []
        noise_index = None
        dominant = []
    if trace is not None:
        trace.record(
            "noise",
            axis=primary.axis if primary is not None else None,
            noise_level=noise_level,
            severe_bands=[b.name for b in noise_bands if b.severity > 7],
        )

    # 4. Filters
    filters = recommend_filters(dominant, noise_level, capability, noise_bands, drone=profile)

    # 5. PIDs
    pids = generate_pid_recommendations(
        gyro={"x": log.roll.gyro, "y": log.pitch.gyro, "z": log.yaw.gyro},
        rc={"roll": log.roll.rc_command, "pitch": log.pitch.rc_command, "yaw": log.yaw.rc_command},
        sample_rate=log.sample_rate,
        trace=trace,
    )

    # 6. Metrics and script
    metrics = compute_metrics(log, primary, noise_index)
    script = build_command_script(pids, filters)

    return AnalysisReport(
        spectra=spectra,
        common_frequencies=common,
        propagation=propagation,
        interactions=interactions,
        noise_bands=noise_bands,
        noise_level=filters.noise_level,
        metrics=metrics,
        filters=filters,
        pids=pids,
        command_script=script,
        skipped_axes=skipped,
        trace=trace,
    )
