"""Cross-axis coupling: common frequencies, propagation and coupling strength."""
from __future__ import annotations

from itertools import combinations

import numpy as np

from ..models import (
    CommonFrequency,
    PhaseRelationship,
    PropagationResult,
    AxisInteraction,
)


COMMON_TOLERANCE_HZ = 5.0
PHASE_MATCH_RATIO = 0.05        # relative frequency match for phase relation

# Weights: |correlation|, shared-frequency ratio, cos^2(phase)
_W_CORRELATION = 0.4
_W_SHARED = 0.3
_W_PHASE = 0.3


def wrap_phase(phase: float) -> float:
    """Wrap an angle into (-pi, pi]."""
    wrapped = float(np.arctan2(np.sin(phase), np.cos(phase)))
    if wrapped <= -np.pi:
        wrapped = float(np.pi)
    return wrapped


def _match(freq: float, candidates: list, tolerance: float):
    for cand in candidates:
        if abs(freq - cand.frequency) < tolerance:
            return cand
    return None


def find_common_frequencies(dominant_by_axis: dict, tolerance: float = COMMON_TOLERANCE_HZ) -> list:
    """Frequencies that appear on two or more axes.

    Axes are scanned in insertion order.  Each entry of an earlier axis is
    matched against the first entry within ``tolerance`` on every later
    axis; a frequency already covered by a common entry is not reported
    again.  Frequency and magnitude are averaged over the matches.

    Returns a list of CommonFrequency sorted by magnitude descending.
    """
    names = list(dominant_by_axis)
    common = []

    for idx, name in enumerate(names):
        for freq in dominant_by_axis[name] or []:
            if any(abs(c.frequency - freq.frequency) < tolerance for c in common):
                continue

            axes = [name]
            matches = [freq]
            for other in names[idx + 1:]:
                hit = _match(freq.frequency, dominant_by_axis[other] or [], tolerance)
                if hit is not None:
                    axes.append(other)
                    matches.append(hit)

            if len(axes) >= 2:
                common.append(CommonFrequency(
                    frequency=float(np.mean([m.frequency for m in matches])),
                    magnitude=float(np.mean([m.magnitude for m in matches])),
                    axes=tuple(axes),
                ))

    common.sort(key=lambda c: c.magnitude, reverse=True)
    return common


def analyze_oscillation_propagation(spectra_by_axis: dict, common: list) -> list:
    """Trace how each common frequency spreads across axes.

    Every participating axis' spectrum is sampled at ``floor(f * N / fs)``.
    The axis with the largest magnitude there is the source; each other
    axis gets its wrapped phase difference, the equivalent delay in ms and
    its magnitude ratio to the source.
    """
    results = []
    for entry in common:
        if len(entry.axes) < 2 or entry.frequency <= 0:
            continue

        sampled = {}
        for axis in entry.axes:
            spectrum = spectra_by_axis.get(axis)
            if spectrum is None:
                continue
            bin_idx = spectrum.bin_for(entry.frequency)
            if 0 <= bin_idx < len(spectrum):
                sampled[axis] = (
                    float(spectrum.magnitudes[bin_idx]),
                    float(spectrum.phases[bin_idx]),
                )

        if len(sampled) < 2:
            continue

        source = max(sampled, key=lambda a: sampled[a][0])
        src_mag, src_phase = sampled[source]
        if src_mag <= 0:
            continue

        relationships = {}
        for axis in entry.axes:
            if axis == source or axis not in sampled:
                continue
            mag, phase = sampled[axis]
            diff = wrap_phase(phase - src_phase)
            relationships[axis] = PhaseRelationship(
                phase_difference=diff,
                time_delay_ms=(diff / (2 * np.pi)) * (1000.0 / entry.frequency),
                magnitude_ratio=mag / src_mag,
            )

        results.append(PropagationResult(
            frequency=entry.frequency,
            source_axis=source,
            axes=entry.axes,
            relationships=relationships,
        ))
    return results


def normalized_cross_correlation(a, b) -> float:
    """Zero-lag Pearson correlation over the overlapping length.

    Constant, empty or non-finite inputs give 0.
    """
    n = min(len(a), len(b))
    if n < 2:
        return 0.0
    x = np.nan_to_num(np.asarray(a[:n], dtype=np.float64))
    y = np.nan_to_num(np.asarray(b[:n], dtype=np.float64))
    x = x - x.mean()
    y = y - y.mean()
    denom = np.sqrt(np.sum(x * x) * np.sum(y * y))
    if denom <= 0 or not np.isfinite(denom):
        return 0.0
    return float(np.clip(np.sum(x * y) / denom, -1.0, 1.0))


def calculate_phase_relation(dominant_a: list, dominant_b: list) -> float:
    """Magnitude-weighted mean phase difference over matching peaks.

    Peaks match when their frequencies differ by less than 5 % of the
    first axis' frequency.  Returns 0 when nothing matches.
    """
    total_weight = 0.0
    weighted = 0.0
    for fa in dominant_a:
        if fa.frequency <= 0:
            continue
        for fb in dominant_b:
            if abs(fa.frequency - fb.frequency) / fa.frequency < PHASE_MATCH_RATIO:
                weight = fa.magnitude * fb.magnitude
                weighted += wrap_phase(fa.phase - fb.phase) * weight
                total_weight += weight
    return weighted / total_weight if total_weight > 0 else 0.0


def count_shared_frequencies(dominant_a: list, dominant_b: list, tolerance: float = COMMON_TOLERANCE_HZ) -> int:
    return sum(1 for fa in dominant_a if _match(fa.frequency, dominant_b, tolerance) is not None)


def calculate_coupling_strength(
    dominant_a: list,
    dominant_b: list,
    correlation: float,
    phase_relation: float,
) -> float:
    """Combine correlation, shared peaks and phase coherence into [0, 1].

    An axis without dominant frequencies contributes no shared peaks; if
    the raw signals are also uncorrelated (e.g. all-zero channels) the
    axes are uncoupled.
    """
    if dominant_a is None or dominant_b is None:
        return 0.0
    if (not dominant_a or not dominant_b) and correlation == 0:
        return 0.0

    shared = count_shared_frequencies(dominant_a, dominant_b)
    shortest = min(len(dominant_a), len(dominant_b))
    similarity = shared / shortest if shortest else 0.0
    coherence = np.cos(phase_relation) ** 2

    strength = (
        _W_CORRELATION * abs(correlation)
        + _W_SHARED * similarity
        + _W_PHASE * coherence
    )
    return float(min(1.0, max(0.0, strength)))


def analyze_axis_interactions(signals_by_axis: dict, dominant_by_axis: dict) -> list:
    """One AxisInteraction per axis pair, in roll-pitch, roll-yaw, pitch-yaw order."""
    names = [name for name in signals_by_axis if name in dominant_by_axis]
    interactions = []
    for a, b in combinations(names, 2):
        correlation = normalized_cross_correlation(signals_by_axis[a], signals_by_axis[b])
        phase = calculate_phase_relation(dominant_by_axis[a], dominant_by_axis[b])
        interactions.append(AxisInteraction(
            axes=(a, b),
            correlation=correlation,
            phase_relation=phase,
            coupling_strength=calculate_coupling_strength(
                dominant_by_axis[a], dominant_by_axis[b], correlation, phase
            ),
        ))
    return interactions
