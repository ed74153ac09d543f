"""Tests for gyrotune.analyzers.noise -- band classification and noise level."""
import numpy as np
import pytest

from gyrotune.analyzers.spectrum import compute_spectrum
from gyrotune.analyzers.noise import (
    NOISE_BANDS,
    smooth_magnitudes,
    classify_noise_bands,
    band_severity,
    fft_noise_index,
    estimate_noise_level,
)


SAMPLE_RATE = 1000


def _sine(freq_hz, n=2048, sample_rate=SAMPLE_RATE, amplitude=1.0):
    """Helper: generate a pure sine wave."""
    t = np.arange(n) / sample_rate
    return amplitude * np.sin(2 * np.pi * freq_hz * t)


def _by_name(bands):
    return {b.name: b for b in bands}


# ---------- classify_noise_bands ----------

def test_sine_lands_in_its_band():
    """A strong 90 Hz tone makes Mechanical Mid the most severe band."""
    spec = compute_spectrum(_sine(90, amplitude=2.0), SAMPLE_RATE, 1024)
    bands = classify_noise_bands(spec)

    top = bands[0]
    assert top.name == "Mechanical Mid"
    assert top.severity == 10
    assert top.category == "mid"
    assert top.source == "Props, Motor Mounts"
    assert abs(top.dominant_peak.frequency - 90) < 3
    assert 1 <= len(top.peaks) <= 3
    assert top.max_amplitude >= top.avg_amplitude


def test_all_bands_reported_and_sorted():
    rng = np.random.default_rng(42)
    spec = compute_spectrum(rng.normal(0, 1, 2048) + _sine(250, amplitude=1.0), SAMPLE_RATE, 1024)
    bands = classify_noise_bands(spec)
    assert sorted(b.name for b in bands) == sorted(name for name, *_ in NOISE_BANDS)
    severities = [b.severity for b in bands]
    assert severities == sorted(severities, reverse=True)
    assert all(0 <= s <= 10 for s in severities)


def test_zero_spectrum_has_no_severity():
    spec = compute_spectrum(np.zeros(2048), SAMPLE_RATE, 1024)
    bands = classify_noise_bands(spec)
    assert len(bands) == len(NOISE_BANDS)
    assert all(b.severity == 0 for b in bands)
    assert all(b.peaks == [] for b in bands)
    # equal severities keep table order
    assert [b.name for b in bands] == [name for name, *_ in NOISE_BANDS]


def test_band_beyond_nyquist():
    """At 600 Hz sampling the Electrical band (300-500 Hz) has no bins."""
    spec = compute_spectrum(_sine(100, sample_rate=600), 600, 1024)
    electrical = _by_name(classify_noise_bands(spec))["Electrical"]
    assert electrical.severity == 0
    assert electrical.dominant_peak is None


def test_categories():
    categories = {name: cat for name, _, _, _, cat in NOISE_BANDS}
    assert categories["PropWash"] == "low"
    assert categories["Mechanical Low"] == "low"
    assert categories["Mechanical High"] == "mid"
    assert categories["Aliasing"] == "high"
    assert categories["Electrical"] == "high"


# ---------- smoothing and indices ----------

def test_smooth_magnitudes_non_negative():
    rng = np.random.default_rng(42)
    mags = np.abs(rng.normal(0, 1, 512))
    mags[::7] = 0.0
    smoothed = smooth_magnitudes(mags)
    assert smoothed.shape == mags.shape
    assert np.all(smoothed >= 0)


def test_smooth_magnitudes_short_input():
    mags = np.array([0.1, 0.3, 0.2])
    np.testing.assert_allclose(smooth_magnitudes(mags), mags)


def test_fft_noise_index_range():
    zero = compute_spectrum(np.zeros(2048), SAMPLE_RATE, 1024)
    assert fft_noise_index(zero) == 0

    rng = np.random.default_rng(42)
    loud = compute_spectrum(rng.normal(0, 200, 2048), SAMPLE_RATE, 1024)
    assert fft_noise_index(loud) == 10


# ---------- estimate_noise_level ----------

def test_noise_level_is_mean_std():
    rng = np.random.default_rng(42)
    signals = [rng.normal(0, 5, 4000) for _ in range(3)]
    assert estimate_noise_level(signals) == pytest.approx(5.0, abs=0.3)


def test_noise_level_clamped_and_empty():
    assert estimate_noise_level([np.zeros(100)]) == 0.0
    assert estimate_noise_level([np.array([-1000.0, 1000.0] * 50)]) == 100.0
    assert estimate_noise_level([]) == 0.0
    assert estimate_noise_level([np.array([])]) == 0.0


# ---------- band_severity ----------

@pytest.mark.parametrize("amplitude,severity", [
    (0.0, 0),
    (0.084, 8),
    (0.085, 9),     # half rounds up
    (0.025, 3),
    (0.5, 10),
])
def test_band_severity(amplitude, severity):
    assert band_severity(amplitude) == severity
