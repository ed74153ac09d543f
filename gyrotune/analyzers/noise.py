"""Noise band classification of a gyro spectrum.

The spectrum is smoothed with a Savitzky-Golay filter before bands are
scored, so a single noisy bin does not dominate a band.  Severity is a
0-10 score derived from the band's peak amplitude.
"""
import numpy as np
from scipy.signal import savgol_filter, find_peaks

from ..models import NoiseBand, DominantFrequency, Spectrum
from ..rounding import round_half_up


# (name, min_hz, max_hz, source, category)
NOISE_BANDS = [
    ("PropWash", 5, 30, "Turbulence, Tuning Issues", "low"),
    ("Mechanical Low", 30, 60, "Frame Vibrations, Motor Balance", "low"),
    ("Mechanical Mid", 60, 120, "Props, Motor Mounts", "mid"),
    ("Mechanical High", 120, 180, "Motors, Bearings", "mid"),
    ("Aliasing", 180, 300, "Gyro Sampling, High-Freq Noise", "high"),
    ("Electrical", 300, 500, "ESC, PWM Issues", "high"),
]

_SMOOTH_WINDOW = 9
_SMOOTH_POLYORDER = 3
_BAND_PEAK_RATIO = 0.5      # band peaks must reach half the band maximum
_MAX_BAND_PEAKS = 3


def smooth_magnitudes(magnitudes: np.ndarray) -> np.ndarray:
    """Savitzky-Golay smoothing (window 9, order 3), clipped at zero.

    Spectra shorter than the window are returned unsmoothed.
    """
    mags = np.asarray(magnitudes, dtype=np.float64)
    if len(mags) < _SMOOTH_WINDOW:
        return np.clip(mags, 0.0, None)
    smoothed = savgol_filter(mags, _SMOOTH_WINDOW, _SMOOTH_POLYORDER)
    return np.clip(smoothed, 0.0, None)


def band_severity(amplitude: float) -> int:
    """0-10 severity: amplitude x 100, halves rounded up."""
    return min(10, round_half_up(amplitude * 100))


def classify_noise_bands(spectrum: Spectrum) -> list:
    """Score each fixed noise band against a spectrum.

    Parameters
    ----------
    spectrum : Spectrum
        One-sided spectrum (typically the roll gyro axis).

    Returns
    -------
    bands : list of NoiseBand
        One entry per band, sorted by severity descending.  Bands with no
        bins below Nyquist get severity 0 and no dominant peak.
    """
    freqs = spectrum.frequencies
    smoothed = smooth_magnitudes(spectrum.magnitudes)

    bands = []
    for name, lo, hi, source, category in NOISE_BANDS:
        mask = (freqs >= lo) & (freqs <= hi)
        indices = np.nonzero(mask)[0]

        if len(indices) == 0:
            bands.append(NoiseBand(
                name=name, min_hz=lo, max_hz=hi, severity=0,
                dominant_peak=None, source=source, category=category,
            ))
            continue

        band_amps = smoothed[indices]
        max_pos = int(np.argmax(band_amps))
        max_amp = float(band_amps[max_pos])
        max_idx = indices[max_pos]

        peaks = []
        if max_amp > 0:
            local, _ = find_peaks(band_amps, height=max_amp * _BAND_PEAK_RATIO)
            local = sorted(local, key=lambda i: band_amps[i], reverse=True)[:_MAX_BAND_PEAKS]
            peaks = [
                DominantFrequency(
                    frequency=float(freqs[indices[i]]),
                    magnitude=float(band_amps[i]),
                    phase=float(spectrum.phases[indices[i]]),
                )
                for i in local
            ]

        bands.append(NoiseBand(
            name=name,
            min_hz=lo,
            max_hz=hi,
            severity=band_severity(max_amp),
            dominant_peak=DominantFrequency(
                frequency=float(freqs[max_idx]),
                magnitude=max_amp,
                phase=float(spectrum.phases[max_idx]),
            ),
            source=source,
            category=category,
            avg_amplitude=float(np.mean(band_amps)),
            max_amplitude=max_amp,
            peaks=peaks,
        ))

    # sort() is stable, so equal severities keep table order
    bands.sort(key=lambda b: b.severity, reverse=True)
    return bands


def fft_noise_index(spectrum: Spectrum) -> int:
    """Overall 0-10 noise index from the mean smoothed amplitude."""
    if len(spectrum) == 0:
        return 0
    avg = float(np.mean(smooth_magnitudes(spectrum.magnitudes)))
    return min(10, round_half_up(avg * 250))


def estimate_noise_level(signals) -> float:
    """Scalar 0-100 noise level: mean gyro standard deviation (deg/s).

    Used when the caller does not supply a noise level.  Empty signals are
    ignored; no usable signal gives 0.
    """
    stds = []
    for sig in signals:
        arr = np.asarray(sig, dtype=np.float64)
        arr = arr[np.isfinite(arr)]
        if len(arr) > 0:
            stds.append(float(np.std(arr)))
    if not stds:
        return 0.0
    return float(np.clip(np.mean(stds), 0.0, 100.0))
