"""Spectrum construction, dominant-frequency extraction and THD scoring.

Magnitudes are linear amplitudes normalised by N/2 (a full-scale sine of
amplitude A reads ~A/2 after a Hann window).  Nothing here raises for
numeric edge cases: an empty or all-zero channel produces a zero spectrum,
no dominant frequencies and a neutral harmonic analysis.
"""
from __future__ import annotations

import numpy as np

from ..errors import InsufficientSamples, InvalidTransformSize
from ..rounding import round_half_up
from ..models import (
    Spectrum,
    DominantFrequency,
    HarmonicAnalysis,
    AxisSpectrum,
)


MAGNITUDE_FLOOR = 0.01
MAX_DOMINANT = 10
HARMONIC_TOLERANCE = 0.1        # fraction of the fundamental
OSCILLATION_RATIO = 0.15        # non-harmonic peak vs fundamental
OSCILLATION_SCAN = 5            # top-N peaks checked for oscillation


def _is_power_of_two(n: int) -> bool:
    return isinstance(n, (int, np.integer)) and n >= 2 and (n & (n - 1)) == 0


def hann_window(n: int) -> np.ndarray:
    """Symmetric Hann window ``0.5 * (1 - cos(2*pi*i / (n-1)))``."""
    if n <= 0:
        return np.zeros(0)
    return np.hanning(n)


def compute_spectrum(
    signal,
    sample_rate: float,
    fft_size: int = 1024,
    window="hann",
    allow_padding: bool = False,
) -> Spectrum:
    """Compute the one-sided spectrum of a real channel.

    Parameters
    ----------
    signal : 1-D array
        Time-domain samples (e.g. gyro deg/s).  Truncated to ``fft_size``.
    sample_rate : float
        Sampling frequency in Hz.
    fft_size : int
        Transform size, a power of two.
    window : "hann", None or 1-D array
        ``"hann"`` applies a Hann window over the samples used, ``None``
        means the caller already windowed the data, an array is applied
        as-is and must match the number of samples used.
    allow_padding : bool
        Zero-pad inputs shorter than ``fft_size / 2`` instead of raising.

    Returns
    -------
    Spectrum
        ``fft_size / 2`` bins with ``frequency = k * fs / N``,
        ``magnitude = |X_k| / (N/2)`` and ``phase = atan2(imag, real)``.

    Raises
    ------
    InvalidTransformSize
        ``fft_size`` is not a power of two or the window length is wrong.
    InsufficientSamples
        Fewer than ``fft_size / 2`` samples and padding is not allowed.
    """
    if not _is_power_of_two(fft_size):
        raise InvalidTransformSize(f"fft_size must be a power of two, got {fft_size!r}")

    half = fft_size // 2
    frequencies = np.arange(half) * (sample_rate / fft_size)

    data = np.asarray(signal, dtype=np.float64).ravel()[:fft_size]
    n = len(data)

    if n == 0:
        return Spectrum(
            frequencies=frequencies,
            magnitudes=np.zeros(half),
            phases=np.zeros(half),
            sample_rate=float(sample_rate),
            fft_size=fft_size,
        )

    if n < half and not allow_padding:
        raise InsufficientSamples(
            f"need at least {half} samples for a {fft_size}-point transform, got {n}"
        )

    data = np.nan_to_num(data, nan=0.0, posinf=0.0, neginf=0.0)

    if isinstance(window, str):
        if window != "hann":
            raise InvalidTransformSize(f"unknown window {window!r}")
        data = data * hann_window(n)
    elif window is not None:
        win = np.asarray(window, dtype=np.float64).ravel()
        if len(win) != n:
            raise InvalidTransformSize(
                f"window length {len(win)} does not match {n} samples"
            )
        data = data * np.nan_to_num(win)

    # rfft zero-pads to fft_size
    spectrum = np.fft.rfft(data, n=fft_size)[:half]

    magnitudes = np.abs(spectrum) / half
    phases = np.arctan2(spectrum.imag, spectrum.real)
    # atan2 can return exactly -pi; keep phases in (-pi, pi]
    phases[phases <= -np.pi] = np.pi

    return Spectrum(
        frequencies=frequencies,
        magnitudes=magnitudes,
        phases=phases,
        sample_rate=float(sample_rate),
        fft_size=fft_size,
    )


def find_dominant_frequencies(
    spectrum: Spectrum,
    floor: float = MAGNITUDE_FLOOR,
    limit: int = MAX_DOMINANT,
) -> list:
    """Strict interior local maxima above ``floor``, strongest first.

    The first and last bins are never candidates.  Ties keep the lower
    frequency first.
    """
    mags = spectrum.magnitudes
    if len(mags) < 3:
        return []

    centre = mags[1:-1]
    is_peak = (centre > mags[:-2]) & (centre > mags[2:]) & (centre > floor)
    indices = np.nonzero(is_peak)[0] + 1

    # stable sort keeps bin order for equal magnitudes
    order = np.argsort(-mags[indices], kind="stable")
    indices = indices[order][:limit]

    return [
        DominantFrequency(
            frequency=float(spectrum.frequencies[i]),
            magnitude=float(mags[i]),
            phase=float(spectrum.phases[i]),
        )
        for i in indices
    ]


def harmonic_number(frequency: float, fundamental: float) -> int:
    """Nearest integer multiple of ``fundamental``."""
    if fundamental <= 0:
        return 0
    return round_half_up(frequency / fundamental)


def is_harmonic(frequency: float, fundamental: float) -> bool:
    """True when ``frequency`` sits within 10 % of a multiple of ``fundamental``."""
    if fundamental <= 0:
        return False
    multiple = harmonic_number(frequency, fundamental)
    return abs(frequency - multiple * fundamental) / fundamental < HARMONIC_TOLERANCE


def calculate_thd(dominant: list) -> HarmonicAnalysis:
    """Total harmonic distortion and stability score of a frequency set.

    The strongest entry is the fundamental.  Entries whose nearest multiple
    is 2 or more and lie within tolerance add their squared magnitude to
    the harmonic power.  ``oscillation_detected`` flags a non-harmonic
    component among the top five stronger than 15 % of the fundamental.
    """
    if not dominant:
        return HarmonicAnalysis(thd=0.0, stability_score=100.0, oscillation_detected=False)

    fundamental = dominant[0]
    harmonic_power = 0.0
    for freq in dominant[1:]:
        if harmonic_number(freq.frequency, fundamental.frequency) >= 2 and is_harmonic(
            freq.frequency, fundamental.frequency
        ):
            harmonic_power += freq.magnitude ** 2

    if harmonic_power > 0 and fundamental.magnitude > 0:
        thd = 100.0 * np.sqrt(harmonic_power) / fundamental.magnitude
    else:
        thd = 0.0

    oscillation = False
    for freq in dominant[1:OSCILLATION_SCAN]:
        ratio = freq.magnitude / fundamental.magnitude if fundamental.magnitude > 0 else 0.0
        if not is_harmonic(freq.frequency, fundamental.frequency) and ratio > OSCILLATION_RATIO:
            oscillation = True
            break

    thd = float(thd)
    return HarmonicAnalysis(
        thd=thd,
        stability_score=100.0 - min(100.0, thd),
        oscillation_detected=oscillation,
    )


def analyze_axis(
    axis: str,
    signal,
    sample_rate: float,
    fft_size: int = 1024,
    window="hann",
    allow_padding: bool = False,
) -> AxisSpectrum:
    """Spectrum, dominant frequencies and THD for one gyro axis."""
    spectrum = compute_spectrum(
        signal,
        sample_rate,
        fft_size=fft_size,
        window=window,
        allow_padding=allow_padding,
    )
    dominant = find_dominant_frequencies(spectrum)
    return AxisSpectrum(
        axis=axis,
        spectrum=spectrum,
        dominant=dominant,
        harmonics=calculate_thd(dominant),
    )
