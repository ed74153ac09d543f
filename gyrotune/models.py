"""Data models for GyroTune."""
from __future__ import annotations

from dataclasses import dataclass, field, asdict
from typing import Iterator, Optional, Sequence

import numpy as np

from .errors import InsufficientSamples
from .rounding import round_half_up

AXES = ("roll", "pitch", "yaw")


# ── Telemetry ────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Sample:
    """One telemetry row. Everything except time and gyro defaults to 0."""
    time: float                                   # ms, monotonic
    gyro: tuple = (0.0, 0.0, 0.0)                 # x, y, z (deg/s)
    pid_p: tuple = (0.0, 0.0, 0.0)                # roll, pitch, yaw
    pid_i: tuple = (0.0, 0.0, 0.0)
    pid_d: tuple = (0.0, 0.0, 0.0)
    motor: tuple = (0.0, 0.0, 0.0, 0.0)           # ~1000-2000
    rc: tuple = (0.0, 0.0, 0.0, 0.0)              # roll, pitch, yaw, throttle
    voltage: float = 0.0
    current: float = 0.0


@dataclass
class AxisData:
    """Time-series channels for one control axis."""
    name: str
    gyro: np.ndarray            # deg/s
    rc_command: np.ndarray      # stick command for this axis
    p_term: np.ndarray
    i_term: np.ndarray
    d_term: np.ndarray


@dataclass
class FlightLog:
    """Column-oriented flight log built from normalized samples."""
    roll: AxisData
    pitch: AxisData
    yaw: AxisData
    time: np.ndarray            # seconds
    throttle: np.ndarray
    motors: np.ndarray          # shape (4, N)
    voltage: np.ndarray
    current: np.ndarray
    sample_rate: int            # Hz
    duration_s: float
    firmware: str = "unknown"

    def axes(self) -> Iterator[AxisData]:
        yield self.roll
        yield self.pitch
        yield self.yaw

    def axis(self, name: str) -> AxisData:
        return getattr(self, name)

    @classmethod
    def from_samples(cls, samples: Sequence[Sample], firmware: str = "unknown") -> "FlightLog":
        """Build a FlightLog from telemetry rows.

        Sample rate is estimated from the median positive time delta
        (falls back to 1000 Hz when it cannot be derived).
        """
        n = len(samples)
        if n == 0:
            raise InsufficientSamples("flight log has no samples")

        time_ms = np.array([s.time for s in samples], dtype=np.float64)
        gyro = np.array([s.gyro for s in samples], dtype=np.float64).reshape(n, 3)
        pid_p = np.array([s.pid_p for s in samples], dtype=np.float64).reshape(n, 3)
        pid_i = np.array([s.pid_i for s in samples], dtype=np.float64).reshape(n, 3)
        pid_d = np.array([s.pid_d for s in samples], dtype=np.float64).reshape(n, 3)
        rc = np.array([s.rc for s in samples], dtype=np.float64).reshape(n, 4)
        motors = np.array([s.motor for s in samples], dtype=np.float64).reshape(n, 4).T

        sample_rate = 1000
        if n > 1:
            dts = np.diff(time_ms)
            dts = dts[dts > 0]
            if len(dts) > 0:
                sample_rate = round_half_up(1000.0 / float(np.median(dts)))

        axes = {}
        for idx, name in enumerate(AXES):
            axes[name] = AxisData(
                name=name,
                gyro=gyro[:, idx].copy(),
                rc_command=rc[:, idx].copy(),
                p_term=pid_p[:, idx].copy(),
                i_term=pid_i[:, idx].copy(),
                d_term=pid_d[:, idx].copy(),
            )

        time_s = time_ms / 1000.0
        return cls(
            roll=axes["roll"],
            pitch=axes["pitch"],
            yaw=axes["yaw"],
            time=time_s,
            throttle=rc[:, 3].copy(),
            motors=motors,
            voltage=np.array([s.voltage for s in samples], dtype=np.float64),
            current=np.array([s.current for s in samples], dtype=np.float64),
            sample_rate=sample_rate,
            duration_s=float(time_s[-1] - time_s[0]) if n > 1 else 0.0,
            firmware=firmware,
        )


@dataclass
class DroneProfile:
    """Optional caller-supplied hints about the airframe."""
    cell_count: int = 4
    prop_size: float = 5.0      # inches
    weight_g: Optional[float] = None
    flying_style: str = "freestyle"  # freestyle/race/cinematic/long_range


# ── Spectral analysis ────────────────────────────────────────────────────────

@dataclass(frozen=True)
class SpectralPoint:
    frequency: float            # Hz
    magnitude: float
    phase: float                # radians, (-pi, pi]


@dataclass
class Spectrum:
    """One-sided spectrum: fft_size / 2 bins in increasing frequency."""
    frequencies: np.ndarray
    magnitudes: np.ndarray
    phases: np.ndarray
    sample_rate: float
    fft_size: int

    def __len__(self) -> int:
        return len(self.frequencies)

    @property
    def bin_width(self) -> float:
        return self.sample_rate / self.fft_size

    @property
    def nyquist(self) -> float:
        return self.sample_rate / 2.0

    def bin_for(self, frequency: float) -> int:
        """Index of the bin containing ``frequency`` (floor)."""
        return int(np.floor(frequency * self.fft_size / self.sample_rate))

    def point(self, index: int) -> SpectralPoint:
        return SpectralPoint(
            frequency=float(self.frequencies[index]),
            magnitude=float(self.magnitudes[index]),
            phase=float(self.phases[index]),
        )

    def points(self) -> list:
        return [self.point(i) for i in range(len(self))]


@dataclass(frozen=True)
class DominantFrequency:
    """A local spectral maximum above the magnitude floor."""
    frequency: float
    magnitude: float
    phase: float


@dataclass
class HarmonicAnalysis:
    thd: float                  # percent
    stability_score: float      # 0-100
    oscillation_detected: bool


@dataclass
class AxisSpectrum:
    """Spectral results for one gyro axis."""
    axis: str
    spectrum: Spectrum
    dominant: list              # list of DominantFrequency, magnitude descending
    harmonics: HarmonicAnalysis


@dataclass
class CommonFrequency:
    """A frequency present on two or more axes."""
    frequency: float
    magnitude: float            # averaged across axes
    axes: tuple


@dataclass
class PhaseRelationship:
    phase_difference: float     # radians, (-pi, pi]
    time_delay_ms: float
    magnitude_ratio: float


@dataclass
class PropagationResult:
    """How a common frequency spreads from its strongest axis."""
    frequency: float
    source_axis: str
    axes: tuple
    relationships: dict         # axis -> PhaseRelationship


@dataclass
class AxisInteraction:
    axes: tuple                 # (axis_a, axis_b)
    correlation: float
    phase_relation: float
    coupling_strength: float    # 0-1


# ── Noise bands and filters ──────────────────────────────────────────────────

@dataclass
class NoiseBand:
    """A classified frequency band. Severity and source are derived."""
    name: str
    min_hz: float
    max_hz: float
    severity: int               # 0-10
    dominant_peak: Optional[DominantFrequency]
    source: str
    category: str               # low / mid / high
    avg_amplitude: float = 0.0
    max_amplitude: float = 0.0
    peaks: list = field(default_factory=list)   # up to 3 DominantFrequency


@dataclass(frozen=True)
class FirmwareCapabilityProfile:
    """Filter feature flags and limits for a firmware version bucket."""
    version: str
    max_notch_q: int
    default_dterm_cutoff: int
    default_gyro_cutoff: int
    supports_dynamic_lowpass: bool
    supports_improved_notch: bool
    supports_biquad_dterm: bool


@dataclass(frozen=True)
class DynamicRange:
    min_hz: int
    max_hz: int


@dataclass
class FilterRecommendation:
    """A low-pass or notch filter setting with its CLI commands."""
    enabled: bool
    kind: str                   # lowpass-static/lowpass-dynamic/notch-static/notch-dynamic
    cutoff_or_center: Optional[int] = None
    filter_type: Optional[str] = None   # PT1 / BIQUAD for low-pass filters
    dynamic_range: Optional[DynamicRange] = None
    q_factor: Optional[int] = None
    min_hz: Optional[int] = None
    max_hz: Optional[int] = None
    width_hz: Optional[int] = None
    notch_count: Optional[int] = None
    title: str = ""
    description: str = ""
    command: str = ""

    def command_lines(self) -> list:
        return [line for line in self.command.split("\n") if line]


@dataclass
class SupplementaryFilter:
    """An extra filter suggested for a specific noise source."""
    title: str
    description: str
    command: str

    def command_lines(self) -> list:
        return [line for line in self.command.split("\n") if line]


@dataclass
class FilterRecommendationSet:
    gyro_lowpass: FilterRecommendation
    dterm_lowpass: FilterRecommendation
    notch: FilterRecommendation
    profile: FirmwareCapabilityProfile
    additional: list = field(default_factory=list)   # SupplementaryFilter
    notes: list = field(default_factory=list)
    noise_level: float = 0.0     # normalised 0-100 level the filters used

    def primary(self) -> list:
        return [self.gyro_lowpass, self.dterm_lowpass, self.notch]

    def commands(self) -> list:
        lines = []
        for rec in self.primary():
            lines.extend(rec.command_lines())
        for extra in self.additional:
            lines.extend(extra.command_lines())
        return lines


# ── PID tuning ───────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class CriticalParameters:
    """Ultimate gain and period of one control axis."""
    ku: float
    tu: float                   # seconds
    confidence: str             # low / medium / high


@dataclass(frozen=True)
class GainLimits:
    p: tuple
    i: tuple
    d: tuple


@dataclass
class PIDRecommendation:
    """Bounded P/I/D gains for one axis, as Betaflight CLI integers."""
    axis: str
    p: int
    i: int
    d: int
    bounds: GainLimits
    confidence_note: str = ""
    title: str = ""
    description: str = ""
    command: str = ""

    def as_dict(self) -> dict:
        return {"p": self.p, "i": self.i, "d": self.d}

    def command_lines(self) -> list:
        return [line for line in self.command.split("\n") if line]


@dataclass
class PIDTuneResult:
    roll: PIDRecommendation
    pitch: PIDRecommendation
    yaw: PIDRecommendation
    critical: dict              # axis -> CriticalParameters
    confidence: str
    notes: list = field(default_factory=list)
    degraded: bool = False

    def axes(self) -> list:
        return [self.roll, self.pitch, self.yaw]

    def commands(self) -> list:
        lines = []
        for rec in self.axes():
            lines.extend(rec.command_lines())
        return lines

    def as_dict(self) -> dict:
        return {rec.axis: rec.as_dict() for rec in self.axes()}


# ── Diagnostics and report ───────────────────────────────────────────────────

@dataclass
class Trace:
    """Structured diagnostics collected alongside a result."""
    events: list = field(default_factory=list)

    def record(self, stage: str, **data) -> None:
        self.events.append({"stage": stage, **data})

    def stages(self) -> list:
        return [e["stage"] for e in self.events]


@dataclass
class AnalysisReport:
    """Everything one analysis pass produces, ready for a reporting layer."""
    spectra: dict               # axis -> AxisSpectrum
    common_frequencies: list    # CommonFrequency
    propagation: list           # PropagationResult
    interactions: list          # AxisInteraction
    noise_bands: list           # NoiseBand, severity descending
    noise_level: float
    metrics: dict               # label -> formatted string
    filters: FilterRecommendationSet
    pids: PIDTuneResult
    command_script: str
    skipped_axes: dict = field(default_factory=dict)   # axis -> reason
    trace: Optional[Trace] = None

    def as_dict(self) -> dict:
        return {
            "metrics": dict(self.metrics),
            "noise_level": self.noise_level,
            "pids": self.pids.as_dict(),
            "pid_confidence": self.pids.confidence,
            "filters": [asdict(rec) for rec in self.filters.primary()],
            "skipped_axes": dict(self.skipped_axes),
        }
