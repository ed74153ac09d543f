"""Tests for the full analysis pipeline (analyzer.py)."""
import numpy as np
import pytest

from gyrotune.models import (
    AxisData,
    FlightLog,
    Sample,
    AnalysisReport,
    Trace,
)
from gyrotune.analyzer import (
    run_analysis,
    estimate_response_time,
    compute_metrics,
    build_command_script,
)


def _make_flight_log(gyro, rc=None, sr=1000, firmware="unknown"):
    """Flight log with the same gyro trace on every axis."""
    n = len(gyro)
    rc = np.zeros(n) if rc is None else rc

    def _axis(name):
        return AxisData(
            name=name, gyro=np.array(gyro, dtype=float), rc_command=np.array(rc, dtype=float),
            p_term=np.zeros(n), i_term=np.zeros(n), d_term=np.zeros(n),
        )

    return FlightLog(
        roll=_axis("roll"), pitch=_axis("pitch"), yaw=_axis("yaw"),
        time=np.arange(n) / sr,
        throttle=np.full(n, 1500.0),
        motors=np.full((4, n), 1400.0),
        voltage=np.full(n, 16.0),
        current=np.zeros(n),
        sample_rate=sr,
        duration_s=(n - 1) / sr,
        firmware=firmware,
    )


def _resonant_gyro(n=2000, sr=1000):
    """White noise plus a strong 180 Hz motor resonance."""
    rng = np.random.default_rng(42)
    t = np.arange(n) / sr
    return 5 * rng.normal(0, 1, n) + 20 * np.sin(2 * np.pi * 180 * t)


# ── run_analysis ─────────────────────────────────────────────────────────────

class TestRunAnalysis:
    """End-to-end: noisy 180 Hz resonance on a 4.4 quad."""

    @pytest.fixture(scope="class")
    def report(self):
        log = _make_flight_log(_resonant_gyro(), firmware="Betaflight 4.4")
        return run_analysis(log, noise_level=65)

    def test_returns_report(self, report):
        assert isinstance(report, AnalysisReport)
        assert set(report.spectra) == {"roll", "pitch", "yaw"}
        assert report.skipped_axes == {}

    def test_dominant_frequency(self, report):
        assert report.metrics["Dominant Frequency (Hz)"] == "179.7"
        assert abs(report.spectra["roll"].dominant[0].frequency - 180) < 1

    def test_common_frequency_on_all_axes(self, report):
        assert any(c.axes == ("roll", "pitch", "yaw") for c in report.common_frequencies)

    def test_identical_axes_fully_coupled(self, report):
        assert len(report.interactions) == 3
        for item in report.interactions:
            assert item.correlation == pytest.approx(1.0)

    def test_notch(self, report):
        notch = report.filters.notch
        assert notch.enabled
        assert notch.min_hz == pytest.approx(90, abs=2)
        assert notch.max_hz == pytest.approx(360, abs=2)
        assert notch.notch_count == 5
        assert notch.q_factor == 600

    def test_noise_level_passed_through(self, report):
        assert report.noise_level == 65.0
        assert report.filters.gyro_lowpass.dynamic_range is not None

    def test_noise_bands(self, report):
        assert len(report.noise_bands) == 6
        assert report.noise_bands[0].severity >= report.noise_bands[-1].severity

    def test_metrics(self, report):
        for label in ("Gyro Noise (Roll)", "PID Error (Yaw)", "Motor Balance",
                      "Response Time (ms)", "FFT Noise Level"):
            assert label in report.metrics
        assert report.metrics["Motor Balance"] == "0.00"
        assert any(key.startswith("Peak 1 (") for key in report.metrics)

    def test_command_script_layout(self, report):
        lines = report.command_script.split("\n")
        assert lines[0] == "# PID Settings"
        assert all(line.startswith("set ") for line in lines[1:10])
        assert lines[10] == ""
        assert lines[11] == "# Filter Settings"
        assert lines[-2] == ""
        assert lines[-1] == "save"
        assert "set dyn_notch_enable = ON" in lines
        assert lines[1:10] == report.pids.commands()


def test_firmware_argument_overrides_log():
    log = _make_flight_log(_resonant_gyro(), firmware="Betaflight 4.4")
    report = run_analysis(log, firmware_version="4.2", noise_level=65)
    assert report.filters.profile.version == "4.2"
    assert report.filters.notch.q_factor == 250


@pytest.mark.parametrize("given,reported", [(150, 100.0), (float("nan"), 0.0)])
def test_reported_noise_level_is_normalized(given, reported):
    report = run_analysis(_make_flight_log(_resonant_gyro()), noise_level=given)
    assert report.noise_level == reported
    assert report.filters.noise_level == reported


def test_default_noise_level_is_gyro_spread():
    log = _make_flight_log(_resonant_gyro())
    report = run_analysis(log)
    assert 10 < report.noise_level < 20


def test_short_log_skips_axes():
    """100 samples cannot fill a 1024-point transform; the report survives."""
    log = _make_flight_log(_resonant_gyro(n=100))
    trace = Trace()
    report = run_analysis(log, trace=trace)
    assert set(report.skipped_axes) == {"roll", "pitch", "yaw"}
    assert report.spectra == {}
    assert report.noise_bands == []
    assert report.common_frequencies == []
    assert report.interactions == []
    assert "Dominant Frequency (Hz)" not in report.metrics
    assert report.command_script.endswith("save")
    assert trace.stages().count("axis_skipped") == 3


def test_from_samples_matches_arrays():
    gyro = _resonant_gyro()
    samples = [Sample(time=float(i), gyro=(g, g, g), motor=(1400.0,) * 4,
                      rc=(0.0, 0.0, 0.0, 1500.0), voltage=16.0)
               for i, g in enumerate(gyro)]
    from_rows = FlightLog.from_samples(samples, firmware="4.4")
    direct = _make_flight_log(gyro, firmware="4.4")
    assert from_rows.sample_rate == 1000
    assert run_analysis(from_rows, noise_level=40).command_script == \
        run_analysis(direct, noise_level=40).command_script


def test_trace_stages():
    trace = Trace()
    run_analysis(_make_flight_log(_resonant_gyro()), trace=trace)
    stages = trace.stages()
    assert stages.count("axis_spectrum") == 3
    assert "noise" in stages
    assert "critical_parameters" in stages


# ── estimate_response_time ───────────────────────────────────────────────────

def _step(n=1500, at=500, size=300.0, tau=20.0):
    cmd = np.zeros(n)
    cmd[at:] = size
    k = np.arange(n) - at
    resp = np.where(k >= 0, size * (1 - np.exp(-np.maximum(k, 0) / tau)), 0.0)
    return cmd, resp


class TestResponseTime:
    def test_first_order_rise(self):
        cmd, resp = _step()
        assert estimate_response_time(cmd, resp, 1000) == pytest.approx(0.020)

    def test_no_step_default(self):
        assert estimate_response_time(np.zeros(1000), np.zeros(1000), 1000) == 0.1

    def test_small_step_default(self):
        cmd, resp = _step(size=20.0)
        assert estimate_response_time(cmd, resp, 1000) == 0.1

    def test_no_response_default(self):
        cmd, _ = _step()
        assert estimate_response_time(cmd, np.zeros(len(cmd)), 1000) == 0.1

    def test_clamped(self):
        cmd, resp = _step(tau=1.0)
        assert estimate_response_time(cmd, resp, 1000) == 0.01


# ── metrics / script ─────────────────────────────────────────────────────────

def test_metrics_without_spectrum():
    log = _make_flight_log(np.zeros(2000))
    metrics = compute_metrics(log)
    assert metrics["Gyro Noise (Roll)"] == "0.00"
    assert metrics["PID Error (Pitch)"] == "0.00"
    assert metrics["Response Time (ms)"] == "100.00"
    assert "Dominant Frequency (Hz)" not in metrics


def test_build_command_script():
    log = _make_flight_log(np.zeros(2000))
    report = run_analysis(log)
    script = build_command_script(report.pids, report.filters)
    assert script == report.command_script
    assert script.count("\n\n") == 2
