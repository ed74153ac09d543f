"""Tests for gyrotune.firmware -- version parsing and capability profiles."""
import dataclasses

import pytest

from gyrotune.firmware import parse_version, select_profile, known_versions


class TestParseVersion:
    def test_full_banner(self):
        """Version is extracted from a Betaflight banner string."""
        assert parse_version("Betaflight 4.4.2 (STM32F7X2)") == (4, 4)

    def test_plain_version(self):
        assert parse_version("4.3") == (4, 3)

    def test_no_version(self):
        assert parse_version("unknown") is None
        assert parse_version("") is None
        assert parse_version(None) is None


class TestSelectProfile:
    @pytest.mark.parametrize("version,expected", [
        ("4.4", "4.4"),
        ("4.4.2", "4.4"),
        ("4.5.0", "4.4"),
        ("5.0", "4.4"),
        ("4.3", "4.3"),
        ("Betaflight 4.3.1", "4.3"),
        ("4.2", "4.2"),
        ("4.1", "4.2"),
        ("3.5.7", "4.2"),
    ])
    def test_rounds_down_to_bucket(self, version, expected):
        """Versions map to the nearest known bucket at or below them."""
        assert select_profile(version).version == expected

    def test_unparseable_defaults_to_43(self):
        assert select_profile("emuflight").version == "4.3"
        assert select_profile(None).version == "4.3"

    def test_44_capabilities(self):
        p = select_profile("4.4")
        assert p.max_notch_q == 600
        assert p.default_gyro_cutoff == 180
        assert p.default_dterm_cutoff == 150
        assert p.supports_dynamic_lowpass
        assert p.supports_improved_notch
        assert p.supports_biquad_dterm

    def test_42_capabilities(self):
        p = select_profile("4.2")
        assert p.max_notch_q == 250
        assert not p.supports_dynamic_lowpass
        assert not p.supports_improved_notch

    def test_only_44_has_improved_notch(self):
        flags = {v: select_profile(v).supports_improved_notch for v in known_versions()}
        assert flags == {"4.4": True, "4.3": False, "4.2": False}

    def test_profile_is_immutable(self):
        p = select_profile("4.4")
        with pytest.raises(dataclasses.FrozenInstanceError):
            p.max_notch_q = 1
