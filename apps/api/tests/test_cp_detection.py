"""
Unit tests for CP test effort detection and protocol set assembly.
"""

from datetime import timedelta
from uuid import uuid4

import pytest

from services.power_curve.cp_detection import (
    CP_PROTOCOLS,
    detect_efforts,
    find_protocol_sets,
    get_protocol,
)
from services.power_curve.models import Effort, TaggedActivity
from tests.power_curve_helpers import TODAY


def _valid(duration, value, activity_id=None):
    return Effort(duration_seconds=duration, value=value, is_valid=True, activity_id=activity_id)


def _invalid(duration, value, reason="Power too low (< 50W)"):
    return Effort(duration_seconds=duration, value=value, is_valid=False, rejection_reason=reason)


class TestProtocolCatalogue:
    """Test the protocol definitions."""

    def test_known_protocols(self):
        """All supported protocols are registered."""
        assert set(CP_PROTOCOLS) == {"3min-12min", "5min-20min", "8min-30min", "ramp-test", "3min-7min-12min"}

    def test_three_minute_twelve_minute(self):
        """3min-12min requires 180 s and 720 s efforts above 150 W."""
        protocol = get_protocol("3min-12min")
        assert protocol.required_durations == frozenset({180, 720})
        assert protocol.max_gap_days == 3
        assert protocol.min_power_watts == 150
        assert protocol.min_efforts == 2

    def test_three_point_protocol_needs_three_efforts(self):
        """Three-point protocols need three efforts."""
        assert get_protocol("3min-7min-12min").min_efforts == 3

    def test_unknown_protocol(self):
        """Unknown or missing keys resolve to None."""
        assert get_protocol("10min-40min") is None
        assert get_protocol(None) is None


class TestDetectEfforts:
    """Test per-activity effort validation."""

    def test_two_valid_efforts(self):
        """Each required duration yields one valid effort at its best window."""
        series = [400.0] * 180 + [250.0] * 720
        efforts = detect_efforts(series, "3min-12min")
        assert [e.duration_seconds for e in efforts] == [180, 720]
        assert all(e.is_valid for e in efforts)
        assert efforts[0].value == pytest.approx(400.0)
        assert efforts[0].start_offset_s == 0
        assert efforts[1].value == pytest.approx(287.5)

    def test_power_insufficient_for_protocol(self):
        """140 W over 3 minutes is below the 150 W protocol floor."""
        efforts = detect_efforts([140.0] * 720, "3min-12min")
        assert not efforts[0].is_valid
        assert efforts[0].rejection_reason == "Power insufficient for protocol (<= 150W)"

    def test_floor_is_inclusive(self):
        """Power equal to the protocol floor is rejected."""
        efforts = detect_efforts([150.0] * 720, "3min-12min")
        assert efforts[0].rejection_reason == "Power insufficient for protocol (<= 150W)"

    def test_power_too_low(self):
        """Under 50 W is rejected before any protocol check."""
        efforts = detect_efforts([40.0] * 720, "3min-12min")
        assert efforts[0].rejection_reason == "Power too low (< 50W)"

    def test_duration_too_short(self):
        """Efforts under one minute are rejected."""
        efforts = detect_efforts([300.0] * 100, "3min-12min", target_duration=30)
        assert len(efforts) == 1
        assert efforts[0].rejection_reason == "Duration too short (< 1min)"

    def test_effort_too_short_for_protocol(self):
        """The ramp test rejects efforts shorter than 20 minutes."""
        efforts = detect_efforts([300.0] * 1200, "ramp-test", target_duration=600)
        assert efforts[0].rejection_reason == "Effort too short for protocol (< 1200s)"

    def test_not_enough_data(self):
        """A series shorter than the duration gives an invalid effort."""
        efforts = detect_efforts([300.0] * 200, "3min-12min")
        assert efforts[0].is_valid
        assert not efforts[1].is_valid
        assert efforts[1].rejection_reason == "Not enough data for duration"

    def test_target_duration_overrides_protocol(self):
        """A target duration replaces the protocol's durations."""
        efforts = detect_efforts([300.0] * 800, "3min-12min", target_duration=720)
        assert [e.duration_seconds for e in efforts] == [720]

    def test_unknown_protocol_returns_empty(self, caplog):
        """Unknown protocols yield no efforts and log a warning."""
        assert detect_efforts([300.0] * 800, "bogus") == []
        assert "Unknown CP protocol" in caplog.text

    def test_activity_id_is_carried(self):
        """Efforts remember the activity they came from."""
        activity_id = uuid4()
        efforts = detect_efforts([300.0] * 800, "3min-12min", activity_id=activity_id)
        assert all(e.activity_id == activity_id for e in efforts)


class TestFindProtocolSets:
    """Test multi-session protocol assembly."""

    def test_sessions_within_gap_can_calculate(self):
        """Two sessions two days apart form one calculable set."""
        a, b = uuid4(), uuid4()
        sets = find_protocol_sets([
            TaggedActivity(a, TODAY, "3min-12min", (_valid(180, 400, a),)),
            TaggedActivity(b, TODAY + timedelta(days=2), "3min-12min", (_valid(720, 290, b),)),
        ])
        assert len(sets) == 1
        protocol_set = sets[0]
        assert protocol_set.within_gap
        assert protocol_set.span_days == 2
        assert protocol_set.can_calculate_cp
        assert protocol_set.activity_ids == (a, b)
        assert len(protocol_set.efforts) == 2

    def test_sessions_over_gap_are_rejected(self):
        """Five days between the 3 min and 12 min sessions exceeds the 3 day gap."""
        sets = find_protocol_sets([
            TaggedActivity(uuid4(), TODAY, "3min-12min", (_valid(180, 400),)),
            TaggedActivity(uuid4(), TODAY + timedelta(days=5), "3min-12min", (_valid(720, 290),)),
        ])
        assert len(sets) == 1
        assert not sets[0].within_gap
        assert not sets[0].can_calculate_cp
        assert sets[0].span_days == 5

    def test_missing_required_duration(self):
        """A set without a valid 12 min effort cannot be fitted."""
        sets = find_protocol_sets([
            TaggedActivity(uuid4(), TODAY, "3min-12min", (_valid(180, 400), _invalid(720, 40))),
        ])
        assert not sets[0].can_calculate_cp
        assert len(sets[0].efforts) == 1

    def test_unknown_protocols_are_ignored(self):
        """Activities tagged with unknown protocols form no sets."""
        sets = find_protocol_sets([
            TaggedActivity(uuid4(), TODAY, "bogus", (_valid(180, 400),)),
        ])
        assert sets == []

    def test_groups_per_protocol(self):
        """Each protocol gets its own set."""
        sets = find_protocol_sets([
            TaggedActivity(uuid4(), TODAY, "3min-12min", (_valid(180, 400), _valid(720, 290))),
            TaggedActivity(uuid4(), TODAY, "5min-20min", (_valid(300, 350), _valid(1200, 270))),
        ])
        assert {s.protocol for s in sets} == {"3min-12min", "5min-20min"}
        assert all(s.can_calculate_cp for s in sets)

    def test_three_point_needs_all_three_durations(self):
        """Two of three durations is not enough."""
        sets = find_protocol_sets([
            TaggedActivity(uuid4(), TODAY, "3min-7min-12min", (_valid(180, 400), _valid(720, 290))),
        ])
        assert not sets[0].can_calculate_cp
