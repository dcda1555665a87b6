"""
Unit tests for the profile aggregator.

Runs against the in-memory stores so window, tie and failure semantics can
be checked without a database.
"""

from uuid import uuid4

import pytest

from core.exceptions import PartialBackfillError, StorageError
from services.power_curve.aggregator import ProfileAggregator
from services.power_curve.models import ProfileRecord, SportMetric, TimeWindow
from tests.power_curve_helpers import (
    ATHLETE_ID,
    TODAY,
    InMemoryActivityStore,
    InMemoryProfileStore,
    days_ago,
    snapshot,
)


def _aggregator(activities=(), profile_store=None, **kwargs):
    kwargs.setdefault("batch_delay_s", 0)
    return ProfileAggregator(
        InMemoryActivityStore(activities),
        profile_store or InMemoryProfileStore(),
        **kwargs,
    )


class TestIncrementalUpdate:
    """Test update_for_activity."""

    def test_touches_all_time_and_containing_windows(self):
        """A 10-day-old activity reaches every window from 14 days up."""
        aggregator = _aggregator()
        activity = snapshot(days_ago(10), power_series=[300.0] * 120)
        result = aggregator.update_for_activity(activity, today=TODAY)

        assert result.skipped_reason is None
        assert result.points_computed > 0
        assert set(result.windows_touched) == {"all-time", "14-day", "30-day", "90-day", "365-day"}
        store = aggregator.profile_store
        assert store.value(ATHLETE_ID, "cycling", 60, TimeWindow.DAYS_14) == pytest.approx(300.0)
        assert store.value(ATHLETE_ID, "cycling", 60, TimeWindow.DAYS_7) is None

    def test_power_keeps_higher_value(self):
        """A weaker effort leaves the stored best alone."""
        aggregator = _aggregator()
        aggregator.update_for_activity(snapshot(days_ago(1), power_series=[400.0] * 60), today=TODAY)
        result = aggregator.update_for_activity(snapshot(days_ago(0), power_series=[300.0] * 60), today=TODAY)

        assert result.records_written == 0
        assert result.windows_touched == []
        assert aggregator.profile_store.value(ATHLETE_ID, "cycling", 60, TimeWindow.ALL_TIME) == pytest.approx(400.0)

    def test_pace_keeps_lower_value(self):
        """The fastest pace is kept whatever the arrival order."""
        aggregator = _aggregator()
        slow = snapshot(days_ago(2), sport="running", speed_series=[3.0] * 60)
        fast = snapshot(days_ago(1), sport="running", speed_series=[4.0] * 60)
        aggregator.update_for_activity(slow, today=TODAY)
        aggregator.update_for_activity(fast, today=TODAY)
        aggregator.update_for_activity(slow, today=TODAY)

        record = aggregator.profile_store.rows[(ATHLETE_ID, "running", 60, TimeWindow.ALL_TIME)]
        assert record.best_value == pytest.approx(60.0 / (4.0 * 3.6))
        assert record.activity_id == fast.id

    def test_no_data_is_skipped(self):
        """Activities without data are skipped."""
        result = _aggregator().update_for_activity(snapshot(TODAY), today=TODAY)
        assert result.skipped_reason == "no data"
        assert result.records_written == 0

    def test_unsupported_sport_is_skipped(self):
        """Unsupported sports are skipped, not raised."""
        result = _aggregator().update_for_activity(
            snapshot(TODAY, sport="rowing", power_series=[200.0] * 10), today=TODAY
        )
        assert "unsupported sport" in result.skipped_reason

    def test_aged_out_record_is_overwritten_by_weaker_effort(self):
        """A stale rolling best does not block a new in-window effort."""
        aggregator = _aggregator()
        old_day = days_ago(10)
        aggregator.update_for_activity(snapshot(old_day, power_series=[300.0] * 60), today=old_day)
        store = aggregator.profile_store
        assert store.value(ATHLETE_ID, "cycling", 60, TimeWindow.DAYS_7) == pytest.approx(300.0)

        recent = snapshot(TODAY, power_series=[250.0] * 60)
        result = aggregator.update_for_activity(recent, today=TODAY)

        assert "7-day" in result.windows_touched
        curve = aggregator.best_effort_curve(ATHLETE_ID, "cycling", TimeWindow.DAYS_7, today=TODAY)
        by_duration = {r.duration_seconds: r for r in curve}
        assert by_duration[60].best_value == pytest.approx(250.0)
        assert by_duration[60].activity_id == recent.id
        # Still inside the 14-day window, so the older best stands there.
        assert store.value(ATHLETE_ID, "cycling", 60, TimeWindow.DAYS_14) == pytest.approx(300.0)
        assert store.value(ATHLETE_ID, "cycling", 60, TimeWindow.ALL_TIME) == pytest.approx(300.0)

    def test_future_dated_activity_only_reaches_all_time(self):
        """Rolling windows end today, matching what backfill reads."""
        result = _aggregator().update_for_activity(
            snapshot(days_ago(-2), power_series=[300.0] * 60), today=TODAY
        )
        assert result.windows_touched == ["all-time"]


class TestTimeWindow:
    """Test rolling window bounds."""

    def test_contains_is_bounded_on_both_sides(self):
        """Start date and today are inside; the day before and tomorrow are not."""
        window = TimeWindow.DAYS_7
        assert window.contains(days_ago(7), TODAY)
        assert window.contains(TODAY, TODAY)
        assert not window.contains(days_ago(8), TODAY)
        assert not window.contains(days_ago(-1), TODAY)

    def test_all_time_contains_everything(self):
        """All-time has no bounds."""
        assert TimeWindow.ALL_TIME.contains(days_ago(5000), TODAY)
        assert TimeWindow.ALL_TIME.contains(days_ago(-1), TODAY)


class TestBackfillWindow:
    """Test backfill_window semantics."""

    def test_window_only_sees_its_activities(self):
        """Activities outside the window are not scanned."""
        old = snapshot(days_ago(20), power_series=[500.0] * 60)
        recent = snapshot(days_ago(3), power_series=[300.0] * 60)
        aggregator = _aggregator([old, recent])

        result = aggregator.backfill_window(ATHLETE_ID, "cycling", TimeWindow.DAYS_7, today=TODAY)

        assert result.activities_scanned == 1
        record = aggregator.profile_store.rows[(ATHLETE_ID, "cycling", 60, TimeWindow.DAYS_7)]
        assert record.best_value == pytest.approx(300.0)
        assert record.activity_id == recent.id

    def test_replace_semantics_drop_stale_best(self):
        """A backfill replaces a best that is no longer in the window."""
        store = InMemoryProfileStore()
        store.rows[(ATHLETE_ID, "cycling", 60, TimeWindow.DAYS_7)] = ProfileRecord(
            athlete_id=ATHLETE_ID, sport="cycling", duration_seconds=60,
            time_window=TimeWindow.DAYS_7, best_value=999.0, date_achieved=days_ago(30),
        )
        aggregator = _aggregator([snapshot(days_ago(1), power_series=[250.0] * 60)], profile_store=store)

        aggregator.backfill_window(ATHLETE_ID, "cycling", TimeWindow.DAYS_7, today=TODAY)

        assert store.value(ATHLETE_ID, "cycling", 60, TimeWindow.DAYS_7) == pytest.approx(250.0)

    def test_ties_keep_earliest_activity(self):
        """Equal values keep the earlier activity."""
        first = snapshot(days_ago(5), power_series=[300.0] * 60)
        second = snapshot(days_ago(2), power_series=[300.0] * 60)
        aggregator = _aggregator([second, first])

        aggregator.backfill_window(ATHLETE_ID, "cycling", TimeWindow.DAYS_30, today=TODAY)

        record = aggregator.profile_store.rows[(ATHLETE_ID, "cycling", 60, TimeWindow.DAYS_30)]
        assert record.activity_id == first.id

    def test_rolling_window_promotes_to_all_time(self):
        """Rolling bests are offered to all-time."""
        store = InMemoryProfileStore()
        aggregator = _aggregator([snapshot(days_ago(1), power_series=[320.0] * 60)], profile_store=store)

        result = aggregator.backfill_window(ATHLETE_ID, "cycling", TimeWindow.DAYS_7, today=TODAY)

        assert result.all_time_promoted > 0
        assert store.value(ATHLETE_ID, "cycling", 60, TimeWindow.ALL_TIME) == pytest.approx(320.0)

    def test_promotion_never_worsens_all_time(self):
        """Promotion does not lower an all-time best."""
        store = InMemoryProfileStore()
        store.rows[(ATHLETE_ID, "cycling", 60, TimeWindow.ALL_TIME)] = ProfileRecord(
            athlete_id=ATHLETE_ID, sport="cycling", duration_seconds=60,
            time_window=TimeWindow.ALL_TIME, best_value=450.0, date_achieved=days_ago(400),
        )
        aggregator = _aggregator([snapshot(days_ago(1), power_series=[320.0] * 60)], profile_store=store)

        aggregator.backfill_window(ATHLETE_ID, "cycling", TimeWindow.DAYS_7, today=TODAY)

        assert store.value(ATHLETE_ID, "cycling", 60, TimeWindow.ALL_TIME) == pytest.approx(450.0)

    def test_pages_through_activities(self):
        """Rolling and large windows page with their own sizes."""
        activities = [snapshot(days_ago(i % 300), power_series=[100.0 + i] * 30) for i in range(45)]
        aggregator = _aggregator(activities, fetch_page_size=10, fetch_page_size_large=7)

        result = aggregator.backfill_window(ATHLETE_ID, "cycling", TimeWindow.DAYS_90, today=TODAY)
        assert all(limit == 10 for _, limit in aggregator.activity_store.pages_requested)
        assert result.activities_scanned == len([a for a in activities if a.activity_date >= days_ago(90)])

        aggregator.activity_store.pages_requested.clear()
        result = aggregator.backfill_window(ATHLETE_ID, "cycling", TimeWindow.ALL_TIME, today=TODAY)
        assert all(limit == 7 for _, limit in aggregator.activity_store.pages_requested)
        assert result.activities_scanned == 45
        assert aggregator.profile_store.value(ATHLETE_ID, "cycling", 30, TimeWindow.ALL_TIME) == pytest.approx(144.0)

    def test_activity_failure_is_counted_not_fatal(self, monkeypatch):
        """One bad activity is counted and the window still completes."""
        from services.power_curve import aggregator as aggregator_module

        real_build_curve = aggregator_module.build_curve

        def flaky_build_curve(series, metric, *args, **kwargs):
            if len(series) == 77:
                raise RuntimeError("corrupt stream")
            return real_build_curve(series, metric, *args, **kwargs)

        monkeypatch.setattr(aggregator_module, "build_curve", flaky_build_curve)
        aggregator = _aggregator([
            snapshot(days_ago(1), power_series=[200.0] * 77),
            snapshot(days_ago(2), power_series=[210.0] * 60),
        ])

        result = aggregator.backfill_window(ATHLETE_ID, "cycling", TimeWindow.DAYS_7, today=TODAY)

        assert result.activities_failed == 1
        assert result.activities_with_data == 1
        assert aggregator.profile_store.value(ATHLETE_ID, "cycling", 60, TimeWindow.DAYS_7) == pytest.approx(210.0)


class TestBackfill:
    """Test the full multi-window backfill."""

    def _history(self):
        return [
            snapshot(days_ago(2), power_series=[280.0] * 300),
            snapshot(days_ago(12), power_series=[320.0] * 300),
            snapshot(days_ago(60), power_series=[350.0] * 300),
            snapshot(days_ago(500), power_series=[400.0] * 300),
        ]

    def test_all_time_dominates_every_window(self):
        """After a full backfill all-time is at least every window."""
        aggregator = _aggregator(self._history())
        summary = aggregator.backfill(ATHLETE_ID, "cycling", today=TODAY)

        assert [r.window for r in summary.completed] == list(TimeWindow)[:5] + [TimeWindow.ALL_TIME]
        store = aggregator.profile_store
        for (athlete_id, sport, duration, window), record in store.rows.items():
            all_time = store.value(athlete_id, sport, duration, TimeWindow.ALL_TIME)
            assert all_time >= record.best_value

        assert store.value(ATHLETE_ID, "cycling", 60, TimeWindow.DAYS_7) == pytest.approx(280.0)
        assert store.value(ATHLETE_ID, "cycling", 60, TimeWindow.DAYS_14) == pytest.approx(320.0)
        assert store.value(ATHLETE_ID, "cycling", 60, TimeWindow.DAYS_90) == pytest.approx(350.0)
        assert store.value(ATHLETE_ID, "cycling", 60, TimeWindow.ALL_TIME) == pytest.approx(400.0)

    def test_idempotent(self):
        """A second backfill changes nothing."""
        aggregator = _aggregator(self._history())
        aggregator.backfill(ATHLETE_ID, "cycling", today=TODAY)
        first = dict(aggregator.profile_store.rows)
        aggregator.backfill(ATHLETE_ID, "cycling", today=TODAY)
        assert aggregator.profile_store.rows == first

    def test_failed_window_does_not_stop_others(self):
        """One failing window is reported after the others complete."""
        class FailingStore(InMemoryProfileStore):
            def upsert_records(self, records, metric, replace=False, stale_before=None):
                if any(r.time_window == TimeWindow.DAYS_30 for r in records):
                    raise StorageError("upsert_records", "connection reset")
                return super().upsert_records(records, metric, replace=replace, stale_before=stale_before)

        store = FailingStore()
        aggregator = _aggregator(self._history(), profile_store=store)

        with pytest.raises(PartialBackfillError) as exc_info:
            aggregator.backfill(ATHLETE_ID, "cycling", today=TODAY)

        error = exc_info.value
        assert error.failed_windows == ["30-day"]
        assert "connection reset" in error.errors["30-day"]
        completed = [r.window for r in error.summary.completed]
        assert TimeWindow.DAYS_30 not in completed
        assert TimeWindow.DAYS_90 in completed
        assert store.value(ATHLETE_ID, "cycling", 60, TimeWindow.DAYS_7) == pytest.approx(280.0)
        assert store.value(ATHLETE_ID, "cycling", 60, TimeWindow.DAYS_30) is None

    def test_unknown_sport_raises(self):
        """Unsupported sports raise before any window runs."""
        with pytest.raises(ValueError):
            _aggregator().backfill(ATHLETE_ID, "rowing", today=TODAY)


class TestBestEffortCurve:
    """Test the windowed query."""

    def test_sorted_and_aged_out_filtered(self):
        """Records outside the window are hidden; the rest sort by duration."""
        store = InMemoryProfileStore()
        for duration, day in ((60, days_ago(1)), (5, days_ago(3)), (300, days_ago(10))):
            store.rows[(ATHLETE_ID, "cycling", duration, TimeWindow.DAYS_7)] = ProfileRecord(
                athlete_id=ATHLETE_ID, sport="cycling", duration_seconds=duration,
                time_window=TimeWindow.DAYS_7, best_value=300.0, date_achieved=day,
                activity_id=uuid4(),
            )
        curve = _aggregator(profile_store=store).best_effort_curve(
            ATHLETE_ID, "cycling", TimeWindow.DAYS_7, today=TODAY
        )
        assert [r.duration_seconds for r in curve] == [5, 60]

    def test_all_time_never_ages_out(self):
        """All-time records are always returned."""
        store = InMemoryProfileStore()
        store.rows[(ATHLETE_ID, "cycling", 60, TimeWindow.ALL_TIME)] = ProfileRecord(
            athlete_id=ATHLETE_ID, sport="cycling", duration_seconds=60,
            time_window=TimeWindow.ALL_TIME, best_value=400.0, date_achieved=days_ago(2000),
        )
        curve = _aggregator(profile_store=store).best_effort_curve(
            ATHLETE_ID, "cycling", TimeWindow.ALL_TIME, today=TODAY
        )
        assert len(curve) == 1
