"""
Profile Aggregator

Maintains best-effort records per (athlete, sport, duration, time window).

Two write paths:
- Incremental: one newly saved activity. Its curve is offered to the
  all-time records and to every rolling window that still contains the
  activity date. Only improvements are written; a rolling-window record
  that has aged out of its window counts as absent and is overwritten.
- Backfill: rebuild a window from history. The window's activities are
  paged in, their curves computed in bounded concurrent batches, and the
  best per duration written with replace semantics. Rolling-window bests
  are then offered to all-time (improve-only), so all-time is never worse
  than any window.

Storage access stays on the calling thread; only curve computation runs
in the worker pool.
"""
from __future__ import annotations

import logging
import time
from datetime import date, datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple
from uuid import UUID

from core.config import settings
from core.exceptions import PartialBackfillError
from core.logging import log_fields

from .batching import run_in_batches
from .mean_maximal import build_curve
from .models import (
    ROLLING_WINDOWS,
    ActivitySnapshot,
    BackfillSummary,
    CurvePoint,
    IncrementalUpdateResult,
    ProfileRecord,
    SportMetric,
    TimeWindow,
    WindowBackfillResult,
    metric_for_sport,
)
from .series import extract_series
from .stores import ActivityStore, ProfileStore

logger = logging.getLogger(__name__)

# Windows whose activity pages are large enough to warrant smaller fetches.
LARGE_WINDOWS = frozenset({TimeWindow.DAYS_365, TimeWindow.ALL_TIME})

DEFAULT_BACKFILL_ORDER: Tuple[TimeWindow, ...] = ROLLING_WINDOWS + (TimeWindow.ALL_TIME,)


def _utc_today() -> date:
    return datetime.now(timezone.utc).date()


def _chunked(items: Sequence[ProfileRecord], size: int) -> Iterable[Sequence[ProfileRecord]]:
    for i in range(0, len(items), size):
        yield items[i:i + size]


class ProfileAggregator:
    def __init__(
        self,
        activity_store: ActivityStore,
        profile_store: ProfileStore,
        fetch_page_size: Optional[int] = None,
        fetch_page_size_large: Optional[int] = None,
        upsert_batch_size: Optional[int] = None,
        upsert_batch_size_large: Optional[int] = None,
        worker_batch_size: Optional[int] = None,
        worker_concurrency: Optional[int] = None,
        batch_delay_s: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.activity_store = activity_store
        self.profile_store = profile_store
        self.fetch_page_size = fetch_page_size or settings.POWER_PROFILE_FETCH_PAGE_SIZE
        self.fetch_page_size_large = fetch_page_size_large or settings.POWER_PROFILE_FETCH_PAGE_SIZE_LARGE
        self.upsert_batch_size = upsert_batch_size or settings.POWER_PROFILE_UPSERT_BATCH_SIZE
        self.upsert_batch_size_large = upsert_batch_size_large or settings.POWER_PROFILE_UPSERT_BATCH_SIZE_LARGE
        self.worker_batch_size = worker_batch_size or settings.POWER_PROFILE_WORKER_BATCH_SIZE
        self.worker_concurrency = worker_concurrency or settings.POWER_PROFILE_WORKER_CONCURRENCY
        self.batch_delay_s = (
            settings.POWER_PROFILE_BATCH_DELAY_S if batch_delay_s is None else batch_delay_s
        )
        self._sleep = sleep

    def _page_size(self, window: TimeWindow) -> int:
        return self.fetch_page_size_large if window in LARGE_WINDOWS else self.fetch_page_size

    def _upsert_size(self, window: TimeWindow) -> int:
        return self.upsert_batch_size_large if window in LARGE_WINDOWS else self.upsert_batch_size

    def _write(
        self,
        records: Sequence[ProfileRecord],
        metric: SportMetric,
        batch_size: int,
        replace: bool,
        stale_before: Optional[date] = None,
    ) -> int:
        written = 0
        for chunk in _chunked(records, batch_size):
            written += self.profile_store.upsert_records(
                chunk, metric, replace=replace, stale_before=stale_before
            )
        return written

    # ------------------------------------------------------------------
    # Incremental
    # ------------------------------------------------------------------

    def update_for_activity(
        self,
        activity: ActivitySnapshot,
        today: Optional[date] = None,
    ) -> IncrementalUpdateResult:
        """Offer one activity's curve to every window it belongs to."""
        result = IncrementalUpdateResult(activity_id=activity.id)
        today = today or _utc_today()

        try:
            metric = metric_for_sport(activity.sport)
        except ValueError:
            result.skipped_reason = f"unsupported sport '{activity.sport}'"
            logger.info(f"Skipping power profile update for activity {activity.id}: {result.skipped_reason}")
            return result

        series = extract_series(activity)
        if not series:
            result.skipped_reason = "no data"
            logger.info(f"Skipping power profile update for activity {activity.id}: no {metric.value} data")
            return result

        curve = build_curve(series, metric)
        result.points_computed = len(curve)
        if not curve:
            result.skipped_reason = "no positive samples"
            return result

        windows = [TimeWindow.ALL_TIME] + [
            w for w in ROLLING_WINDOWS if w.contains(activity.activity_date, today)
        ]
        stored = {
            (r.duration_seconds, r.time_window): r
            for r in self.profile_store.get_records(activity.athlete_id, activity.sport)
        }

        improvements: Dict[TimeWindow, List[ProfileRecord]] = {}
        for window in windows:
            touched = False
            for point in curve:
                incumbent = stored.get((point.duration_seconds, window))
                # A record that has aged out of its window no longer counts.
                if incumbent is not None and not window.contains(incumbent.date_achieved, today):
                    incumbent = None
                if not metric.is_better(point.value, incumbent.best_value if incumbent else None):
                    continue
                improvements.setdefault(window, []).append(ProfileRecord(
                    athlete_id=activity.athlete_id,
                    sport=activity.sport,
                    duration_seconds=point.duration_seconds,
                    time_window=window,
                    best_value=point.value,
                    date_achieved=activity.activity_date,
                    activity_id=activity.id,
                ))
                touched = True
            if touched:
                result.windows_touched.append(window.value)

        for window, records in improvements.items():
            result.records_written += self._write(
                records,
                metric,
                self.upsert_batch_size,
                replace=False,
                stale_before=window.start_date(today),
            )

        logger.info(
            f"Power profile update for activity {activity.id}: "
            f"{result.points_computed} points, "
            f"{sum(len(r) for r in improvements.values())} improvements, "
            f"windows={result.windows_touched}"
        )
        return result

    # ------------------------------------------------------------------
    # Backfill
    # ------------------------------------------------------------------

    def backfill_window(
        self,
        athlete_id: UUID,
        sport: str,
        window: TimeWindow,
        today: Optional[date] = None,
    ) -> WindowBackfillResult:
        """Rebuild one window's records from the activities inside it."""
        metric = metric_for_sport(sport)
        today = today or _utc_today()
        start = window.start_date(today)
        end = today if window.is_rolling else None
        page_size = self._page_size(window)

        result = WindowBackfillResult(window=window)
        # duration -> (best value, activity that set it)
        best: Dict[int, Tuple[float, ActivitySnapshot]] = {}

        def compute(activity: ActivitySnapshot) -> List[CurvePoint]:
            return build_curve(extract_series(activity, sport), metric)

        offset = 0
        while True:
            page = self.activity_store.list_activities(
                athlete_id, sport, start, end, offset=offset, limit=page_size
            )
            if not page:
                break
            result.activities_scanned += len(page)

            outcomes = run_in_batches(
                page,
                compute,
                batch_size=self.worker_batch_size,
                max_workers=self.worker_concurrency,
                delay_s=self.batch_delay_s,
                sleep=self._sleep,
            )
            # Outcomes keep store order, so on ties the earliest activity stays.
            for outcome in outcomes:
                if not outcome.ok:
                    result.activities_failed += 1
                    logger.warning(
                        f"Curve computation failed for activity {outcome.item.id} "
                        f"({window.value}): {outcome.error}"
                    )
                    continue
                if not outcome.result:
                    continue
                result.activities_with_data += 1
                for point in outcome.result:
                    current = best.get(point.duration_seconds)
                    if current is None or metric.is_better(point.value, current[0]):
                        best[point.duration_seconds] = (point.value, outcome.item)

            if len(page) < page_size:
                break
            offset += page_size

        records = [
            ProfileRecord(
                athlete_id=athlete_id,
                sport=sport,
                duration_seconds=duration,
                time_window=window,
                best_value=value,
                date_achieved=activity.activity_date,
                activity_id=activity.id,
            )
            for duration, (value, activity) in sorted(best.items())
        ]

        upsert_size = self._upsert_size(window)
        result.records_written = self._write(records, metric, upsert_size, replace=True)

        if window.is_rolling and records:
            promoted = [
                ProfileRecord(
                    athlete_id=r.athlete_id,
                    sport=r.sport,
                    duration_seconds=r.duration_seconds,
                    time_window=TimeWindow.ALL_TIME,
                    best_value=r.best_value,
                    date_achieved=r.date_achieved,
                    activity_id=r.activity_id,
                )
                for r in records
            ]
            result.all_time_promoted = self._write(
                promoted, metric, self.upsert_batch_size_large, replace=False
            )

        logger.info(
            f"Backfilled {window.value} for athlete {athlete_id} ({sport})",
            extra=log_fields(
                athlete_id=athlete_id,
                sport=sport,
                window=window.value,
                activities_scanned=result.activities_scanned,
                activities_with_data=result.activities_with_data,
                activities_failed=result.activities_failed,
                records_written=result.records_written,
                all_time_promoted=result.all_time_promoted,
            ),
        )
        return result

    def backfill(
        self,
        athlete_id: UUID,
        sport: str,
        windows: Optional[Sequence[TimeWindow]] = None,
        today: Optional[date] = None,
    ) -> BackfillSummary:
        """
        Backfill every window in turn.

        A failed window does not stop the others. Once all have been tried,
        PartialBackfillError is raised if any failed; the summary of what
        did complete rides along on the exception.
        """
        metric_for_sport(sport)
        today = today or _utc_today()
        summary = BackfillSummary(athlete_id=athlete_id, sport=sport)

        for window in windows or DEFAULT_BACKFILL_ORDER:
            try:
                summary.completed.append(
                    self.backfill_window(athlete_id, sport, window, today=today)
                )
            except Exception as e:
                logger.error(
                    f"Backfill of {window.value} failed for athlete {athlete_id} ({sport}): {e}",
                    exc_info=True,
                )
                summary.failed[window.value] = str(e)

        if summary.failed:
            raise PartialBackfillError(
                failed_windows=list(summary.failed),
                errors=dict(summary.failed),
                summary=summary,
            )
        return summary

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def best_effort_curve(
        self,
        athlete_id: UUID,
        sport: str,
        window: TimeWindow,
        today: Optional[date] = None,
    ) -> List[ProfileRecord]:
        """Stored records of one window, sorted by duration.

        A rolling-window record whose date has aged out of the window is not
        returned even if no backfill has removed it yet.
        """
        today = today or _utc_today()
        records = self.profile_store.get_records(athlete_id, sport, window)
        return sorted(
            (r for r in records if window.contains(r.date_achieved, today)),
            key=lambda r: r.duration_seconds,
        )
