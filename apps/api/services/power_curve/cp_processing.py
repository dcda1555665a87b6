"""
CP test processing.

Looks at an athlete's recent protocol-tagged activities, assembles them
into protocol sets, fits CP/W' for every complete set and stores a new
result when it supersedes the latest one for that protocol.
"""
from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional
from uuid import UUID

from core.config import settings

from .cp_detection import detect_efforts, find_protocol_sets, get_protocol
from .cp_model import fit_critical_power
from .models import (
    ActivitySnapshot,
    CPProcessingSummary,
    SportMetric,
    TaggedActivity,
)
from .series import extract_series
from .stores import ActivityStore, CPResultStore

logger = logging.getLogger(__name__)


def _recent_per_protocol(activities: List[ActivitySnapshot]) -> List[ActivitySnapshot]:
    """Per protocol, keep activities within max_gap_days of that protocol's latest one."""
    by_protocol: Dict[str, List[ActivitySnapshot]] = defaultdict(list)
    for activity in activities:
        by_protocol[activity.cp_test_protocol].append(activity)

    kept: List[ActivitySnapshot] = []
    for key, members in by_protocol.items():
        protocol = get_protocol(key)
        if protocol is None:
            logger.warning(f"Ignoring {len(members)} activities tagged with unknown protocol '{key}'")
            continue
        latest = max(a.activity_date for a in members)
        kept.extend(
            a for a in members
            if (latest - a.activity_date).days <= protocol.max_gap_days
        )
    return kept


def _tag(activity: ActivitySnapshot) -> TaggedActivity:
    series = extract_series(activity, metric=SportMetric.POWER)
    efforts = detect_efforts(
        series,
        activity.cp_test_protocol,
        target_duration=activity.cp_test_target_duration,
        activity_id=activity.id,
    )
    return TaggedActivity(
        activity_id=activity.id,
        activity_date=activity.activity_date,
        protocol=activity.cp_test_protocol,
        efforts=tuple(efforts),
    )


def process_cp_tests(
    athlete_id: UUID,
    sport: str,
    activity_store: ActivityStore,
    cp_store: CPResultStore,
    now: Optional[datetime] = None,
    lookback_days: Optional[int] = None,
) -> CPProcessingSummary:
    now = now or datetime.now(timezone.utc)
    lookback_days = lookback_days or settings.CP_TEST_LOOKBACK_DAYS
    since = now.date() - timedelta(days=lookback_days)

    summary = CPProcessingSummary(athlete_id=athlete_id, sport=sport)
    activities = _recent_per_protocol(
        activity_store.list_protocol_activities(athlete_id, sport, since)
    )
    summary.activities_considered = len(activities)
    if not activities:
        logger.info(f"No CP test activities for athlete {athlete_id} ({sport}) since {since}")
        return summary

    tagged = [_tag(a) for a in activities]
    efforts_by_activity = {t.activity_id: t.efforts for t in tagged}

    sets = find_protocol_sets(tagged)
    summary.sets_found = len(sets)

    for protocol_set in sets:
        if not protocol_set.can_calculate_cp:
            logger.info(
                f"CP set {protocol_set.protocol} for athlete {athlete_id} not calculable "
                f"(within_gap={protocol_set.within_gap}, valid_efforts={len(protocol_set.efforts)})"
            )
            continue
        summary.sets_calculable += 1

        try:
            efforts = [
                effort
                for activity_id in protocol_set.activity_ids
                for effort in efforts_by_activity.get(activity_id, ())
            ]
            result = fit_critical_power(efforts, protocol_set.protocol, now=now)
            if result is None:
                continue

            latest = cp_store.get_latest(athlete_id, sport, protocol_set.protocol)
            if latest is not None and set(latest.activity_ids) == set(result.activity_ids):
                summary.skipped_unchanged += 1
                continue
            if latest is not None and result.test_date <= latest.test_date:
                continue

            cp_store.insert(athlete_id, sport, result)
            summary.results_saved.append(result)
            logger.info(
                f"Saved CP result for athlete {athlete_id} ({protocol_set.protocol}, {result.model}): "
                f"CP={result.cp_watts:.1f}W W'={result.w_prime_joules:.0f}J"
            )
        except Exception as e:
            logger.error(
                f"CP processing failed for athlete {athlete_id} protocol {protocol_set.protocol}: {e}",
                exc_info=True,
            )
            summary.failures[protocol_set.protocol] = str(e)

    return summary
