"""Critical power test detection.

Two steps, both pure:

    detect_efforts(series, protocol, ...)  one activity -> validity-tagged Efforts
    find_protocol_sets(tagged_activities)  many activities -> ProtocolSets

A protocol may be spread across several sessions (e.g. the 3 min effort on
Monday, the 12 min effort on Wednesday). A set is only usable when every
session falls within the protocol's maximum calendar gap.
"""
from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, FrozenSet, Iterable, List, Optional, Sequence
from uuid import UUID

from .mean_maximal import best_window
from .models import Effort, ProtocolSet, TaggedActivity

logger = logging.getLogger(__name__)

TWO_POINT = "two_point"
THREE_POINT = "three_point"

MODEL_MIN_EFFORTS = {
    TWO_POINT: 2,
    THREE_POINT: 3,
}

# Absolute floors applied to every protocol.
MIN_EFFORT_POWER_W = 50.0
MIN_EFFORT_DURATION_S = 60


@dataclass(frozen=True)
class Protocol:
    key: str
    name: str
    required_durations: FrozenSet[int]
    max_gap_days: int
    min_power_watts: float
    min_effort_duration_s: int = MIN_EFFORT_DURATION_S
    model: str = TWO_POINT

    @property
    def min_efforts(self) -> int:
        return MODEL_MIN_EFFORTS[self.model]


CP_PROTOCOLS: Dict[str, Protocol] = {
    "3min-12min": Protocol(
        key="3min-12min",
        name="3min + 12min Protocol",
        required_durations=frozenset({180, 720}),
        max_gap_days=3,
        min_power_watts=150.0,
    ),
    "5min-20min": Protocol(
        key="5min-20min",
        name="5min + 20min Protocol",
        required_durations=frozenset({300, 1200}),
        max_gap_days=3,
        min_power_watts=150.0,
    ),
    "8min-30min": Protocol(
        key="8min-30min",
        name="8min + 30min Protocol",
        required_durations=frozenset({480, 1800}),
        max_gap_days=3,
        min_power_watts=120.0,
    ),
    "ramp-test": Protocol(
        key="ramp-test",
        name="Ramp Test",
        required_durations=frozenset({1200}),
        max_gap_days=1,
        min_power_watts=100.0,
        min_effort_duration_s=1200,
    ),
    "3min-7min-12min": Protocol(
        key="3min-7min-12min",
        name="3min + 7min + 12min Protocol",
        required_durations=frozenset({180, 420, 720}),
        max_gap_days=3,
        min_power_watts=150.0,
        model=THREE_POINT,
    ),
}


def get_protocol(key: Optional[str]) -> Optional[Protocol]:
    if not key:
        return None
    return CP_PROTOCOLS.get(key)


def _rejection_reason(power: float, duration: int, protocol: Protocol) -> Optional[str]:
    if power < MIN_EFFORT_POWER_W:
        return f"Power too low (< {MIN_EFFORT_POWER_W:.0f}W)"
    if duration < MIN_EFFORT_DURATION_S:
        return "Duration too short (< 1min)"
    if duration < protocol.min_effort_duration_s:
        return f"Effort too short for protocol (< {protocol.min_effort_duration_s}s)"
    if power <= protocol.min_power_watts:
        return f"Power insufficient for protocol (<= {protocol.min_power_watts:.0f}W)"
    return None


def detect_efforts(
    series: Sequence[float],
    protocol_key: str,
    target_duration: Optional[int] = None,
    activity_id: Optional[UUID] = None,
) -> List[Effort]:
    """Test each duration the protocol requires against a power series.

    target_duration replaces the protocol's durations; it is meant for
    single-effort sessions of a multi-day protocol. Every tested duration
    yields exactly one Effort, valid or not.
    """
    protocol = get_protocol(protocol_key)
    if protocol is None:
        logger.warning(f"Unknown CP protocol '{protocol_key}' on activity {activity_id}")
        return []

    durations = [target_duration] if target_duration else sorted(protocol.required_durations)

    efforts: List[Effort] = []
    for duration in durations:
        found = best_window(series, duration)
        if found is None or found[1] <= 0:
            efforts.append(Effort(
                duration_seconds=duration,
                value=0.0,
                is_valid=False,
                rejection_reason="Not enough data for duration",
                activity_id=activity_id,
            ))
            continue

        start, power = found
        reason = _rejection_reason(power, duration, protocol)
        efforts.append(Effort(
            duration_seconds=duration,
            value=power,
            is_valid=reason is None,
            rejection_reason=reason,
            start_offset_s=start,
            activity_id=activity_id,
        ))
    return efforts


def find_protocol_sets(activities: Iterable[TaggedActivity]) -> List[ProtocolSet]:
    """Group tagged activities by protocol and decide which groups can yield CP.

    The span is counted in calendar days between the first and last session.
    Groups over the protocol's max gap are returned with within_gap=False and
    no efforts, so callers can report why nothing was fitted.
    """
    groups: Dict[str, List[TaggedActivity]] = defaultdict(list)
    for activity in activities:
        if not activity.protocol:
            continue
        groups[activity.protocol].append(activity)

    sets: List[ProtocolSet] = []
    for key, members in groups.items():
        protocol = get_protocol(key)
        if protocol is None:
            logger.warning(f"Skipping activities tagged with unknown protocol '{key}'")
            continue

        members.sort(key=lambda a: (a.activity_date, str(a.activity_id)))
        span_days = (members[-1].activity_date - members[0].activity_date).days
        activity_ids = tuple(a.activity_id for a in members)

        if span_days > protocol.max_gap_days:
            sets.append(ProtocolSet(
                protocol=key,
                activity_ids=activity_ids,
                efforts=(),
                span_days=span_days,
                within_gap=False,
                can_calculate_cp=False,
            ))
            continue

        valid = tuple(e for a in members for e in a.efforts if e.is_valid)
        covered = {e.duration_seconds for e in valid}
        can_calculate = (
            protocol.required_durations.issubset(covered)
            and len(valid) >= protocol.min_efforts
        )
        sets.append(ProtocolSet(
            protocol=key,
            activity_ids=activity_ids,
            efforts=valid,
            span_days=span_days,
            within_gap=True,
            can_calculate_cp=can_calculate,
        ))
    return sets
