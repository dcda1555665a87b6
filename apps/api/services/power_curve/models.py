"""
Value types for the power-curve engine.

These are plain frozen dataclasses so they can cross thread boundaries
during backfill without dragging a SQLAlchemy session along. The stores
translate between these and the ORM rows in `models.py`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID


class SportMetric(str, Enum):
    """What a sport's curve measures, and which direction is better."""
    POWER = "power"  # watts, higher is better
    PACE = "pace"    # min/km derived from m/s, lower is better

    def is_better(self, candidate: float, incumbent: Optional[float]) -> bool:
        if incumbent is None:
            return True
        if self is SportMetric.PACE:
            return candidate < incumbent
        return candidate > incumbent

    @property
    def unit(self) -> str:
        return "min/km" if self is SportMetric.PACE else "W"


SPORT_METRICS: Dict[str, SportMetric] = {
    "cycling": SportMetric.POWER,
    "running": SportMetric.PACE,
}


def metric_for_sport(sport: str) -> SportMetric:
    try:
        return SPORT_METRICS[sport]
    except KeyError:
        raise ValueError(
            f"Unknown sport '{sport}'. Valid sports: {sorted(SPORT_METRICS)}"
        ) from None


class TimeWindow(str, Enum):
    """Trailing date ranges that scope best-effort records."""
    DAYS_7 = "7-day"
    DAYS_14 = "14-day"
    DAYS_30 = "30-day"
    DAYS_90 = "90-day"
    DAYS_365 = "365-day"
    ALL_TIME = "all-time"

    @property
    def days(self) -> Optional[int]:
        return _WINDOW_DAYS[self]

    @property
    def is_rolling(self) -> bool:
        return self is not TimeWindow.ALL_TIME

    def start_date(self, today: date) -> Optional[date]:
        """First calendar day inside the window, or None for all-time."""
        if self.days is None:
            return None
        return today - timedelta(days=self.days)

    def contains(self, day: date, today: date) -> bool:
        """True when `day` falls between the window start and `today`. All-time has no bounds."""
        start = self.start_date(today)
        return start is None or start <= day <= today


_WINDOW_DAYS: Dict[TimeWindow, Optional[int]] = {
    TimeWindow.DAYS_7: 7,
    TimeWindow.DAYS_14: 14,
    TimeWindow.DAYS_30: 30,
    TimeWindow.DAYS_90: 90,
    TimeWindow.DAYS_365: 365,
    TimeWindow.ALL_TIME: None,
}

ROLLING_WINDOWS: Tuple[TimeWindow, ...] = tuple(w for w in TimeWindow if w.is_rolling)


@dataclass(frozen=True)
class ActivitySnapshot:
    """Read-only view of an activity as returned by the activity store."""
    id: UUID
    athlete_id: UUID
    activity_date: date
    sport: str
    power_series: Optional[List[Any]] = None
    speed_series: Optional[List[Any]] = None
    track_points: Optional[List[Dict[str, Any]]] = None
    cp_test_protocol: Optional[str] = None
    cp_test_target_duration: Optional[int] = None
    name: Optional[str] = None


@dataclass(frozen=True)
class CurvePoint:
    duration_seconds: int
    value: float


@dataclass(frozen=True)
class Effort:
    """One tested duration of a CP protocol within one activity."""
    duration_seconds: int
    value: float
    is_valid: bool
    rejection_reason: Optional[str] = None
    start_offset_s: Optional[int] = None
    activity_id: Optional[UUID] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "duration_seconds": self.duration_seconds,
            "value": self.value,
            "is_valid": self.is_valid,
            "rejection_reason": self.rejection_reason,
            "start_offset_s": self.start_offset_s,
            "activity_id": str(self.activity_id) if self.activity_id else None,
        }


@dataclass(frozen=True)
class TaggedActivity:
    """An activity already tagged with a protocol, with its detected efforts."""
    activity_id: UUID
    activity_date: date
    protocol: str
    efforts: Tuple[Effort, ...] = ()


@dataclass(frozen=True)
class ProtocolSet:
    protocol: str
    activity_ids: Tuple[UUID, ...]
    efforts: Tuple[Effort, ...]
    span_days: int
    within_gap: bool
    can_calculate_cp: bool


@dataclass(frozen=True)
class CPResult:
    protocol: Optional[str]
    model: str  # 'two_point' | 'three_point'
    cp_watts: float
    w_prime_joules: float
    efforts_used: Tuple[Effort, ...]
    efforts_rejected: Tuple[Effort, ...]
    test_date: datetime
    r_squared: Optional[float]
    activity_ids: Tuple[UUID, ...] = ()


@dataclass(frozen=True)
class ProfileRecord:
    athlete_id: UUID
    sport: str
    duration_seconds: int
    time_window: TimeWindow
    best_value: float
    date_achieved: date
    activity_id: Optional[UUID] = None


@dataclass
class IncrementalUpdateResult:
    activity_id: UUID
    points_computed: int = 0
    records_written: int = 0
    windows_touched: List[str] = field(default_factory=list)
    skipped_reason: Optional[str] = None


@dataclass
class WindowBackfillResult:
    window: TimeWindow
    activities_scanned: int = 0
    activities_with_data: int = 0
    activities_failed: int = 0
    records_written: int = 0
    all_time_promoted: int = 0


@dataclass
class BackfillSummary:
    athlete_id: UUID
    sport: str
    completed: List[WindowBackfillResult] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)

    @property
    def activities_scanned(self) -> int:
        return sum(r.activities_scanned for r in self.completed)

    @property
    def records_written(self) -> int:
        return sum(r.records_written + r.all_time_promoted for r in self.completed)


@dataclass
class CPProcessingSummary:
    athlete_id: UUID
    sport: str
    activities_considered: int = 0
    sets_found: int = 0
    sets_calculable: int = 0
    results_saved: List[CPResult] = field(default_factory=list)
    skipped_unchanged: int = 0
    failures: Dict[str, str] = field(default_factory=dict)
