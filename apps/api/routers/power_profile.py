"""
Power Profile Router

Exposes the power-curve engine:
- Best-effort curve per time window
- Latest critical power result per protocol
- Full profile backfill (queued) and its run state
"""

from datetime import date, datetime
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel
from sqlalchemy.orm import Session

from core.database import get_db
from core.exceptions import NotFoundError, ValidationError
from models import Athlete
from services.power_curve import (
    ProfileAggregator,
    SqlActivityStore,
    SqlCPResultStore,
    SqlProfileStore,
    TimeWindow,
    metric_for_sport,
)
from services.power_profile_state import get_backfill_state

router = APIRouter(prefix="/v1/athletes", tags=["Power Profile"])


# ============ Response Models ============

class ProfilePointResponse(BaseModel):
    duration_seconds: int
    value: float
    date_achieved: date
    activity_id: Optional[UUID] = None


class PowerProfileResponse(BaseModel):
    athlete_id: UUID
    sport: str
    window: str
    metric: str
    unit: str
    points: List[ProfilePointResponse]


class EffortResponse(BaseModel):
    duration_seconds: int
    value: float
    is_valid: bool
    rejection_reason: Optional[str] = None
    activity_id: Optional[UUID] = None


class CPResultResponse(BaseModel):
    protocol: Optional[str]
    model: str
    cp_watts: float
    w_prime_joules: float
    r_squared: Optional[float]
    test_date: datetime
    efforts_used: List[EffortResponse]
    efforts_rejected: List[EffortResponse]
    activity_ids: List[UUID]


class LatestCPResultsResponse(BaseModel):
    athlete_id: UUID
    sport: str
    results: List[CPResultResponse]


class BackfillQueuedResponse(BaseModel):
    status: str
    athlete_id: UUID
    sport: str
    task_id: Optional[str] = None


class BackfillStatusResponse(BaseModel):
    athlete_id: UUID
    sport: str
    status: str                 # never_run | running | success | partial | error
    task_id: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    windows_completed: List[str] = []
    windows_failed: List[str] = []
    activities_scanned: Optional[int] = None
    records_written: Optional[int] = None
    error: Optional[str] = None


# ============ Helpers ============

def _require_athlete(db: Session, athlete_id: UUID) -> Athlete:
    athlete = db.get(Athlete, athlete_id)
    if not athlete:
        raise NotFoundError("Athlete", str(athlete_id))
    return athlete


def _require_sport(sport: str):
    try:
        return metric_for_sport(sport)
    except ValueError as e:
        raise ValidationError(str(e), field="sport")


def _effort_response(effort) -> EffortResponse:
    return EffortResponse(
        duration_seconds=effort.duration_seconds,
        value=round(effort.value, 1),
        is_valid=effort.is_valid,
        rejection_reason=effort.rejection_reason,
        activity_id=effort.activity_id,
    )


# ============ Endpoints ============

@router.get("/{athlete_id}/power-profile", response_model=PowerProfileResponse)
async def get_power_profile(
    athlete_id: UUID,
    sport: str = Query("cycling"),
    window: TimeWindow = Query(TimeWindow.ALL_TIME),
    db: Session = Depends(get_db),
):
    """
    Best-effort curve for one time window.

    Points are sorted by duration. Power sports report watts, pace sports
    min/km.
    """
    metric = _require_sport(sport)
    _require_athlete(db, athlete_id)

    aggregator = ProfileAggregator(SqlActivityStore(db), SqlProfileStore(db))
    records = aggregator.best_effort_curve(athlete_id, sport, window)

    return PowerProfileResponse(
        athlete_id=athlete_id,
        sport=sport,
        window=window.value,
        metric=metric.value,
        unit=metric.unit,
        points=[
            ProfilePointResponse(
                duration_seconds=r.duration_seconds,
                value=r.best_value,
                date_achieved=r.date_achieved,
                activity_id=r.activity_id,
            )
            for r in records
        ],
    )


@router.get("/{athlete_id}/cp-results/latest", response_model=LatestCPResultsResponse)
async def get_latest_cp_results(
    athlete_id: UUID,
    sport: str = Query("cycling"),
    db: Session = Depends(get_db),
):
    """Latest critical power result per protocol, newest first."""
    _require_sport(sport)
    _require_athlete(db, athlete_id)

    results = SqlCPResultStore(db).list_latest(athlete_id, sport)
    return LatestCPResultsResponse(
        athlete_id=athlete_id,
        sport=sport,
        results=[
            CPResultResponse(
                protocol=r.protocol,
                model=r.model,
                cp_watts=round(r.cp_watts, 1),
                w_prime_joules=round(r.w_prime_joules),
                r_squared=round(r.r_squared, 4) if r.r_squared is not None else None,
                test_date=r.test_date,
                efforts_used=[_effort_response(e) for e in r.efforts_used],
                efforts_rejected=[_effort_response(e) for e in r.efforts_rejected],
                activity_ids=list(r.activity_ids),
            )
            for r in results
        ],
    )


@router.post(
    "/{athlete_id}/power-profile/backfill",
    response_model=BackfillQueuedResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def queue_power_profile_backfill(
    athlete_id: UUID,
    sport: str = Query("cycling"),
    db: Session = Depends(get_db),
):
    """Queue a full rebuild of every time window for one sport."""
    from tasks.power_profile_tasks import backfill_power_profile_task

    _require_sport(sport)
    _require_athlete(db, athlete_id)

    task = backfill_power_profile_task.delay(str(athlete_id), sport)
    return BackfillQueuedResponse(
        status="queued",
        athlete_id=athlete_id,
        sport=sport,
        task_id=getattr(task, "id", None),
    )


@router.get("/{athlete_id}/power-profile/backfill/status", response_model=BackfillStatusResponse)
async def get_power_profile_backfill_status(
    athlete_id: UUID,
    sport: str = Query("cycling"),
    db: Session = Depends(get_db),
):
    """State of the last backfill run for (athlete, sport)."""
    _require_sport(sport)
    _require_athlete(db, athlete_id)

    state = get_backfill_state(db, athlete_id, sport)
    if not state:
        return BackfillStatusResponse(athlete_id=athlete_id, sport=sport, status="never_run")

    return BackfillStatusResponse(
        athlete_id=athlete_id,
        sport=sport,
        status=state.last_status or "never_run",
        task_id=state.last_task_id,
        started_at=state.last_started_at,
        finished_at=state.last_finished_at,
        windows_completed=state.windows_completed or [],
        windows_failed=state.windows_failed or [],
        activities_scanned=state.activities_scanned,
        records_written=state.records_written,
        error=state.last_error,
    )
