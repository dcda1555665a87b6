"""
Durable power-profile backfill state (operational visibility).

Goals:
- Store last task/run metadata per (athlete, sport)
- Record which windows completed and which failed (no log scraping)
- Keep this write path lightweight and safe to call from Celery tasks

Callers own the transaction; nothing here commits.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from models import PowerProfileBackfillState
from services.power_curve.models import BackfillSummary


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def get_backfill_state(db: Session, athlete_id: UUID, sport: str) -> Optional[PowerProfileBackfillState]:
    return (
        db.query(PowerProfileBackfillState)
        .filter(PowerProfileBackfillState.athlete_id == athlete_id, PowerProfileBackfillState.sport == sport)
        .first()
    )


def _get_or_create_state(db: Session, athlete_id: UUID, sport: str) -> PowerProfileBackfillState:
    state = get_backfill_state(db, athlete_id, sport)
    if state:
        return state
    state = PowerProfileBackfillState(athlete_id=athlete_id, sport=sport, windows_completed=[], windows_failed=[])
    db.add(state)
    db.flush()
    return state


def _record_summary(state: PowerProfileBackfillState, summary: BackfillSummary) -> None:
    state.windows_completed = [r.window.value for r in summary.completed]
    state.windows_failed = list(summary.failed)
    state.activities_scanned = summary.activities_scanned
    state.records_written = summary.records_written


def mark_backfill_started(db: Session, athlete_id: UUID, sport: str, task_id: str) -> None:
    state = _get_or_create_state(db, athlete_id, sport)
    state.last_task_id = task_id
    state.last_started_at = _utcnow()
    state.last_finished_at = None
    state.last_status = "running"
    state.last_error = None
    state.windows_completed = []
    state.windows_failed = []
    state.activities_scanned = None
    state.records_written = None
    db.add(state)


def mark_backfill_finished(db: Session, athlete_id: UUID, sport: str, summary: BackfillSummary) -> None:
    state = _get_or_create_state(db, athlete_id, sport)
    state.last_finished_at = _utcnow()
    state.last_status = "success"
    state.last_error = None
    _record_summary(state, summary)
    db.add(state)


def mark_backfill_partial(
    db: Session,
    athlete_id: UUID,
    sport: str,
    summary: BackfillSummary,
    errors: Dict[str, str],
) -> None:
    state = _get_or_create_state(db, athlete_id, sport)
    state.last_finished_at = _utcnow()
    state.last_status = "partial"
    state.last_error = "; ".join(f"{window}: {error}" for window, error in errors.items())
    _record_summary(state, summary)
    db.add(state)


def mark_backfill_error(db: Session, athlete_id: UUID, sport: str, error: str, task_id: Optional[str] = None) -> None:
    state = _get_or_create_state(db, athlete_id, sport)
    if task_id:
        state.last_task_id = task_id
    state.last_finished_at = _utcnow()
    state.last_status = "error"
    state.last_error = error
    db.add(state)
