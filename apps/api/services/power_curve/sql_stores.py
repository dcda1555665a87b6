"""
SQLAlchemy implementations of the power-curve storage collaborators.

Each write commits, so work finished before a later failure stays
persisted (no global rollback across windows or batches).

Concurrent writers:
    On PostgreSQL and SQLite, upsert_records is a single
    INSERT ... ON CONFLICT DO UPDATE ... WHERE statement, so "write only if
    better" is decided by the database row-by-row (compare-and-set).
    Other dialects fall back to read-then-write: two writers that both read
    the same stale best can both write, and the last one wins even when it
    is the worse value. That race is accepted there, not prevented.
"""
from __future__ import annotations

import logging
import uuid
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple
from uuid import UUID

from sqlalchemy import func, or_
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.exceptions import StorageError
from models import Activity, CriticalPowerResult, PowerProfileRecord

from .models import (
    ActivitySnapshot,
    CPResult,
    Effort,
    ProfileRecord,
    SportMetric,
    TimeWindow,
)
from .stores import ActivityStore, CPResultStore, ProfileStore

logger = logging.getLogger(__name__)

_NATIVE_UPSERT = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}

_PROFILE_KEY = ("athlete_id", "sport", "duration_seconds", "time_window")


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored in UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _day_start(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


def _to_snapshot(row: Activity) -> ActivitySnapshot:
    return ActivitySnapshot(
        id=row.id,
        athlete_id=row.athlete_id,
        activity_date=_as_utc(row.start_time).date(),
        sport=row.sport,
        power_series=row.power_series,
        speed_series=row.speed_series,
        track_points=row.track_points,
        cp_test_protocol=row.cp_test_protocol,
        cp_test_target_duration=row.cp_test_target_duration,
        name=row.name,
    )


class SqlActivityStore(ActivityStore):
    def __init__(self, db: Session):
        self.db = db

    def get_activity(self, activity_id: UUID) -> Optional[ActivitySnapshot]:
        try:
            row = self.db.get(Activity, activity_id)
        except SQLAlchemyError as e:
            raise StorageError("get_activity", str(e)) from e
        return _to_snapshot(row) if row else None

    def list_activities(
        self,
        athlete_id: UUID,
        sport: str,
        start: Optional[date],
        end: Optional[date],
        offset: int,
        limit: int,
    ) -> List[ActivitySnapshot]:
        query = self.db.query(Activity).filter(
            Activity.athlete_id == athlete_id,
            Activity.sport == sport,
        )
        if start is not None:
            query = query.filter(Activity.start_time >= _day_start(start))
        if end is not None:
            query = query.filter(Activity.start_time < _day_start(end + timedelta(days=1)))
        try:
            rows = (
                query.order_by(Activity.start_time.asc(), Activity.id.asc())
                .offset(offset)
                .limit(limit)
                .all()
            )
        except SQLAlchemyError as e:
            raise StorageError("list_activities", str(e)) from e
        return [_to_snapshot(row) for row in rows]

    def list_protocol_activities(self, athlete_id: UUID, sport: str, since: date) -> List[ActivitySnapshot]:
        try:
            rows = (
                self.db.query(Activity)
                .filter(
                    Activity.athlete_id == athlete_id,
                    Activity.sport == sport,
                    Activity.cp_test_protocol.isnot(None),
                    Activity.start_time >= _day_start(since),
                )
                .order_by(Activity.start_time.asc(), Activity.id.asc())
                .all()
            )
        except SQLAlchemyError as e:
            raise StorageError("list_protocol_activities", str(e)) from e
        return [_to_snapshot(row) for row in rows]


def _record_key(record: ProfileRecord) -> Tuple[Any, ...]:
    return (record.athlete_id, record.sport, record.duration_seconds, record.time_window)


def _dedupe(records: Sequence[ProfileRecord], metric: SportMetric, replace: bool) -> List[ProfileRecord]:
    """One record per key; one statement may not touch the same row twice."""
    by_key: Dict[Tuple[Any, ...], ProfileRecord] = {}
    for record in records:
        key = _record_key(record)
        current = by_key.get(key)
        if current is None or replace or metric.is_better(record.best_value, current.best_value):
            by_key[key] = record
    return list(by_key.values())


def _to_profile_record(row: PowerProfileRecord) -> ProfileRecord:
    return ProfileRecord(
        athlete_id=row.athlete_id,
        sport=row.sport,
        duration_seconds=row.duration_seconds,
        time_window=TimeWindow(row.time_window),
        best_value=row.best_value,
        date_achieved=row.date_achieved,
        activity_id=row.activity_id,
    )


class SqlProfileStore(ProfileStore):
    def __init__(self, db: Session):
        self.db = db

    def get_records(
        self,
        athlete_id: UUID,
        sport: str,
        window: Optional[TimeWindow] = None,
    ) -> List[ProfileRecord]:
        query = self.db.query(PowerProfileRecord).filter(
            PowerProfileRecord.athlete_id == athlete_id,
            PowerProfileRecord.sport == sport,
        )
        if window is not None:
            query = query.filter(PowerProfileRecord.time_window == window.value)
        try:
            rows = query.order_by(PowerProfileRecord.duration_seconds.asc()).all()
        except SQLAlchemyError as e:
            raise StorageError("get_records", str(e)) from e
        return [_to_profile_record(row) for row in rows]

    def upsert_records(
        self,
        records: Sequence[ProfileRecord],
        metric: SportMetric,
        replace: bool = False,
        stale_before: Optional[date] = None,
    ) -> int:
        if not records:
            return 0
        records = _dedupe(records, metric, replace)
        dialect = self.db.get_bind().dialect.name
        try:
            if dialect in _NATIVE_UPSERT:
                changed = self._upsert_native(
                    _NATIVE_UPSERT[dialect], records, metric, replace, stale_before
                )
            else:
                logger.debug(f"No native upsert for dialect {dialect}; using read-then-write")
                changed = self._upsert_read_then_write(records, metric, replace, stale_before)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise StorageError("upsert_records", str(e)) from e
        return changed

    def _upsert_native(
        self,
        insert_fn,
        records: Sequence[ProfileRecord],
        metric: SportMetric,
        replace: bool,
        stale_before: Optional[date],
    ) -> int:
        table = PowerProfileRecord.__table__
        stmt = insert_fn(table).values([
            {
                "id": uuid.uuid4(),
                "athlete_id": r.athlete_id,
                "sport": r.sport,
                "duration_seconds": r.duration_seconds,
                "time_window": r.time_window.value,
                "best_value": r.best_value,
                "date_achieved": r.date_achieved,
                "activity_id": r.activity_id,
            }
            for r in records
        ])
        excluded = stmt.excluded
        where = None
        if not replace:
            if metric is SportMetric.PACE:
                where = excluded.best_value < table.c.best_value
            else:
                where = excluded.best_value > table.c.best_value
            if stale_before is not None:
                where = or_(where, table.c.date_achieved < stale_before)
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c[name] for name in _PROFILE_KEY],
            set_={
                "best_value": excluded.best_value,
                "date_achieved": excluded.date_achieved,
                "activity_id": excluded.activity_id,
                "updated_at": func.now(),
            },
            where=where,
        )
        result = self.db.execute(stmt)
        return result.rowcount if result.rowcount is not None and result.rowcount >= 0 else len(records)

    def _upsert_read_then_write(
        self,
        records: Sequence[ProfileRecord],
        metric: SportMetric,
        replace: bool,
        stale_before: Optional[date],
    ) -> int:
        changed = 0
        for record in records:
            row = (
                self.db.query(PowerProfileRecord)
                .filter(
                    PowerProfileRecord.athlete_id == record.athlete_id,
                    PowerProfileRecord.sport == record.sport,
                    PowerProfileRecord.duration_seconds == record.duration_seconds,
                    PowerProfileRecord.time_window == record.time_window.value,
                )
                .with_for_update()
                .first()
            )
            if row is None:
                self.db.add(PowerProfileRecord(
                    athlete_id=record.athlete_id,
                    sport=record.sport,
                    duration_seconds=record.duration_seconds,
                    time_window=record.time_window.value,
                    best_value=record.best_value,
                    date_achieved=record.date_achieved,
                    activity_id=record.activity_id,
                ))
                changed += 1
            elif (
                replace
                or metric.is_better(record.best_value, row.best_value)
                or (stale_before is not None and row.date_achieved < stale_before)
            ):
                row.best_value = record.best_value
                row.date_achieved = record.date_achieved
                row.activity_id = record.activity_id
                changed += 1
        self.db.flush()
        return changed


def _effort_from_dict(data: Dict[str, Any]) -> Effort:
    activity_id = data.get("activity_id")
    return Effort(
        duration_seconds=int(data["duration_seconds"]),
        value=float(data["value"]),
        is_valid=bool(data.get("is_valid", False)),
        rejection_reason=data.get("rejection_reason"),
        start_offset_s=data.get("start_offset_s"),
        activity_id=UUID(activity_id) if activity_id else None,
    )


def _to_cp_result(row: CriticalPowerResult) -> CPResult:
    return CPResult(
        protocol=row.protocol,
        model=row.model,
        cp_watts=row.cp_watts,
        w_prime_joules=row.w_prime_joules,
        efforts_used=tuple(_effort_from_dict(e) for e in (row.efforts_used or [])),
        efforts_rejected=tuple(_effort_from_dict(e) for e in (row.efforts_rejected or [])),
        test_date=_as_utc(row.test_date),
        r_squared=row.r_squared,
        activity_ids=tuple(UUID(a) for a in (row.activity_ids or [])),
    )


class SqlCPResultStore(CPResultStore):
    def __init__(self, db: Session):
        self.db = db

    def _latest_first(self, athlete_id: UUID, sport: str):
        return (
            self.db.query(CriticalPowerResult)
            .filter(
                CriticalPowerResult.athlete_id == athlete_id,
                CriticalPowerResult.sport == sport,
            )
            .order_by(CriticalPowerResult.test_date.desc(), CriticalPowerResult.created_at.desc())
        )

    def get_latest(self, athlete_id: UUID, sport: str, protocol: str) -> Optional[CPResult]:
        try:
            row = (
                self._latest_first(athlete_id, sport)
                .filter(CriticalPowerResult.protocol == protocol)
                .first()
            )
        except SQLAlchemyError as e:
            raise StorageError("get_latest_cp_result", str(e)) from e
        return _to_cp_result(row) if row else None

    def list_latest(self, athlete_id: UUID, sport: str) -> List[CPResult]:
        try:
            rows = self._latest_first(athlete_id, sport).all()
        except SQLAlchemyError as e:
            raise StorageError("list_latest_cp_results", str(e)) from e
        latest: Dict[str, CPResult] = {}
        for row in rows:
            if row.protocol not in latest:
                latest[row.protocol] = _to_cp_result(row)
        return sorted(latest.values(), key=lambda r: r.test_date, reverse=True)

    def insert(self, athlete_id: UUID, sport: str, result: CPResult) -> None:
        row = CriticalPowerResult(
            athlete_id=athlete_id,
            sport=sport,
            protocol=result.protocol,
            model=result.model,
            test_date=result.test_date,
            cp_watts=result.cp_watts,
            w_prime_joules=result.w_prime_joules,
            r_squared=result.r_squared,
            efforts_used=[e.to_dict() for e in result.efforts_used],
            efforts_rejected=[e.to_dict() for e in result.efforts_rejected],
            activity_ids=[str(a) for a in result.activity_ids],
        )
        try:
            self.db.add(row)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise StorageError("insert_cp_result", str(e)) from e
