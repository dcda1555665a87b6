"""
Storage collaborator interfaces for the power-curve engine.

The engine never talks to the database directly. Everything it reads or
writes goes through these three stores, which keeps the computation
testable and lets the aggregator own the "is this better?" decision.

Implementation Requirements:
- Raise core.exceptions.StorageError for backend failures
- Return engine value types (services.power_curve.models), never ORM rows
- upsert_records must only write a row when it improves on the stored
  value, unless replace=True
"""

from abc import ABC, abstractmethod
from datetime import date
from typing import List, Optional, Sequence
from uuid import UUID

from .models import (
    ActivitySnapshot,
    CPResult,
    ProfileRecord,
    SportMetric,
    TimeWindow,
)


class ActivityStore(ABC):
    """Paginated, date/sport-filterable read access to activities."""

    @abstractmethod
    def get_activity(self, activity_id: UUID) -> Optional[ActivitySnapshot]:
        pass

    @abstractmethod
    def list_activities(
        self,
        athlete_id: UUID,
        sport: str,
        start: Optional[date],
        end: Optional[date],
        offset: int,
        limit: int,
    ) -> List[ActivitySnapshot]:
        """
        Activities of one sport with start <= activity date <= end.

        Ordered by activity date then id so pages are stable.
        """
        pass

    @abstractmethod
    def list_protocol_activities(
        self,
        athlete_id: UUID,
        sport: str,
        since: date,
    ) -> List[ActivitySnapshot]:
        """Activities tagged with a CP protocol on or after `since`."""
        pass


class ProfileStore(ABC):
    """Best-effort records keyed by (athlete, sport, duration, window)."""

    @abstractmethod
    def get_records(
        self,
        athlete_id: UUID,
        sport: str,
        window: Optional[TimeWindow] = None,
    ) -> List[ProfileRecord]:
        pass

    @abstractmethod
    def upsert_records(
        self,
        records: Sequence[ProfileRecord],
        metric: SportMetric,
        replace: bool = False,
        stale_before: Optional[date] = None,
    ) -> int:
        """
        Write records, returning how many rows changed.

        replace=False: compare-and-set, a row is written only when the new
        value is better for `metric` (or no row exists).
        replace=True: the new value overwrites whatever is stored.
        stale_before: a stored row achieved before this date is overwritten
        whatever its value, as it has aged out of its rolling window.
        """
        pass


class CPResultStore(ABC):
    """Fitted critical power results, newest test date wins."""

    @abstractmethod
    def get_latest(self, athlete_id: UUID, sport: str, protocol: str) -> Optional[CPResult]:
        pass

    @abstractmethod
    def list_latest(self, athlete_id: UUID, sport: str) -> List[CPResult]:
        """Latest result per protocol."""
        pass

    @abstractmethod
    def insert(self, athlete_id: UUID, sport: str, result: CPResult) -> None:
        pass
