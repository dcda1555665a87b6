"""
Pytest configuration and fixtures

Tests run against an in-memory SQLite database. The schema is created
fresh for every test and dropped afterwards, so nothing leaks between
tests. DATABASE_URL is forced before any application module is imported.
"""
import os
import sys
from datetime import date, datetime, time, timezone
from typing import Optional
from uuid import UUID, uuid4

import pytest

# Add the parent directory to the path so we can import from services
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("LOG_FORMAT", "text")

from core.database import Base, SessionLocal, engine  # noqa: E402
from models import Activity, Athlete  # noqa: E402


@pytest.fixture(scope="function")
def db_session():
    """
    Fresh schema per test.

    StaticPool keeps the single in-memory connection alive, so sessions
    opened by tasks or the API during the test see the same data.
    """
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def test_athlete(db_session):
    athlete = Athlete(
        email=f"test_{uuid4()}@example.com",
        display_name="Test Athlete",
    )
    db_session.add(athlete)
    db_session.commit()
    db_session.refresh(athlete)
    return athlete


@pytest.fixture
def make_activity(db_session, test_athlete):
    """Factory persisting an Activity on a given calendar day (UTC noon)."""

    def _make(
        day: date,
        power_series=None,
        speed_series=None,
        track_points=None,
        sport: str = "cycling",
        cp_test_protocol: Optional[str] = None,
        cp_test_target_duration: Optional[int] = None,
        athlete_id: Optional[UUID] = None,
    ) -> Activity:
        activity = Activity(
            athlete_id=athlete_id or test_athlete.id,
            name=f"{sport} on {day.isoformat()}",
            start_time=datetime.combine(day, time(12, 0), tzinfo=timezone.utc),
            sport=sport,
            power_series=power_series,
            speed_series=speed_series,
            track_points=track_points,
            cp_test_protocol=cp_test_protocol,
            cp_test_target_duration=cp_test_target_duration,
        )
        db_session.add(activity)
        db_session.commit()
        db_session.refresh(activity)
        return activity

    return _make
