from sqlalchemy import Column, Integer, Float, Date, DateTime, ForeignKey, JSON, Text, Uuid, Index, UniqueConstraint, CheckConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func
from core.database import Base
import uuid

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Athlete(Base):
    __tablename__ = "athlete"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    email = Column(Text, unique=True, nullable=True)
    display_name = Column(Text, nullable=True)

    activities = relationship("Activity", back_populates="athlete")


class Activity(Base):
    """
    An uploaded or synced activity, as the power-curve engine sees it.

    Sensor data arrives in one of two shapes:
    - dedicated per-second series (power_series in watts, speed_series in m/s)
    - embedded per-point track data from the file parser, e.g.
      [{"power": 212, "speed": 8.1}, {"power": {"value": 215}}, ...]

    cp_test_protocol tags the activity as part of a structured critical
    power test (e.g. '3min-12min'); cp_test_target_duration narrows a
    single-effort session to one duration of that protocol.
    """
    __tablename__ = "activity"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    athlete_id = Column(Uuid(as_uuid=True), ForeignKey("athlete.id"), nullable=False, index=True)
    name = Column(Text, nullable=True)
    start_time = Column(DateTime(timezone=True), nullable=False)
    sport = Column(Text, default="cycling", nullable=False)  # 'cycling' | 'running'
    duration_s = Column(Integer, nullable=True)

    # --- SENSOR DATA ---
    power_series = Column(JSONType, nullable=True)
    speed_series = Column(JSONType, nullable=True)
    track_points = Column(JSONType, nullable=True)

    # --- CP TEST TAGGING ---
    cp_test_protocol = Column(Text, nullable=True, index=True)
    cp_test_target_duration = Column(Integer, nullable=True)

    athlete = relationship("Athlete", back_populates="activities")

    __table_args__ = (
        Index("ix_activity_athlete_sport_start", "athlete_id", "sport", "start_time"),
    )


class PowerProfileRecord(Base):
    """
    Best known value for one (athlete, sport, duration, time window).

    best_value is watts for power sports and min/km for pace sports;
    "better" is higher for power and lower for pace. Rows are upserted,
    never deleted.
    """
    __tablename__ = "power_profile_record"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    athlete_id = Column(Uuid(as_uuid=True), ForeignKey("athlete.id"), nullable=False)
    sport = Column(Text, nullable=False)
    duration_seconds = Column(Integer, nullable=False)
    # '7-day' | '14-day' | '30-day' | '90-day' | '365-day' | 'all-time'
    time_window = Column(Text, nullable=False, default="all-time")
    best_value = Column(Float, nullable=False)
    date_achieved = Column(Date, nullable=False)
    activity_id = Column(Uuid(as_uuid=True), ForeignKey("activity.id"), nullable=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "athlete_id", "sport", "duration_seconds", "time_window",
            name="uq_power_profile_record_key",
        ),
        Index("ix_power_profile_record_lookup", "athlete_id", "sport", "time_window"),
    )


class CriticalPowerResult(Base):
    """
    A fitted CP / W' result for one protocol.

    Newer results supersede older ones for the same (athlete, sport,
    protocol); history is kept, the latest test_date wins on read.
    """
    __tablename__ = "critical_power_result"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    athlete_id = Column(Uuid(as_uuid=True), ForeignKey("athlete.id"), nullable=False)
    sport = Column(Text, nullable=False, default="cycling")
    protocol = Column(Text, nullable=False)
    model = Column(Text, nullable=False)  # 'two_point' | 'three_point'
    test_date = Column(DateTime(timezone=True), nullable=False)
    cp_watts = Column(Float, nullable=False)
    w_prime_joules = Column(Float, nullable=False)
    r_squared = Column(Float, nullable=True)
    efforts_used = Column(JSONType, nullable=False, default=list)
    efforts_rejected = Column(JSONType, nullable=False, default=list)
    activity_ids = Column(JSONType, nullable=False, default=list)

    __table_args__ = (
        Index("ix_critical_power_result_lookup", "athlete_id", "sport", "protocol", "test_date"),
        CheckConstraint("model IN ('two_point', 'three_point')", name="ck_critical_power_result_model"),
    )


class PowerProfileBackfillState(Base):
    """
    Durable per-(athlete, sport) backfill run state for operational visibility.

    One row per (athlete, sport); overwritten on every run.
    """
    __tablename__ = "power_profile_backfill_state"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    athlete_id = Column(Uuid(as_uuid=True), ForeignKey("athlete.id"), nullable=False, index=True)
    sport = Column(Text, nullable=False)

    last_task_id = Column(Text, nullable=True)
    last_started_at = Column(DateTime(timezone=True), nullable=True)
    last_finished_at = Column(DateTime(timezone=True), nullable=True)
    # 'running' | 'success' | 'partial' | 'error'
    last_status = Column(Text, nullable=True)
    last_error = Column(Text, nullable=True)
    windows_completed = Column(JSONType, nullable=False, default=list)
    windows_failed = Column(JSONType, nullable=False, default=list)
    activities_scanned = Column(Integer, nullable=True)
    records_written = Column(Integer, nullable=True)

    __table_args__ = (
        UniqueConstraint("athlete_id", "sport", name="uq_power_profile_backfill_state_athlete_sport"),
    )
