"""
Celery tasks for power profiles and critical power.

Triggers:
- an activity was saved            -> update_power_profile_for_activity
- a full history rebuild requested -> backfill_power_profile
- a CP-tagged activity was saved   -> process_cp_tests

Every task returns a status dict and never re-raises; failures are logged
and, for backfills, recorded on PowerProfileBackfillState.
"""
import logging
from typing import Dict
from uuid import UUID

from celery import Task
from sqlalchemy.orm import Session

from core.database import get_db_sync
from core.exceptions import PartialBackfillError
from tasks import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(name="tasks.update_power_profile_for_activity", bind=True)
def update_power_profile_for_activity_task(self: Task, activity_id: str) -> Dict:
    """
    Offer a newly saved activity's mean-maximal curve to the profile.

    Args:
        activity_id: UUID string of the activity

    Returns:
        Dictionary with update results
    """
    from services.power_curve import ProfileAggregator, SqlActivityStore, SqlProfileStore

    db: Session = get_db_sync()

    try:
        activity_store = SqlActivityStore(db)
        activity = activity_store.get_activity(UUID(activity_id))
        if not activity:
            return {"status": "error", "error": f"Activity {activity_id} not found"}

        aggregator = ProfileAggregator(activity_store, SqlProfileStore(db))
        result = aggregator.update_for_activity(activity)

        if result.skipped_reason:
            return {
                "status": "skipped",
                "activity_id": activity_id,
                "reason": result.skipped_reason,
            }
        return {
            "status": "success",
            "activity_id": activity_id,
            "points_computed": result.points_computed,
            "records_written": result.records_written,
            "windows_touched": result.windows_touched,
        }

    except Exception as e:
        db.rollback()
        logger.error(f"Power profile update failed for activity {activity_id}: {e}", exc_info=True)
        return {"status": "error", "error": str(e)}
    finally:
        db.close()


@celery_app.task(name="tasks.backfill_power_profile", bind=True)
def backfill_power_profile_task(self: Task, athlete_id: str, sport: str = "cycling") -> Dict:
    """
    Rebuild every time window of an athlete's profile from history.

    A failed window does not stop the rest; the run is then reported as
    "partial" with the failed windows listed.

    Args:
        athlete_id: UUID string of the athlete
        sport: sport whose profile is rebuilt

    Returns:
        Dictionary with backfill results
    """
    from models import Athlete
    from services.power_curve import ProfileAggregator, SqlActivityStore, SqlProfileStore
    from services.power_profile_state import (
        mark_backfill_error,
        mark_backfill_finished,
        mark_backfill_partial,
        mark_backfill_started,
    )

    db: Session = get_db_sync()

    try:
        athlete = db.get(Athlete, UUID(athlete_id))
        if not athlete:
            return {"status": "error", "error": f"Athlete {athlete_id} not found"}

        # Durable ops marker: record task start
        mark_backfill_started(db, athlete.id, sport, task_id=str(self.request.id))
        db.commit()

        aggregator = ProfileAggregator(SqlActivityStore(db), SqlProfileStore(db))
        try:
            summary = aggregator.backfill(athlete.id, sport)
        except PartialBackfillError as e:
            mark_backfill_partial(db, athlete.id, sport, e.summary, e.errors)
            db.commit()
            return {
                "status": "partial",
                "athlete_id": athlete_id,
                "sport": sport,
                "windows_completed": [r.window.value for r in e.summary.completed],
                "windows_failed": e.failed_windows,
                "errors": e.errors,
            }

        mark_backfill_finished(db, athlete.id, sport, summary)
        db.commit()

        return {
            "status": "success",
            "athlete_id": athlete_id,
            "sport": sport,
            "windows_completed": [r.window.value for r in summary.completed],
            "activities_scanned": summary.activities_scanned,
            "records_written": summary.records_written,
        }

    except Exception as e:
        db.rollback()
        try:
            # Ops marker: record error (never break the task return)
            athlete = db.get(Athlete, UUID(athlete_id))
            if athlete:
                mark_backfill_error(db, athlete.id, sport, error=str(e), task_id=str(self.request.id))
                db.commit()
        except Exception:
            db.rollback()
        logger.error(f"Power profile backfill failed for athlete {athlete_id} ({sport}): {e}", exc_info=True)
        return {"status": "error", "error": str(e)}
    finally:
        db.close()


@celery_app.task(name="tasks.process_cp_tests", bind=True)
def process_cp_tests_task(self: Task, athlete_id: str, sport: str = "cycling") -> Dict:
    """
    Fit CP/W' from the athlete's recent protocol-tagged activities.

    Args:
        athlete_id: UUID string of the athlete
        sport: sport the tests were performed in

    Returns:
        Dictionary with processing results
    """
    from services.power_curve import SqlActivityStore, SqlCPResultStore, process_cp_tests

    db: Session = get_db_sync()

    try:
        summary = process_cp_tests(
            UUID(athlete_id),
            sport,
            SqlActivityStore(db),
            SqlCPResultStore(db),
        )
        return {
            "status": "success" if not summary.failures else "partial",
            "athlete_id": athlete_id,
            "sport": sport,
            "activities_considered": summary.activities_considered,
            "sets_found": summary.sets_found,
            "sets_calculable": summary.sets_calculable,
            "results_saved": [
                {
                    "protocol": r.protocol,
                    "model": r.model,
                    "cp_watts": round(r.cp_watts, 1),
                    "w_prime_joules": round(r.w_prime_joules),
                }
                for r in summary.results_saved
            ],
            "skipped_unchanged": summary.skipped_unchanged,
            "failures": summary.failures,
        }

    except Exception as e:
        db.rollback()
        logger.error(f"CP test processing failed for athlete {athlete_id} ({sport}): {e}", exc_info=True)
        return {"status": "error", "error": str(e)}
    finally:
        db.close()
