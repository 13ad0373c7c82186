"""
tasks.py

Celery task definitions for prediction refresh and ledger maintenance.
Every refresh run is mirrored in a RefreshJob row; the worker moves it
through running -> completed | failed and reports progress on it.
"""
import logging
from datetime import timedelta
from typing import Optional

from celery import shared_task

from cinecanon.core.config import settings
from cinecanon.core.database import SessionLocal
from cinecanon.services import refresh_jobs
from cinecanon.services.historical_validator import HistoricalValidator
from cinecanon.services.prediction_calculator import run_refresh_work
from cinecanon.services.refresh_manager import REFRESH_RECOMMENDED, REFRESH_REQUIRED, RefreshManager
from cinecanon.services.staleness_tracker import StalenessTracker

logger = logging.getLogger(__name__)


def execute_refresh_job(db, job_id: int) -> dict:
    """Run one refresh job to completion inside the given session."""
    job = refresh_jobs.get_job(db, job_id)
    if job.state in refresh_jobs.TERMINAL_STATES:
        logger.info(f"[REFRESH] Job {job_id} is already {job.state}, skipping")
        return {"status": job.state, "job_id": job_id}

    try:
        if job.state == refresh_jobs.RUNNING:
            # acks_late redelivers the task when a worker dies mid-job
            refresh_jobs.restart_running(db, job)
        else:
            refresh_jobs.mark_running(db, job)

        def _progress(percent: int, message: str):
            refresh_jobs.update_progress(db, job, percent, message)

        summary = run_refresh_work(db, job.job_type, job.args or {}, on_progress=_progress)
        refresh_jobs.mark_completed(db, job, message=f"Processed {summary['pairs_processed']} decade/profile pairs")
        return {"status": "completed", "job_id": job_id, **summary}
    except Exception as exc:
        logger.exception(f"[REFRESH] Job {job_id} failed: {exc}")
        db.rollback()
        if job.state == refresh_jobs.RUNNING:
            refresh_jobs.mark_failed(db, job, error=f"{type(exc).__name__}: {exc}")
        raise


@shared_task(bind=True)
def run_prediction_refresh(self, job_id: int):
    db = SessionLocal()
    try:
        return execute_refresh_job(db, job_id)
    finally:
        db.close()


@shared_task
def check_prediction_staleness():
    """Log the current recommendation and queue work when a refresh is required or recommended."""
    db = SessionLocal()
    try:
        refresh_jobs.reap_stale_jobs(db, timedelta(hours=settings.stale_job_hours))
        manager = RefreshManager(db)
        report = manager.check_staleness()
        logger.info(
            f"[STALENESS] Recommendation {report['recommendation']}, "
            f"changes {report['changes_since']}, {report['days_since_refresh']} days since refresh"
        )
        if manager.in_progress():
            return {"recommendation": report["recommendation"], "queued": None}
        queued = None
        if report["recommendation"] == REFRESH_REQUIRED:
            queued = manager.refresh_all()
        elif report["recommendation"] == REFRESH_RECOMMENDED:
            queued = manager.refresh_stale()
        return {"recommendation": report["recommendation"], "queued": queued["id"] if queued else None}
    finally:
        db.close()


@shared_task
def prune_staleness_ledger(days: Optional[int] = None):
    db = SessionLocal()
    try:
        older_than = timedelta(days=days) if days is not None else None
        deleted = StalenessTracker(db).prune(older_than)
        return {"deleted": deleted}
    finally:
        db.close()


@shared_task(bind=True)
def warm_validation_cache(self, profile_id: Optional[int] = None):
    """Precompute the backtest report for one profile, or the full comparison."""
    db = SessionLocal()
    try:
        validator = HistoricalValidator(db)
        if profile_id is None:
            report = validator.compare_profiles()
            return {"best_profile": report["best_profile"], "best_accuracy": report["best_accuracy"]}
        report = validator.validate_all_decades(profile_id)
        return {"profile": report["profile_used"], "overall_accuracy": report["overall_accuracy"]}
    finally:
        db.close()
