"""
refresh_manager.py

Entry point for keeping the prediction cache fresh. Submits refresh jobs to
the background queue, reports progress and history from the job table, and
turns the staleness ledger into a refresh recommendation.

The dispatcher is any callable taking a job id and returning a task id; the
default hands the job to the Celery worker.
"""
import logging
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from cinecanon.core.config import settings
from cinecanon.models import RefreshJob
from cinecanon.services import refresh_jobs
from cinecanon.services.prediction_cache import PredictionCacheStore, validate_decade
from cinecanon.services.staleness_tracker import StalenessTracker
from cinecanon.utils.timezone import ensure_utc, safe_datetime_diff_days, utc_now

logger = logging.getLogger(__name__)

Dispatcher = Callable[[int], Optional[str]]
Revoker = Callable[[str], None]

REFRESH_REQUIRED = "refresh_required"
REFRESH_RECOMMENDED = "refresh_recommended"
REFRESH_SUGGESTED = "refresh_suggested"
UP_TO_DATE = "up_to_date"

# Reported when the cache has never been populated
NEVER_REFRESHED_DAYS = 999


def celery_dispatcher(job_id: int) -> Optional[str]:
    from cinecanon.services.tasks import run_prediction_refresh
    task = run_prediction_refresh.delay(job_id)
    return task.id


def celery_revoker(task_id: str) -> None:
    from cinecanon.core.celery_app import celery_app
    # Queued tasks are dropped; a task that already started is left alone
    celery_app.control.revoke(task_id, terminate=False)


def recommend(staleness: Dict[str, Any], days_since_refresh: Optional[float]) -> str:
    """Map ledger counts and cache age to a recommendation level."""
    if staleness.get("last_refresh") is None:
        return REFRESH_REQUIRED
    changes = staleness.get("changes_since") or {}
    total = sum(changes.values())
    festivals = changes.get("festivals", 0)
    age = days_since_refresh or 0

    if total > settings.recommend_total_changes or festivals > settings.recommend_festival_changes or age > settings.recommend_age_days:
        return REFRESH_RECOMMENDED
    if total > settings.suggest_total_changes or (age > settings.suggest_age_days and total > settings.suggest_age_total_changes):
        return REFRESH_SUGGESTED
    return UP_TO_DATE


class RefreshManager:
    def __init__(self, db: Session, dispatcher: Optional[Dispatcher] = None, revoker: Optional[Revoker] = None):
        self.db = db
        self.dispatcher = dispatcher or celery_dispatcher
        self.revoker = revoker or celery_revoker
        self.cache = PredictionCacheStore(db)
        self.tracker = StalenessTracker(db)

    # -- submission ------------------------------------------------------

    def _submit(self, job_type: str, args: Dict[str, Any]) -> Dict[str, Any]:
        job = refresh_jobs.create_job(self.db, job_type, args)
        try:
            task_id = self.dispatcher(job.id)
        except Exception as e:
            logger.error(f"[REFRESH] Failed to enqueue job {job.id}: {e}")
            refresh_jobs.mark_cancelled(self.db, job)
            raise
        if task_id:
            job.task_id = str(task_id)
            self.db.commit()
        logger.info(f"[REFRESH] Queued {job_type} job {job.id} (task {task_id})")
        return refresh_jobs.job_snapshot(job)

    def refresh_all(self, profile_ids: Optional[List[int]] = None, decades: Optional[List[int]] = None) -> Dict[str, Any]:
        """Full refresh; defaults to every active profile and every supported decade."""
        args = {}
        if profile_ids:
            args["profile_ids"] = [int(p) for p in profile_ids]
        if decades:
            args["decades"] = [validate_decade(d) for d in decades]
        return self._submit("full_refresh", args)

    def refresh_decades(self, decades: List[int]) -> Dict[str, Any]:
        """Selective refresh of the given decades for all active profiles."""
        if not decades:
            raise ValueError("At least one decade is required")
        return self._submit("selective", {"decades": sorted({validate_decade(d) for d in decades})})

    def refresh_one(self, decade: int, profile_id: int) -> Dict[str, Any]:
        return self._submit("decade", {"decade": validate_decade(decade), "profile_id": int(profile_id)})

    def refresh_stale(self) -> Optional[Dict[str, Any]]:
        """Selective refresh of the decades the ledger marks as affected, if any."""
        decades = self.tracker.staleness_report().get("affected_decades") or []
        decades = [d for d in decades if d in settings.supported_decades]
        if not decades:
            return None
        return self.refresh_decades(decades)

    # -- status ----------------------------------------------------------

    def _active_jobs(self) -> List[RefreshJob]:
        return self.db.query(RefreshJob).filter(
            RefreshJob.state.in_(refresh_jobs.ACTIVE_STATES)
        ).order_by(RefreshJob.queued_at).all()

    def in_progress(self) -> bool:
        return bool(self._active_jobs())

    def progress(self) -> Optional[Dict[str, Any]]:
        job = self.db.query(RefreshJob).filter(
            RefreshJob.state == refresh_jobs.RUNNING
        ).order_by(RefreshJob.attempted_at.desc()).first()
        if job is None:
            return None
        return {
            "percent": job.progress or 0,
            "message": job.message,
            "started_at": ensure_utc(job.attempted_at),
            "job_id": job.id,
        }

    def cancel_all(self) -> int:
        """Cancel queued jobs. Running jobs finish normally."""
        cancelled = 0
        for job in self._active_jobs():
            if job.state != refresh_jobs.QUEUED:
                continue
            refresh_jobs.mark_cancelled(self.db, job)
            if job.task_id:
                try:
                    self.revoker(job.task_id)
                except Exception as e:
                    logger.warning(f"[REFRESH] Could not revoke task {job.task_id}: {e}")
            cancelled += 1
        logger.info(f"[REFRESH] Cancelled {cancelled} queued jobs")
        return cancelled

    def history(self, limit: int = 10) -> List[Dict[str, Any]]:
        jobs = self.db.query(RefreshJob).filter(
            RefreshJob.state.in_(refresh_jobs.TERMINAL_STATES)
        ).order_by(RefreshJob.completed_at.desc(), RefreshJob.id.desc()).limit(limit).all()
        return [refresh_jobs.job_snapshot(job) for job in jobs]

    # -- staleness -------------------------------------------------------

    def days_since_refresh(self) -> Optional[float]:
        last = self.cache.last_refresh_time()
        if last is None:
            return None
        return safe_datetime_diff_days(utc_now(), last)

    def recommendation(self) -> str:
        return recommend(self.tracker.staleness_report(), self.days_since_refresh())

    def check_staleness(self) -> Dict[str, Any]:
        report = self.tracker.staleness_report()
        days = self.days_since_refresh()
        return {
            **report,
            "recommendation": recommend(report, days),
            "days_since_refresh": round(days, 1) if days is not None else NEVER_REFRESHED_DAYS,
        }

    def clear_all_caches(self) -> Dict[str, int]:
        """Drop every cache entry and the change ledger in one transaction."""
        deleted = self.cache.delete_all(commit=False)
        cleared = self.tracker.clear(commit=False)
        self.db.commit()
        logger.info(f"[REFRESH] Cleared {deleted} cache entries and {cleared} ledger events")
        return {"cache_entries_deleted": deleted, "ledger_events_deleted": cleared}
