"""
refresh_jobs.py

State machine for prediction refresh jobs:

    queued -> running -> completed | failed
    queued -> cancelled
    running -> running   (redelivered task restarts the job)

All transitions go through this module. Readers (progress, history,
in-progress checks) only ever query snapshots of the rows.
"""
import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from cinecanon.models import RefreshJob
from cinecanon.utils.payload import to_plain
from cinecanon.utils.timezone import safe_datetime_diff_hours, utc_now

logger = logging.getLogger(__name__)

QUEUED = "queued"
RUNNING = "running"
COMPLETED = "completed"
FAILED = "failed"
CANCELLED = "cancelled"

ACTIVE_STATES = (QUEUED, RUNNING)
TERMINAL_STATES = (COMPLETED, FAILED, CANCELLED)

ALLOWED_TRANSITIONS = {
    QUEUED: {RUNNING, CANCELLED},
    RUNNING: {COMPLETED, FAILED},
    COMPLETED: set(),
    FAILED: set(),
    CANCELLED: set(),
}

JOB_TYPES = ("full_refresh", "selective", "decade")


class InvalidJobTransition(Exception):
    def __init__(self, job_id: int, current: str, target: str):
        super().__init__(f"Refresh job {job_id} cannot move from {current} to {target}")
        self.job_id = job_id
        self.current = current
        self.target = target


class JobNotFound(Exception):
    pass


def get_job(db: Session, job_id: int) -> RefreshJob:
    job = db.get(RefreshJob, job_id)
    if job is None:
        raise JobNotFound(f"Refresh job {job_id} not found")
    return job


def create_job(db: Session, job_type: str, args: Dict[str, Any]) -> RefreshJob:
    if job_type not in JOB_TYPES:
        raise ValueError(f"Unknown refresh job type '{job_type}'")
    job = RefreshJob(job_type=job_type, state=QUEUED, args=to_plain(args), progress=0,
                     message="Queued", queued_at=utc_now())
    db.add(job)
    db.commit()
    db.refresh(job)
    return job


def _transition(db: Session, job: RefreshJob, target: str, **fields) -> RefreshJob:
    if target not in ALLOWED_TRANSITIONS.get(job.state, set()):
        raise InvalidJobTransition(job.id, job.state, target)
    job.state = target
    for key, value in fields.items():
        setattr(job, key, value)
    db.commit()
    logger.info(f"[REFRESH] Job {job.id} ({job.job_type}) -> {target}")
    return job


def mark_running(db: Session, job: RefreshJob) -> RefreshJob:
    return _transition(db, job, RUNNING, attempted_at=utc_now(), message="Starting...")


def restart_running(db: Session, job: RefreshJob) -> RefreshJob:
    """A redelivered task picks up a job a dead worker left in running."""
    if job.state != RUNNING:
        raise InvalidJobTransition(job.id, job.state, RUNNING)
    logger.warning(f"[REFRESH] Job {job.id} was already running, restarting it")
    job.attempted_at = utc_now()
    job.progress = 0
    job.message = "Restarting..."
    db.commit()
    return job


def mark_completed(db: Session, job: RefreshJob, message: str = "Completed") -> RefreshJob:
    return _transition(db, job, COMPLETED, progress=100, message=message, completed_at=utc_now())


def mark_failed(db: Session, job: RefreshJob, error: str) -> RefreshJob:
    return _transition(db, job, FAILED, error=error, message="Failed", completed_at=utc_now())


def mark_cancelled(db: Session, job: RefreshJob) -> RefreshJob:
    return _transition(db, job, CANCELLED, message="Cancelled", completed_at=utc_now())


def update_progress(db: Session, job: RefreshJob, progress: int, message: Optional[str] = None) -> RefreshJob:
    """Progress is metadata on a running job, not a state change."""
    if job.state != RUNNING:
        raise InvalidJobTransition(job.id, job.state, RUNNING)
    job.progress = max(0, min(100, int(progress)))
    if message is not None:
        job.message = message
    db.commit()
    return job


def reap_stale_jobs(db: Session, older_than: timedelta) -> List[RefreshJob]:
    """Fail running jobs that started longer ago than ``older_than``."""
    now = utc_now()
    limit_hours = older_than.total_seconds() / 3600
    reaped = []
    for job in db.query(RefreshJob).filter(RefreshJob.state == RUNNING).all():
        if job.attempted_at is None or safe_datetime_diff_hours(now, job.attempted_at) > limit_hours:
            mark_failed(db, job, error=f"Timed out: still running after {limit_hours:g} hours")
            reaped.append(job)
    if reaped:
        logger.warning(f"[REFRESH] Reaped {len(reaped)} stale running job(s)")
    return reaped


def job_snapshot(job: RefreshJob) -> Dict[str, Any]:
    return {
        "id": job.id,
        "job_type": job.job_type,
        "state": job.state,
        "args": job.args or {},
        "progress": job.progress,
        "message": job.message,
        "error": job.error,
        "task_id": job.task_id,
        "queued_at": job.queued_at,
        "started_at": job.attempted_at,
        "completed_at": job.completed_at,
    }
