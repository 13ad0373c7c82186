"""
staleness_tracker.py

Append-only ledger of upstream changes that can move prediction scores.
Each event carries the decades it affects, inferred from release dates when
the caller does not supply them. The ledger answers "what changed since T"
for the refresh manager and is cleared after a successful full refresh.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from cinecanon.core.config import settings
from cinecanon.models import ChangeEvent, FestivalNomination, Movie, MovieCredit, PredictionCache
from cinecanon.utils.payload import normalize_payload
from cinecanon.utils.timezone import decade_of, ensure_utc, utc_now

logger = logging.getLogger(__name__)

CHANGE_TYPES = (
    "movie_created",
    "movie_updated",
    "metric_updated",
    "festival_added",
    "festival_updated",
    "person_metric_updated",
    "canonical_source_added",
)

DEFAULT_ENTITY_TYPES = {
    "movie_created": "movie",
    "movie_updated": "movie",
    "metric_updated": "metric",
    "festival_added": "festival_nomination",
    "festival_updated": "festival_nomination",
    "person_metric_updated": "person_metric",
    "canonical_source_added": "movie",
}

# Reporting classes, matched on the change_type prefix
CHANGE_CLASSES = {"movies": "movie_", "metrics": "metric_", "festivals": "festival_"}


class UnknownChangeKind(ValueError):
    pass


def _check_kind(change_type: str) -> str:
    change_type = str(change_type)
    if change_type not in CHANGE_TYPES:
        raise UnknownChangeKind(f"Unknown change type '{change_type}'")
    return change_type


class StalenessTracker:
    def __init__(self, db: Session):
        self.db = db

    # -- recording -------------------------------------------------------

    def record(
        self,
        change_type: str,
        entity_id: Optional[int],
        entity_type: Optional[str] = None,
        affected_decades: Optional[Iterable[int]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        commit: bool = True,
    ) -> ChangeEvent:
        change_type = _check_kind(change_type)
        entity_type = entity_type or DEFAULT_ENTITY_TYPES[change_type]
        decades = sorted({int(d) for d in affected_decades}) if affected_decades else []
        if not decades:
            decades = self.infer_affected_decades(change_type, entity_id)

        event = ChangeEvent(
            change_type=change_type,
            entity_id=entity_id,
            entity_type=entity_type,
            affected_decades=decades,
            metadata_=normalize_payload(metadata or {}),
            inserted_at=utc_now(),
        )
        self.db.add(event)
        if commit:
            self.db.commit()
        else:
            self.db.flush()
        logger.debug(f"[STALENESS] Recorded {change_type} for {entity_type} {entity_id} affecting {decades}")
        return event

    def record_batch(self, changes: List[Dict[str, Any]]) -> int:
        """Append many events in one insert. Decades are taken as given, not inferred."""
        now = utc_now()
        rows = []
        for change in changes:
            change_type = _check_kind(change["change_type"])
            rows.append({
                "change_type": change_type,
                "entity_id": change.get("entity_id"),
                "entity_type": change.get("entity_type") or DEFAULT_ENTITY_TYPES[change_type],
                "affected_decades": sorted({int(d) for d in change.get("affected_decades") or []}),
                "metadata": normalize_payload(change.get("metadata") or {}),
                "inserted_at": now,
            })
        if rows:
            self.db.execute(ChangeEvent.__table__.insert(), rows)
            self.db.commit()
        return len(rows)

    # -- decade inference ------------------------------------------------

    def infer_affected_decades(self, change_type: str, entity_id: Optional[int]) -> List[int]:
        """Decades touched by a change; empty when the release date is unknown."""
        if entity_id is None:
            return []
        try:
            # A failed lookup rolls back to the savepoint, keeping the outer transaction usable
            with self.db.begin_nested():
                return self._lookup_decades(change_type, entity_id)
        except (SQLAlchemyError, ValueError, TypeError) as e:
            logger.warning(f"[STALENESS] Could not infer decades for {change_type} {entity_id}: {e}")
        return []

    def _lookup_decades(self, change_type: str, entity_id: int) -> List[int]:
        if change_type in ("movie_created", "movie_updated", "metric_updated", "canonical_source_added"):
            return self._movie_decades(entity_id)
        if change_type in ("festival_added", "festival_updated"):
            return self._nomination_decades(entity_id)
        if change_type == "person_metric_updated":
            return self._person_decades(entity_id)
        return []

    def _movie_decades(self, movie_id: int) -> List[int]:
        release_date = self.db.query(Movie.release_date).filter(Movie.id == movie_id).scalar()
        decade = decade_of(release_date)
        return [decade] if decade is not None else []

    def _nomination_decades(self, nomination_id: int) -> List[int]:
        release_date = self.db.query(Movie.release_date).join(
            FestivalNomination, FestivalNomination.movie_id == Movie.id
        ).filter(FestivalNomination.id == nomination_id).scalar()
        decade = decade_of(release_date)
        return [decade] if decade is not None else []

    def _person_decades(self, person_id: int) -> List[int]:
        # A person's signal reaches every decade they have a credit in
        rows = self.db.query(Movie.release_date).join(
            MovieCredit, MovieCredit.movie_id == Movie.id
        ).filter(MovieCredit.person_id == person_id, Movie.release_date.isnot(None)).distinct().all()
        return sorted({d for d in (decade_of(r) for (r,) in rows) if d is not None})

    # -- queries ---------------------------------------------------------

    def last_refresh_time(self) -> Optional[datetime]:
        return ensure_utc(self.db.query(func.max(PredictionCache.calculated_at)).scalar())

    def count_changes(self, since: Optional[datetime] = None) -> Dict[str, int]:
        counts = {}
        for label, prefix in CHANGE_CLASSES.items():
            q = self.db.query(func.count(ChangeEvent.id)).filter(ChangeEvent.change_type.like(f"{prefix}%"))
            if since is not None:
                q = q.filter(ChangeEvent.inserted_at > since)
            counts[label] = q.scalar() or 0
        return counts

    def affected_decades_since(self, since: datetime) -> List[int]:
        rows = self.db.query(ChangeEvent.affected_decades).filter(ChangeEvent.inserted_at > since).all()
        decades = set()
        for (values,) in rows:
            decades.update(int(d) for d in (values or []))
        return sorted(decades)

    def staleness_report(self, last_refresh: Optional[datetime] = None) -> Dict[str, Any]:
        """Changes and affected decades since the last cache refresh.

        With no refresh at all, counts cover the whole ledger and every
        supported decade is reported as affected.
        """
        last_refresh = ensure_utc(last_refresh) if last_refresh is not None else self.last_refresh_time()
        if last_refresh is None:
            changes_since = self.count_changes()
            affected = list(settings.supported_decades)
        else:
            changes_since = self.count_changes(since=last_refresh)
            affected = self.affected_decades_since(last_refresh)
        return {
            "last_refresh": last_refresh,
            "changes_since": changes_since,
            "affected_decades": affected,
        }

    def decade_changes(self, decade: int, since: Optional[datetime] = None, limit: int = 100) -> List[Dict[str, Any]]:
        """Most recent events touching one decade."""
        q = self.db.query(ChangeEvent)
        if since is not None:
            q = q.filter(ChangeEvent.inserted_at > since)
        if self.db.get_bind().dialect.name == "postgresql":
            q = q.filter(ChangeEvent.affected_decades.any(decade))
            events = q.order_by(ChangeEvent.inserted_at.desc()).limit(limit).all()
        else:
            events = [e for e in q.order_by(ChangeEvent.inserted_at.desc()).all() if decade in (e.affected_decades or [])][:limit]
        return [
            {
                "change_type": e.change_type,
                "entity_id": e.entity_id,
                "entity_type": e.entity_type,
                "metadata": e.metadata_ or {},
                "inserted_at": ensure_utc(e.inserted_at),
            }
            for e in events
        ]

    # -- maintenance -----------------------------------------------------

    def clear(self, before: Optional[datetime] = None, commit: bool = True) -> int:
        """Wipe the ledger, or only events inserted before ``before``."""
        q = self.db.query(ChangeEvent)
        if before is not None:
            q = q.filter(ChangeEvent.inserted_at < before)
        deleted = q.delete(synchronize_session=False)
        if commit:
            self.db.commit()
        logger.info(f"[STALENESS] Cleared {deleted} ledger entries")
        return deleted

    def prune(self, older_than: Optional[timedelta] = None) -> int:
        """Delete events older than the retention window."""
        if older_than is None:
            older_than = timedelta(days=settings.ledger_retention_days)
        cutoff = utc_now() - older_than
        deleted = self.db.query(ChangeEvent).filter(ChangeEvent.inserted_at < cutoff).delete(synchronize_session=False)
        self.db.commit()
        logger.info(f"[STALENESS] Pruned {deleted} ledger entries older than {cutoff.isoformat()}")
        return deleted
