"""
prediction_cache.py

Durable store of pre-computed predictions keyed by (decade, profile_id).
Writes are a single INSERT .. ON CONFLICT DO UPDATE, so a recomputation
replaces the previous entry atomically and concurrent writers resolve to the
last completed upsert. Values are normalized to plain JSON before they reach
the database.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import numpy as np
from sqlalchemy import func
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from cinecanon.core.config import settings
from cinecanon.models import PredictionCache, WeightProfile
from cinecanon.utils.payload import to_plain
from cinecanon.utils.timezone import ensure_utc, safe_datetime_diff_hours, utc_now

logger = logging.getLogger(__name__)


class InvalidDecade(ValueError):
    pass


def validate_decade(decade: int) -> int:
    decade = int(decade)
    if decade not in settings.supported_decades:
        raise InvalidDecade(f"Unsupported decade {decade}; expected one of {settings.supported_decades}")
    return decade


def _dialect_insert(db: Session):
    name = db.get_bind().dialect.name
    if name == "postgresql":
        return pg_insert
    if name == "sqlite":
        return sqlite_insert
    raise NotImplementedError(f"Upsert not supported for dialect {name}")


class PredictionCacheStore:
    def __init__(self, db: Session):
        self.db = db

    def get(self, decade: int, profile_id: int) -> Optional[PredictionCache]:
        """Cached entry for the key, or None on a miss."""
        return self.db.query(PredictionCache).filter(
            PredictionCache.decade == decade, PredictionCache.profile_id == profile_id
        ).first()

    def exists(self, decade: int, profile_id: int) -> bool:
        q = self.db.query(PredictionCache.id).filter(
            PredictionCache.decade == decade, PredictionCache.profile_id == profile_id
        )
        return self.db.query(q.exists()).scalar()

    def cache_age_hours(self, decade: int, profile_id: int) -> Optional[float]:
        entry = self.get(decade, profile_id)
        if entry is None:
            return None
        return safe_datetime_diff_hours(utc_now(), entry.calculated_at)

    def is_stale(self, decade: int, profile_id: int, max_age: Optional[timedelta] = None) -> bool:
        """True when there is no entry or it was calculated before now - max_age."""
        if max_age is None:
            max_age = timedelta(hours=settings.cache_max_age_hours)
        entry = self.get(decade, profile_id)
        if entry is None:
            return True
        return ensure_utc(entry.calculated_at) < utc_now() - max_age

    def upsert(
        self,
        decade: int,
        profile_id: int,
        movie_scores: Dict[str, Any],
        statistics: Dict[str, Any],
        calculated_at: Optional[datetime] = None,
        metadata: Optional[Dict[str, Any]] = None,
        commit: bool = True,
    ) -> PredictionCache:
        """Insert or fully replace the entry for (decade, profile_id).

        id and inserted_at survive a replacement; every value column is
        overwritten.
        """
        decade = validate_decade(decade)
        now = utc_now()
        values = {
            "decade": decade,
            "profile_id": profile_id,
            "movie_scores": to_plain(movie_scores or {}),
            "statistics": to_plain(statistics or {}),
            "metadata": to_plain(metadata or {}),
            "calculated_at": calculated_at or now,
            "inserted_at": now,
            "updated_at": now,
        }
        insert = _dialect_insert(self.db)
        stmt = insert(PredictionCache.__table__).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["decade", "profile_id"],
            set_={
                "movie_scores": stmt.excluded.movie_scores,
                "statistics": stmt.excluded.statistics,
                "metadata": stmt.excluded["metadata"],
                "calculated_at": stmt.excluded.calculated_at,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        self.db.execute(stmt)
        if commit:
            self.db.commit()
        else:
            self.db.flush()
        # The ORM identity map may hold the pre-upsert row
        self.db.expire_all()
        logger.info(f"[PREDICTIONS] Cached {len(values['movie_scores'])} predictions for {decade}s / profile {profile_id}")
        return self.get(decade, profile_id)

    def delete(self, decade: int, profile_id: int) -> int:
        deleted = self.db.query(PredictionCache).filter(
            PredictionCache.decade == decade, PredictionCache.profile_id == profile_id
        ).delete(synchronize_session=False)
        self.db.commit()
        return deleted

    def delete_all_for_profile(self, profile_id: int) -> int:
        deleted = self.db.query(PredictionCache).filter(
            PredictionCache.profile_id == profile_id
        ).delete(synchronize_session=False)
        self.db.commit()
        logger.info(f"[PREDICTIONS] Deleted {deleted} cache entries for profile {profile_id}")
        return deleted

    def delete_all(self, commit: bool = True) -> int:
        deleted = self.db.query(PredictionCache).delete(synchronize_session=False)
        if commit:
            self.db.commit()
        return deleted

    def last_refresh_time(self) -> Optional[datetime]:
        return ensure_utc(self.db.query(func.max(PredictionCache.calculated_at)).scalar())

    def coverage(self, decades: Optional[List[int]] = None) -> Dict[str, Any]:
        """How much of the decade x active-profile matrix has an entry."""
        decades = list(decades or settings.supported_decades)
        profile_ids = [pid for (pid,) in self.db.query(WeightProfile.id).filter(WeightProfile.active.is_(True)).order_by(WeightProfile.id).all()]
        present = {
            (d, p) for d, p in self.db.query(PredictionCache.decade, PredictionCache.profile_id).all()
        }
        expected = [(d, p) for p in profile_ids for d in decades]
        missing = [{"decade": d, "profile_id": p} for d, p in expected if (d, p) not in present]
        cached = len(expected) - len(missing)
        total = len(expected)
        return {
            "total_combinations": total,
            "cached_combinations": cached,
            "missing_combinations": len(missing),
            "coverage_percentage": round(cached / total * 100, 1) if total else 0.0,
            "missing_percentage": round(len(missing) / total * 100, 1) if total else 0.0,
            "missing": missing,
        }

    def age_stats(self) -> Dict[str, Any]:
        """Oldest/newest/average/median entry age in hours."""
        timestamps = [ts for (ts,) in self.db.query(PredictionCache.calculated_at).all() if ts is not None]
        if not timestamps:
            return {"count": 0, "oldest_hours": None, "newest_hours": None, "average_hours": None, "median_hours": None}
        now = utc_now()
        ages = np.array([safe_datetime_diff_hours(now, ts) for ts in timestamps])
        return {
            "count": int(ages.size),
            "oldest_hours": round(float(ages.max()), 2),
            "newest_hours": round(float(ages.min()), 2),
            "average_hours": round(float(ages.mean()), 2),
            "median_hours": round(float(np.median(ages)), 2),
        }

    def status(self) -> List[Dict[str, Any]]:
        rows = self.db.query(PredictionCache, WeightProfile.name).join(
            WeightProfile, WeightProfile.id == PredictionCache.profile_id
        ).order_by(PredictionCache.calculated_at.desc()).all()
        return [
            {
                "decade": entry.decade,
                "profile_id": entry.profile_id,
                "profile_name": name,
                "calculated_at": ensure_utc(entry.calculated_at),
                "movie_count": len(entry.movie_scores or {}),
            }
            for entry, name in rows
        ]
