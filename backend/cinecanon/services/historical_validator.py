"""
historical_validator.py

Backtests weighting profiles against decades whose canonical-list members are
already known. For each decade the top-K scored movies (K = number of list
members from that decade) are compared with the actual members.

Full-run reports are cached in Redis as JSON for a day; a missing or broken
Redis only means the report is recomputed.
"""
import hashlib
import json
import logging
from typing import Any, Dict, List, Optional

import numpy as np
import redis
from sqlalchemy import type_coerce
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Session

from cinecanon.core.config import settings
from cinecanon.core.redis_client import get_redis_sync
from cinecanon.models import Movie
from cinecanon.schemas import ProfileSource, WeightingProfile
from cinecanon.services.batch_scoring import is_list_member
from cinecanon.services.prediction_calculator import decade_bounds, score_movies
from cinecanon.services.profiles import list_active_profiles, resolve_profile, weights_hash
from cinecanon.services.scoring_engine import CANONICAL_LIST_KEY
from cinecanon.utils.payload import to_plain
from cinecanon.utils.timezone import decade_of, utc_now

logger = logging.getLogger(__name__)

ERAS = {
    "Early Cinema (1920s-1940s)": (1920, 1940),
    "Golden Age (1950s-1960s)": (1950, 1960),
    "New Hollywood (1970s-1980s)": (1970, 1980),
    "Modern Era (1990s-2010s)": (1990, 2010),
}

SAMPLE_SIZE = 10

# Ground truth and candidates share this filter so every list member can be predicted
ELIGIBLE_IMPORT_STATUS = "full"


def _round(value: float) -> float:
    return round(float(value), 1)


def accuracy(correct: int, total: int) -> float:
    return _round(correct / total * 100) if total else 0.0


def weighted_accuracy(decade_results: List[Dict[str, Any]]) -> float:
    """Overall accuracy weighted by each decade's ground-truth size."""
    total = sum(r["total_1001_movies"] for r in decade_results)
    correct = sum(r["correctly_predicted"] for r in decade_results)
    return accuracy(correct, total)


def mean_accuracy(values: List[float]) -> float:
    return _round(np.mean(values)) if values else 0.0


def improvement_suggestions(validation: Dict[str, Any]) -> List[str]:
    suggestions = []
    if validation["decade"] >= 2000:
        suggestions.append("Modern era films may benefit from 'Balanced' or 'Crowd Pleaser' profiles")
    if validation["decade"] < 1960:
        suggestions.append("Early cinema may require different weighting - consider 'Critics Choice' profile")
    total = validation["total_1001_movies"]
    fp_rate = validation["false_positive_count"] / total if total else 0
    if fp_rate > 0.5:
        suggestions.append(f"High false positive rate ({_round(fp_rate * 100)}%) - consider adjusting weights")
    if validation["accuracy_percentage"] < 50:
        suggestions.append("Consider using a different weight profile - current accuracy is below 50%")
    return suggestions or ["Algorithm performing well for this decade"]


class HistoricalValidator:
    def __init__(self, db: Session, redis_client: Optional[redis.Redis] = None, use_cache: bool = True):
        self.db = db
        self._redis = redis_client
        self.use_cache = use_cache

    # -- report cache ----------------------------------------------------

    @property
    def redis(self) -> redis.Redis:
        if self._redis is None:
            self._redis = get_redis_sync()
        return self._redis

    def _cache_get(self, key: str) -> Optional[Dict[str, Any]]:
        if not self.use_cache:
            return None
        try:
            val = self.redis.get(key)
        except redis.RedisError as e:
            logger.warning(f"[VALIDATION] Cache read failed for {key}: {e}")
            return None
        if val:
            return json.loads(val)
        return None

    def _cache_set(self, key: str, result: Dict[str, Any]) -> None:
        if not self.use_cache:
            return
        try:
            self.redis.set(key, json.dumps(result), ex=settings.validation_cache_ttl)
        except redis.RedisError as e:
            logger.warning(f"[VALIDATION] Cache write failed for {key}: {e}")

    @staticmethod
    def validation_key(profile: WeightingProfile) -> str:
        return f"validation:{profile.name}:{weights_hash(profile)}"

    @staticmethod
    def comparison_key(profiles: List[WeightingProfile]) -> str:
        # Editing any active profile's weights changes the key
        fingerprint = ",".join(sorted(f"{p.name}:{weights_hash(p)}" for p in profiles))
        digest = hashlib.sha256(fingerprint.encode("utf-8")).hexdigest()[:16]
        return f"profile_comparison:{utc_now().date().isoformat()}:{digest}"

    def invalidate(self) -> int:
        """Drop every cached validation and comparison report."""
        deleted = 0
        try:
            for pattern in ("validation:*", "profile_comparison:*"):
                keys = list(self.redis.scan_iter(match=pattern))
                if keys:
                    deleted += self.redis.delete(*keys)
        except redis.RedisError as e:
            logger.warning(f"[VALIDATION] Cache invalidation failed: {e}")
        return deleted

    # -- data ------------------------------------------------------------

    def _list_members_query(self):
        q = self.db.query(Movie).filter(Movie.release_date.isnot(None), Movie.import_status == ELIGIBLE_IMPORT_STATUS)
        if self.db.get_bind().dialect.name == "postgresql":
            q = q.filter(type_coerce(Movie.canonical_sources, JSONB).has_key(CANONICAL_LIST_KEY))
        return q

    def _list_members(self, decade: Optional[int] = None) -> List[Movie]:
        q = self._list_members_query()
        if decade is not None:
            start, end = decade_bounds(decade)
            q = q.filter(Movie.release_date >= start, Movie.release_date <= end)
        return [m for m in q.order_by(Movie.id).all() if is_list_member(m)]

    def get_all_decades(self) -> List[int]:
        """Decades that have at least one list member, oldest first."""
        decades = {decade_of(m.release_date) for m in self._list_members()}
        return sorted(d for d in decades if d is not None and d >= settings.min_validation_decade)

    def _eligible_movies(self, decade: int) -> List[Movie]:
        start, end = decade_bounds(decade)
        return self.db.query(Movie).filter(
            Movie.release_date >= start,
            Movie.release_date <= end,
            Movie.import_status == ELIGIBLE_IMPORT_STATUS,
        ).order_by(Movie.id).all()

    # -- validation ------------------------------------------------------

    def validate_decade(self, decade: int, profile_source: ProfileSource = None) -> Dict[str, Any]:
        profile = resolve_profile(self.db, profile_source)
        actual_ids = {m.id for m in self._list_members(decade)}
        candidates = self._eligible_movies(decade)
        scored = score_movies(self.db, candidates, profile)
        scored.sort(key=lambda item: (-item["prediction"].total_score, item["movie"].id))

        k = len(actual_ids)
        top = scored[:k]
        predicted_ids = {item["movie"].id for item in top}
        correct = len(predicted_ids & actual_ids)

        return {
            "decade": decade,
            "total_1001_movies": k,
            "total_decade_movies": len(candidates),
            "correctly_predicted": correct,
            "accuracy_percentage": accuracy(correct, k),
            "missed_count": len(actual_ids - predicted_ids),
            "false_positive_count": len(predicted_ids - actual_ids),
            "top_predictions": [
                {
                    "id": item["movie"].id,
                    "title": item["movie"].title,
                    "year": item["movie"].release_date.year if item["movie"].release_date else None,
                    "total_score": _round(item["prediction"].total_score),
                    "likelihood": _round(item["prediction"].likelihood_percentage),
                    "on_list": item["movie"].id in actual_ids,
                }
                for item in top[:SAMPLE_SIZE]
            ],
            "profile_used": profile.name,
        }

    def validate_all_decades(self, profile_source: ProfileSource = None) -> Dict[str, Any]:
        profile = resolve_profile(self.db, profile_source)
        key = self.validation_key(profile)
        cached = self._cache_get(key)
        if cached is not None:
            logger.debug(f"[VALIDATION] Cache hit {key}")
            return cached

        decades = self.get_all_decades()
        results = [self.validate_decade(decade, profile) for decade in decades]
        report = to_plain({
            "decade_results": results,
            "overall_accuracy": weighted_accuracy(results),
            "profile_used": profile.name,
            "weights_used": profile.weights,
            "decades_analyzed": len(decades),
            "decade_range": f"{decades[0]}s-{decades[-1]}s" if decades else None,
        })
        logger.info(f"[VALIDATION] {profile.name}: {report['overall_accuracy']}% over {len(decades)} decades")
        self._cache_set(key, report)
        return report

    def validate_by_era(self, profile_source: ProfileSource = None) -> Dict[str, Dict[str, Any]]:
        profile = resolve_profile(self.db, profile_source)
        decades = [d for d in self.get_all_decades() if d < 2020]
        eras = {}
        for name, (first, last) in ERAS.items():
            era_decades = [d for d in decades if first <= d <= last]
            results = [self.validate_decade(d, profile) for d in era_decades]
            total = sum(r["total_1001_movies"] for r in results)
            correct = sum(r["correctly_predicted"] for r in results)
            eras[name] = {
                "decades": era_decades,
                "total_1001_movies": total,
                "total_correct": correct,
                "accuracy_percentage": accuracy(correct, total),
            }
        return eras

    def analyze_decade_misses(self, decade: int, profile_source: ProfileSource = None) -> Dict[str, Any]:
        validation = self.validate_decade(decade, profile_source)
        return {
            "decade": decade,
            "accuracy": validation["accuracy_percentage"],
            "missed_count": validation["missed_count"],
            "false_positive_count": validation["false_positive_count"],
            "improvement_suggestions": improvement_suggestions(validation),
        }

    # -- profile comparison ----------------------------------------------

    def compare_profiles(self) -> Dict[str, Any]:
        """Rank every active profile by overall accuracy and pick per-decade winners."""
        profiles = list_active_profiles(self.db)
        key = self.comparison_key(profiles)
        cached = self._cache_get(key)
        if cached is not None:
            return cached

        decades = self.get_all_decades()
        results = []
        for profile in profiles:
            validation = self.validate_all_decades(profile)
            results.append({
                "profile_name": profile.name,
                "description": profile.description,
                "overall_accuracy": validation["overall_accuracy"],
                "decade_results": validation["decade_results"],
                "weights_used": validation["weights_used"],
            })
        results.sort(key=lambda r: r["overall_accuracy"], reverse=True)

        report = to_plain({
            "best_profile": results[0]["profile_name"] if results else None,
            "best_accuracy": results[0]["overall_accuracy"] if results else 0.0,
            "all_results": results,
            "decades_tested": len(decades),
            "decade_winners": self._decade_winners(results),
        })
        self._cache_set(key, report)
        return report

    @staticmethod
    def _decade_winners(results: List[Dict[str, Any]]) -> Dict[int, Dict[str, Any]]:
        decades = sorted({dr["decade"] for r in results for dr in r["decade_results"]})
        winners = {}
        for decade in decades:
            best_name, best_accuracy = "None", 0.0
            for r in results:
                acc = next((dr["accuracy_percentage"] for dr in r["decade_results"] if dr["decade"] == decade), 0.0)
                if best_name == "None" or acc > best_accuracy:
                    best_name, best_accuracy = r["profile_name"], acc
            winners[decade] = {"profile": best_name, "accuracy": best_accuracy}
        return winners

    def comprehensive_comparison(self) -> Dict[str, Any]:
        decades = self.get_all_decades()
        comparison = []
        for profile in list_active_profiles(self.db):
            decade_accuracies = {d: self.validate_decade(d, profile)["accuracy_percentage"] for d in decades}
            comparison.append({
                "profile": {"id": profile.id, "name": profile.name, "description": profile.description},
                "overall_accuracy": mean_accuracy(list(decade_accuracies.values())),
                "decade_accuracies": decade_accuracies,
                "strengths": self._strengths(decade_accuracies, decades),
            })

        best = max(comparison, key=lambda c: c["overall_accuracy"], default=None)
        return to_plain({
            "profiles": comparison,
            "best_overall": {
                "profile_name": best["profile"]["name"],
                "accuracy": best["overall_accuracy"],
                "description": best["profile"]["description"],
            } if best else None,
            "best_per_decade": {d: self._best_for(comparison, [d]) for d in decades},
            "insights": self._insights(comparison, decades),
        })

    @staticmethod
    def _era_average(decade_accuracies: Dict[int, float], decades: List[int]) -> float:
        return mean_accuracy([decade_accuracies.get(d, 0.0) for d in decades])

    def _strengths(self, decade_accuracies: Dict[int, float], decades: List[int]) -> str:
        early = self._era_average(decade_accuracies, [d for d in decades if d <= 1960])
        modern = self._era_average(decade_accuracies, [d for d in decades if d >= 1990])
        if early > modern + 10:
            return "Strong for classic cinema (pre-1960s)"
        if modern > early + 10:
            return "Strong for modern cinema (1990s+)"
        return "Consistent across all eras"

    def _best_for(self, comparison: List[Dict[str, Any]], decades: List[int]) -> Dict[str, Any]:
        best = {"profile": "None", "accuracy": 0.0}
        for c in comparison:
            avg = self._era_average(c["decade_accuracies"], decades)
            if best["profile"] == "None" or avg > best["accuracy"]:
                best = {"profile": c["profile"]["name"], "accuracy": avg}
        return best

    def _insights(self, comparison: List[Dict[str, Any]], decades: List[int]) -> Dict[str, Any]:
        spreads = [
            (c["profile"]["name"], _round(np.std(list(c["decade_accuracies"].values()))) if c["decade_accuracies"] else 0.0)
            for c in comparison
        ]
        return {
            "total_decades": len(decades),
            "highest_variance": max(spreads, key=lambda s: s[1], default=("None", 0.0)),
            "most_consistent": min(spreads, key=lambda s: s[1], default=("None", 0.0)),
            "era_specialists": {
                "classic_era": self._best_for(comparison, [d for d in decades if d <= 1960]),
                "golden_age": self._best_for(comparison, [d for d in decades if 1950 <= d <= 1970]),
                "modern_era": self._best_for(comparison, [d for d in decades if d >= 1990]),
            },
        }
