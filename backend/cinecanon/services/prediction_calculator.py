"""
prediction_calculator.py

Builds the cached prediction set for one (decade, profile) pair: selects the
decade's movies, scores them in chunks with the BatchScorer, turns the results
into compact records plus summary statistics, and upserts the cache entry.
Also contains the unit of work executed by background refresh jobs.
"""
import logging
from datetime import date
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
from sqlalchemy.orm import Session

from cinecanon.core.config import settings
from cinecanon.models import Movie, PredictionCache
from cinecanon.schemas import CRITERIA, ProfileSource, ScoreResult, WeightingProfile
from cinecanon.services.batch_scoring import BatchScorer, is_list_member
from cinecanon.services.prediction_cache import PredictionCacheStore, validate_decade
from cinecanon.services.profiles import active_profile_ids, resolve_profile
from cinecanon.services.staleness_tracker import StalenessTracker
from cinecanon.utils.payload import to_plain
from cinecanon.utils.timezone import utc_now

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, str], None]


def decade_bounds(decade: int) -> Tuple[date, date]:
    return date(decade, 1, 1), date(decade + 9, 12, 31)


def decade_movies(db: Session, decade: int, limit: Optional[int] = None) -> List[Movie]:
    start, end = decade_bounds(decade)
    q = db.query(Movie).filter(Movie.release_date >= start, Movie.release_date <= end).order_by(Movie.id)
    if limit:
        q = q.limit(limit)
    return q.all()


def score_movies(db: Session, movies: Sequence[Movie], profile: WeightingProfile, chunk_size: Optional[int] = None) -> List[dict]:
    """Score movies in chunks so each bulk pre-load stays bounded."""
    chunk_size = chunk_size or settings.prediction_chunk_size
    scorer = BatchScorer(db)
    results = []
    for start in range(0, len(movies), chunk_size):
        results.extend(scorer.score_batch(movies[start:start + chunk_size], profile))
    return results


def format_breakdown(prediction: ScoreResult) -> List[Dict[str, Any]]:
    return [
        {
            "criterion": item.criterion,
            "raw_score": round(item.raw_score, 1),
            "weight": item.weight,
            "weighted_points": round(item.weighted_points, 2),
        }
        for item in prediction.breakdown
    ]


def format_record(movie: Movie, prediction: ScoreResult) -> Dict[str, Any]:
    return {
        "title": movie.title,
        "score": round(prediction.likelihood_percentage, 1),
        "likelihood": round(prediction.likelihood_percentage, 1),
        "total_score": round(prediction.total_score, 1),
        "release_date": movie.release_date.isoformat() if movie.release_date else None,
        "year": movie.release_date.year if movie.release_date else None,
        "status": "already_added" if is_list_member(movie) else "future_prediction",
        "canonical_sources": movie.canonical_sources or {},
        "breakdown": format_breakdown(prediction),
    }


def calculate_predictions(db: Session, decade: int, profile: WeightingProfile) -> Tuple[Dict[str, Dict[str, Any]], int]:
    """Return ({movie_id: record}, candidate_count) for the decade."""
    movies = decade_movies(db, decade)
    scored = score_movies(db, movies, profile)
    movie_scores = {str(item["movie"].id): format_record(item["movie"], item["prediction"]) for item in scored}
    return movie_scores, len(movies)


def calculate_statistics(movie_scores: Dict[str, Dict[str, Any]]) -> Dict[str, Any]:
    records = list(movie_scores.values())
    scores = np.array([float(r.get("score") or 0.0) for r in records])
    high = settings.high_confidence_threshold
    medium = settings.medium_confidence_threshold
    if scores.size == 0:
        summary = {"average_score": 0.0, "median_score": 0.0, "min_score": 0.0, "max_score": 0.0, "std_dev": 0.0}
    else:
        summary = {
            "average_score": round(float(scores.mean()), 2),
            "median_score": round(float(np.median(scores)), 2),
            "min_score": round(float(scores.min()), 2),
            "max_score": round(float(scores.max()), 2),
            "std_dev": round(float(scores.std()), 2),
        }
    return {
        "total_predictions": len(records),
        **summary,
        "high_confidence_count": int((scores >= high).sum()),
        "medium_confidence_count": int(((scores >= medium) & (scores < high)).sum()),
        "low_confidence_count": int((scores < medium).sum()),
        "already_added_count": sum(1 for r in records if r.get("status") == "already_added"),
        "future_prediction_count": sum(1 for r in records if r.get("status") == "future_prediction"),
    }


def calculate_and_cache(db: Session, decade: int, profile_source: ProfileSource) -> PredictionCache:
    """Compute the full prediction set for (decade, profile) and replace its cache entry."""
    decade = validate_decade(decade)
    profile = resolve_profile(db, profile_source)
    if profile.id is None:
        raise ValueError("Only stored profiles can be cached")
    logger.info(f"[PREDICTIONS] Calculating {decade}s predictions for profile {profile.name}")
    movie_scores, candidates = calculate_predictions(db, decade, profile)
    statistics = calculate_statistics(movie_scores)
    metadata = {
        "algorithm_version": settings.algorithm_version,
        "total_candidates": candidates,
        "profile_name": profile.name,
        "weights_used": profile.weights,
        "criteria_count": len(CRITERIA),
        "calculation_timestamp": utc_now(),
    }
    return PredictionCacheStore(db).upsert(
        decade, profile.id, movie_scores=movie_scores, statistics=statistics,
        calculated_at=utc_now(), metadata=metadata,
    )


def top_predictions(entry: Optional[PredictionCache], limit: int = 100, include_added: bool = False) -> List[Dict[str, Any]]:
    """Ranked records from a cache entry, best likelihood first."""
    if entry is None:
        return []
    rows = []
    for movie_id, record in (entry.movie_scores or {}).items():
        if not include_added and record.get("status") == "already_added":
            continue
        rows.append({"id": int(movie_id), **record})
    rows.sort(key=lambda r: (r.get("score") or 0.0, r.get("total_score") or 0.0), reverse=True)
    return rows[:limit]


def refresh_targets(db: Session, job_type: str, args: Dict[str, Any]) -> List[Tuple[int, int]]:
    """(profile_id, decade) pairs covered by a refresh job."""
    if job_type == "decade":
        return [(int(args["profile_id"]), int(args["decade"]))]
    if job_type == "selective":
        profile_ids = active_profile_ids(db)
        decades = args.get("decades") or []
    else:
        profile_ids = args.get("profile_ids") or active_profile_ids(db)
        decades = args.get("decades") or list(settings.supported_decades)
    return [(int(p), int(d)) for p in profile_ids for d in decades]


def covers_everything(db: Session, targets: List[Tuple[int, int]]) -> bool:
    wanted = {(p, d) for p in active_profile_ids(db) for d in settings.supported_decades}
    return wanted.issubset(set(targets))


def run_refresh_work(db: Session, job_type: str, args: Dict[str, Any], on_progress: Optional[ProgressCallback] = None) -> Dict[str, Any]:
    """Recompute every target pair; clear the ledger when a full refresh covered everything."""
    started_at = utc_now()
    targets = refresh_targets(db, job_type, args)
    total = len(targets)
    for index, (profile_id, decade) in enumerate(targets, start=1):
        calculate_and_cache(db, decade, profile_id)
        if on_progress is not None:
            on_progress(round(index / total * 100), f"Processed decade {decade} for profile {profile_id}")

    ledger_cleared = False
    if job_type == "full_refresh" and covers_everything(db, targets):
        # Changes recorded while the refresh ran are kept for the next one
        StalenessTracker(db).clear(before=started_at)
        ledger_cleared = True
    summary = {"pairs_processed": total, "ledger_cleared": ledger_cleared}
    logger.info(f"[PREDICTIONS] Refresh ({job_type}) finished: {summary}")
    return to_plain(summary)
