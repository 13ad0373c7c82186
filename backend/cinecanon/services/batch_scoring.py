"""
batch_scoring.py

Scores many movies at once. All auxiliary signals (ratings, nominations,
technical nominations, director list counts) are pre-loaded with one query
each for the whole id set, then every movie is scored from the in-memory maps.
"""
import logging
from collections import defaultdict
from typing import Dict, List, Sequence, Set

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from cinecanon.models import ExternalRating, FestivalNomination, Movie, MovieCredit
from cinecanon.schemas import MovieSignals, NominationSignal, RatingSignal, ScoreResult, WeightingProfile
from cinecanon.services.scoring_engine import (
    CANONICAL_LIST_KEY,
    TECHNICAL_CATEGORY_KEYWORDS,
    ScoringEngine,
)

logger = logging.getLogger(__name__)


def is_list_member(movie: Movie) -> bool:
    return CANONICAL_LIST_KEY in (movie.canonical_sources or {})


def _director_filter():
    return MovieCredit.credit_type == "crew", MovieCredit.department == "Directing"


def _prior_list_count(movie_id: int, director_ids: List[int], list_movies: Dict[int, Set[int]]) -> int:
    """Distinct list movies by any of the directors, not counting the movie itself."""
    other_works = set()
    for pid in director_ids:
        other_works |= list_movies.get(pid, set())
    other_works.discard(movie_id)
    return len(other_works)


class BatchScorer:
    """Bulk signal loader + element-wise application of the ScoringEngine."""

    def __init__(self, db: Session, engine: ScoringEngine | None = None):
        self.db = db
        self.engine = engine or ScoringEngine()

    def load_ratings(self, movie_ids: Sequence[int]) -> Dict[int, List[RatingSignal]]:
        rows = self.db.query(
            ExternalRating.movie_id, ExternalRating.source, ExternalRating.metric_type, ExternalRating.value
        ).filter(ExternalRating.movie_id.in_(movie_ids)).all()
        out: Dict[int, List[RatingSignal]] = defaultdict(list)
        for movie_id, source, metric_type, value in rows:
            out[movie_id].append(RatingSignal(source=source, metric_type=metric_type, value=value))
        return out

    def load_nominations(self, movie_ids: Sequence[int], technical_only: bool = False) -> Dict[int, List[NominationSignal]]:
        query = self.db.query(
            FestivalNomination.movie_id,
            FestivalNomination.festival,
            FestivalNomination.category,
            FestivalNomination.won,
            FestivalNomination.year,
        ).filter(FestivalNomination.movie_id.in_(movie_ids))
        if technical_only:
            lowered = func.lower(FestivalNomination.category)
            query = query.filter(or_(*[lowered.like(f"%{kw}%") for kw in TECHNICAL_CATEGORY_KEYWORDS]))
        out: Dict[int, List[NominationSignal]] = defaultdict(list)
        for movie_id, festival, category, won, year in query.all():
            out[movie_id].append(NominationSignal(festival=festival, category=category, won=bool(won), year=year))
        return out

    def load_directors(self, movie_ids: Sequence[int]) -> Dict[int, List[int]]:
        rows = self.db.query(MovieCredit.movie_id, MovieCredit.person_id).filter(
            MovieCredit.movie_id.in_(movie_ids), *_director_filter()
        ).all()
        out: Dict[int, List[int]] = defaultdict(list)
        for movie_id, person_id in rows:
            if person_id not in out[movie_id]:
                out[movie_id].append(person_id)
        return out

    def load_director_list_movies(self, director_ids: Sequence[int]) -> Dict[int, Set[int]]:
        """Canonical-list movie ids per director, one query for all directors."""
        if not director_ids:
            return {}
        rows = self.db.query(MovieCredit.person_id, Movie.id, Movie.canonical_sources).join(
            Movie, Movie.id == MovieCredit.movie_id
        ).filter(MovieCredit.person_id.in_(director_ids), *_director_filter()).all()
        # canonical_sources is a JSON document; membership is checked here so the
        # same query works on every engine.
        out: Dict[int, Set[int]] = defaultdict(set)
        for person_id, movie_id, sources in rows:
            if CANONICAL_LIST_KEY in (sources or {}):
                out[person_id].add(movie_id)
        return out

    def build_signals(self, movies: Sequence[Movie]) -> Dict[int, MovieSignals]:
        movie_ids = [m.id for m in movies]
        if not movie_ids:
            return {}
        ratings = self.load_ratings(movie_ids)
        nominations = self.load_nominations(movie_ids)
        technical = self.load_nominations(movie_ids, technical_only=True)
        directors = self.load_directors(movie_ids)
        all_directors = sorted({pid for pids in directors.values() for pid in pids})
        list_movies = self.load_director_list_movies(all_directors)

        signals = {}
        for movie in movies:
            director_ids = directors.get(movie.id, [])
            signals[movie.id] = MovieSignals(
                movie_id=movie.id,
                title=movie.title,
                release_date=movie.release_date,
                ratings=ratings.get(movie.id, []),
                nominations=nominations.get(movie.id, []),
                technical_nominations=technical.get(movie.id, []),
                budget=movie.budget,
                revenue=movie.revenue,
                genres=list(movie.genres or []),
                original_language=movie.original_language,
                director_ids=director_ids,
                director_list_count=_prior_list_count(movie.id, director_ids, list_movies),
                canonical_sources=dict(movie.canonical_sources or {}),
            )
        return signals

    def score_batch(self, movies: Sequence[Movie], profile: WeightingProfile) -> List[dict]:
        """Return [{"movie": movie, "prediction": ScoreResult}] in input order."""
        signals = self.build_signals(movies)
        results = []
        for movie in movies:
            prediction: ScoreResult = self.engine.score(signals[movie.id], profile)
            results.append({"movie": movie, "prediction": prediction})
        logger.debug(f"[PREDICTIONS] Scored batch of {len(results)} movies with profile {profile.name}")
        return results

    def score_movie(self, movie: Movie, profile: WeightingProfile) -> ScoreResult:
        """Single-movie path; same loaders with a one-element id set."""
        return self.score_batch([movie], profile)[0]["prediction"]
