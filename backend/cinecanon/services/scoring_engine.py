"""
scoring_engine.py

Five-criteria scoring model for predicting additions to the canonical
"1001 Movies" list. Pure computation: takes MovieSignals and a weighting
profile, returns a ScoreResult. Missing signals contribute 0.
"""
import logging
from typing import Dict, Iterable, List, Optional, Tuple

from cinecanon.schemas import (
    CRITERIA,
    CategoryScore,
    MovieSignals,
    NominationSignal,
    RatingSignal,
    ScoreResult,
    WeightingProfile,
)

logger = logging.getLogger(__name__)

DEFAULT_WEIGHTS: Dict[str, float] = {
    "critical_acclaim": 0.35,
    "festival_recognition": 0.30,
    "cultural_impact": 0.20,
    "technical_innovation": 0.10,
    "auteur_recognition": 0.05,
}

CANONICAL_LIST_KEY = "1001_movies"

# (score when won, score when nominated)
FESTIVAL_TIERS: Dict[str, Tuple[float, float]] = {
    "AMPAS": (100.0, 80.0),     # Oscars
    "CANNES": (95.0, 75.0),
    "VIFF": (90.0, 70.0),       # Venice
    "BIFF": (90.0, 70.0),       # Berlin
    "SUNDANCE": (75.0, 60.0),
}
OTHER_FESTIVAL_SCORES: Tuple[float, float] = (50.0, 30.0)
PRESTIGE_CATEGORY_KEYWORDS = ("picture", "film", "director")
PRESTIGE_CATEGORY_BONUS = 10.0

# Only these sources count toward critical acclaim; others may use unknown scales
ACCLAIM_SOURCES = ("metacritic", "rotten_tomatoes", "imdb")
# Multipliers for sources not already on a 0-100 scale
RATING_SCALES: Dict[Tuple[str, str], float] = {
    ("imdb", "rating_average"): 10.0,
}
RATED_METRIC_TYPES = ("rating_average", "critics_score")

TECHNICAL_CATEGORY_KEYWORDS = ("cinematography", "sound", "editing", "visual", "technical")
TECHNICAL_WIN_POINTS = 20.0
TECHNICAL_NOMINATION_POINTS = 10.0

# (min revenue/budget ratio, points)
ROI_TIERS: List[Tuple[float, float]] = [(10.0, 40.0), (5.0, 30.0), (2.0, 20.0), (1.0, 10.0)]
# (min imdb rating, min votes, points)
CRITICAL_MASS_TIERS: List[Tuple[float, int, float]] = [
    (7.5, 100_000, 30.0),
    (7.0, 50_000, 20.0),
    (6.5, 25_000, 10.0),
]
GENRE_BONUS = 10.0
INTERNATIONAL_BONUS = 5.0

# (min prior list entries by the director(s), points)
AUTEUR_TIERS: List[Tuple[int, float]] = [(5, 100.0), (3, 80.0), (1, 60.0), (0, 20.0)]

# Likelihood curve breakpoints: (score floor, likelihood at floor, slope)
LIKELIHOOD_CURVE: List[Tuple[float, float, float]] = [
    (90.0, 95.0, 0.5),
    (80.0, 85.0, 1.0),
    (70.0, 70.0, 1.5),
    (60.0, 55.0, 1.5),
]
LIKELIHOOD_BASE_SLOPE = 0.9


def is_technical_category(category: Optional[str]) -> bool:
    name = (category or "").lower()
    return any(keyword in name for keyword in TECHNICAL_CATEGORY_KEYWORDS)


def normalize_rating(source: str, metric_type: str, value: Optional[float]) -> float:
    """Bring one rating onto a 0-100 scale."""
    if value is None:
        return 0.0
    # metacritic and rotten tomatoes are already 0-100
    return float(value) * RATING_SCALES.get((source, metric_type), 1.0)


def convert_to_likelihood(weighted_score: Optional[float]) -> float:
    """Compress a 0-100 weighted score into a likelihood percentage.

    Piecewise linear and monotonic; strong candidates are pushed toward 95-100
    while weak ones stay near 0.
    """
    score = max(0.0, float(weighted_score or 0.0))
    for floor, base, slope in LIKELIHOOD_CURVE:
        if score >= floor:
            return min(100.0, base + (score - floor) * slope)
    return score * LIKELIHOOD_BASE_SLOPE


class ScoringEngine:
    """Computes per-criterion sub-scores and the weighted total for a movie."""

    def score_critical_acclaim(self, ratings: Iterable[RatingSignal]) -> float:
        relevant = [r for r in ratings if r.source in ACCLAIM_SOURCES and r.metric_type in RATED_METRIC_TYPES]
        if not relevant:
            return 0.0
        normalized = [normalize_rating(r.source, r.metric_type, r.value) for r in relevant]
        return sum(normalized) / len(normalized)

    def score_festival_nomination(self, nomination: NominationSignal) -> float:
        won_score, nominated_score = FESTIVAL_TIERS.get((nomination.festival or "").upper(), OTHER_FESTIVAL_SCORES)
        base = won_score if nomination.won else nominated_score
        category = (nomination.category or "").lower()
        if any(keyword in category for keyword in PRESTIGE_CATEGORY_KEYWORDS):
            base += PRESTIGE_CATEGORY_BONUS
        return min(base, 100.0)

    def score_festival_recognition(self, nominations: Iterable[NominationSignal]) -> float:
        # Best single nomination, not the sum: many minor nominations must not
        # outweigh or dilute one top win.
        return max((self.score_festival_nomination(n) for n in nominations), default=0.0)

    def score_roi(self, budget: Optional[float], revenue: Optional[float]) -> float:
        if not budget or not revenue or budget <= 0 or revenue <= 0:
            return 0.0
        roi = revenue / budget
        for min_ratio, points in ROI_TIERS:
            if roi >= min_ratio:
                return points
        return 0.0

    def score_critical_mass(self, ratings: Iterable[RatingSignal]) -> float:
        rating, votes = 0.0, 0
        for r in ratings:
            if r.source != "imdb" or r.value is None:
                continue
            if r.metric_type == "rating_average":
                rating = float(r.value)
            elif r.metric_type == "rating_votes":
                votes = int(round(r.value))
        for min_rating, min_votes, points in CRITICAL_MASS_TIERS:
            if rating >= min_rating and votes >= min_votes:
                return points
        return 0.0

    def score_genre_impact(self, signals: MovieSignals) -> float:
        return GENRE_BONUS if signals.genres else 0.0

    def score_international_impact(self, signals: MovieSignals) -> float:
        language = (signals.original_language or "").lower()
        if language and language != "en":
            return INTERNATIONAL_BONUS
        return 0.0

    def score_cultural_impact(self, signals: MovieSignals) -> float:
        total = (
            self.score_roi(signals.budget, signals.revenue)
            + self.score_critical_mass(signals.ratings)
            + self.score_genre_impact(signals)
            + self.score_international_impact(signals)
        )
        return min(total, 100.0)

    def score_technical_innovation(self, nominations: Iterable[NominationSignal]) -> float:
        points = 0.0
        for n in nominations:
            points += TECHNICAL_WIN_POINTS if n.won else TECHNICAL_NOMINATION_POINTS
        return min(points, 100.0)

    def score_auteur_recognition(self, director_ids: List[int], list_count: int) -> float:
        if not director_ids:
            return 0.0
        for min_count, points in AUTEUR_TIERS:
            if list_count >= min_count:
                return points
        return 0.0

    def criteria_scores(self, signals: MovieSignals) -> Dict[str, float]:
        technical = signals.technical_nominations
        if technical is None:
            technical = [n for n in signals.nominations if is_technical_category(n.category)]
        return {
            "critical_acclaim": self.score_critical_acclaim(signals.ratings),
            "festival_recognition": self.score_festival_recognition(signals.nominations),
            "cultural_impact": self.score_cultural_impact(signals),
            "technical_innovation": self.score_technical_innovation(technical),
            "auteur_recognition": self.score_auteur_recognition(signals.director_ids, signals.director_list_count),
        }

    def combine(self, scores: Dict[str, float], profile: WeightingProfile) -> ScoreResult:
        """Weight raw criterion scores into a ScoreResult."""
        breakdown = []
        total = 0.0
        for criterion in CRITERIA:
            raw = float(scores.get(criterion) or 0.0)
            weight = float(profile.weights.get(criterion) or 0.0)
            points = raw * weight
            total += points
            breakdown.append(CategoryScore(criterion=criterion, raw_score=raw, weight=weight, weighted_points=points))
        return ScoreResult(
            total_score=total,
            likelihood_percentage=convert_to_likelihood(total),
            criteria_scores={c: float(scores.get(c) or 0.0) for c in CRITERIA},
            breakdown=breakdown,
            profile_name=profile.name,
            weights_used=dict(profile.weights),
        )

    def score(self, signals: MovieSignals, profile: WeightingProfile) -> ScoreResult:
        return self.combine(self.criteria_scores(signals), profile)


def default_profile() -> WeightingProfile:
    return WeightingProfile(name="Balanced", weights=dict(DEFAULT_WEIGHTS), is_default=True)
