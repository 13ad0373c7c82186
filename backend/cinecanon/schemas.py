"""
schemas.py

Pydantic schemas for scoring inputs/outputs and weighting profiles.
"""
from pydantic import BaseModel, Field, field_validator
from typing import Optional, Dict, List, Union
import datetime

CRITERIA = (
    "critical_acclaim",
    "festival_recognition",
    "cultural_impact",
    "technical_innovation",
    "auteur_recognition",
)


class RatingSignal(BaseModel):
    source: str
    metric_type: str
    value: Optional[float] = None


class NominationSignal(BaseModel):
    festival: str
    category: str
    won: bool = False
    year: Optional[int] = None


class MovieSignals(BaseModel):
    """Everything the scoring engine needs to know about one movie."""
    movie_id: Optional[int] = None
    title: Optional[str] = None
    release_date: Optional[datetime.date] = None
    ratings: List[RatingSignal] = Field(default_factory=list)
    nominations: List[NominationSignal] = Field(default_factory=list)
    technical_nominations: Optional[List[NominationSignal]] = None
    budget: Optional[float] = None
    revenue: Optional[float] = None
    genres: List[str] = Field(default_factory=list)
    original_language: Optional[str] = None
    director_ids: List[int] = Field(default_factory=list)
    director_list_count: int = 0
    canonical_sources: Dict[str, object] = Field(default_factory=dict)


class WeightingProfile(BaseModel):
    """Canonical profile form; every scoring call works on this."""
    id: Optional[int] = None
    name: str
    description: Optional[str] = None
    weights: Dict[str, float]
    is_default: bool = False

    @field_validator("weights")
    @classmethod
    def _complete_weights(cls, v: Dict[str, float]) -> Dict[str, float]:
        cleaned = {}
        for criterion in CRITERIA:
            w = float(v.get(criterion, 0.0) or 0.0)
            if w < 0:
                raise ValueError(f"weight for {criterion} must be non-negative")
            cleaned[criterion] = w
        return cleaned


class CategoryScore(BaseModel):
    criterion: str
    raw_score: float
    weight: float
    weighted_points: float


class ScoreResult(BaseModel):
    total_score: float
    likelihood_percentage: float
    criteria_scores: Dict[str, float]
    breakdown: List[CategoryScore]
    profile_name: str
    weights_used: Dict[str, float]


# Profile sources, resolved once by services.profiles.resolve_profile
class ByReference(BaseModel):
    id: int


class ByName(BaseModel):
    name: str


class Inline(BaseModel):
    weights: Dict[str, float]
    name: str = "Custom"


ProfileSource = Union[ByReference, ByName, Inline, WeightingProfile, None]
