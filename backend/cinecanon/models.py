"""
models.py

SQLAlchemy models for the prediction core.

Upstream tables (movies, ratings, festival nominations, credits, weight
profiles) are owned by the ingestion side and only read here. The prediction
cache, the staleness ledger and the refresh job mirror are owned by this
package.
"""
from sqlalchemy import Column, Integer, BigInteger, String, Boolean, ForeignKey, DateTime, Date, Float, Text, UniqueConstraint, Index, JSON
from sqlalchemy.dialects.postgresql import ARRAY, JSONB
from sqlalchemy.orm import declarative_base, relationship

from cinecanon.utils.timezone import utc_now

Base = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")
DecadeArray = JSON().with_variant(ARRAY(Integer), "postgresql")


class Movie(Base):
    __tablename__ = "movies"
    id = Column(Integer, primary_key=True)
    tmdb_id = Column(Integer, index=True)
    imdb_id = Column(String, index=True)
    title = Column(String, nullable=False)
    release_date = Column(Date, nullable=True, index=True)
    original_language = Column(String, nullable=True)
    genres = Column(JSONType, nullable=True)  # list of genre names
    budget = Column(BigInteger, nullable=True)
    revenue = Column(BigInteger, nullable=True)
    # {"1001_movies": {...}, "criterion": {...}}; key presence marks membership
    canonical_sources = Column(JSONType, nullable=True, default=dict)
    import_status = Column(String, nullable=True, default="full", index=True)
    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    ratings = relationship("ExternalRating", back_populates="movie")
    nominations = relationship("FestivalNomination", back_populates="movie")
    credits = relationship("MovieCredit", back_populates="movie")


class ExternalRating(Base):
    """One rating value from an external source (imdb, metacritic, rotten_tomatoes)."""
    __tablename__ = "external_ratings"
    id = Column(Integer, primary_key=True)
    movie_id = Column(Integer, ForeignKey("movies.id"), nullable=False, index=True)
    source = Column(String, nullable=False)
    metric_type = Column(String, nullable=False)  # rating_average, critics_score, rating_votes
    value = Column(Float, nullable=True)
    fetched_at = Column(DateTime(timezone=True), default=utc_now)

    movie = relationship("Movie", back_populates="ratings")

    __table_args__ = (
        Index("ix_external_ratings_movie_source", "movie_id", "source", "metric_type"),
    )


class FestivalNomination(Base):
    __tablename__ = "festival_nominations"
    id = Column(Integer, primary_key=True)
    movie_id = Column(Integer, ForeignKey("movies.id"), nullable=False, index=True)
    person_id = Column(Integer, nullable=True)
    festival = Column(String, nullable=False)  # organization abbreviation: AMPAS, CANNES, ...
    category = Column(String, nullable=False)
    year = Column(Integer, nullable=True)
    won = Column(Boolean, default=False, nullable=False)

    movie = relationship("Movie", back_populates="nominations")


class MovieCredit(Base):
    __tablename__ = "movie_credits"
    id = Column(Integer, primary_key=True)
    movie_id = Column(Integer, ForeignKey("movies.id"), nullable=False, index=True)
    person_id = Column(Integer, nullable=False, index=True)
    credit_type = Column(String, nullable=False)  # 'cast' or 'crew'
    department = Column(String, nullable=True)
    job = Column(String, nullable=True)

    movie = relationship("Movie", back_populates="credits")


class WeightProfile(Base):
    """Named weighting profile for the five prediction criteria."""
    __tablename__ = "weight_profiles"
    id = Column(Integer, primary_key=True)
    name = Column(String, unique=True, nullable=False)
    description = Column(Text, nullable=True)
    category_weights = Column(JSONType, nullable=False, default=dict)
    active = Column(Boolean, default=True, index=True)
    is_default = Column(Boolean, default=False)
    is_system = Column(Boolean, default=False)
    created_at = Column(DateTime(timezone=True), default=utc_now)


class PredictionCache(Base):
    """Pre-computed ranked predictions for one (decade, profile) pair."""
    __tablename__ = "prediction_cache"
    id = Column(Integer, primary_key=True)
    decade = Column(Integer, nullable=False, index=True)
    profile_id = Column(Integer, ForeignKey("weight_profiles.id"), nullable=False, index=True)
    movie_scores = Column(JSONType, nullable=False, default=dict)
    statistics = Column(JSONType, nullable=False, default=dict)
    metadata_ = Column("metadata", JSONType, nullable=True, default=dict)
    calculated_at = Column(DateTime(timezone=True), nullable=False)
    inserted_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)

    profile = relationship("WeightProfile")

    __table_args__ = (
        UniqueConstraint("decade", "profile_id", name="uq_prediction_cache_decade_profile"),
    )


class ChangeEvent(Base):
    """Append-only ledger row describing an upstream change that may move scores."""
    __tablename__ = "prediction_staleness_tracking"
    id = Column(Integer, primary_key=True)
    change_type = Column(String, nullable=False, index=True)
    entity_id = Column(BigInteger, nullable=True)
    entity_type = Column(String, nullable=True)
    affected_decades = Column(DecadeArray, nullable=False, default=list)
    metadata_ = Column("metadata", JSONType, nullable=True, default=dict)
    inserted_at = Column(DateTime(timezone=True), default=utc_now, nullable=False, index=True)


class RefreshJob(Base):
    """Mirror of one background refresh submission and its state machine."""
    __tablename__ = "prediction_refresh_jobs"
    id = Column(Integer, primary_key=True)
    job_type = Column(String, nullable=False)  # full_refresh, selective, decade
    state = Column(String, nullable=False, default="queued", index=True)
    args = Column(JSONType, nullable=False, default=dict)
    progress = Column(Integer, nullable=False, default=0)
    message = Column(String, nullable=True)
    error = Column(Text, nullable=True)
    task_id = Column(String, nullable=True, index=True)
    queued_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    attempted_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
