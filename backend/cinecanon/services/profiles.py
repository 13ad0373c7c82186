"""
profiles.py

Resolution of weighting profile sources (id, name, inline weights) into the
canonical WeightingProfile used by every scoring call. Unknown references
fall back to the default profile so read paths always have something to
score with.
"""
import hashlib
import json
import logging
from typing import List, Optional

from sqlalchemy.orm import Session

from cinecanon.core.config import settings
from cinecanon.models import WeightProfile
from cinecanon.schemas import ByName, ByReference, Inline, ProfileSource, WeightingProfile
from cinecanon.services.scoring_engine import DEFAULT_WEIGHTS

logger = logging.getLogger(__name__)


def default_weights() -> dict:
    return dict(DEFAULT_WEIGHTS)


def builtin_default_profile() -> WeightingProfile:
    return WeightingProfile(
        name=settings.default_profile_name,
        description="Built-in default weights",
        weights=default_weights(),
        is_default=True,
    )


def profile_from_row(row: WeightProfile) -> WeightingProfile:
    return WeightingProfile(
        id=row.id,
        name=row.name,
        description=row.description,
        weights=dict(row.category_weights or {}),
        is_default=bool(row.is_default),
    )


def get_default_profile(db: Session) -> WeightingProfile:
    """Default profile: the row flagged is_default, then the configured name, then built-in weights."""
    row = db.query(WeightProfile).filter(WeightProfile.is_default.is_(True), WeightProfile.active.is_(True)).first()
    if row is None:
        row = db.query(WeightProfile).filter(WeightProfile.name == settings.default_profile_name).first()
    if row is None:
        return builtin_default_profile()
    return profile_from_row(row)


def list_active_profiles(db: Session) -> List[WeightingProfile]:
    rows = db.query(WeightProfile).filter(WeightProfile.active.is_(True)).order_by(WeightProfile.id).all()
    return [profile_from_row(r) for r in rows]


def active_profile_ids(db: Session) -> List[int]:
    return [pid for (pid,) in db.query(WeightProfile.id).filter(WeightProfile.active.is_(True)).order_by(WeightProfile.id).all()]


def resolve_profile(db: Optional[Session], source: ProfileSource = None) -> WeightingProfile:
    """Turn any accepted profile source into a canonical WeightingProfile."""
    if isinstance(source, WeightingProfile):
        return source
    if isinstance(source, Inline):
        return WeightingProfile(name=source.name, description="Custom weights", weights=source.weights)
    if isinstance(source, dict):
        return WeightingProfile(name="Custom", description="Custom weights", weights=source)
    if db is None:
        return builtin_default_profile()

    row = None
    if isinstance(source, ByReference) or isinstance(source, int):
        profile_id = source.id if isinstance(source, ByReference) else source
        row = db.get(WeightProfile, profile_id)
        if row is None:
            logger.warning(f"[PROFILES] Unknown profile id {profile_id}, using default profile")
    elif isinstance(source, ByName) or isinstance(source, str):
        name = source.name if isinstance(source, ByName) else source
        row = db.query(WeightProfile).filter(WeightProfile.name == name).first()
        if row is None:
            logger.warning(f"[PROFILES] Unknown profile '{name}', using default profile")

    if row is None:
        return get_default_profile(db)
    return profile_from_row(row)


def weights_hash(profile: WeightingProfile) -> str:
    """Stable short hash of the profile's weights, used in cache keys."""
    encoded = json.dumps(profile.weights, sort_keys=True).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()
