"""Shared builders for tests: in-memory SQLite with the full schema, and a dict-backed Redis mock."""
from datetime import date
from fnmatch import fnmatch
from unittest.mock import MagicMock

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from cinecanon.models import Base, ExternalRating, FestivalNomination, Movie, MovieCredit, WeightProfile
from cinecanon.services.scoring_engine import CANONICAL_LIST_KEY, DEFAULT_WEIGHTS


def make_session():
    engine = create_engine("sqlite://")
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False)()


def add_movie(db, title, release_date=None, on_list=False, **fields):
    sources = {CANONICAL_LIST_KEY: {"included": True}} if on_list else {}
    movie = Movie(title=title, release_date=release_date, canonical_sources=sources,
                  import_status=fields.pop("import_status", "full"), **fields)
    db.add(movie)
    db.commit()
    return movie


def add_rating(db, movie, source, metric_type, value):
    db.add(ExternalRating(movie_id=movie.id, source=source, metric_type=metric_type, value=value))
    db.commit()


def add_nomination(db, movie, festival, category, won=False, person_id=None):
    nomination = FestivalNomination(movie_id=movie.id, festival=festival, category=category,
                                    won=won, person_id=person_id, year=movie.release_date.year if movie.release_date else None)
    db.add(nomination)
    db.commit()
    return nomination


def add_director(db, movie, person_id):
    db.add(MovieCredit(movie_id=movie.id, person_id=person_id, credit_type="crew",
                       department="Directing", job="Director"))
    db.commit()


def add_profile(db, name, weights=None, is_default=False, active=True):
    profile = WeightProfile(name=name, category_weights=dict(weights or DEFAULT_WEIGHTS),
                            is_default=is_default, active=active)
    db.add(profile)
    db.commit()
    return profile


def seed_decade(db, decade=1970):
    """A small decade: two acclaimed list members, two weak non-members, one director with a list history."""
    strong = add_movie(db, "Strong Contender", date(decade + 2, 5, 1), on_list=True,
                       original_language="it", genres=["Drama"], budget=1_000_000, revenue=20_000_000)
    add_rating(db, strong, "imdb", "rating_average", 8.5)
    add_rating(db, strong, "imdb", "rating_votes", 250_000)
    add_rating(db, strong, "metacritic", "critics_score", 92)
    add_nomination(db, strong, "CANNES", "Palme d'Or", won=True)
    add_nomination(db, strong, "AMPAS", "Best Cinematography", won=True)
    add_director(db, strong, 501)

    second = add_movie(db, "Second Contender", date(decade + 5, 3, 1), on_list=True,
                       original_language="en", genres=["Crime"])
    add_rating(db, second, "imdb", "rating_average", 8.0)
    add_rating(db, second, "rotten_tomatoes", "critics_score", 88)
    add_nomination(db, second, "AMPAS", "Best Director")
    add_director(db, second, 501)

    weak = add_movie(db, "Forgotten Comedy", date(decade + 7, 8, 1))
    add_rating(db, weak, "imdb", "rating_average", 5.1)

    add_movie(db, "Unrated Obscurity", date(decade + 9, 12, 31))
    return {"strong": strong, "second": second, "weak": weak}


def mock_redis():
    """MagicMock Redis client backed by a dict; records the ``ex`` TTL of each write."""
    store, ttls = {}, {}
    client = MagicMock()
    client.store, client.ttls = store, ttls

    def _set(key, value, ex=None):
        store[key] = value
        ttls[key] = ex
        return True

    def _delete(*keys):
        return sum(1 for key in keys if store.pop(key, None) is not None)

    client.get.side_effect = store.get
    client.set.side_effect = _set
    client.delete.side_effect = _delete
    client.scan_iter.side_effect = lambda match="*": [k for k in list(store) if fnmatch(k, match)]
    return client
