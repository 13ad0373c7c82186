"""
Populate or inspect the prediction cache without a Celery worker.

Calculations run synchronously in this process, one (decade, profile) pair at
a time, and write through the same upsert the background jobs use.

Usage:
    PYTHONPATH=backend python -m cinecanon.scripts.populate_prediction_cache --all

Options:
    --decade N      Only this decade (e.g. 1970)
    --profile NAME  Only this profile (default: all active profiles)
    --all           Every supported decade for the selected profiles
    --clear         Delete every cache entry and the change ledger first
    --status        Print cache coverage and exit
"""
import argparse
import logging
import sys
from typing import List

from cinecanon.core.config import settings
from cinecanon.core.database import SessionLocal, init_db
from cinecanon.services.prediction_cache import PredictionCacheStore, validate_decade
from cinecanon.services.prediction_calculator import calculate_and_cache
from cinecanon.services.profiles import list_active_profiles, resolve_profile
from cinecanon.services.refresh_manager import RefreshManager
from cinecanon.utils.timezone import format_iso_utc

logging.basicConfig(
    level=logging.INFO,
    format='[%(levelname)s] %(message)s'
)
logger = logging.getLogger(__name__)


def print_status(db) -> None:
    store = PredictionCacheStore(db)
    coverage = store.coverage()
    ages = store.age_stats()
    print(f"Cached: {coverage['cached_combinations']}/{coverage['total_combinations']} "
          f"({coverage['coverage_percentage']}%)")
    if ages["count"]:
        print(f"Age (hours): newest {ages['newest_hours']}, oldest {ages['oldest_hours']}, "
              f"median {ages['median_hours']}")
    for row in store.status():
        print(f"  {row['decade']}s  {row['profile_name']:<24} {row['movie_count']:>6} movies  "
              f"{format_iso_utc(row['calculated_at'])}")
    for missing in coverage["missing"]:
        print(f"  missing: {missing['decade']}s / profile {missing['profile_id']}")


def populate(db, decades: List[int], profile_name: str = None) -> dict:
    if profile_name:
        profile = resolve_profile(db, profile_name)
        if profile.name != profile_name:
            raise SystemExit(f"Unknown profile '{profile_name}'")
        profiles = [profile]
    else:
        profiles = list_active_profiles(db)

    stats = {"calculated": 0, "failed": 0}
    for profile in profiles:
        for decade in decades:
            try:
                entry = calculate_and_cache(db, decade, profile)
                stats["calculated"] += 1
                logger.info(f"{decade}s / {profile.name}: {len(entry.movie_scores or {})} movies")
            except Exception as e:
                db.rollback()
                stats["failed"] += 1
                logger.error(f"{decade}s / {profile.name} failed: {e}")
    return stats


def main(argv=None):
    """CLI entry point."""
    parser = argparse.ArgumentParser(description='Populate the prediction cache synchronously')
    parser.add_argument('--decade', type=int, help='Decade to calculate (e.g. 1970)')
    parser.add_argument('--profile', help='Profile name (default: all active profiles)')
    parser.add_argument('--all', action='store_true', help='Calculate every supported decade')
    parser.add_argument('--clear', action='store_true', help='Clear all cache entries and the change ledger first')
    parser.add_argument('--status', action='store_true', help='Show cache status and exit')
    args = parser.parse_args(argv)

    init_db()
    db = SessionLocal()
    try:
        if args.status:
            print_status(db)
            return 0

        if args.clear:
            result = RefreshManager(db).clear_all_caches()
            logger.info(f"Cleared {result['cache_entries_deleted']} cache entries")

        if args.decade is not None:
            decades = [validate_decade(args.decade)]
        elif args.all:
            decades = list(settings.supported_decades)
        else:
            if not args.clear:
                parser.print_help()
            return 0

        stats = populate(db, decades, args.profile)
        logger.info(f"Done: {stats['calculated']} calculated, {stats['failed']} failed")
        return 1 if stats["failed"] else 0
    finally:
        db.close()


if __name__ == '__main__':
    sys.exit(main())
