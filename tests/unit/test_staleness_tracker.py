import unittest
from datetime import date, timedelta
from unittest import mock

from sqlalchemy.exc import OperationalError

from cinecanon.core.config import settings
from cinecanon.models import ChangeEvent
from cinecanon.services.prediction_cache import PredictionCacheStore
from cinecanon.services.staleness_tracker import StalenessTracker, UnknownChangeKind
from cinecanon.utils.timezone import utc_now

from db_fixtures import add_director, add_movie, add_nomination, add_profile, make_session


class TestStalenessTracker(unittest.TestCase):
    def setUp(self):
        self.db = make_session()
        self.tracker = StalenessTracker(self.db)
        self.movie = add_movie(self.db, "Mid-Seventies", date(1975, 6, 1))

    def tearDown(self):
        self.db.close()

    def test_movie_change_infers_decade(self):
        event = self.tracker.record("movie_updated", self.movie.id)
        self.assertEqual(event.affected_decades, [1970])
        self.assertEqual(event.entity_type, "movie")
        report = self.tracker.staleness_report()
        self.assertIsNone(report["last_refresh"])
        self.assertIn(1970, report["affected_decades"])
        self.assertEqual(report["changes_since"]["movies"], 1)

    def test_festival_changes_counted_since_timestamp(self):
        nomination = add_nomination(self.db, self.movie, "CANNES", "Palme d'Or")
        before = utc_now() - timedelta(seconds=1)
        first = self.tracker.record("festival_added", nomination.id)
        self.tracker.record("festival_added", nomination.id)
        after = utc_now() + timedelta(seconds=1)

        self.assertEqual(first.affected_decades, [1970])
        self.assertEqual(self.tracker.staleness_report(last_refresh=before)["changes_since"]["festivals"], 2)
        self.assertEqual(self.tracker.staleness_report(last_refresh=after)["changes_since"]["festivals"], 0)
        self.assertEqual(self.tracker.staleness_report(last_refresh=after)["affected_decades"], [])

    def test_person_change_reaches_every_credited_decade(self):
        later = add_movie(self.db, "Late Work", date(1992, 1, 1))
        undated = add_movie(self.db, "Lost Reel")
        for movie in (self.movie, later, undated):
            add_director(self.db, movie, 77)
        event = self.tracker.record("person_metric_updated", 77)
        self.assertEqual(event.affected_decades, [1970, 1990])

    def test_missing_release_date_affects_nothing(self):
        undated = add_movie(self.db, "Lost Reel")
        self.assertEqual(self.tracker.record("movie_created", undated.id).affected_decades, [])
        self.assertEqual(self.tracker.record("movie_created", 999_999).affected_decades, [])
        self.assertEqual(self.tracker.record("metric_updated", None).affected_decades, [])

    def test_failed_lookup_still_records_event(self):
        self.movie.title = "Mid-Seventies (restored)"
        error = OperationalError("SELECT movies.release_date", {}, Exception("connection reset"))
        with mock.patch.object(StalenessTracker, "_movie_decades", side_effect=error), \
                mock.patch.object(self.db, "begin_nested", wraps=self.db.begin_nested) as begin_nested:
            event = self.tracker.record("movie_updated", self.movie.id)
        begin_nested.assert_called_once()
        self.assertEqual(event.affected_decades, [])
        self.assertEqual(self.db.query(ChangeEvent).count(), 1)
        # Pending work from before the failed lookup is committed along with the event
        self.db.expire_all()
        self.assertEqual(self.movie.title, "Mid-Seventies (restored)")

    def test_explicit_decades_win(self):
        event = self.tracker.record("canonical_source_added", self.movie.id, affected_decades=[2000, 1980, 2000])
        self.assertEqual(event.affected_decades, [1980, 2000])

    def test_unknown_kind_rejected(self):
        with self.assertRaises(UnknownChangeKind):
            self.tracker.record("poster_changed", self.movie.id)

    def test_report_without_cache_covers_everything(self):
        self.tracker.record("metric_updated", self.movie.id)
        report = self.tracker.staleness_report()
        self.assertEqual(report["affected_decades"], list(settings.supported_decades))
        self.assertEqual(report["changes_since"], {"movies": 0, "metrics": 1, "festivals": 0})

    def test_report_uses_last_cache_refresh(self):
        profile = add_profile(self.db, "Balanced")
        self.tracker.record("movie_updated", self.movie.id)
        PredictionCacheStore(self.db).upsert(1970, profile.id, {}, {}, calculated_at=utc_now() + timedelta(seconds=1))
        report = self.tracker.staleness_report()
        self.assertIsNotNone(report["last_refresh"])
        self.assertEqual(report["changes_since"]["movies"], 0)

    def test_record_batch_and_decade_changes(self):
        count = self.tracker.record_batch([
            {"change_type": "metric_updated", "entity_id": 1, "affected_decades": [1970]},
            {"change_type": "metric_updated", "entity_id": 2, "affected_decades": [1980, 1970]},
            {"change_type": "festival_updated", "entity_id": 3, "affected_decades": [1990], "metadata": {"Source": "imdb"}},
        ])
        self.assertEqual(count, 3)
        changes = self.tracker.decade_changes(1970)
        self.assertEqual(sorted(c["entity_id"] for c in changes), [1, 2])
        nineties = self.tracker.decade_changes(1990)
        self.assertEqual(nineties[0]["metadata"], {"source": "imdb"})
        self.assertEqual(nineties[0]["entity_type"], "festival_nomination")
        self.assertEqual(len(self.tracker.decade_changes(1970, limit=1)), 1)

    def test_clear_and_prune(self):
        self.tracker.record("movie_updated", self.movie.id)
        old = ChangeEvent(change_type="movie_updated", entity_id=self.movie.id, entity_type="movie",
                          affected_decades=[1970], inserted_at=utc_now() - timedelta(days=45))
        self.db.add(old)
        self.db.commit()

        self.assertEqual(self.tracker.prune(), 1)
        self.assertEqual(self.db.query(ChangeEvent).count(), 1)
        self.assertEqual(self.tracker.clear(before=utc_now() - timedelta(hours=1)), 0)
        self.assertEqual(self.tracker.clear(), 1)
        self.assertEqual(self.db.query(ChangeEvent).count(), 0)


if __name__ == "__main__":
    unittest.main()
