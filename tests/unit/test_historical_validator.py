import json
import unittest
from datetime import date
from unittest import mock

import redis

from cinecanon.services.historical_validator import HistoricalValidator, improvement_suggestions, weighted_accuracy
from cinecanon.services.profiles import list_active_profiles, resolve_profile

from db_fixtures import add_movie, add_profile, add_rating, make_session, mock_redis, seed_decade

ACCLAIM_ONLY = {"critical_acclaim": 1.0}
OBSCURITY_ONLY = {"cultural_impact": 1.0}


class HistoricalValidatorTestCase(unittest.TestCase):
    def setUp(self):
        self.db = make_session()
        self.redis = mock_redis()
        self.critics = add_profile(self.db, "Critics Choice", weights=ACCLAIM_ONLY, is_default=True)
        self.validator = HistoricalValidator(self.db, redis_client=self.redis)

    def tearDown(self):
        self.db.close()


class TestValidateDecade(HistoricalValidatorTestCase):
    def setUp(self):
        super().setUp()
        seed_decade(self.db, 1970)

    def test_perfect_ranking_is_100_percent(self):
        result = self.validator.validate_decade(1970, self.critics.id)
        self.assertEqual(result["total_1001_movies"], 2)
        self.assertEqual(result["total_decade_movies"], 4)
        self.assertEqual(result["correctly_predicted"], 2)
        self.assertEqual(result["accuracy_percentage"], 100.0)
        self.assertEqual(result["missed_count"], 0)
        self.assertEqual(result["false_positive_count"], 0)
        self.assertTrue(all(p["on_list"] for p in result["top_predictions"]))
        self.assertEqual(result["profile_used"], "Critics Choice")

    def test_misses_and_false_positives(self):
        # A hit comedy with no critical backing outranks both list members on cultural impact alone
        blockbuster = add_movie(self.db, "Blockbuster", date(1977, 6, 1), genres=["Comedy"], original_language="fr",
                                budget=1_000_000, revenue=50_000_000)
        add_rating(self.db, blockbuster, "imdb", "rating_average", 7.6)
        add_rating(self.db, blockbuster, "imdb", "rating_votes", 300_000)
        result = self.validator.validate_decade(1970, {"cultural_impact": 1.0})
        self.assertEqual(result["total_1001_movies"], 2)
        self.assertEqual(result["correctly_predicted"], 1)
        self.assertEqual(result["accuracy_percentage"], 50.0)
        self.assertEqual(result["missed_count"], 1)
        self.assertEqual(result["false_positive_count"], 1)

    def test_empty_decade(self):
        result = self.validator.validate_decade(1930, self.critics.id)
        self.assertEqual(result["total_1001_movies"], 0)
        self.assertEqual(result["accuracy_percentage"], 0.0)

    def test_non_full_imports_excluded(self):
        add_movie(self.db, "Stub Record", date(1974, 1, 1), import_status="partial")
        self.assertEqual(self.validator.validate_decade(1970, self.critics.id)["total_decade_movies"], 4)

    def test_every_eligible_movie_is_scored(self):
        # Low-id filler ahead of a late-imported list member
        for i in range(5):
            filler = add_movie(self.db, f"Filler {i}", date(1930, 1, i + 1))
            add_rating(self.db, filler, "imdb", "rating_average", 3.0)
        member = add_movie(self.db, "Late Import", date(1936, 1, 1), on_list=True)
        add_rating(self.db, member, "imdb", "rating_average", 9.9)
        result = self.validator.validate_decade(1930, self.critics.id)
        self.assertEqual(result["total_decade_movies"], 6)
        self.assertEqual(result["correctly_predicted"], 1)
        self.assertEqual(result["accuracy_percentage"], 100.0)

    def test_partial_list_members_left_out_of_ground_truth(self):
        weak = add_movie(self.db, "Weak", date(1941, 1, 1))
        add_rating(self.db, weak, "imdb", "rating_average", 3.0)
        partial = add_movie(self.db, "Half Imported", date(1942, 1, 1), on_list=True, import_status="partial")
        add_rating(self.db, partial, "imdb", "rating_average", 9.9)
        member = add_movie(self.db, "Fully Imported", date(1943, 1, 1), on_list=True)
        add_rating(self.db, member, "imdb", "rating_average", 9.0)
        result = self.validator.validate_decade(1940, self.critics.id)
        self.assertEqual(result["total_1001_movies"], 1)
        self.assertEqual(result["accuracy_percentage"], 100.0)
        self.assertEqual(result["false_positive_count"], 0)

    def test_analyze_misses(self):
        analysis = self.validator.analyze_decade_misses(1970, self.critics.id)
        self.assertEqual(analysis["accuracy"], 100.0)
        self.assertEqual(analysis["improvement_suggestions"], ["Algorithm performing well for this decade"])


class TestDecadesAndAggregation(HistoricalValidatorTestCase):
    def test_decades_discovered_from_list_members(self):
        add_movie(self.db, "Silent Classic", date(1915, 1, 1), on_list=True)
        add_movie(self.db, "Talkie", date(1931, 1, 1), on_list=True)
        add_movie(self.db, "Nineties Hit", date(1994, 1, 1), on_list=True)
        add_movie(self.db, "Not Listed", date(1962, 1, 1))
        add_movie(self.db, "Undated", on_list=True)
        self.assertEqual(self.validator.get_all_decades(), [1930, 1990])

    def test_overall_accuracy_weighted_by_ground_truth(self):
        results = [
            {"total_1001_movies": 10, "correctly_predicted": 9},
            {"total_1001_movies": 1, "correctly_predicted": 0},
        ]
        # (9 + 0) / 11, not the mean of 90% and 0%
        self.assertEqual(weighted_accuracy(results), 81.8)
        self.assertEqual(weighted_accuracy([]), 0.0)

    def test_validate_all_decades_and_cache(self):
        seed_decade(self.db, 1970)
        seed_decade(self.db, 1990)
        report = self.validator.validate_all_decades(self.critics.id)
        self.assertEqual(report["decades_analyzed"], 2)
        self.assertEqual(report["decade_range"], "1970s-1990s")
        self.assertEqual(report["overall_accuracy"], 100.0)

        key = HistoricalValidator.validation_key(resolve_profile(self.db, self.critics.id))
        self.assertTrue(key.startswith("validation:Critics Choice:"))
        self.assertEqual(json.loads(self.redis.get(key)), report)
        self.assertEqual(self.redis.ttls[key], 86400)

        with mock.patch.object(HistoricalValidator, "validate_decade") as validate_decade:
            self.assertEqual(self.validator.validate_all_decades(self.critics.id), report)
            validate_decade.assert_not_called()

    def test_redis_failure_degrades_to_recompute(self):
        seed_decade(self.db, 1970)
        broken = mock.Mock()
        broken.get.side_effect = redis.ConnectionError("down")
        broken.set.side_effect = redis.ConnectionError("down")
        validator = HistoricalValidator(self.db, redis_client=broken)
        self.assertEqual(validator.validate_all_decades(self.critics.id)["overall_accuracy"], 100.0)

    def test_validate_by_era(self):
        seed_decade(self.db, 1950)
        seed_decade(self.db, 1970)
        eras = self.validator.validate_by_era(self.critics.id)
        self.assertEqual(eras["Golden Age (1950s-1960s)"]["decades"], [1950])
        self.assertEqual(eras["New Hollywood (1970s-1980s)"]["total_1001_movies"], 2)
        self.assertEqual(eras["Early Cinema (1920s-1940s)"]["accuracy_percentage"], 0.0)


class TestProfileComparison(HistoricalValidatorTestCase):
    def setUp(self):
        super().setUp()
        self.crowd = add_profile(self.db, "Crowd Pleaser", weights=OBSCURITY_ONLY)
        seed_decade(self.db, 1970)
        blockbuster = add_movie(self.db, "Blockbuster", date(1977, 6, 1), genres=["Comedy"], original_language="fr",
                                budget=1_000_000, revenue=50_000_000)
        add_rating(self.db, blockbuster, "imdb", "rating_average", 7.6)
        add_rating(self.db, blockbuster, "imdb", "rating_votes", 300_000)

    def test_compare_profiles_ranks_and_picks_winners(self):
        comparison = self.validator.compare_profiles()
        self.assertEqual(comparison["best_profile"], "Critics Choice")
        self.assertEqual(comparison["best_accuracy"], 100.0)
        self.assertEqual([r["profile_name"] for r in comparison["all_results"]], ["Critics Choice", "Crowd Pleaser"])
        self.assertEqual(comparison["decades_tested"], 1)
        self.assertEqual(comparison["decade_winners"]["1970"], {"profile": "Critics Choice", "accuracy": 100.0})
        self.assertIsNotNone(self.redis.get(HistoricalValidator.comparison_key(list_active_profiles(self.db))))

    def test_edited_weights_bypass_cached_comparison(self):
        before = self.validator.compare_profiles()
        crowd = next(r for r in before["all_results"] if r["profile_name"] == "Crowd Pleaser")
        self.assertEqual(crowd["overall_accuracy"], 50.0)
        old_key = HistoricalValidator.comparison_key(list_active_profiles(self.db))

        self.crowd.category_weights = dict(ACCLAIM_ONLY)
        self.db.commit()
        self.assertNotEqual(HistoricalValidator.comparison_key(list_active_profiles(self.db)), old_key)

        after = self.validator.compare_profiles()
        crowd = next(r for r in after["all_results"] if r["profile_name"] == "Crowd Pleaser")
        self.assertEqual(crowd["overall_accuracy"], 100.0)

    def test_comprehensive_comparison(self):
        report = self.validator.comprehensive_comparison()
        self.assertEqual(report["best_overall"]["profile_name"], "Critics Choice")
        self.assertEqual(report["best_per_decade"]["1970"]["profile"], "Critics Choice")
        self.assertEqual(report["insights"]["total_decades"], 1)
        self.assertEqual(len(report["profiles"]), 2)

    def test_invalidate(self):
        self.validator.compare_profiles()
        self.assertGreater(self.validator.invalidate(), 0)
        self.assertEqual(list(self.redis.scan_iter(match="validation:*")), [])


class TestSuggestions(unittest.TestCase):
    def test_low_accuracy_early_decade(self):
        suggestions = improvement_suggestions({
            "decade": 1930, "accuracy_percentage": 20.0, "total_1001_movies": 10, "false_positive_count": 8,
        })
        self.assertEqual(len(suggestions), 3)
        self.assertTrue(any("below 50%" in s for s in suggestions))
        self.assertTrue(any("False positive" in s or "false positive" in s for s in suggestions))


if __name__ == "__main__":
    unittest.main()
