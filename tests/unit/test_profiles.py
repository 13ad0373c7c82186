import hashlib
import json
import unittest

from cinecanon.schemas import ByName, ByReference, Inline, WeightingProfile
from cinecanon.services.profiles import (
    active_profile_ids,
    get_default_profile,
    list_active_profiles,
    resolve_profile,
    weights_hash,
)
from cinecanon.services.scoring_engine import DEFAULT_WEIGHTS

from db_fixtures import add_profile, make_session


class TestResolveProfile(unittest.TestCase):
    def setUp(self):
        self.db = make_session()

    def tearDown(self):
        self.db.close()

    def test_builtin_default_without_rows(self):
        profile = resolve_profile(self.db, None)
        self.assertEqual(profile.name, "Balanced")
        self.assertIsNone(profile.id)
        self.assertEqual(profile.weights, DEFAULT_WEIGHTS)

    def test_sources(self):
        balanced = add_profile(self.db, "Balanced", is_default=True)
        critics = add_profile(self.db, "Critics Choice", weights={"critical_acclaim": 0.7, "festival_recognition": 0.3})

        self.assertEqual(resolve_profile(self.db, ByReference(id=critics.id)).name, "Critics Choice")
        self.assertEqual(resolve_profile(self.db, critics.id).name, "Critics Choice")
        self.assertEqual(resolve_profile(self.db, ByName(name="Critics Choice")).id, critics.id)
        self.assertEqual(resolve_profile(self.db, "Critics Choice").weights["cultural_impact"], 0.0)
        self.assertEqual(resolve_profile(self.db, None).id, balanced.id)

        inline = resolve_profile(self.db, Inline(weights={"auteur_recognition": 1.0}))
        self.assertIsNone(inline.id)
        self.assertEqual(inline.weights["auteur_recognition"], 1.0)

        given = WeightingProfile(name="Given", weights={})
        self.assertIs(resolve_profile(self.db, given), given)

    def test_unknown_reference_falls_back_to_default(self):
        balanced = add_profile(self.db, "Balanced", is_default=True)
        with self.assertLogs("cinecanon.services.profiles", level="WARNING"):
            self.assertEqual(resolve_profile(self.db, ByReference(id=404)).id, balanced.id)
        self.assertEqual(resolve_profile(self.db, "Nope").id, balanced.id)

    def test_active_listing(self):
        first = add_profile(self.db, "Balanced")
        add_profile(self.db, "Retired", active=False)
        self.assertEqual([p.name for p in list_active_profiles(self.db)], ["Balanced"])
        self.assertEqual(active_profile_ids(self.db), [first.id])
        # No is_default row: falls back to the configured default name
        self.assertEqual(get_default_profile(self.db).id, first.id)

    def test_weights_hash_stable(self):
        a = WeightingProfile(name="A", weights={"critical_acclaim": 0.5, "cultural_impact": 0.5})
        b = WeightingProfile(name="B", weights={"cultural_impact": 0.5, "critical_acclaim": 0.5})
        c = WeightingProfile(name="C", weights={"critical_acclaim": 1.0})
        self.assertEqual(weights_hash(a), weights_hash(b))
        self.assertNotEqual(weights_hash(a), weights_hash(c))
        self.assertEqual(weights_hash(a), hashlib.sha256(json.dumps(a.weights, sort_keys=True).encode("utf-8")).hexdigest())


if __name__ == "__main__":
    unittest.main()
