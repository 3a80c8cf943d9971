import os
import sys
import unittest
from unittest.mock import MagicMock, patch

import requests

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
from pulsarr.arr_api import InstanceManager, MetadataLookup, MovieLookup
from pulsarr.models import ContentMetadata
from pulsarr.plugins import LanguageRoutePlugin, YearRoutePlugin
from tests.support import make_store, movie, movie_context, rule


class TestRouterPlugins(unittest.TestCase):
    def test_no_rules_means_no_lookup(self):
        lookup = MagicMock()
        plugin = YearRoutePlugin(make_store(), lookup)
        self.assertIsNone(plugin.evaluate_routing(movie(key="603"), movie_context()))
        lookup.lookup.assert_not_called()

    def test_no_guid_means_no_lookup(self):
        lookup = MagicMock()
        store = make_store(rules=[rule(1, "year", 2, {"year": 1999})])
        plugin = YearRoutePlugin(store, lookup)
        self.assertIsNone(plugin.evaluate_routing(movie(guids=()), movie_context()))
        lookup.lookup.assert_not_called()

    @patch("logging.warning")
    def test_failed_lookup_skips_family(self, mock_warning):
        lookup = MagicMock()
        lookup.lookup.return_value = None
        store = make_store(rules=[rule(1, "year", 2, {"year": 1999})])
        plugin = YearRoutePlugin(store, lookup)
        self.assertIsNone(plugin.evaluate_routing(movie(key="603"), movie_context()))
        mock_warning.assert_called()

    def test_lookup_result_is_matched(self):
        lookup = MagicMock()
        lookup.lookup.return_value = ContentMetadata(year=1999, original_language="English")
        store = make_store(rules=[
            rule(1, "year", 2, {"year": {"min": 1990, "max": 1999}}),
            rule(2, "language", 3, {"language": "English"}),
        ])
        item = movie(title="The Matrix", key="603")
        decisions = YearRoutePlugin(store, lookup).evaluate(item, movie_context())
        self.assertEqual([d.rule_id for d in decisions], [1])
        decisions = LanguageRoutePlugin(store, lookup).evaluate(item, movie_context())
        self.assertEqual([d.rule_id for d in decisions], [2])
        lookup.lookup.assert_called_with(item, "movie")

    def test_plugin_metadata_matches_family(self):
        plugin = YearRoutePlugin(make_store(), MagicMock())
        self.assertEqual(plugin.rule_type, "year")
        self.assertEqual(plugin.priority, 70)
        self.assertEqual(plugin.metadata()["ruleType"], "year")


class TestMetadataLookup(unittest.TestCase):
    def setUp(self):
        self.store = make_store()
        self.manager = InstanceManager(self.store, session=MagicMock())

    def test_no_base_url_means_no_client(self):
        lookup = MetadataLookup(self.manager)
        self.assertIsNone(lookup.lookup(movie(key="603"), "movie"))

    @patch("logging.error")
    def test_network_failure_returns_none(self, mock_error):
        client = MagicMock()
        client.lookup_by_tmdb.side_effect = requests.ConnectionError("refused")
        self.manager.lookup_client = MagicMock(return_value=client)
        self.assertIsNone(MetadataLookup(self.manager).lookup(movie(key="603"), "movie"))
        mock_error.assert_called()

    def test_enrich_keeps_item_genres(self):
        client = MagicMock()
        client.lookup_by_tmdb.return_value = MovieLookup.from_dict(
            {"title": "The Matrix", "year": 1999, "originalLanguage": {"id": 1, "name": "English"},
             "certification": "R", "genres": []})
        self.manager.lookup_client = MagicMock(return_value=client)
        enriched = MetadataLookup(self.manager).enrich(movie(key="603", genres=("Action",)), "movie")
        self.assertEqual(enriched.metadata.year, 1999)
        self.assertEqual(enriched.metadata.original_language, "English")
        self.assertEqual(enriched.metadata.certification, "R")
        self.assertEqual(enriched.metadata.genres, ("Action",))


if __name__ == "__main__":
    unittest.main()
