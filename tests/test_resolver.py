import os
import sys
import unittest
from unittest.mock import MagicMock, patch

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
from pulsarr.errors import StorageError
from pulsarr.evaluators import YearEvaluator, create_evaluators
from pulsarr.models import ContentItem, ContentMetadata, Instance, RoutingContext, RoutingDecision
from pulsarr.plugins import YearRoutePlugin
from pulsarr.resolver import DecisionResolver
from tests.support import make_store, movie, movie_context, rule


def resolver_for(store, **kwargs):
    return DecisionResolver(store, create_evaluators(store), **kwargs)


class TestDecisionResolver(unittest.TestCase):
    def test_higher_priority_wins_per_instance(self):
        store = make_store(rules=[
            rule(1, "genre", 2, {"genres": ["Anime"]}, order=10, root_folder="/low"),
            rule(2, "genre", 2, {"genres": ["Science Fiction"]}, order=90, root_folder="/high"),
        ])
        decisions = resolver_for(store).resolve(movie(), movie_context())
        self.assertEqual(len(decisions), 1)
        self.assertEqual(decisions[0].action, "route")
        self.assertEqual(decisions[0].routing.rule_id, 2)
        self.assertEqual(decisions[0].routing.root_folder, "/high")

    def test_priority_tie_goes_to_lowest_rule_id(self):
        store = make_store(rules=[
            rule(5, "genre", 2, {"genres": ["Anime"]}),
            rule(3, "user", 2, {"users": ["alice"]}),
        ])
        decisions = resolver_for(store).resolve(movie(), movie_context())
        self.assertEqual([d.routing.rule_id for d in decisions], [3])

    def test_fan_out_to_several_instances(self):
        store = make_store(rules=[
            rule(1, "genre", 2, {"genres": ["Anime"]}, order=80),
            rule(2, "conditional", 3, {"condition": {
                "operator": "OR",
                "conditions": [{"field": "genres", "operator": "contains", "value": "Science Fiction"}],
            }}, order=60),
        ])
        decisions = resolver_for(store).resolve(movie(), movie_context())
        self.assertEqual([(d.routing.instance_id, d.routing.rule_id) for d in decisions], [(2, 1), (3, 2)])
        self.assertTrue(all(d.routing.instance_type == "radarr" for d in decisions))

    def test_falls_back_to_default_instance(self):
        store = make_store(rules=[rule(1, "genre", 2, {"genres": ["Horror"]})])
        decisions = resolver_for(store).resolve(movie(), movie_context())
        self.assertEqual(len(decisions), 1)
        self.assertEqual(decisions[0].routing.instance_id, 1)
        self.assertIsNone(decisions[0].routing.rule_id)
        self.assertEqual(decisions[0].routing.root_folder, "/movies")

    def test_sync_target_preferred_over_default(self):
        store = make_store()
        context = movie_context(syncing=True, sync_target_instance_id=3)
        decisions = resolver_for(store).resolve(movie(), context)
        self.assertEqual(decisions[0].routing.instance_id, 3)

    def test_no_default_means_no_decision(self):
        store = make_store()
        store.upsert_instance(Instance(1, "radarr", name="Movies", root_folder="/movies", is_default=False))
        self.assertEqual(resolver_for(store).resolve(movie(), movie_context()), [])

    def test_reject_action_is_terminal(self):
        store = make_store(rules=[
            rule(1, "genre", 2, {"genres": ["Anime"]}, order=90),
            rule(2, "user", 1, {"users": ["alice"]}, action="reject", order=10),
        ])
        decisions = resolver_for(store).resolve(movie(), movie_context())
        self.assertEqual([d.action for d in decisions], ["reject"])

    def test_continue_action_passes_to_next_rule(self):
        store = make_store(rules=[
            rule(1, "genre", 2, {"genres": ["Anime"]}, action="continue", order=90),
            rule(2, "user", 3, {"users": ["alice"]}, order=20),
        ])
        decisions = resolver_for(store).resolve(movie(), movie_context())
        self.assertEqual([d.routing.rule_id for d in decisions], [2])

    def test_rule_requiring_approval(self):
        store = make_store(rules=[
            rule(1, "genre", 2, {"genres": ["Anime"]}, always_require_approval=True,
                 approval_reason="Anime needs a look"),
            rule(2, "genre", 3, {"genres": ["Anime"]}, always_require_approval=True,
                 approval_trigger="content_criteria"),
        ])
        decisions = resolver_for(store).resolve(movie(), movie_context())
        self.assertEqual([d.action for d in decisions], ["require_approval", "require_approval"])
        self.assertEqual(decisions[0].approval.triggered_by, "router_rule")
        self.assertEqual(decisions[0].approval.reason, "Anime needs a look")
        self.assertEqual(decisions[0].proposed_routing.instance_id, 2)
        self.assertEqual(decisions[1].approval.triggered_by, "content_criteria")

    def test_sync_never_requires_approval(self):
        store = make_store(rules=[rule(1, "genre", 2, {"genres": ["Anime"]}, always_require_approval=True)])
        decisions = resolver_for(store).resolve(movie(), movie_context(syncing=True))
        self.assertEqual(decisions[0].action, "route")

    @patch("logging.warning")
    def test_disabled_target_is_dropped(self, mock_warning):
        store = make_store(rules=[rule(1, "genre", 3, {"genres": ["Anime"]})])
        store.upsert_instance(Instance(3, "radarr", name="4K", root_folder="/movies4k", enabled=False))
        decisions = resolver_for(store).resolve(movie(), movie_context())
        self.assertEqual(decisions[0].routing.instance_id, 1)
        mock_warning.assert_called()

    def test_metadata_enrichment_for_year_rules(self):
        store = make_store(rules=[rule(1, "year", 2, {"year": {"min": 1980, "max": 1989}})])
        item = movie()
        lookup = MagicMock()
        lookup.enrich.return_value = item.with_metadata(ContentMetadata(year=1988))
        decisions = resolver_for(store, lookup=lookup).resolve(item, movie_context())
        lookup.enrich.assert_called_once_with(item, "movie")
        self.assertEqual(decisions[0].routing.rule_id, 1)

    def test_metadata_enrichment_for_season_rules(self):
        store = make_store(rules=[rule(1, "season", 1, {"season": {"min": 3}}, target_type="sonarr")])
        show = ContentItem(title="Cowboy Bebop", guids=("tvdb:76885",))
        context = RoutingContext(content_type="show", user_id=1, user_name="alice")
        lookup = MagicMock()
        lookup.enrich.return_value = show.with_metadata(ContentMetadata(seasons=(1, 2, 3)))
        decisions = resolver_for(store, lookup=lookup).resolve(show, context)
        lookup.enrich.assert_called_once_with(show, "show")
        self.assertEqual(decisions[0].routing.rule_id, 1)

    def test_no_enrichment_when_only_genre_rules(self):
        store = make_store(rules=[rule(1, "genre", 2, {"genres": ["Anime"]})])
        lookup = MagicMock()
        resolver_for(store, lookup=lookup).resolve(movie(), movie_context())
        lookup.enrich.assert_not_called()

    def test_parallel_matches_sequential(self):
        store = make_store(rules=[
            rule(1, "genre", 2, {"genres": ["Anime"]}, order=70),
            rule(2, "user", 3, {"users": [1]}, order=70),
            rule(3, "year", 3, {"year": 1988}, order=95),
            rule(4, "language", 1, {"language": "Japanese"}, order=40),
        ])
        item = movie(metadata=ContentMetadata(year=1988, original_language="Japanese"))
        sequential = resolver_for(store).resolve(item, movie_context())
        for _ in range(5):
            parallel = resolver_for(store, parallel=True, max_workers=4).resolve(item, movie_context())
            self.assertEqual([d.to_dict() for d in parallel], [d.to_dict() for d in sequential])
        self.assertEqual([d.routing.rule_id for d in sequential], [3, 1, 4])

    @patch("logging.error")
    def test_one_failing_family_does_not_stop_others(self, mock_error):
        store = make_store(rules=[rule(1, "genre", 2, {"genres": ["Anime"]})])
        broken = MagicMock()
        broken.name = "Broken Router"
        broken.priority = 999
        broken.rule_type = "broken"
        broken.can_evaluate.side_effect = RuntimeError("boom")
        resolver = DecisionResolver(store, [broken] + create_evaluators(store))
        decisions = resolver.resolve(movie(), movie_context())
        self.assertEqual(decisions[0].routing.rule_id, 1)
        mock_error.assert_called()

    def test_rule_storage_failure_propagates(self):
        store = MagicMock()
        store.get_router_rules.side_effect = StorageError("db is down")
        with self.assertRaises(StorageError):
            DecisionResolver(store, []).resolve(movie(), movie_context())

    def test_plugins_replace_their_family(self):
        store = make_store()
        plugin = YearRoutePlugin(store, MagicMock())
        run_list = resolver_for(store, plugins=[plugin]).run_list()
        self.assertIn(plugin, run_list)
        self.assertFalse(any(isinstance(e, YearEvaluator) for e in run_list))

    def test_select_per_instance_orders_by_priority(self):
        selected = DecisionResolver.select_per_instance([
            RoutingDecision(instance_id=1, priority=20, rule_id=9),
            RoutingDecision(instance_id=2, priority=70, rule_id=4),
            RoutingDecision(instance_id=1, priority=20, rule_id=2),
        ])
        self.assertEqual([(d.instance_id, d.rule_id) for d in selected], [(2, 4), (1, 2)])


if __name__ == "__main__":
    unittest.main()
