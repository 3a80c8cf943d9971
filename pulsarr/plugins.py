"""
Router plugins: evaluator families that fetch their own metadata.

A plugin wraps the matching logic of an evaluator but resolves the
item's GUID against Radarr/Sonarr itself, so it works on items that
arrive without metadata. Rule existence is checked before any network
call; a failed lookup skips the family with a warning.
"""
import logging
from typing import List, Optional

from .arr_api import MetadataLookup
from .errors import StorageError
from .evaluators import LanguageEvaluator, YearEvaluator
from .evaluators.base import RoutingEvaluator
from .models import ContentItem, RoutingContext, RoutingDecision


class RouterPlugin:
    evaluator_class = RoutingEvaluator

    def __init__(self, store, lookup: MetadataLookup):
        self.evaluator = self.evaluator_class(store)
        self.lookup = lookup

    @property
    def name(self) -> str:
        return f"{self.evaluator.name} (lookup)"

    @property
    def priority(self) -> int:
        return self.evaluator.priority

    @property
    def rule_type(self) -> str:
        return self.evaluator.rule_type

    def metadata(self) -> dict:
        return self.evaluator.metadata()

    def can_evaluate(self, item: ContentItem, context: RoutingContext) -> bool:
        if not item.guids:
            return False
        try:
            return bool(self.evaluator.load_rules(context))
        except StorageError as e:
            logging.error(f"{self.name}: failed to load {self.rule_type} rules: {e}")
            return False

    def evaluate_routing(self, item: ContentItem, context: RoutingContext) -> Optional[List[RoutingDecision]]:
        if not self.can_evaluate(item, context):
            return None

        metadata = self.lookup.lookup(item, context.content_type)
        if metadata is None:
            logging.warning(f"{self.name}: skipping '{item.title}', metadata lookup failed")
            return None
        return self.evaluator.evaluate(item.with_metadata(metadata), context)

    # Same entry point as an evaluator so the resolver can treat both alike.
    evaluate = evaluate_routing


class YearRoutePlugin(RouterPlugin):
    evaluator_class = YearEvaluator


class LanguageRoutePlugin(RouterPlugin):
    evaluator_class = LanguageEvaluator


PLUGIN_REGISTRY = {
    'year': YearRoutePlugin,
    'language': LanguageRoutePlugin,
}
