import logging
from typing import Any

from ..errors import ConditionError
from ..models import ContentItem, RouterRule, RoutingContext, parse_condition
from .base import RoutingEvaluator


class ConditionalEvaluator(RoutingEvaluator):
    """
    Matches rules whose criteria hold a full condition tree.

    Evaluated first so composed rules win ties against single-field
    families. It claims no condition field of its own; each leaf of the
    tree is answered by whichever evaluator owns that field.
    """

    name = 'Conditional Router'
    description = 'Routes content using AND/OR/NOT combinations of the other evaluators\' fields'
    priority = 100
    rule_type = 'conditional'
    condition_fields = ()
    criteria_keys = ()
    supported_fields = ()
    supported_operators = {}

    def __init__(self, store, interpreter=None):
        super().__init__(store)
        self.interpreter = interpreter

    def matches_rule(self, rule: RouterRule, item: ContentItem, context: RoutingContext) -> bool:
        raw = (rule.criteria or {}).get('condition')
        if raw is None:
            logging.warning(f"Skipping conditional rule '{rule.name}' (id={rule.id}): no condition")
            return False
        try:
            tree = parse_condition(raw)
        except ConditionError as e:
            logging.warning(f"Skipping conditional rule '{rule.name}' (id={rule.id}): {e}")
            return False
        return self.interpreter.evaluate(tree, item, context)

    def match_field(self, operator: str, value: Any, item: ContentItem, context: RoutingContext) -> bool:
        return False
