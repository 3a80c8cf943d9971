import logging
from typing import Iterable, Optional

from .models import Condition, ConditionGroup, ContentItem, RoutingContext


class ConditionInterpreter:
    """
    Evaluates a Condition / ConditionGroup tree against one item.

    Leaves are answered by the evaluator that claims their field. A field
    no evaluator claims evaluates to False. Empty groups follow the usual
    identities: ``AND`` of nothing is True, ``OR`` of nothing is False.
    ``negate`` is applied here, once per node, after combination.
    """

    def __init__(self, evaluators: Iterable):
        self.evaluators = list(evaluators)

    def evaluator_for(self, field_name: str):
        for evaluator in self.evaluators:
            if evaluator.can_evaluate_condition_field(field_name):
                return evaluator
        return None

    def evaluate(self, node, item: ContentItem, context: RoutingContext) -> bool:
        if isinstance(node, ConditionGroup):
            result = self._evaluate_group(node, item, context)
        elif isinstance(node, Condition):
            result = self._evaluate_leaf(node, item, context)
        else:
            logging.warning(f"Ignoring unknown condition node of type {type(node).__name__}")
            return False
        return not result if node.negate else result

    def _evaluate_group(self, group: ConditionGroup, item: ContentItem, context: RoutingContext) -> bool:
        if group.operator == 'AND':
            return all(self.evaluate(child, item, context) for child in group.conditions)
        return any(self.evaluate(child, item, context) for child in group.conditions)

    def _evaluate_leaf(self, condition: Condition, item: ContentItem, context: RoutingContext) -> bool:
        evaluator = self.evaluator_for(condition.field)
        if evaluator is None:
            logging.warning(f"No evaluator handles condition field '{condition.field}'")
            return False
        try:
            return bool(evaluator.evaluate_condition(condition, item, context))
        except (TypeError, ValueError) as e:
            logging.warning(f"Condition on '{condition.field}' could not be evaluated: {e}")
            return False

    def validate(self, node) -> Optional[str]:
        """Return a description of the first unknown field/operator in ``node``, or None."""
        if isinstance(node, ConditionGroup):
            for child in node.conditions:
                problem = self.validate(child)
                if problem:
                    return problem
            return None
        evaluator = self.evaluator_for(node.field)
        if evaluator is None:
            return f"unknown field '{node.field}'"
        if node.operator not in evaluator.operators_for(node.field):
            return f"operator '{node.operator}' is not supported for field '{node.field}'"
        return None
