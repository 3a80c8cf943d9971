import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..errors import ConditionError, StorageError
from ..models import (
    Condition,
    ContentItem,
    RouterRule,
    RoutingContext,
    RoutingDecision,
)


@dataclass(frozen=True)
class FieldInfo:
    name: str
    description: str
    value_types: Tuple[str, ...] = ()

    def to_dict(self) -> dict:
        return {'name': self.name, 'description': self.description, 'valueTypes': list(self.value_types)}


@dataclass(frozen=True)
class OperatorInfo:
    name: str
    description: str
    value_types: Tuple[str, ...] = ()
    value_format: Optional[str] = None

    def to_dict(self) -> dict:
        out = {'name': self.name, 'description': self.description, 'valueTypes': list(self.value_types)}
        if self.value_format:
            out['valueFormat'] = self.value_format
        return out


def norm(value: Any) -> str:
    return str(value).strip().casefold()


def as_list(value: Any) -> list:
    if value is None:
        return []
    if isinstance(value, (list, tuple, set)):
        return list(value)
    return [value]


class RoutingEvaluator:
    """
    One criterion family (genre, year, language ...).

    Subclasses declare their metadata as class attributes and implement
    ``match_field``; rule loading, shorthand criteria and the routing
    decision shape are shared here. ``negate`` is never applied by an
    evaluator, the interpreter owns it.
    """

    name: str = ''
    description: str = ''
    priority: int = 0
    rule_type: str = ''
    # Condition fields this family answers for; the first is canonical.
    condition_fields: Tuple[str, ...] = ()
    # Keys looked up in a rule's shorthand ``criteria``.
    criteria_keys: Tuple[str, ...] = ()
    supported_fields: Tuple[FieldInfo, ...] = ()
    supported_operators: Dict[str, Tuple[OperatorInfo, ...]] = {}

    def __init__(self, store):
        self.store = store

    # -------------------------
    # Rule access
    # -------------------------
    def load_rules(self, context: RoutingContext) -> List[RouterRule]:
        """Enabled rules of this family for the context's target type (may raise StorageError)."""
        rules = self.store.get_router_rules_by_type(self.rule_type)
        return [r for r in rules if r.enabled and r.target_type == context.target_type]

    def has_data(self, item: ContentItem, context: RoutingContext) -> bool:
        return True

    def can_evaluate(self, item: ContentItem, context: RoutingContext) -> bool:
        if not self.has_data(item, context):
            return False
        try:
            return bool(self.load_rules(context))
        except StorageError as e:
            logging.error(f"{self.name}: failed to load {self.rule_type} rules: {e}")
            return False

    def evaluate(self, item: ContentItem, context: RoutingContext) -> Optional[List[RoutingDecision]]:
        if not self.has_data(item, context):
            return None
        try:
            rules = self.load_rules(context)
        except StorageError as e:
            logging.error(f"{self.name}: failed to load {self.rule_type} rules: {e}")
            return None

        decisions = [rule.to_decision() for rule in rules if self.matches_rule(rule, item, context)]
        if not decisions:
            return None
        logging.debug(f"{self.name}: {len(decisions)} rule(s) matched '{item.title}'")
        return decisions

    # -------------------------
    # Matching
    # -------------------------
    def default_operator(self, value: Any) -> str:
        return 'in' if isinstance(value, (list, tuple)) else 'equals'

    def criteria_condition(self, rule: RouterRule) -> Optional[Condition]:
        """Translate a rule's shorthand criteria into a leaf Condition."""
        criteria = rule.criteria or {}
        for key in self.criteria_keys:
            if key in criteria and criteria[key] is not None:
                value = criteria[key]
                operator = criteria.get('operator') or self.default_operator(value)
                return Condition(field=self.condition_fields[0], operator=operator, value=value)
        return None

    def matches_rule(self, rule: RouterRule, item: ContentItem, context: RoutingContext) -> bool:
        try:
            condition = self.criteria_condition(rule)
        except ConditionError as e:
            logging.warning(f"Skipping {self.rule_type} rule '{rule.name}' (id={rule.id}): {e}")
            return False
        if condition is None:
            logging.warning(f"Skipping {self.rule_type} rule '{rule.name}' (id={rule.id}): no usable criteria")
            return False
        return self.evaluate_condition(condition, item, context)

    def evaluate_condition(self, condition: Condition, item: ContentItem, context: RoutingContext) -> bool:
        if not self.can_evaluate_condition_field(condition.field):
            return False
        canonical = self.condition_fields[0]
        allowed = {op.name for op in self.supported_operators.get(canonical, ())}
        if condition.operator not in allowed:
            logging.warning(f"{self.name}: unsupported operator '{condition.operator}' for field '{condition.field}'")
            return False
        return self.match_field(condition.operator, condition.value, item, context)

    def match_field(self, operator: str, value: Any, item: ContentItem, context: RoutingContext) -> bool:
        raise NotImplementedError

    def can_evaluate_condition_field(self, field_name: str) -> bool:
        return field_name in self.condition_fields

    def operators_for(self, field_name: str) -> Sequence[str]:
        if not self.can_evaluate_condition_field(field_name):
            return ()
        return [op.name for op in self.supported_operators.get(self.condition_fields[0], ())]

    def metadata(self) -> dict:
        return {
            'name': self.name,
            'description': self.description,
            'priority': self.priority,
            'ruleType': self.rule_type,
            'supportedFields': [f.to_dict() for f in self.supported_fields],
            'supportedOperators': {
                key: [op.to_dict() for op in ops] for key, ops in self.supported_operators.items()
            },
        }
