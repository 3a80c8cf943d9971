from typing import Any

from ..models import ContentItem, RoutingContext
from ..regex_safety import evaluate_regex_safely
from .base import FieldInfo, OperatorInfo, RoutingEvaluator, as_list, norm


class CertificationEvaluator(RoutingEvaluator):
    """Matches the content rating carried in item metadata; never performs a lookup itself."""

    name = 'Certification Router'
    description = 'Routes content based on content certification/rating'
    priority = 60
    rule_type = 'certification'
    condition_fields = ('certification',)
    criteria_keys = ('certification',)
    supported_fields = (
        FieldInfo('certification', 'Content rating/certification (e.g. PG-13, TV-MA)', ('string', 'string[]')),
    )
    supported_operators = {
        'certification': (
            OperatorInfo('equals', 'Certification matches exactly', ('string',)),
            OperatorInfo('notEquals', 'Certification does not match', ('string',)),
            OperatorInfo('contains', 'Certification contains this text', ('string',)),
            OperatorInfo('notContains', 'Certification does not contain this text', ('string',)),
            OperatorInfo('in', 'Certification is one of these values', ('string[]',),
                         'Array of ratings, e.g. ["R", "NC-17"]'),
            OperatorInfo('notIn', 'Certification is not any of these values', ('string[]',)),
            OperatorInfo('regex', 'Certification matches the regular expression', ('string',)),
        ),
    }

    def has_data(self, item: ContentItem, context: RoutingContext) -> bool:
        return bool(item.metadata and item.metadata.certification)

    def match_field(self, operator: str, value: Any, item: ContentItem, context: RoutingContext) -> bool:
        if not self.has_data(item, context):
            return False
        raw = item.metadata.certification
        current = norm(raw)

        if operator == 'equals':
            return isinstance(value, str) and current == norm(value)
        if operator == 'notEquals':
            return isinstance(value, str) and current != norm(value)
        if operator == 'contains':
            return isinstance(value, str) and norm(value) in current
        if operator == 'notContains':
            return isinstance(value, str) and norm(value) not in current
        if operator == 'in':
            return any(current == norm(v) for v in as_list(value) if isinstance(v, str))
        if operator == 'notIn':
            return not any(current == norm(v) for v in as_list(value) if isinstance(v, str))
        if operator == 'regex':
            return isinstance(value, str) and evaluate_regex_safely(
                value, raw, 'certification condition', ignore_case=True)
        return False
