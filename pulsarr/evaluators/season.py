import math
from typing import Any, Tuple

from ..models import ContentItem, RoutingContext
from .base import FieldInfo, OperatorInfo, RoutingEvaluator


def _is_number(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def extract_seasons(item: ContentItem) -> Tuple[int, ...]:
    if item.metadata is None:
        return ()
    return item.metadata.seasons


def seasons_match(seasons: Tuple[int, ...], operator: str, value: Any) -> bool:
    """
    Compare a show's season numbers against a number, a list or a range.

    Comparisons hold when any season satisfies them; ``notEquals`` and
    ``notIn`` hold when no season is excluded. A range matches when it
    overlaps the span of seasons.
    """
    if not seasons:
        return False

    if _is_number(value):
        if operator == 'equals':
            return value in seasons
        if operator == 'notEquals':
            return value not in seasons
        if operator == 'greaterThan':
            return any(s > value for s in seasons)
        if operator == 'lessThan':
            return any(s < value for s in seasons)
        return False

    if isinstance(value, (list, tuple)):
        if not all(_is_number(v) for v in value):
            return False
        if operator == 'in':
            return any(s in value for s in seasons)
        if operator == 'notIn':
            return not any(s in value for s in seasons)
        return False

    if isinstance(value, dict) and operator == 'between':
        low, high = value.get('min'), value.get('max')
        if low is None and high is None:
            return False
        if low is not None and not _is_number(low):
            return False
        if high is not None and not _is_number(high):
            return False
        low = -math.inf if low is None else low
        high = math.inf if high is None else high
        return min(seasons) <= high and max(seasons) >= low

    return False


class SeasonEvaluator(RoutingEvaluator):
    name = 'Season Router'
    description = 'Routes TV shows based on season numbers'
    priority = 68
    rule_type = 'season'
    condition_fields = ('season',)
    criteria_keys = ('season',)
    supported_fields = (
        FieldInfo('season', 'Season number(s) of TV show', ('number', 'number[]', 'object')),
    )
    supported_operators = {
        'season': (
            OperatorInfo('equals', 'Season number matches exactly', ('number',)),
            OperatorInfo('notEquals', 'Season number does not match', ('number',)),
            OperatorInfo('greaterThan', 'Season number is greater than value', ('number',)),
            OperatorInfo('lessThan', 'Season number is less than value', ('number',)),
            OperatorInfo('in', 'Season is one of the provided values', ('number[]',),
                         'Array of season numbers, e.g. [1, 2, 3]'),
            OperatorInfo('notIn', 'Season is not any of the provided values', ('number[]',),
                         'Array of season numbers, e.g. [1, 2, 3]'),
            OperatorInfo('between', 'Season is within a range (inclusive)', ('object',),
                         '{ "min": 1, "max": 5 } (either bound may be omitted)'),
        ),
    }

    def default_operator(self, value: Any) -> str:
        if isinstance(value, dict):
            return 'between'
        return super().default_operator(value)

    def has_data(self, item: ContentItem, context: RoutingContext) -> bool:
        return context.content_type == 'show' and bool(extract_seasons(item))

    def match_field(self, operator: str, value: Any, item: ContentItem, context: RoutingContext) -> bool:
        if context.content_type != 'show':
            return False
        return seasons_match(extract_seasons(item), operator, value)
