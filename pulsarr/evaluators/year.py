import math
from typing import Any, Optional

from ..models import ContentItem, RoutingContext
from .base import FieldInfo, OperatorInfo, RoutingEvaluator


def _is_year(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def extract_year(item: ContentItem) -> Optional[int]:
    if item.metadata and _is_year(item.metadata.year):
        return item.metadata.year
    return None


def year_matches(year: int, operator: str, value: Any) -> bool:
    """Compare ``year`` against a number, a list of numbers or a ``{min, max}`` range."""
    if _is_year(value):
        if operator == 'equals':
            return year == value
        if operator == 'notEquals':
            return year != value
        if operator == 'greaterThan':
            return year > value
        if operator == 'lessThan':
            return year < value
        return False

    if isinstance(value, (list, tuple)):
        if not all(_is_year(v) for v in value):
            return False
        if operator == 'in':
            return year in value
        if operator == 'notIn':
            return year not in value
        return False

    if isinstance(value, dict) and operator == 'between':
        low, high = value.get('min'), value.get('max')
        if low is not None and not _is_year(low):
            return False
        if high is not None and not _is_year(high):
            return False
        low = -math.inf if low is None else low
        high = math.inf if high is None else high
        return low <= year <= high

    return False


class YearEvaluator(RoutingEvaluator):
    name = 'Year Router'
    description = 'Routes content based on release year'
    priority = 70
    rule_type = 'year'
    condition_fields = ('year',)
    criteria_keys = ('year',)
    supported_fields = (
        FieldInfo('year', 'Release year of the content', ('number', 'number[]', 'object')),
    )
    supported_operators = {
        'year': (
            OperatorInfo('equals', 'Year matches exactly', ('number',)),
            OperatorInfo('notEquals', 'Year does not match', ('number',)),
            OperatorInfo('greaterThan', 'Year is after this value', ('number',)),
            OperatorInfo('lessThan', 'Year is before this value', ('number',)),
            OperatorInfo('in', 'Year is one of these values', ('number[]',), 'Array of years, e.g. [1999, 2000]'),
            OperatorInfo('notIn', 'Year is not any of these values', ('number[]',), 'Array of years'),
            OperatorInfo('between', 'Year is within a range (inclusive)', ('object',),
                         '{ "min": 1990, "max": 1999 } (either bound may be omitted)'),
        ),
    }

    def default_operator(self, value: Any) -> str:
        if isinstance(value, dict):
            return 'between'
        return super().default_operator(value)

    def has_data(self, item: ContentItem, context: RoutingContext) -> bool:
        return extract_year(item) is not None

    def match_field(self, operator: str, value: Any, item: ContentItem, context: RoutingContext) -> bool:
        year = extract_year(item)
        if year is None:
            return False
        return year_matches(year, operator, value)
