from typing import Any

from ..models import ContentItem, RoutingContext
from ..regex_safety import evaluate_regex_safely_multiple
from .base import FieldInfo, OperatorInfo, RoutingEvaluator, as_list, norm


class GenreEvaluator(RoutingEvaluator):
    name = 'Genre Router'
    description = 'Routes content based on genre matching rules'
    priority = 80
    rule_type = 'genre'
    condition_fields = ('genres', 'genre')
    criteria_keys = ('genre', 'genres')
    supported_fields = (
        FieldInfo('genres', 'Genre categories of the content', ('string', 'string[]')),
    )
    supported_operators = {
        'genres': (
            OperatorInfo('contains', 'Content genre list contains this genre', ('string',)),
            OperatorInfo('in', 'Content has at least one of these genres', ('string[]',),
                         'Array of genre names, e.g. ["Action", "Thriller"]'),
            OperatorInfo('notContains', "Content genre list doesn't contain this genre", ('string',)),
            OperatorInfo('notIn', "Content doesn't have any of these genres", ('string[]',),
                         'Array of genre names, e.g. ["Horror", "Comedy"]'),
            OperatorInfo('equals', 'Content genres exactly match the provided genres', ('string', 'string[]'),
                         'Single genre or array of all expected genres'),
            OperatorInfo('regex', 'At least one genre matches the regular expression', ('string',)),
        ),
    }

    def has_data(self, item: ContentItem, context: RoutingContext) -> bool:
        return bool(item.genres)

    def match_field(self, operator: str, value: Any, item: ContentItem, context: RoutingContext) -> bool:
        item_genres = {norm(g) for g in item.genres if g}
        if not item_genres:
            return False
        wanted = {norm(v) for v in as_list(value) if isinstance(v, str)}

        if operator in ('contains', 'in'):
            return bool(wanted & item_genres)
        if operator in ('notContains', 'notIn'):
            return bool(wanted) and not (wanted & item_genres)
        if operator == 'equals':
            return bool(wanted) and wanted == item_genres
        if operator == 'regex':
            if not isinstance(value, str):
                return False
            return evaluate_regex_safely_multiple(value, sorted(item_genres), 'genre condition')
        return False
