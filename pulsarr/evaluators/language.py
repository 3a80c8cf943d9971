from typing import Any, Optional

from ..models import ContentItem, RoutingContext
from .base import FieldInfo, OperatorInfo, RoutingEvaluator, as_list, norm


def extract_language(item: ContentItem) -> Optional[str]:
    if item.metadata and item.metadata.original_language:
        return item.metadata.original_language
    return None


def language_matches(language: str, operator: str, value: Any) -> bool:
    current = norm(language)
    if operator == 'equals':
        return isinstance(value, str) and bool(value.strip()) and current == norm(value)
    if operator == 'notEquals':
        return isinstance(value, str) and current != norm(value)
    if operator == 'contains':
        return isinstance(value, str) and bool(value.strip()) and norm(value) in current
    if operator == 'in':
        return any(isinstance(v, str) and current == norm(v) for v in as_list(value))
    if operator == 'notIn':
        return not any(isinstance(v, str) and current == norm(v) for v in as_list(value))
    return False


class LanguageEvaluator(RoutingEvaluator):
    name = 'Language Router'
    description = 'Routes content based on original language'
    priority = 65
    rule_type = 'language'
    condition_fields = ('language', 'originalLanguage')
    criteria_keys = ('originalLanguage', 'language')
    supported_fields = (
        FieldInfo('language', 'Original language of the content', ('string', 'string[]')),
    )
    supported_operators = {
        'language': (
            OperatorInfo('equals', 'Language matches exactly', ('string',)),
            OperatorInfo('notEquals', 'Language does not match', ('string',)),
            OperatorInfo('contains', 'Language name contains this text', ('string',)),
            OperatorInfo('in', 'Language is one of these values', ('string[]',),
                         'Array of language names, e.g. ["English", "Japanese"]'),
            OperatorInfo('notIn', 'Language is not any of these values', ('string[]',)),
        ),
    }

    def has_data(self, item: ContentItem, context: RoutingContext) -> bool:
        return extract_language(item) is not None

    def match_field(self, operator: str, value: Any, item: ContentItem, context: RoutingContext) -> bool:
        language = extract_language(item)
        if not language:
            return False
        return language_matches(language, operator, value)
