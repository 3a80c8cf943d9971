from typing import Any, List

from ..models import ContentItem, RoutingContext
from ..regex_safety import evaluate_regex_safely_multiple
from .base import FieldInfo, OperatorInfo, RoutingEvaluator, as_list, norm


def _flatten_users(value: Any) -> List[Any]:
    """Accept a scalar, a list, or ``{"ids": [...], "names": [...]}``."""
    if isinstance(value, dict):
        return as_list(value.get('ids')) + as_list(value.get('names'))
    return as_list(value)


def user_in(context: RoutingContext, candidates: List[Any]) -> bool:
    """True if any attributed user id or name appears in ``candidates``."""
    ids = set(context.user_ids)
    names = {norm(n) for n in context.user_names}
    for candidate in candidates:
        if isinstance(candidate, bool) or candidate is None:
            continue
        if isinstance(candidate, int):
            if candidate in ids:
                return True
            continue
        text = str(candidate).strip()
        if text.isdigit() and int(text) in ids:
            return True
        if norm(text) in names:
            return True
    return False


class UserEvaluator(RoutingEvaluator):
    name = 'User Router'
    description = 'Routes content based on requesting users'
    priority = 75
    rule_type = 'user'
    condition_fields = ('user', 'users')
    criteria_keys = ('users', 'user')
    supported_fields = (
        FieldInfo('user', 'User who added the content (id or username)', ('string', 'number', 'string[]', 'number[]')),
    )
    supported_operators = {
        'user': (
            OperatorInfo('equals', 'User matches exactly', ('string', 'number')),
            OperatorInfo('notEquals', 'User does not match', ('string', 'number')),
            OperatorInfo('in', 'User is one of the provided values', ('string[]', 'number[]'),
                         'Array of user ids or usernames'),
            OperatorInfo('notIn', 'User is not any of the provided values', ('string[]', 'number[]')),
            OperatorInfo('regex', 'Username matches the regular expression', ('string',)),
        ),
    }

    def default_operator(self, value: Any) -> str:
        if isinstance(value, dict):
            return 'in'
        return super().default_operator(value)

    def has_data(self, item: ContentItem, context: RoutingContext) -> bool:
        return bool(context.user_ids or context.user_names)

    def match_field(self, operator: str, value: Any, item: ContentItem, context: RoutingContext) -> bool:
        if not self.has_data(item, context):
            return False
        if operator == 'regex':
            if not isinstance(value, str) or not context.user_names:
                return False
            return evaluate_regex_safely_multiple(value, context.user_names, 'user condition')

        candidates = _flatten_users(value)
        if operator in ('equals', 'in'):
            return user_in(context, candidates)
        if operator in ('notEquals', 'notIn'):
            return bool(candidates) and not user_in(context, candidates)
        return False
