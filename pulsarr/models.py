import json
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional, Tuple, Union

from .errors import ConditionError

CONTENT_TYPES = ('movie', 'show')
TARGET_TYPES = ('radarr', 'sonarr')
QUOTA_TYPES = ('daily', 'weekly_rolling', 'monthly')
APPROVAL_STATUSES = ('pending', 'approved', 'rejected', 'expired')
APPROVAL_TRIGGERS = ('quota_exceeded', 'router_rule', 'manual_flag', 'content_criteria')
ROUTER_ACTIONS = ('route', 'require_approval', 'reject', 'continue')
RULE_ACTIONS = ('route', 'reject', 'continue')
GROUP_OPERATORS = ('AND', 'OR')

DEFAULT_PRIORITY = 50


def utcnow() -> datetime:
    """Naive UTC timestamp, the form stored in the database."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def target_type_for(content_type: str) -> str:
    return 'radarr' if content_type == 'movie' else 'sonarr'


def content_type_for(target_type: str) -> str:
    return 'movie' if target_type == 'radarr' else 'show'


def _to_tuple(value) -> tuple:
    if value is None:
        return ()
    if isinstance(value, (list, tuple, set)):
        return tuple(value)
    return (value,)


def _iso(value: Optional[Union[datetime, date]]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def season_numbers(seasons: Any) -> Tuple[int, ...]:
    """Season numbers from Sonarr's ``seasons`` list (objects with ``seasonNumber``) or plain ints."""
    numbers = []
    for season in seasons or ():
        if isinstance(season, dict):
            season = season.get('seasonNumber')
        if isinstance(season, int) and not isinstance(season, bool):
            numbers.append(season)
    return tuple(numbers)


# =========================
# Content and context
# =========================
@dataclass(frozen=True)
class ContentMetadata:
    year: Optional[int] = None
    original_language: Optional[str] = None
    certification: Optional[str] = None
    genres: Tuple[str, ...] = ()
    # Season numbers of a series; empty for movies.
    seasons: Tuple[int, ...] = ()

    @staticmethod
    def from_dict(data: dict) -> "ContentMetadata":
        language = data.get('originalLanguage', data.get('original_language'))
        if isinstance(language, dict):
            language = language.get('name')
        year = data.get('year')
        return ContentMetadata(
            year=int(year) if isinstance(year, (int, float)) and year else None,
            original_language=language or None,
            certification=data.get('certification') or None,
            genres=_to_tuple(data.get('genres')),
            seasons=season_numbers(data.get('seasons')),
        )

    def to_dict(self) -> dict:
        return {
            'year': self.year,
            'originalLanguage': {'name': self.original_language} if self.original_language else None,
            'certification': self.certification,
            'genres': list(self.genres),
            'seasons': [{'seasonNumber': n} for n in self.seasons],
        }


@dataclass(frozen=True)
class ContentItem:
    """Immutable snapshot of a watchlist item handed to the engine."""

    title: str
    guids: Tuple[str, ...] = ()
    genres: Tuple[str, ...] = ()
    metadata: Optional[ContentMetadata] = None

    @staticmethod
    def from_dict(data: dict) -> "ContentItem":
        guids: List[str] = []
        for guid in data.get('guids') or []:
            guid = str(guid).strip()
            if guid and guid not in guids:
                guids.append(guid)
        metadata = data.get('metadata')
        return ContentItem(
            title=data.get('title') or 'Unknown Title',
            guids=tuple(guids),
            genres=_to_tuple(data.get('genres')),
            metadata=ContentMetadata.from_dict(metadata) if isinstance(metadata, dict) else None,
        )

    def to_dict(self) -> dict:
        return {
            'title': self.title,
            'guids': list(self.guids),
            'genres': list(self.genres),
            'metadata': self.metadata.to_dict() if self.metadata else None,
        }

    def guid_id(self, prefix: str) -> Optional[int]:
        """Return the numeric id of the first GUID typed ``prefix`` (e.g. ``tmdb``)."""
        marker = f"{prefix}:"
        for guid in self.guids:
            if guid.lower().startswith(marker):
                raw = guid[len(marker):].strip()
                if raw.isdigit():
                    return int(raw)
        return None

    def with_metadata(self, metadata: ContentMetadata) -> "ContentItem":
        return replace(self, metadata=metadata)


@dataclass(frozen=True)
class RoutingContext:
    content_type: str
    user_id: Union[int, Tuple[int, ...], None] = None
    user_name: Union[str, Tuple[str, ...], None] = None
    item_key: Optional[str] = None
    syncing: bool = False
    sync_target_instance_id: Optional[int] = None

    @staticmethod
    def from_dict(data: dict) -> "RoutingContext":
        user_id = data.get('userId')
        user_name = data.get('userName')
        if isinstance(user_id, list):
            user_id = tuple(int(u) for u in user_id)
        elif user_id is not None:
            user_id = int(user_id)
        if isinstance(user_name, list):
            user_name = tuple(str(u) for u in user_name)
        sync_target = data.get('syncTargetInstanceId')
        return RoutingContext(
            content_type=data.get('contentType', ''),
            user_id=user_id,
            user_name=user_name,
            item_key=data.get('itemKey'),
            syncing=bool(data.get('syncing', False)),
            sync_target_instance_id=int(sync_target) if sync_target is not None else None,
        )

    @property
    def target_type(self) -> str:
        return target_type_for(self.content_type)

    @property
    def user_ids(self) -> List[int]:
        return [u for u in _to_tuple(self.user_id) if u]

    @property
    def user_names(self) -> List[str]:
        return [u for u in _to_tuple(self.user_name) if u]

    @property
    def primary_user_id(self) -> Optional[int]:
        ids = self.user_ids
        return ids[0] if ids else None

    @property
    def primary_user_name(self) -> Optional[str]:
        names = self.user_names
        return names[0] if names else None


# =========================
# Condition tree
# =========================
@dataclass(frozen=True)
class Condition:
    field: str
    operator: str
    value: Any
    negate: bool = False


@dataclass(frozen=True)
class ConditionGroup:
    operator: str
    conditions: Tuple[Union[Condition, "ConditionGroup"], ...] = ()
    negate: bool = False


ConditionNode = Union[Condition, ConditionGroup]


def parse_condition(data: Any, _path: Optional[set] = None) -> ConditionNode:
    """
    Build a Condition / ConditionGroup tree from its JSON shape.

    Leaves look like ``{"field": "genres", "operator": "in", "value": [...]}``,
    groups like ``{"operator": "AND", "conditions": [...]}``. Either may carry
    ``negate``. A structure that refers back to one of its ancestors is
    rejected.
    """
    if isinstance(data, (Condition, ConditionGroup)):
        return data
    if not isinstance(data, dict):
        raise ConditionError(f"Condition node must be a mapping, got {type(data).__name__}")

    path = _path if _path is not None else set()
    marker = id(data)
    if marker in path:
        raise ConditionError("Condition tree contains a cycle")
    path.add(marker)
    try:
        negate = bool(data.get('negate', False))
        if 'conditions' in data:
            children = data.get('conditions')
            if not isinstance(children, list):
                raise ConditionError("Condition group 'conditions' must be a list")
            operator = str(data.get('operator', '')).upper()
            if operator not in GROUP_OPERATORS:
                raise ConditionError(f"Condition group operator must be AND or OR, got '{data.get('operator')}'")
            return ConditionGroup(
                operator=operator,
                conditions=tuple(parse_condition(child, path) for child in children),
                negate=negate,
            )
        if 'field' in data and 'operator' in data and 'value' in data:
            if not isinstance(data['field'], str) or not data['field']:
                raise ConditionError("Condition field must be a non-empty string")
            return Condition(
                field=data['field'],
                operator=str(data['operator']),
                value=data['value'],
                negate=negate,
            )
        raise ConditionError("Condition node needs either 'conditions' or 'field'/'operator'/'value'")
    finally:
        path.discard(marker)


def condition_to_dict(node: ConditionNode) -> dict:
    if isinstance(node, ConditionGroup):
        out = {'operator': node.operator, 'conditions': [condition_to_dict(c) for c in node.conditions]}
    else:
        out = {'field': node.field, 'operator': node.operator, 'value': node.value}
    if node.negate:
        out['negate'] = True
    return out


def iter_conditions(node: ConditionNode):
    """Yield every leaf Condition in ``node``."""
    if isinstance(node, ConditionGroup):
        for child in node.conditions:
            yield from iter_conditions(child)
    else:
        yield node


# =========================
# Rules and decisions
# =========================
@dataclass
class RoutingDecision:
    instance_id: int
    instance_type: Optional[str] = None
    quality_profile: Optional[Union[int, str]] = None
    root_folder: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    priority: int = DEFAULT_PRIORITY
    search_on_add: Optional[bool] = None
    season_monitoring: Optional[str] = None
    series_type: Optional[str] = None
    minimum_availability: Optional[str] = None
    rule_id: Optional[int] = None
    rule_name: Optional[str] = None
    bypass_quota: bool = False

    @staticmethod
    def from_dict(data: dict) -> "RoutingDecision":
        priority = data.get('priority', data.get('weight'))
        return RoutingDecision(
            instance_id=int(data['instanceId']),
            instance_type=data.get('instanceType'),
            quality_profile=data.get('qualityProfile'),
            root_folder=data.get('rootFolder'),
            tags=list(data.get('tags') or []),
            priority=int(priority) if priority is not None else DEFAULT_PRIORITY,
            search_on_add=data.get('searchOnAdd'),
            season_monitoring=data.get('seasonMonitoring'),
            series_type=data.get('seriesType'),
            minimum_availability=data.get('minimumAvailability'),
            rule_id=data.get('ruleId'),
            rule_name=data.get('ruleName'),
            bypass_quota=bool(data.get('bypassQuota', False)),
        )

    def to_dict(self) -> dict:
        return {
            'instanceId': self.instance_id,
            'instanceType': self.instance_type,
            'qualityProfile': self.quality_profile,
            'rootFolder': self.root_folder,
            'tags': list(self.tags),
            'priority': self.priority,
            'searchOnAdd': self.search_on_add,
            'seasonMonitoring': self.season_monitoring,
            'seriesType': self.series_type,
            'minimumAvailability': self.minimum_availability,
            'ruleId': self.rule_id,
            'ruleName': self.rule_name,
            'bypassQuota': self.bypass_quota,
        }


@dataclass
class RouterRule:
    id: int
    name: str
    type: str
    target_type: str
    target_instance_id: int
    criteria: Dict[str, Any] = field(default_factory=dict)
    quality_profile: Optional[Union[int, str]] = None
    root_folder: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    order: int = DEFAULT_PRIORITY
    enabled: bool = True
    series_type: Optional[str] = None
    season_monitoring: Optional[str] = None
    search_on_add: Optional[bool] = None
    minimum_availability: Optional[str] = None
    action: str = 'route'
    always_require_approval: bool = False
    bypass_user_quotas: bool = False
    approval_reason: Optional[str] = None
    approval_trigger: str = 'router_rule'

    @property
    def priority(self) -> int:
        return self.order

    @staticmethod
    def from_dict(data: dict) -> "RouterRule":
        order = data.get('order', data.get('priority'))
        criteria = data.get('criteria') or {}
        if isinstance(criteria, str):
            criteria = json.loads(criteria)
        return RouterRule(
            id=int(data['id']),
            name=data.get('name') or f"Rule {data['id']}",
            type=data.get('type', ''),
            target_type=data.get('target_type', ''),
            target_instance_id=int(data['target_instance_id']),
            criteria=criteria,
            quality_profile=data.get('quality_profile'),
            root_folder=data.get('root_folder'),
            tags=list(data.get('tags') or []),
            order=int(order) if order is not None else DEFAULT_PRIORITY,
            enabled=data.get('enabled', True) is not False,
            series_type=data.get('series_type'),
            season_monitoring=data.get('season_monitoring'),
            search_on_add=data.get('search_on_add'),
            minimum_availability=data.get('minimum_availability'),
            action=data.get('action') or 'route',
            always_require_approval=bool(data.get('always_require_approval', False)),
            bypass_user_quotas=bool(data.get('bypass_user_quotas', False)),
            approval_reason=data.get('approval_reason'),
            approval_trigger=data.get('approval_trigger') or 'router_rule',
        )

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'name': self.name,
            'type': self.type,
            'target_type': self.target_type,
            'target_instance_id': self.target_instance_id,
            'criteria': self.criteria,
            'quality_profile': self.quality_profile,
            'root_folder': self.root_folder,
            'tags': list(self.tags),
            'order': self.order,
            'enabled': self.enabled,
            'series_type': self.series_type,
            'season_monitoring': self.season_monitoring,
            'search_on_add': self.search_on_add,
            'minimum_availability': self.minimum_availability,
            'action': self.action,
            'always_require_approval': self.always_require_approval,
            'bypass_user_quotas': self.bypass_user_quotas,
            'approval_reason': self.approval_reason,
            'approval_trigger': self.approval_trigger,
        }

    def to_decision(self) -> RoutingDecision:
        return RoutingDecision(
            instance_id=self.target_instance_id,
            instance_type=self.target_type,
            quality_profile=self.quality_profile,
            root_folder=self.root_folder,
            tags=list(self.tags),
            priority=self.order,
            search_on_add=self.search_on_add,
            season_monitoring=self.season_monitoring,
            series_type=self.series_type,
            minimum_availability=self.minimum_availability,
            rule_id=self.id,
            rule_name=self.name,
            bypass_quota=self.bypass_user_quotas,
        )


@dataclass
class ApprovalData:
    reason: str
    triggered_by: str
    data: Dict[str, Any] = field(default_factory=dict)
    proposed_routing: Optional[RoutingDecision] = None

    @staticmethod
    def from_dict(data: dict) -> "ApprovalData":
        proposed = data.get('proposedRouting')
        return ApprovalData(
            reason=data.get('reason') or 'Approval required',
            triggered_by=data.get('triggeredBy') or 'manual_flag',
            data=dict(data.get('data') or {}),
            proposed_routing=RoutingDecision.from_dict(proposed) if proposed else None,
        )

    def to_dict(self) -> dict:
        return {
            'reason': self.reason,
            'triggeredBy': self.triggered_by,
            'data': self.data,
            'proposedRouting': self.proposed_routing.to_dict() if self.proposed_routing else None,
        }


@dataclass
class RouterDecision:
    """Top-level verdict: route, require_approval, reject or continue."""

    action: str
    routing: Optional[RoutingDecision] = None
    approval: Optional[ApprovalData] = None

    @classmethod
    def route(cls, routing: RoutingDecision) -> "RouterDecision":
        return cls(action='route', routing=routing)

    @classmethod
    def require_approval(cls, reason: str, triggered_by: str,
                         proposed_routing: Optional[RoutingDecision],
                         data: Optional[dict] = None) -> "RouterDecision":
        return cls(action='require_approval',
                   approval=ApprovalData(reason=reason, triggered_by=triggered_by,
                                         data=data or {}, proposed_routing=proposed_routing))

    @classmethod
    def reject(cls) -> "RouterDecision":
        return cls(action='reject')

    @classmethod
    def skip(cls) -> "RouterDecision":
        return cls(action='continue')

    @property
    def proposed_routing(self) -> Optional[RoutingDecision]:
        if self.action == 'route':
            return self.routing
        if self.action == 'require_approval' and self.approval:
            return self.approval.proposed_routing
        return None

    @staticmethod
    def from_dict(data: dict) -> "RouterDecision":
        action = data.get('action', 'continue')
        routing = data.get('routing')
        approval = data.get('approval')
        return RouterDecision(
            action=action if action in ROUTER_ACTIONS else 'continue',
            routing=RoutingDecision.from_dict(routing) if routing else None,
            approval=ApprovalData.from_dict(approval) if approval else None,
        )

    def to_dict(self) -> dict:
        out: Dict[str, Any] = {'action': self.action}
        if self.routing is not None:
            out['routing'] = self.routing.to_dict()
        if self.approval is not None:
            out['approval'] = self.approval.to_dict()
        return out


# =========================
# Instances, users, quotas, approvals
# =========================
@dataclass
class Instance:
    id: int
    type: str
    name: str = ''
    base_url: str = ''
    api_key: str = ''
    quality_profile: Optional[Union[int, str]] = None
    root_folder: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    is_default: bool = False
    enabled: bool = True
    search_on_add: bool = True
    season_monitoring: str = 'all'
    series_type: str = 'standard'
    minimum_availability: str = 'released'

    @staticmethod
    def from_dict(data: dict, instance_type: str) -> "Instance":
        return Instance(
            id=int(data['id']),
            type=instance_type,
            name=data.get('name') or f"{instance_type} {data['id']}",
            base_url=str(data.get('base_url') or '').rstrip('/'),
            api_key=data.get('api_key') or '',
            quality_profile=data.get('quality_profile'),
            root_folder=data.get('root_folder'),
            tags=list(data.get('tags') or []),
            is_default=bool(data.get('is_default', False)),
            enabled=data.get('enabled', True) is not False,
            search_on_add=bool(data.get('search_on_add', True)),
            season_monitoring=data.get('season_monitoring') or 'all',
            series_type=data.get('series_type') or 'standard',
            minimum_availability=data.get('minimum_availability') or 'released',
        )

    def default_decision(self) -> RoutingDecision:
        """The routing this instance applies with its own stored configuration."""
        return RoutingDecision(
            instance_id=self.id,
            instance_type=self.type,
            quality_profile=self.quality_profile,
            root_folder=self.root_folder,
            tags=list(self.tags),
            priority=DEFAULT_PRIORITY,
            search_on_add=self.search_on_add,
            season_monitoring=self.season_monitoring if self.type == 'sonarr' else None,
            series_type=self.series_type if self.type == 'sonarr' else None,
            minimum_availability=self.minimum_availability if self.type == 'radarr' else None,
        )


@dataclass
class User:
    id: int
    name: str
    requires_approval: bool = False


@dataclass
class UserQuota:
    user_id: int
    content_type: str
    quota_type: str
    quota_limit: int
    bypass_approval: bool = False

    def to_dict(self) -> dict:
        return {
            'userId': self.user_id,
            'contentType': self.content_type,
            'quotaType': self.quota_type,
            'quotaLimit': self.quota_limit,
            'bypassApproval': self.bypass_approval,
        }


@dataclass
class QuotaUsage:
    user_id: int
    content_type: str
    request_date: date


@dataclass
class QuotaStatus:
    quota_type: str
    quota_limit: int
    current_usage: int
    exceeded: bool
    reset_date: Optional[datetime]
    bypass_approval: bool

    def to_dict(self) -> dict:
        return {
            'quotaType': self.quota_type,
            'quotaLimit': self.quota_limit,
            'currentUsage': self.current_usage,
            'exceeded': self.exceeded,
            'resetDate': _iso(self.reset_date),
            'bypassApproval': self.bypass_approval,
        }


@dataclass
class ApprovalRequest:
    id: int
    user_id: int
    content_type: str
    content_title: str
    content_key: str
    content_guids: List[str]
    proposed_router_decision: RouterDecision
    triggered_by: str
    status: str = 'pending'
    router_rule_id: Optional[int] = None
    approval_reason: Optional[str] = None
    approved_by: Optional[int] = None
    approval_notes: Optional[str] = None
    expires_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    user_name: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'userId': self.user_id,
            'userName': self.user_name,
            'contentType': self.content_type,
            'contentTitle': self.content_title,
            'contentKey': self.content_key,
            'contentGuids': list(self.content_guids),
            'proposedRouterDecision': self.proposed_router_decision.to_dict(),
            'routerRuleId': self.router_rule_id,
            'triggeredBy': self.triggered_by,
            'approvalReason': self.approval_reason,
            'status': self.status,
            'approvedBy': self.approved_by,
            'approvalNotes': self.approval_notes,
            'expiresAt': _iso(self.expires_at),
            'createdAt': _iso(self.created_at),
            'updatedAt': _iso(self.updated_at),
        }
