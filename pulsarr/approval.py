"""
Approval gating and the approval request lifecycle.

The gate sits between the resolver and acquisition: it either lets a
routing through (recording quota usage once per item) or persists it as
a pending ApprovalRequest. The manager applies admin decisions to those
requests; every status change is a conditional update on ``pending`` so
concurrent approve/reject/expire calls cannot both win.

Storage errors are never caught here.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional

from .errors import ApprovalNotFound
from .models import (
    APPROVAL_STATUSES,
    ApprovalRequest,
    ContentItem,
    RouterDecision,
    RoutingContext,
    RoutingDecision,
    utcnow,
)
from .quota import QuotaTracker

DEFAULT_CLEANUP_DAYS = 30


@dataclass
class GateOutcome:
    """What happened to one item at the gate."""

    status: str  # routed | pending | rejected | skipped | failed
    routed: List[RoutingDecision] = field(default_factory=list)
    approval_request: Optional[ApprovalRequest] = None
    message: str = ''

    def to_dict(self) -> dict:
        return {
            'status': self.status,
            'routed': [d.to_dict() for d in self.routed],
            'approvalRequest': self.approval_request.to_dict() if self.approval_request else None,
            'message': self.message,
        }


@dataclass
class ApprovalOutcome:
    request: ApprovalRequest
    changed: bool
    executed: bool = False

    @property
    def status(self) -> str:
        return self.request.status

    def to_dict(self) -> dict:
        return {
            'status': self.status,
            'changed': self.changed,
            'executed': self.executed,
            'request': self.request.to_dict(),
        }


def content_key_for(item: ContentItem, context: RoutingContext) -> str:
    if context.item_key:
        return context.item_key
    if item.guids:
        return item.guids[0]
    return item.title


def _acquire_all(acquirer, item: ContentItem, routings: Iterable[RoutingDecision], extra: dict) -> List[RoutingDecision]:
    return [routing for routing in routings if acquirer.acquire(item, routing, extra=extra)]


class ApprovalGate:
    def __init__(self, store, quota: QuotaTracker, acquirer, notifier=None,
                 expires_after_hours: Optional[int] = None,
                 clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.quota = quota
        self.acquirer = acquirer
        self.notifier = notifier
        self.expires_after_hours = expires_after_hours
        self.clock = clock

    def _approval_trigger(self, decisions: List[RouterDecision], context: RoutingContext,
                          user_id: Optional[int]) -> Optional[RouterDecision]:
        """
        The first applicable reason to defer, in precedence order, as a
        require_approval decision.

        Only the primary (highest ranked) decision speaks for the rules: if
        it routes without approval, lower ranked approval rules are ignored
        and its own ``bypass_quota`` alone decides the quota skip.
        """
        if decisions[0].action == 'require_approval':
            return decisions[0]

        primary = decisions[0].proposed_routing
        if user_id is None:
            return None

        user = self.store.get_user(user_id)
        if user is not None and user.requires_approval:
            return RouterDecision.require_approval(
                reason=f"User {user.name} requires approval for all requests",
                triggered_by='manual_flag',
                proposed_routing=primary,
                data={'userId': user.id},
            )

        if primary.bypass_quota:
            return None
        status = self.quota.get_quota_status(user_id, context.content_type)
        if status is not None and status.exceeded:
            return RouterDecision.require_approval(
                reason=f"{status.quota_type.replace('_', ' ').capitalize()} quota exceeded "
                       f"({status.current_usage}/{status.quota_limit})",
                triggered_by='quota_exceeded',
                proposed_routing=primary,
                data={
                    'quotaType': status.quota_type,
                    'quotaUsage': status.current_usage,
                    'quotaLimit': status.quota_limit,
                },
            )
        return None

    def _defer(self, item: ContentItem, context: RoutingContext, user_id: int,
               approval: RouterDecision, extra: dict) -> GateOutcome:
        routing = approval.proposed_routing
        expires_at = None
        if self.expires_after_hours:
            expires_at = self.clock() + timedelta(hours=self.expires_after_hours)
        request = self.store.create_approval_request(
            user_id=user_id,
            content_type=context.content_type,
            content_title=item.title,
            content_key=content_key_for(item, context),
            content_guids=list(item.guids),
            proposed_router_decision=approval,
            triggered_by=approval.approval.triggered_by,
            router_rule_id=routing.rule_id if routing else None,
            approval_reason=approval.approval.reason,
            expires_at=expires_at,
        )
        logging.info(f"'{item.title}' needs approval ({request.triggered_by}); request {request.id} created",
                     extra=extra)
        if self.notifier is not None:
            self.notifier.approval_required(request)
        return GateOutcome('pending', approval_request=request, message=request.approval_reason or '')

    def _route(self, item: ContentItem, context: RoutingContext, routings: List[RoutingDecision],
               user_id: Optional[int], extra: dict, record_usage: bool = True) -> GateOutcome:
        done = _acquire_all(self.acquirer, item, routings, extra)
        if not done:
            return GateOutcome('failed', message=f"No instance accepted '{item.title}'")
        if record_usage and user_id is not None:
            self.quota.record_usage(user_id, context.content_type)
        return GateOutcome('routed', routed=done)

    def process(self, item: ContentItem, context: RoutingContext, decisions: List[RouterDecision],
                extra: Optional[dict] = None) -> GateOutcome:
        extra = extra or {}
        if not decisions:
            return GateOutcome('skipped', message='No routing decision')
        if any(d.action == 'reject' for d in decisions):
            logging.info(f"'{item.title}' rejected by routing rules", extra=extra)
            return GateOutcome('rejected', message='Rejected by routing rules')

        actionable = [d for d in decisions if d.action in ('route', 'require_approval') and d.proposed_routing]
        if not actionable:
            return GateOutcome('skipped', message='No routable decision')
        routings = [d.proposed_routing for d in actionable]

        if context.syncing:
            return self._route(item, context, routings, None, extra, record_usage=False)

        user_id = context.primary_user_id
        if user_id is not None:
            existing = self.store.get_approval_by_content(user_id, content_key_for(item, context))
            if existing is not None and existing.status != 'expired':
                return self._honour_existing(item, context, existing, extra)

        approval = self._approval_trigger(actionable, context, user_id)
        if approval is not None:
            if user_id is None:
                logging.warning(f"'{item.title}' requires approval but has no user to attribute it to",
                                extra=extra)
                return GateOutcome('skipped', message='Approval required but no user is attributed')
            return self._defer(item, context, user_id, approval, extra)

        return self._route(item, context, routings, user_id, extra)

    def _honour_existing(self, item: ContentItem, context: RoutingContext, existing: ApprovalRequest,
                         extra: dict) -> GateOutcome:
        if existing.status == 'pending':
            logging.info(f"'{item.title}' already awaiting approval (request {existing.id})", extra=extra)
            return GateOutcome('pending', approval_request=existing, message='Already awaiting approval')
        if existing.status == 'rejected':
            logging.info(f"'{item.title}' was previously rejected (request {existing.id})", extra=extra)
            return GateOutcome('rejected', approval_request=existing, message='Previously rejected')

        routing = existing.proposed_router_decision.proposed_routing
        if routing is None:
            return GateOutcome('skipped', approval_request=existing, message='Approved request has no routing')
        logging.info(f"'{item.title}' was previously approved; replaying request {existing.id}", extra=extra)
        outcome = self._route(item, context, [routing], None, extra, record_usage=False)
        outcome.approval_request = existing
        return outcome


class ApprovalManager:
    def __init__(self, store, quota: QuotaTracker, acquirer, notifier=None,
                 clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.quota = quota
        self.acquirer = acquirer
        self.notifier = notifier
        self.clock = clock

    def get(self, request_id: int) -> ApprovalRequest:
        request = self.store.get_approval_request(request_id)
        if request is None:
            raise ApprovalNotFound(request_id)
        return request

    def _notify(self, request: ApprovalRequest) -> None:
        if self.notifier is not None:
            self.notifier.approval_resolved(request)

    def _expire_if_stale(self, request_id: int, now: datetime) -> ApprovalRequest:
        """Current state of a request whose transition lost, marking it expired if its time has passed."""
        current = self.get(request_id)
        if current.status == 'pending' and current.expires_at is not None and current.expires_at < now:
            self.store.transition_approval(request_id, 'expired')
            current = self.get(request_id)
        return current

    def approve(self, request_id: int, approved_by: Optional[int] = None,
                notes: Optional[str] = None) -> ApprovalOutcome:
        """
        Approve a pending request and replay its stored routing.

        Repeat calls, and calls on requests that are no longer pending,
        report the current state without side effects. A pending request
        whose expiry has passed is marked expired instead.
        """
        request = self.get(request_id)
        if request.status != 'pending':
            return ApprovalOutcome(request, changed=False)

        now = self.clock()
        if not self.store.transition_approval(request_id, 'approved', approved_by, notes, unexpired_at=now):
            return ApprovalOutcome(self._expire_if_stale(request_id, now), changed=False)

        approved = self.get(request_id)
        routing = approved.proposed_router_decision.proposed_routing
        executed = False
        if routing is None:
            logging.error(f"Approval request {request_id} has no stored routing to replay")
        else:
            item = ContentItem(title=approved.content_title, guids=tuple(approved.content_guids))
            extra = {'request_id': str(request_id), 'correlation_id': ''}
            executed = self.acquirer.acquire(item, routing, extra=extra)
            if executed:
                self.quota.record_usage(approved.user_id, approved.content_type)
        logging.info(f"Approval request {request_id} approved by {approved_by}")
        self._notify(approved)
        return ApprovalOutcome(approved, changed=True, executed=executed)

    def reject(self, request_id: int, rejected_by: Optional[int] = None,
               reason: Optional[str] = None) -> ApprovalOutcome:
        request = self.get(request_id)
        if request.status != 'pending':
            return ApprovalOutcome(request, changed=False)
        now = self.clock()
        if not self.store.transition_approval(request_id, 'rejected', rejected_by, reason, unexpired_at=now):
            return ApprovalOutcome(self._expire_if_stale(request_id, now), changed=False)
        rejected = self.get(request_id)
        logging.info(f"Approval request {request_id} rejected by {rejected_by}")
        self._notify(rejected)
        return ApprovalOutcome(rejected, changed=True)

    def delete(self, request_id: int) -> None:
        if not self.store.delete_approval_request(request_id):
            raise ApprovalNotFound(request_id)
        logging.info(f"Approval request {request_id} deleted")

    def expire_sweep(self) -> int:
        expired = self.store.expire_pending_approvals(self.clock())
        if expired:
            logging.info(f"Expired {expired} pending approval request(s)")
        return expired

    def cleanup_expired(self, older_than_days: int = DEFAULT_CLEANUP_DAYS) -> int:
        removed = self.store.cleanup_expired_approvals(self.clock() - timedelta(days=older_than_days))
        if removed:
            logging.info(f"Removed {removed} expired approval request(s) older than {older_than_days} days")
        return removed

    def list_pending(self, limit: int = 50, offset: int = 0) -> List[ApprovalRequest]:
        return self.store.list_pending_approvals(now=self.clock(), limit=limit, offset=offset)

    def history(self, user_id: Optional[int] = None, status: Optional[str] = None,
                content_type: Optional[str] = None, triggered_by: Optional[str] = None,
                limit: int = 50, offset: int = 0) -> List[ApprovalRequest]:
        return self.store.approval_history(user_id=user_id, status=status, content_type=content_type,
                                           triggered_by=triggered_by, limit=limit, offset=offset)

    def stats(self) -> Dict[str, int]:
        counts = self.store.approval_counts()
        out = {status: counts.get(status, 0) for status in APPROVAL_STATUSES}
        out['total'] = sum(out.values())
        return out

    def user_stats(self, user_id: int) -> Dict[str, int]:
        counts = self.store.approval_counts(user_id=user_id)
        out = {status: counts.get(status, 0) for status in APPROVAL_STATUSES}
        out['total'] = sum(out.values())
        return out

    def batch_approve(self, request_ids: Iterable[int], approved_by: Optional[int] = None,
                      notes: Optional[str] = None) -> Dict[str, List[int]]:
        result: Dict[str, List[int]] = {'approved': [], 'unchanged': [], 'notFound': []}
        for request_id in request_ids:
            try:
                outcome = self.approve(request_id, approved_by, notes)
            except ApprovalNotFound:
                result['notFound'].append(request_id)
                continue
            result['approved' if outcome.changed else 'unchanged'].append(request_id)
        return result

    def batch_reject(self, request_ids: Iterable[int], rejected_by: Optional[int] = None,
                     reason: Optional[str] = None) -> Dict[str, List[int]]:
        result: Dict[str, List[int]] = {'rejected': [], 'unchanged': [], 'notFound': []}
        for request_id in request_ids:
            try:
                outcome = self.reject(request_id, rejected_by, reason)
            except ApprovalNotFound:
                result['notFound'].append(request_id)
                continue
            result['rejected' if outcome.changed else 'unchanged'].append(request_id)
        return result
