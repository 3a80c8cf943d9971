"""
Persistence for rules, instances, users, quotas and approval requests.

SQLAlchemy 2.0 ORM over any database SQLAlchemy supports (SQLite by
default). Every public method runs in its own short transaction and
raises StorageError on failure; callers decide whether to retry.
Referential checks (rule -> instance, usage/quota/approval -> user,
approval -> rule) are enforced here rather than relying on the store.
"""
import logging
from contextlib import contextmanager
from datetime import date, datetime
from typing import Dict, Iterator, List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    delete,
    func,
    select,
    update,
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from .errors import StorageError
from .models import (
    ApprovalRequest,
    Instance,
    RouterDecision,
    RouterRule,
    User,
    UserQuota,
    utcnow,
)

__all__ = ['Database', 'StorageError']


class Base(DeclarativeBase):
    pass


class InstanceRow(Base):
    __tablename__ = "instances"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    type: Mapped[str] = mapped_column(String(10), primary_key=True)
    name: Mapped[str] = mapped_column(String(200), default="")
    base_url: Mapped[str] = mapped_column(String(500), default="")
    api_key: Mapped[str] = mapped_column(String(200), default="")
    quality_profile: Mapped[Optional[str]] = mapped_column(String(100))
    root_folder: Mapped[Optional[str]] = mapped_column(String(500))
    tags: Mapped[list] = mapped_column(JSON, default=list)
    is_default: Mapped[bool] = mapped_column(Boolean, default=False)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    search_on_add: Mapped[bool] = mapped_column(Boolean, default=True)
    season_monitoring: Mapped[str] = mapped_column(String(30), default="all")
    series_type: Mapped[str] = mapped_column(String(30), default="standard")
    minimum_availability: Mapped[str] = mapped_column(String(30), default="released")


class UserRow(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    requires_approval: Mapped[bool] = mapped_column(Boolean, default=False)


class RouterRuleRow(Base):
    __tablename__ = "router_rules"
    __table_args__ = (
        Index("idx_router_rules_type", "type", "target_type"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    type: Mapped[str] = mapped_column(String(30), nullable=False)
    target_type: Mapped[str] = mapped_column(String(10), nullable=False)
    target_instance_id: Mapped[int] = mapped_column(Integer, nullable=False)
    criteria: Mapped[dict] = mapped_column(JSON, default=dict)
    quality_profile: Mapped[Optional[str]] = mapped_column(String(100))
    root_folder: Mapped[Optional[str]] = mapped_column(String(500))
    tags: Mapped[list] = mapped_column(JSON, default=list)
    order: Mapped[int] = mapped_column("order", Integer, default=50)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    series_type: Mapped[Optional[str]] = mapped_column(String(30))
    season_monitoring: Mapped[Optional[str]] = mapped_column(String(30))
    search_on_add: Mapped[Optional[bool]] = mapped_column(Boolean)
    minimum_availability: Mapped[Optional[str]] = mapped_column(String(30))
    action: Mapped[str] = mapped_column(String(20), default="route")
    always_require_approval: Mapped[bool] = mapped_column(Boolean, default=False)
    bypass_user_quotas: Mapped[bool] = mapped_column(Boolean, default=False)
    approval_reason: Mapped[Optional[str]] = mapped_column(Text)
    approval_trigger: Mapped[str] = mapped_column(String(30), default="router_rule")


class UserQuotaRow(Base):
    __tablename__ = "user_quotas"
    __table_args__ = (
        UniqueConstraint("user_id", "content_type"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"))
    content_type: Mapped[str] = mapped_column(String(10), nullable=False)
    quota_type: Mapped[str] = mapped_column(String(20), nullable=False)
    quota_limit: Mapped[int] = mapped_column(Integer, nullable=False)
    bypass_approval: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)


class QuotaUsageRow(Base):
    __tablename__ = "quota_usage"
    __table_args__ = (
        Index("idx_quota_usage_lookup", "user_id", "content_type", "request_date"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"))
    content_type: Mapped[str] = mapped_column(String(10), nullable=False)
    request_date: Mapped[date] = mapped_column(Date, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class ApprovalRequestRow(Base):
    __tablename__ = "approval_requests"
    __table_args__ = (
        UniqueConstraint("user_id", "content_key"),
        Index("idx_approval_status", "status", "expires_at"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"))
    content_type: Mapped[str] = mapped_column(String(10), nullable=False)
    content_title: Mapped[str] = mapped_column(String(500), nullable=False)
    content_key: Mapped[str] = mapped_column(String(500), nullable=False)
    content_guids: Mapped[list] = mapped_column(JSON, default=list)
    proposed_router_decision: Mapped[dict] = mapped_column(JSON, nullable=False)
    router_rule_id: Mapped[Optional[int]] = mapped_column(Integer)
    triggered_by: Mapped[str] = mapped_column(String(30), nullable=False)
    approval_reason: Mapped[Optional[str]] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String(20), default="pending")
    approved_by: Mapped[Optional[int]] = mapped_column(Integer)
    approval_notes: Mapped[Optional[str]] = mapped_column(Text)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


# =========================
# Row conversion
# =========================
def _profile_in(value) -> Optional[str]:
    return str(value) if value is not None else None


def _profile_out(value: Optional[str]):
    if value is not None and value.isdigit():
        return int(value)
    return value


def _instance_from_row(row: InstanceRow) -> Instance:
    return Instance(
        id=row.id,
        type=row.type,
        name=row.name,
        base_url=row.base_url,
        api_key=row.api_key,
        quality_profile=_profile_out(row.quality_profile),
        root_folder=row.root_folder,
        tags=list(row.tags or []),
        is_default=row.is_default,
        enabled=row.enabled,
        search_on_add=row.search_on_add,
        season_monitoring=row.season_monitoring,
        series_type=row.series_type,
        minimum_availability=row.minimum_availability,
    )


def _rule_from_row(row: RouterRuleRow) -> RouterRule:
    return RouterRule(
        id=row.id,
        name=row.name,
        type=row.type,
        target_type=row.target_type,
        target_instance_id=row.target_instance_id,
        criteria=dict(row.criteria or {}),
        quality_profile=_profile_out(row.quality_profile),
        root_folder=row.root_folder,
        tags=list(row.tags or []),
        order=row.order,
        enabled=row.enabled,
        series_type=row.series_type,
        season_monitoring=row.season_monitoring,
        search_on_add=row.search_on_add,
        minimum_availability=row.minimum_availability,
        action=row.action,
        always_require_approval=row.always_require_approval,
        bypass_user_quotas=row.bypass_user_quotas,
        approval_reason=row.approval_reason,
        approval_trigger=row.approval_trigger,
    )


def _quota_from_row(row: UserQuotaRow) -> UserQuota:
    return UserQuota(
        user_id=row.user_id,
        content_type=row.content_type,
        quota_type=row.quota_type,
        quota_limit=row.quota_limit,
        bypass_approval=row.bypass_approval,
    )


def _approval_from_row(row: ApprovalRequestRow, user_name: Optional[str] = None) -> ApprovalRequest:
    return ApprovalRequest(
        id=row.id,
        user_id=row.user_id,
        user_name=user_name,
        content_type=row.content_type,
        content_title=row.content_title,
        content_key=row.content_key,
        content_guids=list(row.content_guids or []),
        proposed_router_decision=RouterDecision.from_dict(row.proposed_router_decision or {}),
        router_rule_id=row.router_rule_id,
        triggered_by=row.triggered_by,
        approval_reason=row.approval_reason,
        status=row.status,
        approved_by=row.approved_by,
        approval_notes=row.approval_notes,
        expires_at=row.expires_at,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


class Database:
    def __init__(self, url: str = "sqlite:///pulsarr.db", echo: bool = False):
        kwargs = {}
        if url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
            if url in ("sqlite://", "sqlite:///:memory:"):
                kwargs["poolclass"] = StaticPool
        try:
            self.engine = create_engine(url, echo=echo, **kwargs)
            self._sessions = sessionmaker(bind=self.engine, expire_on_commit=False)
        except SQLAlchemyError as e:
            raise StorageError(f"Could not open database {url}: {e}") from e
        self.url = url

    def create_all(self) -> None:
        try:
            Base.metadata.create_all(self.engine)
        except SQLAlchemyError as e:
            raise StorageError(f"Could not create schema: {e}") from e

    def dispose(self) -> None:
        self.engine.dispose()

    @contextmanager
    def session(self) -> Iterator[Session]:
        sess = self._sessions()
        try:
            yield sess
            sess.commit()
        except SQLAlchemyError as e:
            sess.rollback()
            logging.error(f"Database error: {e}")
            raise StorageError(str(e)) from e
        except Exception:
            sess.rollback()
            raise
        finally:
            sess.close()

    # =========================
    # Instances
    # =========================
    def upsert_instance(self, instance: Instance) -> None:
        with self.session() as s:
            row = s.get(InstanceRow, (instance.id, instance.type)) or InstanceRow(id=instance.id, type=instance.type)
            row.name = instance.name
            row.base_url = instance.base_url
            row.api_key = instance.api_key
            row.quality_profile = _profile_in(instance.quality_profile)
            row.root_folder = instance.root_folder
            row.tags = list(instance.tags)
            row.is_default = instance.is_default
            row.enabled = instance.enabled
            row.search_on_add = instance.search_on_add
            row.season_monitoring = instance.season_monitoring
            row.series_type = instance.series_type
            row.minimum_availability = instance.minimum_availability
            s.add(row)

    def get_instance(self, instance_id: int, instance_type: Optional[str] = None) -> Optional[Instance]:
        with self.session() as s:
            stmt = select(InstanceRow).where(InstanceRow.id == instance_id)
            if instance_type:
                stmt = stmt.where(InstanceRow.type == instance_type)
            row = s.scalars(stmt.order_by(InstanceRow.type)).first()
            return _instance_from_row(row) if row else None

    def get_instances(self, instance_type: Optional[str] = None) -> List[Instance]:
        with self.session() as s:
            stmt = select(InstanceRow)
            if instance_type:
                stmt = stmt.where(InstanceRow.type == instance_type)
            return [_instance_from_row(r) for r in s.scalars(stmt.order_by(InstanceRow.type, InstanceRow.id))]

    def get_default_instance(self, instance_type: str) -> Optional[Instance]:
        with self.session() as s:
            row = s.scalars(
                select(InstanceRow).where(
                    InstanceRow.type == instance_type,
                    InstanceRow.is_default.is_(True),
                    InstanceRow.enabled.is_(True),
                )
            ).first()
            return _instance_from_row(row) if row else None

    # =========================
    # Users
    # =========================
    def upsert_user(self, user: User) -> None:
        with self.session() as s:
            row = s.get(UserRow, user.id) or UserRow(id=user.id)
            row.name = user.name
            row.requires_approval = user.requires_approval
            s.add(row)

    def get_user(self, user_id: int) -> Optional[User]:
        with self.session() as s:
            row = s.get(UserRow, user_id)
            return User(id=row.id, name=row.name, requires_approval=row.requires_approval) if row else None

    def get_users(self) -> List[User]:
        with self.session() as s:
            return [User(id=r.id, name=r.name, requires_approval=r.requires_approval)
                    for r in s.scalars(select(UserRow).order_by(UserRow.id))]

    def _require_user(self, s: Session, user_id: int) -> None:
        if s.get(UserRow, user_id) is None:
            raise StorageError(f"User {user_id} does not exist")

    # =========================
    # Router rules
    # =========================
    def upsert_router_rule(self, rule: RouterRule) -> None:
        with self.session() as s:
            if s.get(InstanceRow, (rule.target_instance_id, rule.target_type)) is None:
                raise StorageError(
                    f"Rule '{rule.name}' targets unknown {rule.target_type} instance {rule.target_instance_id}"
                )
            row = s.get(RouterRuleRow, rule.id) or RouterRuleRow(id=rule.id)
            row.name = rule.name
            row.type = rule.type
            row.target_type = rule.target_type
            row.target_instance_id = rule.target_instance_id
            row.criteria = dict(rule.criteria)
            row.quality_profile = _profile_in(rule.quality_profile)
            row.root_folder = rule.root_folder
            row.tags = list(rule.tags)
            row.order = rule.order
            row.enabled = rule.enabled
            row.series_type = rule.series_type
            row.season_monitoring = rule.season_monitoring
            row.search_on_add = rule.search_on_add
            row.minimum_availability = rule.minimum_availability
            row.action = rule.action
            row.always_require_approval = rule.always_require_approval
            row.bypass_user_quotas = rule.bypass_user_quotas
            row.approval_reason = rule.approval_reason
            row.approval_trigger = rule.approval_trigger
            s.add(row)

    def get_router_rules(self) -> List[RouterRule]:
        with self.session() as s:
            return [_rule_from_row(r) for r in s.scalars(select(RouterRuleRow).order_by(RouterRuleRow.id))]

    def get_router_rules_by_type(self, rule_type: str) -> List[RouterRule]:
        with self.session() as s:
            stmt = select(RouterRuleRow).where(RouterRuleRow.type == rule_type).order_by(RouterRuleRow.id)
            return [_rule_from_row(r) for r in s.scalars(stmt)]

    def get_router_rule(self, rule_id: int) -> Optional[RouterRule]:
        with self.session() as s:
            row = s.get(RouterRuleRow, rule_id)
            return _rule_from_row(row) if row else None

    def delete_router_rules_except(self, keep_ids) -> int:
        """Drop rules no longer present in configuration."""
        with self.session() as s:
            result = s.execute(delete(RouterRuleRow).where(RouterRuleRow.id.not_in(list(keep_ids))))
            return result.rowcount or 0

    # =========================
    # Quotas
    # =========================
    def set_user_quota(self, quota: UserQuota) -> UserQuota:
        with self.session() as s:
            self._require_user(s, quota.user_id)
            row = s.scalars(
                select(UserQuotaRow).where(
                    UserQuotaRow.user_id == quota.user_id,
                    UserQuotaRow.content_type == quota.content_type,
                )
            ).first() or UserQuotaRow(user_id=quota.user_id, content_type=quota.content_type)
            row.quota_type = quota.quota_type
            row.quota_limit = quota.quota_limit
            row.bypass_approval = quota.bypass_approval
            s.add(row)
        return quota

    def get_user_quota(self, user_id: int, content_type: str) -> Optional[UserQuota]:
        with self.session() as s:
            row = s.scalars(
                select(UserQuotaRow).where(
                    UserQuotaRow.user_id == user_id,
                    UserQuotaRow.content_type == content_type,
                )
            ).first()
            return _quota_from_row(row) if row else None

    def get_user_quotas(self, user_id: int) -> List[UserQuota]:
        with self.session() as s:
            stmt = select(UserQuotaRow).where(UserQuotaRow.user_id == user_id).order_by(UserQuotaRow.content_type)
            return [_quota_from_row(r) for r in s.scalars(stmt)]

    def delete_user_quota(self, user_id: int, content_type: str) -> bool:
        with self.session() as s:
            result = s.execute(
                delete(UserQuotaRow).where(
                    UserQuotaRow.user_id == user_id,
                    UserQuotaRow.content_type == content_type,
                )
            )
            return bool(result.rowcount)

    def record_quota_usage(self, user_id: int, content_type: str, request_date: date) -> None:
        with self.session() as s:
            self._require_user(s, user_id)
            s.add(QuotaUsageRow(user_id=user_id, content_type=content_type, request_date=request_date))

    def _usage_filter(self, user_id: int, content_type: str, start: date, end: date):
        return (
            QuotaUsageRow.user_id == user_id,
            QuotaUsageRow.content_type == content_type,
            QuotaUsageRow.request_date >= start,
            QuotaUsageRow.request_date <= end,
        )

    def count_quota_usage(self, user_id: int, content_type: str, start: date, end: date) -> int:
        """Usage rows with ``start <= request_date <= end``."""
        with self.session() as s:
            stmt = select(func.count(QuotaUsageRow.id)).where(*self._usage_filter(user_id, content_type, start, end))
            return int(s.scalar(stmt) or 0)

    def oldest_quota_usage(self, user_id: int, content_type: str, start: date, end: date) -> Optional[date]:
        with self.session() as s:
            stmt = select(func.min(QuotaUsageRow.request_date)).where(
                *self._usage_filter(user_id, content_type, start, end)
            )
            return s.scalar(stmt)

    def cleanup_quota_usage(self, before: date) -> int:
        with self.session() as s:
            result = s.execute(delete(QuotaUsageRow).where(QuotaUsageRow.request_date < before))
            return result.rowcount or 0

    # =========================
    # Approval requests
    # =========================
    def create_approval_request(
        self,
        user_id: int,
        content_type: str,
        content_title: str,
        content_key: str,
        content_guids: List[str],
        proposed_router_decision: RouterDecision,
        triggered_by: str,
        router_rule_id: Optional[int] = None,
        approval_reason: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> ApprovalRequest:
        """
        Insert a pending request. An expired request for the same user and
        content is replaced; any other existing request is an error.
        """
        now = utcnow()
        with self.session() as s:
            self._require_user(s, user_id)
            if router_rule_id is not None and s.get(RouterRuleRow, router_rule_id) is None:
                raise StorageError(f"Router rule {router_rule_id} does not exist")

            existing = s.scalars(
                select(ApprovalRequestRow).where(
                    ApprovalRequestRow.user_id == user_id,
                    ApprovalRequestRow.content_key == content_key,
                )
            ).first()
            if existing is not None:
                if existing.status != "expired":
                    raise StorageError(
                        f"Approval request {existing.id} already exists for user {user_id} "
                        f"and '{content_key}' ({existing.status})"
                    )
                s.delete(existing)
                s.flush()

            row = ApprovalRequestRow(
                user_id=user_id,
                content_type=content_type,
                content_title=content_title,
                content_key=content_key,
                content_guids=list(content_guids),
                proposed_router_decision=proposed_router_decision.to_dict(),
                router_rule_id=router_rule_id,
                triggered_by=triggered_by,
                approval_reason=approval_reason,
                status="pending",
                expires_at=expires_at,
                created_at=now,
                updated_at=now,
            )
            s.add(row)
            s.flush()
            user = s.get(UserRow, user_id)
            return _approval_from_row(row, user.name if user else None)

    def _approval_select(self):
        return (
            select(ApprovalRequestRow, UserRow.name)
            .outerjoin(UserRow, UserRow.id == ApprovalRequestRow.user_id)
        )

    def get_approval_request(self, request_id: int) -> Optional[ApprovalRequest]:
        with self.session() as s:
            found = s.execute(self._approval_select().where(ApprovalRequestRow.id == request_id)).first()
            return _approval_from_row(found[0], found[1]) if found else None

    def get_approval_by_content(self, user_id: int, content_key: str) -> Optional[ApprovalRequest]:
        with self.session() as s:
            found = s.execute(
                self._approval_select().where(
                    ApprovalRequestRow.user_id == user_id,
                    ApprovalRequestRow.content_key == content_key,
                )
            ).first()
            return _approval_from_row(found[0], found[1]) if found else None

    def transition_approval(
        self,
        request_id: int,
        new_status: str,
        approved_by: Optional[int] = None,
        notes: Optional[str] = None,
        unexpired_at: Optional[datetime] = None,
    ) -> bool:
        """
        Move a request out of ``pending`` with a single conditional UPDATE.

        Returns False if the row was no longer pending (or, when
        ``unexpired_at`` is given, had already passed its expiry at that
        time). Only one concurrent caller can win.
        """
        now = utcnow()
        conditions = [ApprovalRequestRow.id == request_id, ApprovalRequestRow.status == "pending"]
        if unexpired_at is not None:
            conditions.append(
                (ApprovalRequestRow.expires_at.is_(None)) | (ApprovalRequestRow.expires_at >= unexpired_at)
            )
        with self.session() as s:
            result = s.execute(
                update(ApprovalRequestRow)
                .where(*conditions)
                .values(status=new_status, approved_by=approved_by, approval_notes=notes, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    def expire_pending_approvals(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        with self.session() as s:
            result = s.execute(
                update(ApprovalRequestRow)
                .where(
                    ApprovalRequestRow.status == "pending",
                    ApprovalRequestRow.expires_at.is_not(None),
                    ApprovalRequestRow.expires_at < now,
                )
                .values(status="expired", updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            return result.rowcount or 0

    def delete_approval_request(self, request_id: int) -> bool:
        with self.session() as s:
            result = s.execute(delete(ApprovalRequestRow).where(ApprovalRequestRow.id == request_id))
            return bool(result.rowcount)

    def list_pending_approvals(self, now: Optional[datetime] = None,
                               limit: int = 50, offset: int = 0) -> List[ApprovalRequest]:
        now = now or utcnow()
        with self.session() as s:
            stmt = (
                self._approval_select()
                .where(
                    ApprovalRequestRow.status == "pending",
                    (ApprovalRequestRow.expires_at.is_(None)) | (ApprovalRequestRow.expires_at >= now),
                )
                .order_by(ApprovalRequestRow.created_at, ApprovalRequestRow.id)
                .limit(limit)
                .offset(offset)
            )
            return [_approval_from_row(row, name) for row, name in s.execute(stmt)]

    def approval_history(
        self,
        user_id: Optional[int] = None,
        status: Optional[str] = None,
        content_type: Optional[str] = None,
        triggered_by: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[ApprovalRequest]:
        stmt = self._approval_select()
        if user_id is not None:
            stmt = stmt.where(ApprovalRequestRow.user_id == user_id)
        if status:
            stmt = stmt.where(ApprovalRequestRow.status == status)
        if content_type:
            stmt = stmt.where(ApprovalRequestRow.content_type == content_type)
        if triggered_by:
            stmt = stmt.where(ApprovalRequestRow.triggered_by == triggered_by)
        stmt = stmt.order_by(ApprovalRequestRow.created_at.desc(), ApprovalRequestRow.id.desc())
        with self.session() as s:
            return [_approval_from_row(row, name) for row, name in s.execute(stmt.limit(limit).offset(offset))]

    def approval_counts(self, user_id: Optional[int] = None) -> Dict[str, int]:
        stmt = select(ApprovalRequestRow.status, func.count(ApprovalRequestRow.id)).group_by(ApprovalRequestRow.status)
        if user_id is not None:
            stmt = stmt.where(ApprovalRequestRow.user_id == user_id)
        with self.session() as s:
            return {status: int(count) for status, count in s.execute(stmt)}

    def cleanup_expired_approvals(self, before: datetime) -> int:
        with self.session() as s:
            result = s.execute(
                delete(ApprovalRequestRow).where(
                    ApprovalRequestRow.status == "expired",
                    ApprovalRequestRow.updated_at < before,
                )
            )
            return result.rowcount or 0
