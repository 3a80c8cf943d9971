import logging
from datetime import date, datetime, time, timedelta
from typing import Callable, Dict, Iterable, Optional, Tuple

from .errors import ConfigError
from .models import CONTENT_TYPES, QUOTA_TYPES, QuotaStatus, UserQuota

MAX_QUOTA_LIMIT = 1000
DEFAULT_RETENTION_DAYS = 90


def validate_quota(quota: UserQuota) -> None:
    if quota.content_type not in CONTENT_TYPES:
        raise ConfigError(f"Quota content_type must be one of {', '.join(CONTENT_TYPES)}, got '{quota.content_type}'")
    if quota.quota_type not in QUOTA_TYPES:
        raise ConfigError(f"Quota type must be one of {', '.join(QUOTA_TYPES)}, got '{quota.quota_type}'")
    if isinstance(quota.quota_limit, bool) or not isinstance(quota.quota_limit, int) \
            or not 0 <= quota.quota_limit <= MAX_QUOTA_LIMIT:
        raise ConfigError(f"Quota limit must be an integer between 0 and {MAX_QUOTA_LIMIT}")


def _midnight(day: date) -> datetime:
    return datetime.combine(day, time.min)


class QuotaTracker:
    """
    Per-user request counting over daily, rolling-weekly and monthly windows.

    Usage rows are stored at day granularity using the local date of
    ``clock()``. The store is the only state; nothing is cached.
    """

    def __init__(self, store, clock: Callable[[], datetime] = datetime.now):
        self.store = store
        self.clock = clock

    def today(self) -> date:
        return self.clock().date()

    def window(self, quota_type: str, today: Optional[date] = None) -> Tuple[date, date]:
        """Inclusive (start, end) dates counted for ``quota_type``."""
        today = today or self.today()
        if quota_type == 'daily':
            return today, today
        if quota_type == 'weekly_rolling':
            return today - timedelta(days=6), today
        if quota_type == 'monthly':
            return today.replace(day=1), today
        raise ConfigError(f"Unknown quota type '{quota_type}'")

    def reset_date(self, quota: UserQuota, today: date) -> Optional[datetime]:
        if quota.quota_type == 'daily':
            return _midnight(today + timedelta(days=1))
        if quota.quota_type == 'monthly':
            if today.month == 12:
                return _midnight(date(today.year + 1, 1, 1))
            return _midnight(date(today.year, today.month + 1, 1))
        start, end = self.window(quota.quota_type, today)
        oldest = self.store.oldest_quota_usage(quota.user_id, quota.content_type, start, end)
        return _midnight(oldest + timedelta(days=7)) if oldest else None

    def get_quota_status(self, user_id: int, content_type: str) -> Optional[QuotaStatus]:
        """None when the user has no quota for ``content_type``."""
        quota = self.store.get_user_quota(user_id, content_type)
        if quota is None:
            return None
        today = self.today()
        start, end = self.window(quota.quota_type, today)
        usage = self.store.count_quota_usage(user_id, content_type, start, end)
        return QuotaStatus(
            quota_type=quota.quota_type,
            quota_limit=quota.quota_limit,
            current_usage=usage,
            exceeded=not quota.bypass_approval and usage >= quota.quota_limit,
            reset_date=self.reset_date(quota, today),
            bypass_approval=quota.bypass_approval,
        )

    def would_exceed(self, user_id: int, content_type: str) -> bool:
        status = self.get_quota_status(user_id, content_type)
        return bool(status and status.exceeded)

    def remaining(self, user_id: int, content_type: str) -> Optional[int]:
        """Requests left in the current window; None means unlimited."""
        status = self.get_quota_status(user_id, content_type)
        if status is None or status.bypass_approval:
            return None
        return max(0, status.quota_limit - status.current_usage)

    def formatted_status(self, user_id: int, content_type: str) -> dict:
        status = self.get_quota_status(user_id, content_type)
        if status is None:
            return {'status': None, 'displayText': 'No quota configured', 'warningLevel': 'none'}
        if status.bypass_approval:
            return {'status': status.to_dict(), 'displayText': 'Unlimited (quota bypass enabled)',
                    'warningLevel': 'none'}

        display = f"{status.current_usage}/{status.quota_limit} used"
        if status.reset_date:
            display += f" (resets {status.reset_date.date().isoformat()})"

        if status.quota_limit <= 0:
            percentage = 100.0
        else:
            percentage = status.current_usage / status.quota_limit * 100
        if percentage >= 100:
            level = 'danger'
        elif percentage >= 80:
            level = 'warning'
        else:
            level = 'none'
        return {'status': status.to_dict(), 'displayText': display, 'warningLevel': level}

    def bulk_status(self, user_ids: Iterable[int], content_type: str) -> Dict[int, Optional[QuotaStatus]]:
        return {uid: self.get_quota_status(uid, content_type) for uid in user_ids}

    def record_usage(self, user_id: int, content_type: str) -> None:
        self.store.record_quota_usage(user_id, content_type, self.today())
        logging.debug(f"Recorded {content_type} quota usage for user {user_id}")

    def set_quota(self, quota: UserQuota) -> UserQuota:
        validate_quota(quota)
        return self.store.set_user_quota(quota)

    def remove_quota(self, user_id: int, content_type: str) -> bool:
        return self.store.delete_user_quota(user_id, content_type)

    def cleanup(self, retention_days: int = DEFAULT_RETENTION_DAYS) -> int:
        cutoff = self.today() - timedelta(days=retention_days)
        removed = self.store.cleanup_quota_usage(cutoff)
        if removed:
            logging.info(f"Removed {removed} quota usage rows older than {cutoff.isoformat()}")
        return removed
