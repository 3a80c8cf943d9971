import os
import sys
import unittest
from datetime import date, datetime, timedelta
from unittest.mock import MagicMock

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
from pulsarr.approval import ApprovalGate
from pulsarr.errors import ConfigError
from pulsarr.evaluators import create_evaluators
from pulsarr.models import UserQuota
from pulsarr.quota import QuotaTracker, validate_quota
from pulsarr.resolver import DecisionResolver
from tests.support import make_store, movie, movie_context

NOW = datetime(2024, 3, 14, 15, 30)


class FixedClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


class TestQuotaTracker(unittest.TestCase):
    def setUp(self):
        self.store = make_store()
        self.clock = FixedClock(NOW)
        self.quota = QuotaTracker(self.store, clock=self.clock)

    def test_no_quota_means_unlimited(self):
        self.assertIsNone(self.quota.get_quota_status(1, "movie"))
        self.assertIsNone(self.quota.remaining(1, "movie"))
        self.assertFalse(self.quota.would_exceed(1, "movie"))
        self.assertEqual(self.quota.formatted_status(1, "movie")["warningLevel"], "none")

    def test_daily_quota(self):
        self.quota.set_quota(UserQuota(1, "movie", "daily", 2))
        self.quota.record_usage(1, "movie")
        self.assertEqual(self.quota.remaining(1, "movie"), 1)
        self.quota.record_usage(1, "movie")
        status = self.quota.get_quota_status(1, "movie")
        self.assertTrue(status.exceeded)
        self.assertEqual(status.current_usage, 2)
        self.assertEqual(status.reset_date, datetime(2024, 3, 15))

        # next day the window is empty again
        self.clock.now = NOW + timedelta(days=1)
        self.assertFalse(self.quota.would_exceed(1, "movie"))

    def test_quota_is_per_content_type(self):
        self.quota.set_quota(UserQuota(1, "movie", "daily", 1))
        self.quota.record_usage(1, "show")
        self.assertFalse(self.quota.would_exceed(1, "movie"))

    def test_weekly_rolling_window(self):
        self.quota.set_quota(UserQuota(1, "movie", "weekly_rolling", 2))
        self.store.record_quota_usage(1, "movie", date(2024, 3, 7))
        self.store.record_quota_usage(1, "movie", date(2024, 3, 8))
        status = self.quota.get_quota_status(1, "movie")
        self.assertEqual(status.current_usage, 1)
        self.assertFalse(status.exceeded)
        self.assertEqual(status.reset_date, datetime(2024, 3, 15))

    def test_monthly_window_and_reset(self):
        self.quota.set_quota(UserQuota(1, "movie", "monthly", 3))
        self.store.record_quota_usage(1, "movie", date(2024, 2, 29))
        self.store.record_quota_usage(1, "movie", date(2024, 3, 1))
        status = self.quota.get_quota_status(1, "movie")
        self.assertEqual(status.current_usage, 1)
        self.assertEqual(status.reset_date, datetime(2024, 4, 1))

        self.clock.now = datetime(2024, 12, 31, 23, 59)
        self.assertEqual(self.quota.get_quota_status(1, "movie").reset_date, datetime(2025, 1, 1))

    def test_bypass_approval_is_never_exceeded(self):
        self.quota.set_quota(UserQuota(1, "movie", "daily", 0, bypass_approval=True))
        self.quota.record_usage(1, "movie")
        self.assertFalse(self.quota.would_exceed(1, "movie"))
        self.assertIsNone(self.quota.remaining(1, "movie"))

    def test_zero_limit_is_always_exceeded(self):
        self.quota.set_quota(UserQuota(1, "movie", "daily", 0))
        self.assertTrue(self.quota.would_exceed(1, "movie"))
        self.assertEqual(self.quota.formatted_status(1, "movie")["warningLevel"], "danger")

    def test_formatted_status_levels(self):
        self.quota.set_quota(UserQuota(1, "movie", "daily", 5))
        for _ in range(3):
            self.quota.record_usage(1, "movie")
        self.assertEqual(self.quota.formatted_status(1, "movie")["warningLevel"], "none")
        self.quota.record_usage(1, "movie")
        formatted = self.quota.formatted_status(1, "movie")
        self.assertEqual(formatted["warningLevel"], "warning")
        self.assertEqual(formatted["displayText"], "4/5 used (resets 2024-03-15)")
        self.assertEqual(formatted["status"]["quotaLimit"], 5)

    def test_validation(self):
        for bad in (UserQuota(1, "music", "daily", 1), UserQuota(1, "movie", "yearly", 1),
                    UserQuota(1, "movie", "daily", 1001), UserQuota(1, "movie", "daily", -1),
                    UserQuota(1, "movie", "daily", True)):
            with self.subTest(quota=bad):
                with self.assertRaises(ConfigError):
                    validate_quota(bad)
        validate_quota(UserQuota(1, "show", "monthly", 1000))

    def test_cleanup_respects_retention(self):
        self.store.record_quota_usage(1, "movie", date(2023, 1, 1))
        self.store.record_quota_usage(1, "movie", date(2024, 3, 1))
        self.assertEqual(self.quota.cleanup(retention_days=90), 1)
        self.assertEqual(self.store.count_quota_usage(1, "movie", date(2000, 1, 1), date(2030, 1, 1)), 1)

    def test_bulk_status(self):
        self.quota.set_quota(UserQuota(2, "movie", "daily", 1))
        result = self.quota.bulk_status([1, 2], "movie")
        self.assertIsNone(result[1])
        self.assertEqual(result[2].quota_limit, 1)

    def test_remove_quota(self):
        self.quota.set_quota(UserQuota(1, "movie", "daily", 1))
        self.assertTrue(self.quota.remove_quota(1, "movie"))
        self.assertFalse(self.quota.remove_quota(1, "movie"))
        self.assertIsNone(self.quota.get_quota_status(1, "movie"))


class TestQuotaGating(unittest.TestCase):
    def setUp(self):
        self.store = make_store()
        self.quota = QuotaTracker(self.store, clock=FixedClock(NOW))
        self.quota.set_quota(UserQuota(1, "movie", "daily", 2))
        self.acquirer = MagicMock()
        self.acquirer.acquire.return_value = True
        self.resolver = DecisionResolver(self.store, create_evaluators(self.store))
        self.gate = ApprovalGate(self.store, self.quota, self.acquirer)

    def submit(self, key):
        item = movie(title=f"Movie {key}", key=key)
        context = movie_context(item_key=f"movie:{key}")
        return self.gate.process(item, context, self.resolver.resolve(item, context))

    def test_third_request_over_daily_limit_needs_approval(self):
        self.assertEqual(self.submit(1).status, "routed")
        self.assertEqual(self.submit(2).status, "routed")
        outcome = self.submit(3)

        self.assertEqual(outcome.status, "pending")
        self.assertEqual(outcome.approval_request.triggered_by, "quota_exceeded")
        self.assertEqual(self.acquirer.acquire.call_count, 2)
        self.assertEqual(self.store.count_quota_usage(1, "movie", NOW.date(), NOW.date()), 2)

    def test_failed_acquisition_records_no_usage(self):
        self.acquirer.acquire.return_value = False
        self.assertEqual(self.submit(1).status, "failed")
        self.assertEqual(self.store.count_quota_usage(1, "movie", NOW.date(), NOW.date()), 0)


if __name__ == "__main__":
    unittest.main()
