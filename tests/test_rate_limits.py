from __future__ import annotations

import os
import time
import unittest
from unittest import mock

from carmarket import create_app
from carmarket.extensions import db
from carmarket.utils import rate_limit
from carmarket.utils.rate_limit import RATE_TIERS, reset_memory_windows


class RateLimitTestCase(unittest.TestCase):
    _ENV_KEYS = ("SQLALCHEMY_DATABASE_URI", "DATABASE_URL", "RATE_LIMIT_IN_TESTS", "RATE_LIMIT_REDIS_URL", "REDIS_URL")

    @classmethod
    def setUpClass(cls):
        cls._saved_env = {key: os.getenv(key) for key in cls._ENV_KEYS}
        os.environ["SQLALCHEMY_DATABASE_URI"] = "sqlite:///:memory:"
        os.environ["DATABASE_URL"] = "sqlite:///:memory:"
        os.environ.pop("RATE_LIMIT_REDIS_URL", None)
        os.environ.pop("REDIS_URL", None)
        cls.app = create_app()
        cls.app.config.update(TESTING=True)
        with cls.app.app_context():
            db.create_all()
        cls.client = cls.app.test_client()

    @classmethod
    def tearDownClass(cls):
        for key, value in cls._saved_env.items():
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = value
        reset_memory_windows()

    def setUp(self):
        os.environ["RATE_LIMIT_IN_TESTS"] = "1"
        reset_memory_windows()

    def tearDown(self):
        os.environ.pop("RATE_LIMIT_IN_TESTS", None)
        reset_memory_windows()

    def _login(self):
        return self.client.post("/api/auth/login", json={"email": "nobody@example.co.ke", "password": "wrong-password"})

    def test_auth_minute_tier_returns_429_with_retry_after(self):
        limit, _window = RATE_TIERS["auth_minute"]
        for _ in range(limit):
            self.assertNotEqual(self._login().status_code, 429)
        blocked = self._login()
        self.assertEqual(blocked.status_code, 429)
        self.assertGreaterEqual(int(blocked.headers.get("Retry-After")), 1)
        body = blocked.get_json()
        self.assertFalse(body["ok"])
        self.assertEqual(body["error"]["code"], "RATE_LIMITED")
        self.assertGreaterEqual(body["error"]["retry_after_seconds"], 1)

    def test_auth_budget_does_not_block_browsing(self):
        limit, _window = RATE_TIERS["auth_minute"]
        for _ in range(limit + 1):
            self._login()
        self.assertEqual(self.client.get("/api/listings").status_code, 200)

    def test_browse_budget_spans_all_paths(self):
        limit, _window = RATE_TIERS["browse"]
        for listing_id in range(1, limit + 1):
            self.assertNotEqual(self.client.get(f"/api/listings/{listing_id}").status_code, 429)
        blocked = self.client.get("/api/categories")
        self.assertEqual(blocked.status_code, 429)
        self.assertEqual(blocked.get_json()["error"]["code"], "RATE_LIMITED")

    def test_stale_memory_windows_are_pruned(self):
        stale_at = time.time() - rate_limit.LONGEST_WINDOW_SECONDS - 5
        rate_limit._memory_hits["browse:ip:10.0.0.9"] = [stale_at]
        with mock.patch.object(rate_limit, "MEMORY_PRUNE_THRESHOLD", 0):
            allowed, _retry = rate_limit.check_limit("browse:ip:10.0.0.10", limit=5, window_seconds=60)
        self.assertTrue(allowed)
        self.assertNotIn("browse:ip:10.0.0.9", rate_limit._memory_hits)
        self.assertIn("browse:ip:10.0.0.10", rate_limit._memory_hits)

    def test_tiers_skipped_in_tests_unless_enabled(self):
        os.environ.pop("RATE_LIMIT_IN_TESTS", None)
        limit, _window = RATE_TIERS["auth_minute"]
        for _ in range(limit + 2):
            self.assertNotEqual(self._login().status_code, 429)


if __name__ == "__main__":
    unittest.main()
