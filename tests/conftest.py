# tests/conftest.py
"""
Shared fixtures for apishield tests.

Clocks are injected everywhere so window and expiry behaviour can be tested
without sleeping.
"""

from datetime import datetime, timedelta, timezone

import pytest

from apishield.core.config import SecurityConfig, Settings
from apishield.core.logging_config import reset_logging
from apishield.core.rate_limit import RateLimiter
from apishield.core.rate_limit_config import RateRule, RuleSet
from apishield.core.security import TokenStore


class FakeClock:
    """Callable clock that only moves when told to"""

    def __init__(self, start):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, amount):
        self.now = self.now + amount
        return self.now


@pytest.fixture
def utc_clock():
    """Wall clock for the token store, starting at a fixed instant"""
    return FakeClock(datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def token_store(utc_clock):
    return TokenStore(
        token_ttl=timedelta(minutes=10),
        session_ttl=timedelta(hours=1),
        max_tokens_per_session=4,
        clock=utc_clock
    )


@pytest.fixture
def make_limiter():
    """Build a limiter with a frozen clock; tests pass `now` explicitly"""
    def _make(limit=30, period_seconds=60, overrides=None, retention_factor=2.0):
        rules = RuleSet(RateRule(limit=limit, period_seconds=period_seconds), overrides)
        return RateLimiter(rules, retention_factor=retention_factor, clock=lambda: 0.0)
    return _make


@pytest.fixture
def test_settings(tmp_path):
    """Settings for in-process apps: plain-http cookies, logs in tmp"""
    return Settings(
        SECURE_COOKIES=False,
        LOG_DIR=str(tmp_path / "logs"),
        RATE_LIMIT_BACKEND="memory"
    )


@pytest.fixture
def security_config():
    return SecurityConfig.model_validate({
        "cookies": {"sameSite": "Strict"},
        "rateLimit": {
            "default": "100/minute",
            "perEndpoint": {"POST /api/comments": {"limit": 3, "periodSeconds": 60}}
        }
    })


@pytest.fixture(autouse=True)
def close_log_files():
    """Apps built in tests log into tmp dirs; detach those files afterwards"""
    yield
    reset_logging()
