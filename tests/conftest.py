"""Pytest configuration."""

import os

# Ensure test environment
os.environ.setdefault("RL_AMBASSADOR_API_SECRET", "test-ambassador-secret")
os.environ.setdefault("RL_ATTRIBUTION_COOKIE_SECRET", "test-cookie-secret")
os.environ.setdefault("RL_DATABASE_URL", "sqlite+aiosqlite:///test.db")
os.environ.setdefault("RL_DEBUG", "true")
os.environ.setdefault("RL_ENVIRONMENT", "test")
os.environ.setdefault("RL_REDIS_URL", "")

import pytest  # noqa: E402

from referlabs.middleware.rate_limit import reset_rate_limits  # noqa: E402


@pytest.fixture(autouse=True)
def _fresh_rate_limits():
    reset_rate_limits()
    yield
    reset_rate_limits()
