"""
Pytest config.

Pins the repo root on sys.path so `import tycoon` resolves to the working tree even when
a global `pytest` entrypoint is used, and resets process-wide auth state between tests.
"""

from __future__ import annotations

import sys
from pathlib import Path

import pytest


def _ensure_repo_root_on_syspath() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    repo_root_str = str(repo_root)
    if repo_root_str not in sys.path:
        sys.path.insert(0, repo_root_str)


_ensure_repo_root_on_syspath()

TEST_SESSION_SECRET = "test-secret-key-for-testing-purposes-only"

_AUTH_ENV = (
    "APP_ENV",
    "AUTH_PUBLIC_BASE_URL",
    "AUTH_PRODUCTION_BASE_URL",
    "DEPLOYMENT_DOMAINS",
    "AUTH_COOKIE_SECURE",
    "AUTH_SESSION_TTL_SECONDS",
    "AUTH_HANDSHAKE_TTL_SECONDS",
    "AUTH_PROVIDER_TIMEOUT_SECONDS",
    "GOOGLE_CLIENT_ID",
    "GOOGLE_CLIENT_SECRET",
    "FACEBOOK_APP_ID",
    "FACEBOOK_APP_SECRET",
    "TWITTER_CONSUMER_KEY",
    "TWITTER_CONSUMER_SECRET",
    "POSTGRES_DSN",
    "POSTGRES_HOST",
    "POSTGRES_PORT",
    "POSTGRES_DB",
    "POSTGRES_USER",
    "POSTGRES_PASSWORD",
    "DB_AUTO_MIGRATE",
)


@pytest.fixture(autouse=True)
def _isolated_auth_env(monkeypatch: pytest.MonkeyPatch):
    """
    Start every test from a known environment: no providers, no database, a session secret.

    Config loaders are lru_cached; tests that change env vars must call `cache_clear()` again.
    """
    from tycoon.auth.config import load_auth_config
    from tycoon.storage.config import load_database_config

    for name in _AUTH_ENV:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("AUTH_SESSION_SECRET", TEST_SESSION_SECRET)
    load_auth_config.cache_clear()
    load_database_config.cache_clear()
    yield
    load_auth_config.cache_clear()
    load_database_config.cache_clear()


@pytest.fixture(autouse=True)
def _fresh_server_state(monkeypatch: pytest.MonkeyPatch, _isolated_auth_env) -> None:
    """
    The server keeps its stores in module globals. Give each test an empty user store and
    let the session store and flow registry be rebuilt from the test's config on first use.
    """
    import tycoon.api.server as ws
    from tycoon.storage.users import InMemoryUserStore

    monkeypatch.setattr(ws, "_user_store", InMemoryUserStore())
    monkeypatch.setattr(ws, "_session_store", None)
    monkeypatch.setattr(ws, "_flows_cache", None)
    monkeypatch.setattr(ws, "_last_sweep", 0.0)


@pytest.fixture
def twitter_env(monkeypatch: pytest.MonkeyPatch) -> None:
    from tycoon.auth.config import load_auth_config

    monkeypatch.setenv("TWITTER_CONSUMER_KEY", "twitter-client-id")
    monkeypatch.setenv("TWITTER_CONSUMER_SECRET", "twitter-client-secret")
    load_auth_config.cache_clear()
