"""E2E tests for authentication flows.

These tests require a running server and are executed in CI or manually.
Run with: pytest -m e2e
"""

import os
import time
import uuid
from typing import Generator

import pytest
import requests

BASE_URL = os.getenv("TYCOON_E2E_BASE_URL", "http://localhost:5000")

pytestmark = pytest.mark.e2e


@pytest.fixture(scope="module")
def wait_for_server() -> Generator[None, None, None]:
    """Wait for server to be ready."""
    max_retries = 30
    for i in range(max_retries):
        try:
            r = requests.get(f"{BASE_URL}/healthz", timeout=2)
            if r.status_code == 200:
                break
        except requests.RequestException:
            if i == max_retries - 1:
                raise Exception("Server failed to start within 30 seconds")
            time.sleep(1)
    yield


@pytest.fixture
def credentials():
    suffix = uuid.uuid4().hex[:8]
    return {"username": f"trader_{suffix}", "email": f"t_{suffix}@x.com", "password": "secret123"}


def test_healthz_endpoint(wait_for_server):
    """Test health check endpoint is accessible."""
    r = requests.get(f"{BASE_URL}/healthz")
    assert r.status_code == 200
    assert r.json()["ok"] is True


def test_auth_required_for_protected_endpoints(wait_for_server):
    """Test that protected endpoints require authentication."""
    r = requests.get(f"{BASE_URL}/auth/me")
    assert r.status_code == 401


def test_register_login_me_logout(wait_for_server, credentials):
    """Full local account lifecycle with one cookie jar."""
    s = requests.Session()

    r = s.post(f"{BASE_URL}/auth/register", json=credentials)
    assert r.status_code == 201
    user_id = r.json()["user"]["id"]

    s.cookies.clear()
    r = s.post(
        f"{BASE_URL}/auth/login",
        json={"username": credentials["username"], "password": credentials["password"]},
    )
    assert r.status_code == 200
    assert r.json()["user"]["id"] == user_id

    r = s.get(f"{BASE_URL}/auth/me")
    assert r.status_code == 200
    assert r.json()["user"]["provider"] == "local"

    r = s.post(f"{BASE_URL}/auth/logout")
    assert r.status_code == 200

    r = s.get(f"{BASE_URL}/auth/me")
    assert r.status_code == 401


def test_login_with_invalid_credentials(wait_for_server):
    r = requests.post(f"{BASE_URL}/auth/login", json={"username": "nobody", "password": "wrong"})
    assert r.status_code == 401
    assert r.json()["message"] == "Invalid credentials"


def test_twitter_callback_without_handshake_redirects_with_error(wait_for_server):
    r = requests.get(
        f"{BASE_URL}/auth/twitter/callback",
        params={"code": "c", "state": "s"},
        allow_redirects=False,
    )
    assert r.status_code == 302
    assert r.headers["location"].startswith("/?error=twitter_")
