from __future__ import annotations

import base64
import hashlib
from unittest.mock import MagicMock, patch
from urllib.parse import parse_qs, urlparse

import pytest
import requests

from tycoon.auth.errors import ConfigError, ProtocolError, ProviderError, ProviderTimeoutError
from tycoon.auth.pkce import PKCEClient, PKCEHandshake, pkce_challenge
from tycoon.auth.session import InMemorySessionStore

REDIRECT_URI = "http://localhost:5000/auth/twitter/callback"


def _client(**overrides) -> PKCEClient:
    fields = dict(
        provider="twitter",
        client_id="twitter-client-id",
        client_secret="twitter-client-secret",
        redirect_uri=REDIRECT_URI,
        timeout_seconds=7.0,
    )
    fields.update(overrides)
    return PKCEClient(**fields)


def _response(status: int, body) -> MagicMock:
    r = MagicMock()
    r.status_code = status
    r.json.return_value = body
    return r


@pytest.fixture
def sessions() -> InMemorySessionStore:
    return InMemorySessionStore(session_ttl_seconds=3600, handshake_ttl_seconds=600)


@pytest.fixture
def handshake(sessions: InMemorySessionStore) -> PKCEHandshake:
    return PKCEHandshake(_client(), sessions)


def _start(handshake: PKCEHandshake, sessions: InMemorySessionStore, return_to=None):
    session = sessions.new()
    url = handshake.initiate(session, return_to)
    return session, parse_qs(urlparse(url).query)


def test_pkce_challenge_is_s256_of_verifier() -> None:
    verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
    expected = base64.urlsafe_b64encode(hashlib.sha256(verifier.encode()).digest()).decode().rstrip("=")
    assert pkce_challenge(verifier) == expected == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"


def test_initiate_builds_authorize_url(handshake, sessions) -> None:
    session, q = _start(handshake, sessions)
    stored = session.handshakes["twitter_pkce"]

    assert q["response_type"] == ["code"]
    assert q["client_id"] == ["twitter-client-id"]
    assert q["redirect_uri"] == [REDIRECT_URI]
    assert q["scope"] == ["tweet.read users.read"]
    assert q["code_challenge_method"] == ["S256"]
    assert q["state"] == [stored.state]
    assert q["code_challenge"] == [pkce_challenge(stored.code_verifier)]
    assert 43 <= len(stored.code_verifier) <= 128
    assert stored.return_to == "/"


def test_initiate_generates_unique_state_and_verifier(handshake, sessions) -> None:
    a, _ = _start(handshake, sessions)
    b, _ = _start(handshake, sessions)
    ha, hb = a.handshakes["twitter_pkce"], b.handshakes["twitter_pkce"]
    assert ha.state != hb.state
    assert ha.code_verifier != hb.code_verifier


def test_initiate_keeps_only_safe_return_paths(handshake, sessions) -> None:
    s1, _ = _start(handshake, sessions, "/portfolio")
    s2, _ = _start(handshake, sessions, "//evil.example")
    assert s1.handshakes["twitter_pkce"].return_to == "/portfolio"
    assert s2.handshakes["twitter_pkce"].return_to == "/"


def test_initiate_without_credentials(sessions) -> None:
    hs = PKCEHandshake(_client(client_secret=None), sessions)
    session = sessions.new()
    with pytest.raises(ConfigError) as exc:
        hs.initiate(session)
    assert exc.value.code == "twitter_config_missing"
    assert session.handshakes == {}


def test_complete_exchanges_code_and_fetches_profile(handshake, sessions) -> None:
    session, q = _start(handshake, sessions, "/market")
    verifier = session.handshakes["twitter_pkce"].code_verifier

    token = _response(200, {"access_token": "tw-access", "token_type": "bearer"})
    me = _response(
        200,
        {"data": {"id": "1001", "username": "jdoe", "name": "Jane Doe", "profile_image_url": "https://img/j.png"}},
    )
    with patch("tycoon.auth.pkce.requests.post", return_value=token) as post, patch(
        "tycoon.auth.pkce.requests.get", return_value=me
    ) as get:
        profile, return_to = handshake.complete(session, {"code": "auth-code", "state": q["state"][0]})

    assert return_to == "/market"
    assert profile.provider == "twitter"
    assert profile.provider_id == "1001"
    assert profile.handle == "jdoe"
    assert profile.name == "Jane Doe"
    assert profile.avatar == "https://img/j.png"

    _, kwargs = post.call_args
    assert post.call_args[0][0] == "https://api.twitter.com/2/oauth2/token"
    assert kwargs["data"]["grant_type"] == "authorization_code"
    assert kwargs["data"]["code"] == "auth-code"
    assert kwargs["data"]["code_verifier"] == verifier
    assert kwargs["data"]["redirect_uri"] == REDIRECT_URI
    assert kwargs["auth"] == ("twitter-client-id", "twitter-client-secret")
    assert kwargs["timeout"] == 7.0

    _, gkw = get.call_args
    assert get.call_args[0][0] == "https://api.twitter.com/2/users/me"
    assert gkw["headers"]["Authorization"] == "Bearer tw-access"
    assert gkw["params"] == {"user.fields": "profile_image_url"}
    assert gkw["timeout"] == 7.0

    assert "twitter_pkce" not in session.handshakes


def test_complete_state_mismatch_makes_no_network_call(handshake, sessions) -> None:
    session, _ = _start(handshake, sessions)
    with patch("tycoon.auth.pkce.requests.post") as post, patch("tycoon.auth.pkce.requests.get") as get:
        with pytest.raises(ProtocolError) as exc:
            handshake.complete(session, {"code": "c", "state": "forged"})
    assert exc.value.code == "twitter_state_mismatch"
    post.assert_not_called()
    get.assert_not_called()
    assert "twitter_pkce" not in session.handshakes


def test_complete_without_handshake_is_state_mismatch(handshake, sessions) -> None:
    with patch("tycoon.auth.pkce.requests.post") as post:
        with pytest.raises(ProtocolError) as exc:
            handshake.complete(sessions.new(), {"code": "c", "state": "s"})
    assert exc.value.code == "twitter_state_mismatch"
    post.assert_not_called()


def test_complete_replay_fails(handshake, sessions) -> None:
    session, q = _start(handshake, sessions)
    params = {"code": "auth-code", "state": q["state"][0]}
    token = _response(200, {"access_token": "tw-access"})
    me = _response(200, {"data": {"id": "1001", "username": "jdoe"}})
    with patch("tycoon.auth.pkce.requests.post", return_value=token) as post, patch(
        "tycoon.auth.pkce.requests.get", return_value=me
    ):
        handshake.complete(session, params)
        with pytest.raises(ProtocolError) as exc:
            handshake.complete(session, params)
    assert exc.value.code == "twitter_state_mismatch"
    assert post.call_count == 1


@pytest.mark.parametrize("params", [{}, {"code": "c"}, {"state": "s"}, {"code": " ", "state": "s"}])
def test_complete_missing_params_keeps_handshake(handshake, sessions, params) -> None:
    session, _ = _start(handshake, sessions)
    with pytest.raises(ProtocolError) as exc:
        handshake.complete(session, params)
    assert exc.value.code == "twitter_missing_params"
    assert "twitter_pkce" in session.handshakes


def test_complete_provider_error_carries_details(handshake, sessions) -> None:
    session, q = _start(handshake, sessions)
    with pytest.raises(ProviderError) as exc:
        handshake.complete(session, {"error": "access_denied", "state": q["state"][0]})
    assert exc.value.code == "twitter_auth_failed"
    assert exc.value.details == "access_denied"
    assert "twitter_pkce" not in session.handshakes


def test_complete_token_endpoint_rejection(handshake, sessions) -> None:
    session, q = _start(handshake, sessions)
    with patch("tycoon.auth.pkce.requests.post", return_value=_response(400, {"error": "invalid_grant"})), patch(
        "tycoon.auth.pkce.requests.get"
    ) as get:
        with pytest.raises(ProviderError) as exc:
            handshake.complete(session, {"code": "c", "state": q["state"][0]})
    assert exc.value.code == "twitter_auth_failed"
    get.assert_not_called()


def test_complete_token_response_without_access_token(handshake, sessions) -> None:
    session, q = _start(handshake, sessions)
    with patch("tycoon.auth.pkce.requests.post", return_value=_response(200, {"token_type": "bearer"})):
        with pytest.raises(ProviderError) as exc:
            handshake.complete(session, {"code": "c", "state": q["state"][0]})
    assert exc.value.code == "twitter_auth_failed"


def test_complete_user_info_without_data(handshake, sessions) -> None:
    session, q = _start(handshake, sessions)
    with patch("tycoon.auth.pkce.requests.post", return_value=_response(200, {"access_token": "a"})), patch(
        "tycoon.auth.pkce.requests.get", return_value=_response(200, {"errors": [{"title": "Forbidden"}]})
    ):
        with pytest.raises(ProviderError) as exc:
            handshake.complete(session, {"code": "c", "state": q["state"][0]})
    assert exc.value.code == "twitter_auth_failed"


def test_complete_timeout_has_its_own_code(handshake, sessions) -> None:
    session, q = _start(handshake, sessions)
    with patch("tycoon.auth.pkce.requests.post", side_effect=requests.Timeout("read timed out")):
        with pytest.raises(ProviderTimeoutError) as exc:
            handshake.complete(session, {"code": "c", "state": q["state"][0]})
    assert exc.value.code == "twitter_provider_timeout"


def test_complete_connection_error(handshake, sessions) -> None:
    session, q = _start(handshake, sessions)
    with patch("tycoon.auth.pkce.requests.post", side_effect=requests.ConnectionError("refused")):
        with pytest.raises(ProviderError) as exc:
            handshake.complete(session, {"code": "c", "state": q["state"][0]})
    assert exc.value.code == "twitter_auth_failed"
    assert not isinstance(exc.value, ProviderTimeoutError)
