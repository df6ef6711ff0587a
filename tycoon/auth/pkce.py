"""
OAuth2 Authorization Code + PKCE handshake (Twitter API v2).

Lifecycle per browser session:
    initiate()  -> handshake stored, browser sent to the provider
    complete()  -> handshake taken (read-then-delete), code exchanged, profile fetched

The handshake is removed before any network call, so every callback after
the first one for a given handshake fails the state check.
"""
from __future__ import annotations

import hashlib
import hmac
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Tuple
from urllib.parse import urlencode

import requests

from tycoon.auth.errors import ConfigError, ProtocolError, ProviderError, ProviderTimeoutError
from tycoon.auth.models import FederatedProfile, HandshakeState
from tycoon.auth.session import Session, SessionStore
from tycoon.auth.util import b64url, random_token, sanitize_return_path

logger = logging.getLogger(__name__)

TWITTER_AUTHORIZE_URL = "https://twitter.com/i/oauth2/authorize"
TWITTER_TOKEN_URL = "https://api.twitter.com/2/oauth2/token"
TWITTER_USERINFO_URL = "https://api.twitter.com/2/users/me"
TWITTER_SCOPES = ("tweet.read", "users.read")


@dataclass(frozen=True)
class PKCEClient:
    provider: str
    client_id: Optional[str]
    client_secret: Optional[str]
    redirect_uri: str
    authorize_url: str = TWITTER_AUTHORIZE_URL
    token_url: str = TWITTER_TOKEN_URL
    userinfo_url: str = TWITTER_USERINFO_URL
    scopes: Tuple[str, ...] = TWITTER_SCOPES
    timeout_seconds: float = 10.0

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    @property
    def handshake_key(self) -> str:
        return f"{self.provider}_pkce"


def pkce_challenge(verifier: str) -> str:
    """
    Generate PKCE challenge from verifier using SHA256 (method S256).
    """
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return b64url(digest)


def build_authorize_url(client: PKCEClient, *, state: str, code_challenge: str) -> str:
    params = {
        "response_type": "code",
        "client_id": client.client_id,
        "redirect_uri": client.redirect_uri,
        "scope": " ".join(client.scopes),
        "state": state,
        "code_challenge": code_challenge,
        "code_challenge_method": "S256",
    }
    return f"{client.authorize_url}?{urlencode(params)}"


def exchange_code_for_token(client: PKCEClient, *, code: str, code_verifier: str) -> Dict[str, Any]:
    """
    Exchange authorization code + verifier for an access token (confidential client, HTTP Basic).
    """
    payload = {
        "grant_type": "authorization_code",
        "code": code,
        "redirect_uri": client.redirect_uri,
        "code_verifier": code_verifier,
        "client_id": client.client_id,
    }
    r = requests.post(
        client.token_url,
        data=payload,
        auth=(client.client_id or "", client.client_secret or ""),
        timeout=client.timeout_seconds,
    )
    if r.status_code >= 400:
        # Avoid leaking sensitive info; include minimal context.
        raise ValueError(f"Token exchange failed (status={r.status_code})")
    data = r.json()
    if not isinstance(data, dict) or not data.get("access_token"):
        raise ValueError("Invalid token response")
    return data


def fetch_user_info(client: PKCEClient, *, access_token: str) -> Dict[str, Any]:
    r = requests.get(
        client.userinfo_url,
        params={"user.fields": "profile_image_url"},
        headers={"Authorization": f"Bearer {access_token}"},
        timeout=client.timeout_seconds,
    )
    if r.status_code >= 400:
        raise ValueError(f"User info request failed (status={r.status_code})")
    body = r.json()
    data = body.get("data") if isinstance(body, dict) else None
    if not isinstance(data, dict) or not data.get("id"):
        raise ValueError("Invalid user info response")
    return data


class PKCEHandshake:
    """Initiates and completes one provider's PKCE flow against a session store."""

    def __init__(self, client: PKCEClient, sessions: SessionStore):
        self.client = client
        self._sessions = sessions

    def _code(self, suffix: str) -> str:
        return f"{self.client.provider}_{suffix}"

    def initiate(self, session: Session, return_to: Optional[str] = None) -> str:
        """Store a fresh handshake in `session` and return the provider authorization URL."""
        if not self.client.configured:
            logger.error("%s OAuth credentials missing", self.client.provider)
            raise ConfigError(self._code("config_missing"), "OAuth client credentials are not configured")

        verifier = random_token(32)  # 43 chars base64url -> valid PKCE verifier
        state = random_token(32)
        self._sessions.put_handshake(
            session,
            self.client.handshake_key,
            HandshakeState(
                code_verifier=verifier,
                state=state,
                created_at=time.time(),
                return_to=sanitize_return_path(return_to),
            ),
        )
        return build_authorize_url(self.client, state=state, code_challenge=pkce_challenge(verifier))

    def complete(self, session: Session, params: Mapping[str, str]) -> Tuple[FederatedProfile, str]:
        """
        Validate the callback and exchange the code.

        Returns:
            (profile, return_to) on success

        Raises:
            ProviderError: provider reported an error, or token/user-info exchange failed
            ProviderTimeoutError: provider did not answer in time
            ProtocolError: missing parameters, or state absent/expired/mismatched
        """
        error = (params.get("error") or "").strip()
        code = (params.get("code") or "").strip()
        state = (params.get("state") or "").strip()

        if error:
            self._sessions.take_handshake(session, self.client.handshake_key)
            logger.warning(
                "%s OAuth provider error: %s (%s)",
                self.client.provider,
                error,
                params.get("error_description") or "no description",
            )
            raise ProviderError(self._code("auth_failed"), "Provider reported an error", details=error)

        if not code or not state:
            logger.warning(
                "%s OAuth callback missing code/state (code=%s state=%s)",
                self.client.provider,
                bool(code),
                bool(state),
            )
            raise ProtocolError(self._code("missing_params"), "Missing code or state")

        handshake = self._sessions.take_handshake(session, self.client.handshake_key)
        if handshake is None or not hmac.compare_digest(handshake.state.encode(), state.encode()):
            logger.warning(
                "%s OAuth state mismatch (handshake_present=%s)", self.client.provider, handshake is not None
            )
            raise ProtocolError(self._code("state_mismatch"), "OAuth state mismatch")

        try:
            token = exchange_code_for_token(self.client, code=code, code_verifier=handshake.code_verifier)
            info = fetch_user_info(self.client, access_token=str(token["access_token"]))
        except requests.Timeout as e:
            logger.warning("%s OAuth provider timed out: %s", self.client.provider, e)
            raise ProviderTimeoutError(self._code("provider_timeout"), "Provider timed out") from e
        except (requests.RequestException, ValueError) as e:
            logger.warning("%s OAuth exchange failed: %s", self.client.provider, e)
            raise ProviderError(self._code("auth_failed"), "Token exchange failed") from e

        profile = FederatedProfile(
            provider=self.client.provider,
            provider_id=str(info["id"]),
            handle=(info.get("username") or None),
            name=(info.get("name") or None),
            avatar=(info.get("profile_image_url") or None),
        )
        return profile, handshake.return_to
