"""
Provider flows behind one interface.

Every federated sign-in is two browser-navigated requests: `begin` sends the
browser to the provider, `complete` handles the provider's redirect back and
yields a FederatedProfile. The route layer dispatches on the slug registry
returned by `build_flows` and never branches on provider names itself.

Google, Facebook and the legacy Twitter (OAuth 1.0a) flow are delegated to the
Authlib Starlette client, which keeps its state in `request.session`. The
Twitter PKCE flow is hand-rolled (tycoon.auth.pkce) and keeps its state in the
session's handshake slots; the two Twitter flows never share state.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx
from authlib.integrations.starlette_client import OAuth, OAuthError
from fastapi import Request
from starlette.concurrency import run_in_threadpool

from tycoon.auth.config import AuthConfig, ProviderCredentials
from tycoon.auth.errors import ConfigError, ProviderError
from tycoon.auth.models import FederatedProfile
from tycoon.auth.pkce import PKCEClient, PKCEHandshake
from tycoon.auth.session import Session, SessionStore
from tycoon.auth.util import sanitize_return_path

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FlowResult:
    profile: FederatedProfile
    return_to: str = "/"


class FederatedFlow(ABC):
    slug: str  # route segment under /auth/
    provider: str  # provider recorded on the user
    failure_code: str

    @property
    def config_missing_code(self) -> str:
        return self.failure_code

    @property
    def init_failed_code(self) -> str:
        return self.failure_code

    @property
    @abstractmethod
    def configured(self) -> bool: ...

    @abstractmethod
    async def begin(self, request: Request, session: Session, return_to: Optional[str] = None) -> str:
        """Start the flow and return the provider URL to redirect the browser to."""

    @abstractmethod
    async def complete(self, request: Request, session: Session) -> FlowResult:
        """Finish the flow from the provider's callback request."""

    def success_url(self, return_to: str) -> str:
        """Where the browser lands after a successful sign-in."""
        return return_to


class TwitterPKCEFlow(FederatedFlow):
    slug = "twitter"
    provider = "twitter"
    failure_code = "twitter_auth_failed"

    def __init__(self, handshake: PKCEHandshake):
        self.handshake = handshake

    @property
    def config_missing_code(self) -> str:
        return "twitter_config_missing"

    @property
    def init_failed_code(self) -> str:
        return "twitter_init_failed"

    @property
    def configured(self) -> bool:
        return self.handshake.client.configured

    async def begin(self, request: Request, session: Session, return_to: Optional[str] = None) -> str:
        return self.handshake.initiate(session, return_to)

    async def complete(self, request: Request, session: Session) -> FlowResult:
        # Token exchange and user info use blocking HTTP; keep them off the event loop.
        profile, return_to = await run_in_threadpool(self.handshake.complete, session, dict(request.query_params))
        return FlowResult(profile=profile, return_to=return_to)


class DelegatedFlow(FederatedFlow):
    """A flow whose whole exchange is performed by the Authlib client registered as `client_name`."""

    client_name: str
    authorize_params: Dict[str, Any] = {}

    def __init__(self, oauth: OAuth, credentials: ProviderCredentials, redirect_uri: str):
        self._oauth = oauth
        self._credentials = credentials
        self.redirect_uri = redirect_uri

    @property
    def configured(self) -> bool:
        return self._credentials.configured

    @property
    def _return_key(self) -> str:
        return f"{self.client_name}_return_to"

    def _client(self):
        return self._oauth.create_client(self.client_name)

    async def begin(self, request: Request, session: Session, return_to: Optional[str] = None) -> str:
        if not self.configured:
            logger.error("%s OAuth credentials missing", self.slug)
            raise ConfigError(self.config_missing_code, "OAuth client credentials are not configured")
        session.data[self._return_key] = sanitize_return_path(return_to)
        resp = await self._client().authorize_redirect(request, self.redirect_uri, **self.authorize_params)
        return resp.headers["location"]

    async def complete(self, request: Request, session: Session) -> FlowResult:
        return_to = sanitize_return_path(session.data.pop(self._return_key, None))
        if not self.configured:
            raise ConfigError(self.config_missing_code, "OAuth client credentials are not configured")
        client = self._client()
        try:
            token = await client.authorize_access_token(request)
            profile = await self.fetch_profile(client, token)
        except OAuthError as e:
            logger.warning("%s OAuth error: %s", self.slug, e.error)
            raise ProviderError(self.failure_code, "Provider reported an error", details=e.error) from e
        except (httpx.HTTPError, KeyError, TypeError, ValueError) as e:
            logger.warning("%s OAuth exchange failed: %s", self.slug, e)
            raise ProviderError(self.failure_code, "Token exchange failed") from e
        return FlowResult(profile=profile, return_to=return_to)

    @abstractmethod
    async def fetch_profile(self, client, token: Dict[str, Any]) -> FederatedProfile: ...


class GoogleFlow(DelegatedFlow):
    slug = "google"
    provider = "google"
    failure_code = "google_auth_failed"
    client_name = "google"
    authorize_params = {"prompt": "select_account"}

    async def fetch_profile(self, client, token: Dict[str, Any]) -> FederatedProfile:
        info = token.get("userinfo") or await client.userinfo(token=token)
        return FederatedProfile(
            provider=self.provider,
            provider_id=str(info["sub"]),
            name=info.get("name") or None,
            avatar=info.get("picture") or None,
        )


class FacebookFlow(DelegatedFlow):
    slug = "facebook"
    provider = "facebook"
    failure_code = "facebook_auth_failed"
    client_name = "facebook"

    def success_url(self, return_to: str) -> str:
        # The front end shows its welcome notice when `auth_success` is present.
        sep = "&" if "?" in return_to else "?"
        return f"{return_to}{sep}auth_success=true"

    async def fetch_profile(self, client, token: Dict[str, Any]) -> FederatedProfile:
        resp = await client.get("me", params={"fields": "id,name,picture.type(large)"}, token=token)
        resp.raise_for_status()
        info = resp.json()
        picture = ((info.get("picture") or {}).get("data") or {}).get("url")
        return FederatedProfile(
            provider=self.provider,
            provider_id=str(info["id"]),
            name=info.get("name") or None,
            avatar=picture or None,
        )


class TwitterFallbackFlow(DelegatedFlow):
    """Legacy OAuth 1.0a sign-in; same Twitter user ids as the PKCE flow."""

    slug = "twitter/fallback"
    provider = "twitter"
    failure_code = "twitter_fallback_failed"
    client_name = "twitter_fallback"

    async def fetch_profile(self, client, token: Dict[str, Any]) -> FederatedProfile:
        resp = await client.get("account/verify_credentials.json", token=token)
        resp.raise_for_status()
        info = resp.json()
        return FederatedProfile(
            provider=self.provider,
            provider_id=str(info["id_str"]),
            handle=info.get("screen_name") or None,
            name=info.get("name") or None,
            avatar=info.get("profile_image_url_https") or None,
        )


def build_oauth(cfg: AuthConfig) -> OAuth:
    """Register the delegated providers with Authlib."""
    timeout = cfg.provider_timeout_seconds
    oauth = OAuth()
    oauth.register(
        name="google",
        client_id=cfg.google.client_id,
        client_secret=cfg.google.client_secret,
        server_metadata_url="https://accounts.google.com/.well-known/openid-configuration",
        client_kwargs={"scope": "openid email profile", "timeout": timeout},
    )
    oauth.register(
        name="facebook",
        client_id=cfg.facebook.client_id,
        client_secret=cfg.facebook.client_secret,
        authorize_url="https://www.facebook.com/v19.0/dialog/oauth",
        access_token_url="https://graph.facebook.com/v19.0/oauth/access_token",
        api_base_url="https://graph.facebook.com/v19.0/",
        client_kwargs={"scope": "email", "timeout": timeout},
    )
    oauth.register(
        name="twitter_fallback",
        client_id=cfg.twitter.client_id,
        client_secret=cfg.twitter.client_secret,
        request_token_url="https://api.twitter.com/oauth/request_token",
        access_token_url="https://api.twitter.com/oauth/access_token",
        authorize_url="https://api.twitter.com/oauth/authenticate",
        api_base_url="https://api.twitter.com/1.1/",
        client_kwargs={"timeout": timeout},
    )
    return oauth


def build_flows(cfg: AuthConfig, sessions: SessionStore) -> Dict[str, FederatedFlow]:
    """Slug -> flow registry for every federated provider."""
    oauth = build_oauth(cfg)
    pkce = PKCEHandshake(
        PKCEClient(
            provider="twitter",
            client_id=cfg.twitter.client_id,
            client_secret=cfg.twitter.client_secret,
            redirect_uri=cfg.callback_url("twitter"),
            timeout_seconds=cfg.provider_timeout_seconds,
        ),
        sessions,
    )
    flows = [
        GoogleFlow(oauth, cfg.google, cfg.callback_url("google")),
        FacebookFlow(oauth, cfg.facebook, cfg.callback_url("facebook")),
        TwitterPKCEFlow(pkce),
        TwitterFallbackFlow(oauth, cfg.twitter, cfg.callback_url("twitter/fallback")),
    ]
    return {flow.slug: flow for flow in flows}
