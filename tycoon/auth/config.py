from __future__ import annotations

import os
from dataclasses import dataclass, replace
from functools import lru_cache
from typing import Optional, Tuple

DEFAULT_PRODUCTION_BASE_URL = "https://globaltradingtycoon.app"
DEFAULT_LOCAL_BASE_URL = "http://localhost:5000"


@dataclass(frozen=True)
class ProviderCredentials:
    client_id: Optional[str]
    client_secret: Optional[str]

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret)


@dataclass(frozen=True)
class AuthConfig:
    # Delegated providers
    google: ProviderCredentials
    facebook: ProviderCredentials
    # Used by both the PKCE flow and the legacy fallback flow
    twitter: ProviderCredentials

    # Deployment
    app_env: str
    public_base_url: Optional[str]  # Explicit override for the callback base URL
    production_base_url: str
    deployment_domains: Tuple[str, ...]

    # Session configuration
    session_secret: Optional[str]  # Required for session signing
    session_ttl_seconds: int
    cookie_secure: bool

    # OAuth handshake
    handshake_ttl_seconds: int
    provider_timeout_seconds: float

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"

    @property
    def callback_base_url(self) -> str:
        """Externally visible base URL that provider callbacks are registered against."""
        if self.public_base_url:
            return self.public_base_url
        if self.is_production:
            return self.production_base_url
        if self.deployment_domains:
            return f"https://{self.deployment_domains[0]}"
        return DEFAULT_LOCAL_BASE_URL

    def callback_url(self, slug: str) -> str:
        return f"{self.callback_base_url}/auth/{slug}/callback"


def _env(name: str) -> Optional[str]:
    return (os.getenv(name, "") or "").strip() or None


def _parse_csv(value: str) -> Tuple[str, ...]:
    items = [x.strip() for x in (value or "").split(",")]
    return tuple(x for x in items if x)


def _env_int(name: str, default: int, *, minimum: int) -> int:
    raw = _env(name)
    try:
        value = int(float(raw)) if raw else default
    except ValueError:
        value = default
    return max(value, minimum)


def _env_float(name: str, default: float, *, minimum: float, maximum: float) -> float:
    raw = _env(name)
    try:
        value = float(raw) if raw else default
    except ValueError:
        value = default
    return min(max(value, minimum), maximum)


@lru_cache(maxsize=1)
def load_auth_config() -> AuthConfig:
    """
    Load authentication configuration from environment variables.

    Provider flows are enabled per provider when both halves of its credential pair are set.
    The callback base URL falls back from AUTH_PUBLIC_BASE_URL to the production URL
    (APP_ENV=production), then to the first DEPLOYMENT_DOMAINS entry, then to localhost.
    """
    app_env = (_env("APP_ENV") or "development").lower()
    public_base_url = (_env("AUTH_PUBLIC_BASE_URL") or "").rstrip("/") or None
    production_base_url = (_env("AUTH_PRODUCTION_BASE_URL") or DEFAULT_PRODUCTION_BASE_URL).rstrip("/")
    deployment_domains = _parse_csv(os.getenv("DEPLOYMENT_DOMAINS", ""))

    cfg = AuthConfig(
        google=ProviderCredentials(_env("GOOGLE_CLIENT_ID"), _env("GOOGLE_CLIENT_SECRET")),
        facebook=ProviderCredentials(_env("FACEBOOK_APP_ID"), _env("FACEBOOK_APP_SECRET")),
        twitter=ProviderCredentials(_env("TWITTER_CONSUMER_KEY"), _env("TWITTER_CONSUMER_SECRET")),
        app_env=app_env,
        public_base_url=public_base_url,
        production_base_url=production_base_url,
        deployment_domains=deployment_domains,
        session_secret=_env("AUTH_SESSION_SECRET"),
        session_ttl_seconds=_env_int("AUTH_SESSION_TTL_SECONDS", 43200, minimum=60),  # 12h default
        cookie_secure=False,
        handshake_ttl_seconds=_env_int("AUTH_HANDSHAKE_TTL_SECONDS", 600, minimum=60),
        provider_timeout_seconds=_env_float("AUTH_PROVIDER_TIMEOUT_SECONDS", 10.0, minimum=1.0, maximum=60.0),
    )

    cookie_secure_env = (_env("AUTH_COOKIE_SECURE") or "").lower()
    if cookie_secure_env in ("1", "true", "yes", "on"):
        cookie_secure = True
    elif cookie_secure_env in ("0", "false", "no", "off"):
        cookie_secure = False
    else:
        # Default: secure cookies when callbacks are served over https; otherwise allow local dev.
        cookie_secure = cfg.callback_base_url.startswith("https://")

    return replace(cfg, cookie_secure=cookie_secure)
