from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

PROVIDERS = ("local", "google", "facebook", "twitter")


def normalize_email(email: Optional[str]) -> Optional[str]:
    value = (email or "").strip().lower()
    return value or None


@dataclass(frozen=True)
class User:
    """Persisted identity (local or federated, never both)."""

    id: int
    username: str
    provider: str  # local|google|facebook|twitter
    display_name: str
    email: Optional[str] = None
    password_hash: Optional[str] = None
    provider_id: Optional[str] = None
    avatar: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def is_local(self) -> bool:
        return self.provider == "local"


@dataclass(frozen=True)
class NewUser:
    """Insert payload for the user store; enforces the local-xor-federated invariant."""

    username: str
    provider: str
    display_name: str
    email: Optional[str] = None
    password_hash: Optional[str] = None
    provider_id: Optional[str] = None
    avatar: Optional[str] = None

    def __post_init__(self) -> None:
        if self.provider not in PROVIDERS:
            raise ValueError(f"Unknown provider: {self.provider}")
        if self.provider == "local":
            if not self.password_hash or self.provider_id is not None:
                raise ValueError("Local users need a password hash and no provider id")
        elif not self.provider_id or self.password_hash is not None:
            raise ValueError("Federated users need a provider id and no password hash")
        if self.email is not None and self.email != normalize_email(self.email):
            raise ValueError("Email must be normalized before storage")


@dataclass(frozen=True)
class FederatedProfile:
    """What a provider told us about the person who just signed in."""

    provider: str
    provider_id: str
    handle: Optional[str] = None
    name: Optional[str] = None
    avatar: Optional[str] = None


@dataclass(frozen=True)
class HandshakeState:
    """Ephemeral PKCE correlation record kept in the server-side session."""

    code_verifier: str
    state: str
    created_at: float
    return_to: str = "/"

    def expired(self, now: float, ttl_seconds: int) -> bool:
        return now - self.created_at >= ttl_seconds


def user_summary(user: User, *, include_provider: bool = False) -> Dict[str, Any]:
    out: Dict[str, Any] = {
        "id": user.id,
        "username": user.username,
        "email": user.email,
        "displayName": user.display_name,
        "avatar": user.avatar,
    }
    if include_provider:
        out["provider"] = user.provider
    return out


def status_summary(user: User) -> Dict[str, Any]:
    return {
        "id": user.id,
        "username": user.username,
        "displayName": user.display_name,
        "avatar": user.avatar,
    }
