from __future__ import annotations

import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from itsdangerous import BadSignature, BadTimeSignature, URLSafeTimedSerializer

from tycoon.auth.config import AuthConfig
from tycoon.auth.models import HandshakeState, User
from tycoon.auth.util import random_token

SESSION_SALT = "tycoon-session-v1"


@dataclass
class Session:
    """
    Server-side browser session.

    `user` is the cached identity for authenticated sessions (None when anonymous).
    `data` is exposed to the framework as `request.session` (the delegated OAuth
    client keeps its own state there). `handshakes` holds PKCE state per flow and
    is only touched through the store so read-then-delete stays atomic.
    """

    id: str
    created_at: float
    last_seen: float
    user: Optional[User] = None
    data: Dict[str, Any] = field(default_factory=dict)
    handshakes: Dict[str, HandshakeState] = field(default_factory=dict)

    @property
    def is_authenticated(self) -> bool:
        return self.user is not None

    @property
    def is_empty(self) -> bool:
        return self.user is None and not self.data and not self.handshakes


class SessionStore(ABC):
    """
    Holds sessions and the handshake state carried inside them.

    The in-memory implementation is process-local: the request that starts an
    OAuth handshake and its callback must reach the same instance. Multi-instance
    deployments need a shared implementation of this interface.
    """

    @abstractmethod
    def new(self) -> Session:
        """Create an unsaved session; it becomes loadable once `save` is called."""

    @abstractmethod
    def load(self, session_id: str) -> Optional[Session]: ...

    @abstractmethod
    def save(self, session: Session) -> None: ...

    @abstractmethod
    def delete(self, session_id: str) -> None: ...

    @abstractmethod
    def put_handshake(self, session: Session, key: str, state: HandshakeState) -> None: ...

    @abstractmethod
    def take_handshake(self, session: Session, key: str) -> Optional[HandshakeState]:
        """Atomically remove and return a live handshake; expired ones come back as None."""

    @abstractmethod
    def sweep(self, now: Optional[float] = None) -> int: ...

    def login(self, session: Session, user: User) -> Session:
        """
        Bind `user` to a fresh session id (the old id stops working) and return it.
        """
        fresh = self.new()
        fresh.user = user
        self.save(fresh)
        self.delete(session.id)
        return fresh

    def logout(self, session: Session) -> None:
        self.delete(session.id)
        session.user = None


class InMemorySessionStore(SessionStore):
    def __init__(self, *, session_ttl_seconds: int, handshake_ttl_seconds: int):
        self._lock = threading.Lock()
        self._sessions: Dict[str, Session] = {}
        self._session_ttl = session_ttl_seconds
        self._handshake_ttl = handshake_ttl_seconds

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def new(self) -> Session:
        now = time.time()
        return Session(id=random_token(32), created_at=now, last_seen=now)

    def load(self, session_id: str) -> Optional[Session]:
        now = time.time()
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return None
            if now - session.last_seen >= self._session_ttl:
                del self._sessions[session_id]
                return None
            session.last_seen = now
            return session

    def save(self, session: Session) -> None:
        with self._lock:
            self._sessions[session.id] = session

    def delete(self, session_id: str) -> None:
        with self._lock:
            self._sessions.pop(session_id, None)

    def put_handshake(self, session: Session, key: str, state: HandshakeState) -> None:
        with self._lock:
            session.handshakes[key] = state
            self._sessions[session.id] = session

    def take_handshake(self, session: Session, key: str) -> Optional[HandshakeState]:
        with self._lock:
            state = session.handshakes.pop(key, None)
        if state is None or state.expired(time.time(), self._handshake_ttl):
            return None
        return state

    def sweep(self, now: Optional[float] = None) -> int:
        """Drop idle sessions and expired handshakes. Returns the number of sessions removed."""
        now = time.time() if now is None else now
        removed = 0
        with self._lock:
            for sid in list(self._sessions):
                session = self._sessions[sid]
                if now - session.last_seen >= self._session_ttl:
                    del self._sessions[sid]
                    removed += 1
                    continue
                for key in [k for k, hs in session.handshakes.items() if hs.expired(now, self._handshake_ttl)]:
                    del session.handshakes[key]
        return removed


def session_cookie_name(cfg: AuthConfig) -> str:
    # `__Host-` requires Secure + Path=/ + no Domain; browsers may reject it on HTTP.
    return "__Host-tycoon_session" if cfg.cookie_secure else "tycoon_session"


def _serializer(cfg: AuthConfig) -> Optional[URLSafeTimedSerializer]:
    if not cfg.session_secret:
        return None
    return URLSafeTimedSerializer(secret_key=cfg.session_secret, salt=SESSION_SALT)


def encode_session_id(cfg: AuthConfig, session_id: str) -> Optional[str]:
    s = _serializer(cfg)
    if s is None:
        return None
    return s.dumps(session_id)


def decode_session_id(cfg: AuthConfig, value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    s = _serializer(cfg)
    if s is None:
        return None
    try:
        session_id = s.loads(value, max_age=cfg.session_ttl_seconds)
    except (BadSignature, BadTimeSignature):
        return None
    return session_id if isinstance(session_id, str) and session_id else None


def session_cookie_kwargs(cfg: AuthConfig, value: str) -> dict:
    return {
        "key": session_cookie_name(cfg),
        "value": value,
        "max_age": cfg.session_ttl_seconds,
        "httponly": True,
        "secure": cfg.cookie_secure,
        "samesite": "lax",
        "path": "/",
    }


def clear_session_cookie_kwargs(cfg: AuthConfig) -> dict:
    return {**session_cookie_kwargs(cfg, ""), "max_age": 0}
