from __future__ import annotations

import itertools
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime, timezone
from typing import Dict, Optional, Tuple

from tycoon.auth.models import NewUser, User, normalize_email

logger = logging.getLogger(__name__)


class DuplicateUserError(Exception):
    """A uniqueness constraint rejected an insert or update."""

    def __init__(self, field: str):
        self.field = field  # username|email|display_name|provider_identity
        super().__init__(f"Duplicate user {field}")


class UserStore(ABC):
    """
    Storage collaborator for user identities.

    The store is the single source of truth for uniqueness: username, email,
    display name and (provider, provider_id) are all unique, and violations
    raise DuplicateUserError rather than being checked by callers.
    """

    @abstractmethod
    def get_by_id(self, user_id: int) -> Optional[User]: ...

    @abstractmethod
    def get_by_username(self, username: str) -> Optional[User]: ...

    @abstractmethod
    def get_by_email(self, email: str) -> Optional[User]: ...

    @abstractmethod
    def get_by_display_name(self, display_name: str) -> Optional[User]: ...

    @abstractmethod
    def get_by_provider(self, provider: str, provider_id: str) -> Optional[User]: ...

    @abstractmethod
    def create(self, new_user: NewUser) -> User: ...

    @abstractmethod
    def update_display_name(self, user_id: int, display_name: str) -> Optional[User]: ...


class InMemoryUserStore(UserStore):
    """Process-local store for development and tests."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._users: Dict[int, User] = {}
        self._by_username: Dict[str, int] = {}
        self._by_email: Dict[str, int] = {}
        self._by_display_name: Dict[str, int] = {}
        self._by_provider: Dict[Tuple[str, str], int] = {}

    def _lookup(self, index: Dict, key) -> Optional[User]:
        with self._lock:
            user_id = index.get(key)
            return self._users.get(user_id) if user_id is not None else None

    def get_by_id(self, user_id: int) -> Optional[User]:
        with self._lock:
            return self._users.get(user_id)

    def get_by_username(self, username: str) -> Optional[User]:
        return self._lookup(self._by_username, username)

    def get_by_email(self, email: str) -> Optional[User]:
        return self._lookup(self._by_email, normalize_email(email))

    def get_by_display_name(self, display_name: str) -> Optional[User]:
        return self._lookup(self._by_display_name, display_name)

    def get_by_provider(self, provider: str, provider_id: str) -> Optional[User]:
        return self._lookup(self._by_provider, (provider, str(provider_id)))

    def create(self, new_user: NewUser) -> User:
        with self._lock:
            if new_user.username in self._by_username:
                raise DuplicateUserError("username")
            if new_user.email is not None and new_user.email in self._by_email:
                raise DuplicateUserError("email")
            if new_user.display_name in self._by_display_name:
                raise DuplicateUserError("display_name")
            provider_key = (new_user.provider, new_user.provider_id or "")
            if new_user.provider_id is not None and provider_key in self._by_provider:
                raise DuplicateUserError("provider_identity")

            user = User(
                id=next(self._ids),
                username=new_user.username,
                provider=new_user.provider,
                display_name=new_user.display_name,
                email=new_user.email,
                password_hash=new_user.password_hash,
                provider_id=new_user.provider_id,
                avatar=new_user.avatar,
                created_at=datetime.now(timezone.utc),
            )
            self._users[user.id] = user
            self._by_username[user.username] = user.id
            self._by_display_name[user.display_name] = user.id
            if user.email is not None:
                self._by_email[user.email] = user.id
            if user.provider_id is not None:
                self._by_provider[provider_key] = user.id
            return user

    def update_display_name(self, user_id: int, display_name: str) -> Optional[User]:
        with self._lock:
            user = self._users.get(user_id)
            if user is None:
                return None
            holder = self._by_display_name.get(display_name)
            if holder is not None and holder != user_id:
                raise DuplicateUserError("display_name")
            updated = replace(user, display_name=display_name)
            del self._by_display_name[user.display_name]
            self._by_display_name[display_name] = user_id
            self._users[user_id] = updated
            return updated


def build_user_store() -> UserStore:
    """Postgres when configured, else an in-memory store (single-instance dev only)."""
    from tycoon.storage.config import load_database_config

    dsn = load_database_config().dsn
    if dsn:
        from tycoon.storage.postgres_users import PostgresUserStore

        return PostgresUserStore(dsn)
    logger.warning("Postgres not configured; users are kept in memory and lost on restart")
    return InMemoryUserStore()
