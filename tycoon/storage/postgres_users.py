from __future__ import annotations

import logging
from typing import Any, Optional, Sequence

import psycopg
from psycopg import errors as pg_errors

from tycoon.auth.models import NewUser, User, normalize_email
from tycoon.storage.users import DuplicateUserError, UserStore

logger = logging.getLogger(__name__)

_COLUMNS = "id, username, provider, display_name, email, password_hash, provider_id, avatar, created_at"

# Constraint name -> DuplicateUserError field. `migrate` checks these exist after migrating.
UNIQUE_CONSTRAINTS = {
    "users_username_key": "username",
    "users_email_key": "email",
    "users_display_name_key": "display_name",
    "users_provider_identity_key": "provider_identity",
}


def _row_to_user(row: Optional[Sequence[Any]]) -> Optional[User]:
    if not row:
        return None
    user_id, username, provider, display_name, email, password_hash, provider_id, avatar, created_at = row
    return User(
        id=int(user_id),
        username=username,
        provider=provider,
        display_name=display_name,
        email=email,
        password_hash=password_hash,
        provider_id=provider_id,
        avatar=avatar,
        created_at=created_at,
    )


def _duplicate_from(exc: pg_errors.UniqueViolation) -> DuplicateUserError:
    constraint = getattr(getattr(exc, "diag", None), "constraint_name", None) or ""
    return DuplicateUserError(UNIQUE_CONSTRAINTS.get(constraint, constraint or "unknown"))


class PostgresUserStore(UserStore):
    """User store backed by the `users` table; one short-lived connection per call."""

    def __init__(self, dsn: str):
        self._dsn = dsn

    def _connect(self):
        return psycopg.connect(self._dsn)

    def _fetch_one(self, where: str, params: Sequence[Any]) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(f"SELECT {_COLUMNS} FROM users WHERE {where}", params).fetchone()
        return _row_to_user(row)

    def get_by_id(self, user_id: int) -> Optional[User]:
        return self._fetch_one("id = %s", (user_id,))

    def get_by_username(self, username: str) -> Optional[User]:
        return self._fetch_one("username = %s", (username,))

    def get_by_email(self, email: str) -> Optional[User]:
        return self._fetch_one("email = %s", (normalize_email(email),))

    def get_by_display_name(self, display_name: str) -> Optional[User]:
        return self._fetch_one("display_name = %s", (display_name,))

    def get_by_provider(self, provider: str, provider_id: str) -> Optional[User]:
        return self._fetch_one("provider = %s AND provider_id = %s", (provider, str(provider_id)))

    def create(self, new_user: NewUser) -> User:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO users (username, provider, display_name, email, password_hash, provider_id, avatar)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING {_COLUMNS}
                    """,
                    (
                        new_user.username,
                        new_user.provider,
                        new_user.display_name,
                        new_user.email,
                        new_user.password_hash,
                        new_user.provider_id,
                        new_user.avatar,
                    ),
                ).fetchone()
        except pg_errors.UniqueViolation as e:
            raise _duplicate_from(e) from e

        user = _row_to_user(row)
        if user is None:
            raise RuntimeError("INSERT INTO users returned no row")
        return user

    def update_display_name(self, user_id: int, display_name: str) -> Optional[User]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE users SET display_name = %s WHERE id = %s RETURNING {_COLUMNS}",
                    (display_name, user_id),
                ).fetchone()
        except pg_errors.UniqueViolation as e:
            raise _duplicate_from(e) from e
        return _row_to_user(row)
