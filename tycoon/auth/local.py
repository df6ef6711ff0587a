from __future__ import annotations

import logging
from typing import Optional

import bcrypt

from tycoon.auth.errors import AuthError, ConflictError, ValidationError
from tycoon.auth.models import NewUser, User, normalize_email
from tycoon.storage.users import DuplicateUserError, UserStore

logger = logging.getLogger(__name__)

BCRYPT_ROUNDS = 12

INVALID_CREDENTIALS = "Invalid credentials"
MISSING_CREDENTIALS = "Missing credentials"

_CONFLICT_MESSAGES = {
    "email": "User with this email already exists",
    "username": "Username is already taken",
    "display_name": "This trader name is already taken. Please choose a different one.",
}


def hash_password(password: str) -> str:
    """
    Hash password with bcrypt (cost factor 12).

    Args:
        password: Plain text password

    Returns:
        Bcrypt hash string
    """
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=BCRYPT_ROUNDS)).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    """
    Verify password against bcrypt hash with constant-time comparison.

    Malformed hashes verify as False instead of raising.
    """
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False


class CredentialVerifier:
    """Local username/password identities."""

    def __init__(self, users: UserStore):
        self._users = users

    def register(self, username: Optional[str], email: Optional[str], password: Optional[str]) -> User:
        """
        Create a local user.

        Raises:
            ValidationError: a field is missing or blank
            ConflictError: the email (any letter case) or the username is already registered
        """
        username = (username or "").strip()
        normalized_email = normalize_email(email)
        if not username or not normalized_email or not password:
            raise ValidationError("Username, email, and password are required")

        if self._users.get_by_email(normalized_email) is not None:
            raise ConflictError(_CONFLICT_MESSAGES["email"])
        if self._users.get_by_username(username) is not None:
            raise ConflictError(_CONFLICT_MESSAGES["username"])

        try:
            user = self._users.create(
                NewUser(
                    username=username,
                    provider="local",
                    display_name=username,
                    email=normalized_email,
                    password_hash=hash_password(password),
                )
            )
        except DuplicateUserError as e:
            # Lost a race with a concurrent registration, or the username is someone's display name.
            raise ConflictError(_CONFLICT_MESSAGES.get(e.field, "User already exists")) from e

        logger.info("Registered local user id=%s", user.id)
        return user

    def verify(self, username: str, password: str) -> Optional[User]:
        """Return the user for valid local credentials, else None."""
        user = self._users.get_by_username(username)
        if user is None or not user.password_hash:
            return None
        if not verify_password(password, user.password_hash):
            return None
        return user

    def login(self, username: Optional[str], password: Optional[str]) -> User:
        """
        Authenticate local credentials.

        Unknown users, federated-only users and wrong passwords all raise the same AuthError.
        A missing username or password raises AuthError(MISSING_CREDENTIALS).
        """
        username = (username or "").strip()
        if not username or not password:
            raise AuthError(MISSING_CREDENTIALS)
        user = self.verify(username, password)
        if user is None:
            raise AuthError(INVALID_CREDENTIALS)
        return user
