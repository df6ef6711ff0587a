from __future__ import annotations

import logging

from tycoon.auth.errors import AuthError, ConflictError, ValidationError
from tycoon.auth.models import FederatedProfile, NewUser, User
from tycoon.storage.users import DuplicateUserError, UserStore

logger = logging.getLogger(__name__)

DISPLAY_NAME_MIN = 2
DISPLAY_NAME_MAX = 50


def fallback_username(provider: str, provider_id: str) -> str:
    return f"{provider}_{provider_id}"


class IdentityResolver:
    """Maps authenticated identities onto persisted users."""

    def __init__(self, users: UserStore):
        self._users = users

    def resolve_federated(self, profile: FederatedProfile) -> User:
        """
        Find-or-create the user for `(profile.provider, profile.provider_id)`.

        Existing users are returned unchanged; provider profile fields only seed new users.
        Safe under concurrent identical callbacks: the store's uniqueness constraint
        decides the winner and the loser re-fetches the winner's row.
        """
        existing = self._users.get_by_provider(profile.provider, profile.provider_id)
        if existing is not None:
            return existing

        fallback = fallback_username(profile.provider, profile.provider_id)
        username = profile.handle or fallback
        display_name = profile.name or profile.handle or username
        candidates = [(username, display_name)]
        if (username, display_name) != (fallback, fallback):
            candidates.append((fallback, fallback))

        for username, display_name in candidates:
            try:
                user = self._users.create(
                    NewUser(
                        username=username,
                        provider=profile.provider,
                        display_name=display_name,
                        provider_id=profile.provider_id,
                        avatar=profile.avatar,
                    )
                )
            except DuplicateUserError as e:
                winner = self._users.get_by_provider(profile.provider, profile.provider_id)
                if winner is not None:
                    return winner
                logger.info(
                    "New %s user collides on %s with an unrelated account; trying fallback name",
                    profile.provider,
                    e.field,
                )
                continue
            logger.info("Created %s user id=%s", profile.provider, user.id)
            return user

        raise ConflictError(f"Username {fallback!r} is already taken by another account")

    def update_display_name(self, user_id: int, new_name: object) -> User:
        """
        Rename a user. The caller must refresh any cached copy of the user (e.g. the session).

        Raises:
            ValidationError: missing, or not 2-50 characters after trimming
            ConflictError: another user holds the name
            AuthError: the user no longer exists
        """
        if not isinstance(new_name, str) or not new_name.strip():
            raise ValidationError("Display name is required")
        trimmed = new_name.strip()
        if len(trimmed) < DISPLAY_NAME_MIN or len(trimmed) > DISPLAY_NAME_MAX:
            raise ValidationError(
                f"Display name must be between {DISPLAY_NAME_MIN} and {DISPLAY_NAME_MAX} characters"
            )

        holder = self._users.get_by_display_name(trimmed)
        if holder is not None and holder.id != user_id:
            raise ConflictError("This trader name is already taken. Please choose a different one.")

        try:
            updated = self._users.update_display_name(user_id, trimmed)
        except DuplicateUserError as e:
            raise ConflictError("This trader name is already taken. Please choose a different one.") from e
        if updated is None:
            raise AuthError("Not authenticated")

        logger.info("Display name updated for user id=%s", updated.id)
        return updated
