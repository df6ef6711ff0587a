"""
Error taxonomy for the auth core.

JSON endpoints render these as `{"message": ...}` with `status_code`.
OAuth endpoints never render them; they redirect to `/?error=<code>` instead.
"""
from __future__ import annotations

from typing import Optional


class AuthCoreError(Exception):
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(AuthCoreError):
    """Malformed or missing input."""

    status_code = 400
    default_message = "Invalid request"


class ConflictError(AuthCoreError):
    """A uniqueness rule would be violated (email, username, display name)."""

    status_code = 400
    default_message = "Already taken"


class AuthError(AuthCoreError):
    """Bad credentials, or the request is not authenticated."""

    status_code = 401
    default_message = "Invalid credentials"


class InternalError(AuthCoreError):
    status_code = 500


class RedirectError(AuthCoreError):
    """Failure on a browser-navigated OAuth route, surfaced as `?error=<code>`."""

    def __init__(self, code: str, message: Optional[str] = None, *, details: Optional[str] = None):
        self.code = code
        self.details = details
        super().__init__(message or code)


class ConfigError(RedirectError):
    """Provider credentials (or session signing) are not configured."""


class ProtocolError(RedirectError):
    """OAuth protocol violation: missing parameters, state mismatch."""


class ProviderError(ProtocolError):
    """The provider reported an error or returned an unusable response."""


class ProviderTimeoutError(ProviderError):
    """The provider did not answer within the configured timeout."""
