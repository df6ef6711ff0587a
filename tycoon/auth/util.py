from __future__ import annotations

import base64
import os
from urllib.parse import urlencode


def b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def random_token(nbytes: int = 32) -> str:
    return b64url(os.urandom(nbytes))


def sanitize_return_path(return_to: str | None) -> str:
    """
    Prevent open-redirects: allow only relative paths like `/portfolio`.
    """
    p = (return_to or "").strip()
    if not p or not p.startswith("/"):
        return "/"
    # Scheme-relative (`//evil.com`) and backslash variants browsers normalise to it.
    if p.startswith("//") or p.startswith("/\\"):
        return "/"
    p = p.replace("\r", "").replace("\n", "")
    return p or "/"


def error_redirect_url(code: str, **extra: str) -> str:
    """Application-root URL carrying a machine-readable `error` code for the front end."""
    params = {"error": code}
    params.update({k: v for k, v in extra.items() if v})
    return f"/?{urlencode(params)}"
