"""
Auth HTTP server.

JSON endpoints for local accounts and the current identity, plus browser-navigated
redirect endpoints for the federated providers. Sessions live server-side; the
browser only carries a signed session id cookie.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from typing import Any, Dict, Optional, Tuple

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

from tycoon.auth.config import AuthConfig, load_auth_config
from tycoon.auth.errors import AuthCoreError, AuthError, ConflictError, InternalError, RedirectError
from tycoon.auth.identity import IdentityResolver
from tycoon.auth.local import CredentialVerifier
from tycoon.auth.models import User, status_summary, user_summary
from tycoon.auth.session import (
    InMemorySessionStore,
    Session,
    SessionStore,
    clear_session_cookie_kwargs,
    decode_session_id,
    encode_session_id,
    session_cookie_kwargs,
    session_cookie_name,
)
from tycoon.auth.strategies import FederatedFlow, build_flows
from tycoon.auth.util import error_redirect_url
from tycoon.storage.users import UserStore, build_user_store

logger = logging.getLogger(__name__)

FLOW_SLUGS = ("google", "facebook", "twitter", "twitter/fallback")
SWEEP_INTERVAL_SECONDS = 60

_state_lock = threading.Lock()
_user_store: Optional[UserStore] = None
_session_store: Optional[SessionStore] = None
_flows_cache: Optional[Tuple[AuthConfig, SessionStore, Dict[str, FederatedFlow]]] = None
_last_sweep = 0.0


def _get_user_store() -> UserStore:
    global _user_store
    with _state_lock:
        if _user_store is None:
            _user_store = build_user_store()
        return _user_store


def _get_session_store() -> SessionStore:
    global _session_store
    with _state_lock:
        if _session_store is None:
            cfg = load_auth_config()
            _session_store = InMemorySessionStore(
                session_ttl_seconds=cfg.session_ttl_seconds,
                handshake_ttl_seconds=cfg.handshake_ttl_seconds,
            )
        return _session_store


def _get_flows() -> Dict[str, FederatedFlow]:
    global _flows_cache
    cfg = load_auth_config()
    sessions = _get_session_store()
    with _state_lock:
        if _flows_cache is None or _flows_cache[0] is not cfg or _flows_cache[1] is not sessions:
            _flows_cache = (cfg, sessions, build_flows(cfg, sessions))
        return _flows_cache[2]


def _sweep_due(now: float) -> bool:
    global _last_sweep
    with _state_lock:
        if now - _last_sweep < SWEEP_INTERVAL_SECONDS:
            return False
        _last_sweep = now
        return True


def _sweep(sessions: SessionStore, now: float) -> None:
    removed = sessions.sweep(now)
    if removed:
        logger.debug("Session sweep removed %d expired session(s)", removed)


def _no_store(resp):
    resp.headers["Cache-Control"] = "no-store"
    return resp


def _redirect(url: str) -> RedirectResponse:
    return _no_store(RedirectResponse(url=url, status_code=302))


def _error_redirect(code: str, *, details: Optional[str] = None) -> RedirectResponse:
    return _redirect(error_redirect_url(code, details=details or ""))


def _current_session(request: Request) -> Session:
    return request.state.session


def _require_user(request: Request) -> User:
    session = _current_session(request)
    if session is None or session.user is None:
        raise AuthError("Not authenticated")
    return session.user


def _require_session_signing(cfg: AuthConfig) -> None:
    if not cfg.session_secret:
        logger.error("AUTH_SESSION_SECRET is not configured; cannot issue sessions")
        raise InternalError("Session signing is not configured")


def _establish_session(request: Request, user: User) -> None:
    """Log `user` in on a fresh session id; the middleware issues the cookie."""
    request.state.session = _get_session_store().login(_current_session(request), user)


app = FastAPI(title="Tycoon auth")


@app.on_event("startup")
def _startup_maybe_migrate_db() -> None:
    """
    Optional dev behavior: auto-apply DB migrations when DB_AUTO_MIGRATE=1.

    This should never prevent the server from starting; failures are logged.
    """
    try:
        from tycoon.storage.migrate import maybe_auto_migrate

        applied = maybe_auto_migrate()
        if applied is not None:
            logger.info("DB migrations: %s", ", ".join(applied) or "no pending migrations")
    except Exception as e:
        logger.warning("DB migrations: startup auto-migrate failed: %s", str(e))


@app.middleware("http")
async def session_middleware(request: Request, call_next):
    """Attach the server-side session, log the request, and persist/issue the session cookie."""
    start_time = time.time()
    cfg = load_auth_config()
    sessions = _get_session_store()
    if _sweep_due(start_time):
        # The sweep walks every session under the store lock; keep it off the event loop.
        await run_in_threadpool(_sweep, sessions, start_time)

    cookie_name = session_cookie_name(cfg)
    loaded_id = decode_session_id(cfg, request.cookies.get(cookie_name))
    session = sessions.load(loaded_id) if loaded_id else None
    if session is None:
        loaded_id = None
        session = sessions.new()
    request.state.session = session
    # The delegated OAuth client reads and writes `request.session`.
    request.scope["session"] = session.data

    try:
        response = await call_next(request)
    except Exception as e:
        process_time = time.time() - start_time
        logger.exception("%s %s - ERROR after %.3fs: %s", request.method, request.url.path, process_time, str(e))
        response = JSONResponse(status_code=500, content={"message": "Internal server error"})

    current: Optional[Session] = getattr(request.state, "session", None)
    if current is None:
        # Logged out.
        response.set_cookie(**clear_session_cookie_kwargs(cfg))
    elif current.id == loaded_id:
        # Stores may hand out copies on load; write this request's changes back.
        sessions.save(current)
    elif not current.is_empty:
        value = encode_session_id(cfg, current.id)
        if value:
            sessions.save(current)
            response.set_cookie(**session_cookie_kwargs(cfg, value))
        else:
            logger.error("AUTH_SESSION_SECRET is not configured; session for %s not issued", request.url.path)
    elif loaded_id is None and cookie_name in request.cookies:
        # Stale, expired or tampered cookie.
        response.set_cookie(**clear_session_cookie_kwargs(cfg))

    process_time = time.time() - start_time
    logger.debug("%s %s - %d (%.3fs)", request.method, request.url.path, response.status_code, process_time)
    return response


@app.exception_handler(AuthCoreError)
async def _auth_core_error_handler(request: Request, exc: AuthCoreError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"message": exc.message})


@app.exception_handler(RequestValidationError)
async def _request_validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"message": "Invalid request body"})


class RegisterRequest(BaseModel):
    username: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None


class LoginRequest(BaseModel):
    username: Optional[str] = None
    password: Optional[str] = None


class DisplayNameRequest(BaseModel):
    displayName: Optional[str] = None


@app.get("/healthz")
def healthz() -> Dict[str, Any]:
    return {"ok": True}


@app.post("/auth/register")
def auth_register(request: Request, body: RegisterRequest) -> JSONResponse:
    """Local sign-up; the new user is logged in immediately."""
    cfg = load_auth_config()
    _require_session_signing(cfg)

    user = CredentialVerifier(_get_user_store()).register(body.username, body.email, body.password)
    _establish_session(request, user)
    return _no_store(
        JSONResponse(status_code=201, content={"message": "Registration successful", "user": user_summary(user)})
    )


@app.post("/auth/login")
def auth_login(request: Request, body: LoginRequest) -> JSONResponse:
    """
    Local username/password authentication.
    Unknown users, federated-only users and wrong passwords are indistinguishable (401).
    """
    cfg = load_auth_config()
    _require_session_signing(cfg)

    user = CredentialVerifier(_get_user_store()).login(body.username, body.password)
    _establish_session(request, user)
    logger.info("Local login for user id=%s", user.id)
    return _no_store(JSONResponse(content={"message": "Login successful", "user": user_summary(user)}))


@app.post("/auth/logout")
def auth_logout(request: Request) -> JSONResponse:
    session = _current_session(request)
    if session is not None:
        _get_session_store().logout(session)
    request.state.session = None
    return _no_store(JSONResponse(content={"message": "Logout successful"}))


@app.get("/auth/me")
def auth_me(request: Request) -> Dict[str, Any]:
    user = _require_user(request)
    return {"user": user_summary(user, include_provider=True)}


@app.post("/auth/update-display-name")
def auth_update_display_name(request: Request, body: DisplayNameRequest) -> Dict[str, Any]:
    user = _require_user(request)
    updated = IdentityResolver(_get_user_store()).update_display_name(user.id, body.displayName)
    # Keep the session's cached identity in step with storage.
    _current_session(request).user = updated
    return {"message": "Display name updated successfully", "user": user_summary(updated, include_provider=True)}


@app.get("/auth/status")
def auth_status(request: Request) -> Dict[str, Any]:
    session = _current_session(request)
    user = session.user if session is not None else None
    return {"isAuthenticated": user is not None, "user": status_summary(user) if user is not None else None}


async def _begin_flow(slug: str, request: Request) -> RedirectResponse:
    cfg = load_auth_config()
    flow = _get_flows()[slug]
    try:
        if not cfg.session_secret:
            logger.error("AUTH_SESSION_SECRET is not configured; cannot start %s sign-in", slug)
            return _error_redirect(flow.init_failed_code)
        url = await flow.begin(request, _current_session(request), request.query_params.get("returnTo"))
    except RedirectError as e:
        return _error_redirect(e.code)
    except Exception:
        logger.exception("%s OAuth initiation failed", slug)
        return _error_redirect(flow.init_failed_code)
    return _redirect(url)


async def _complete_flow(slug: str, request: Request) -> RedirectResponse:
    flow = _get_flows()[slug]
    session = _current_session(request)
    try:
        result = await flow.complete(request, session)
        user = await run_in_threadpool(IdentityResolver(_get_user_store()).resolve_federated, result.profile)
        _establish_session(request, user)
    except RedirectError as e:
        return _error_redirect(e.code, details=e.details)
    except ConflictError as e:
        logger.warning("%s sign-in rejected: %s", slug, e.message)
        return _error_redirect(flow.failure_code)
    except Exception:
        logger.exception("%s OAuth callback failed", slug)
        return _error_redirect(flow.failure_code)

    logger.info("%s sign-in successful for user id=%s", slug, user.id)
    return _redirect(flow.success_url(result.return_to))


def _register_flow_routes(slug: str) -> None:
    async def begin(request: Request) -> RedirectResponse:
        return await _begin_flow(slug, request)

    async def callback(request: Request) -> RedirectResponse:
        return await _complete_flow(slug, request)

    name = slug.replace("/", "_")
    app.add_api_route(f"/auth/{slug}", begin, methods=["GET"], name=f"auth_{name}_begin")
    app.add_api_route(f"/auth/{slug}/callback", callback, methods=["GET"], name=f"auth_{name}_callback")


for _slug in FLOW_SLUGS:
    _register_flow_routes(_slug)


def run(host: str = "0.0.0.0", port: int = 5000) -> None:
    import uvicorn

    log_level = os.getenv("LOG_LEVEL", "info").upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logger.setLevel(getattr(logging, log_level, logging.INFO))

    # Map Python logging levels to uvicorn log levels
    uvicorn_log_level = (
        log_level.lower() if log_level.lower() in ["critical", "error", "warning", "info", "debug", "trace"] else "info"
    )

    cfg = load_auth_config()
    logger.info(
        "Starting auth server on %s:%d (callback_base_url=%s google=%s facebook=%s twitter=%s)",
        host,
        port,
        cfg.callback_base_url,
        cfg.google.configured,
        cfg.facebook.configured,
        cfg.twitter.configured,
    )
    uvicorn.run(app, host=host, port=port, log_level=uvicorn_log_level)
