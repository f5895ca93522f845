"""
Tutoring platform API server.

Hosts the request gate (admin-session and hosted-session checks for every request),
the admin/portal auth endpoints, and the JSON route handlers over the hosted
database, storage, payment and LLM services.
"""

from __future__ import annotations

import logging
import os
import time
from typing import Any, Dict, Mapping, Optional, Tuple

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, RedirectResponse
from postgrest.exceptions import APIError
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException
from supabase import AuthApiError, AuthError

from iprof.api import (
    admin,
    billing,
    content,
    country_packs,
    mock_exam,
    parents,
    performance,
    practice,
    practice_sessions,
    study,
)
from iprof.auth.admin_token import ADMIN_SESSION_COOKIE, admin_email_from_token, issue_admin_token, verify_admin_token
from iprof.auth.config import AuthConfig, load_auth_config
from iprof.auth.deps import fetch_profile, optional_user, require_user
from iprof.auth.gate import evaluate_request
from iprof.auth.hosted import resolve_hosted_user
from iprof.auth.local import verify_admin_credentials
from iprof.auth.models import AuthUser, CookieUpdate, HostedResolution
from iprof.auth.rate_limit import get_sign_in_throttle
from iprof.auth.session import (
    CODE_VERIFIER_COOKIE,
    REFRESH_TOKEN_COOKIE,
    admin_session_cookie_kwargs,
    clear_admin_session_cookie_kwargs,
    clear_hosted_session_cookies,
    cookie_update_kwargs,
    hosted_session_cookies,
)
from iprof.auth.util import redirect_origin
from iprof.authz.policy import Role
from iprof.hosted.client import HostedNotConfigured, create_oauth_client, create_session_client

logger = logging.getLogger(__name__)

app = FastAPI(title="iProf Tutor API")

app.include_router(content.router)
app.include_router(practice.router)
app.include_router(practice_sessions.router)
app.include_router(mock_exam.router)
app.include_router(performance.router)
app.include_router(study.router)
app.include_router(parents.router)
app.include_router(admin.router)
app.include_router(country_packs.router)
app.include_router(billing.router)


# ---- Error rendering: every failure is `{"error": "..."}` ----


@app.exception_handler(StarletteHTTPException)
async def _http_error(_request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})


@app.exception_handler(RequestValidationError)
async def _validation_error(_request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    first = errors[0] if errors else {}
    where = ".".join(str(x) for x in first.get("loc", ()) if x != "body")
    msg = first.get("msg") or "Invalid request"
    return JSONResponse(status_code=400, content={"error": f"{where}: {msg}" if where else msg})


@app.exception_handler(APIError)
async def _hosted_query_error(request: Request, exc: APIError) -> JSONResponse:
    logger.error("Hosted query failed on %s %s: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=500, content={"error": exc.message or "Database error"})


@app.exception_handler(HostedNotConfigured)
async def _hosted_not_configured(request: Request, exc: HostedNotConfigured) -> JSONResponse:
    logger.error("Hosted backend not configured (%s %s): %s", request.method, request.url.path, str(exc))
    return JSONResponse(status_code=500, content={"error": "Server configuration error"})


@app.exception_handler(Exception)
async def _unhandled_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s: %s", request.method, request.url.path, str(exc))
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


# ---- Request gate ----


def _is_ungated_path(path: str) -> bool:
    # Health checks and the payment webhook never carry browser sessions.
    if path in ("/healthz", "/api/billing/webhook"):
        return True
    # These establish (or never need) the hosted session themselves.
    if path in ("/auth/callback", "/auth/oauth", "/api/auth/sign-in", "/api/auth/sign-up", "/api/auth/reset-password"):
        return True
    return False


def _resolve_hosted(cfg: AuthConfig, cookies: Mapping[str, str]) -> HostedResolution:
    if not cfg.hosted_configured:
        return HostedResolution()
    return resolve_hosted_user(cfg, cookies)


def _set_cookies(response, cfg: AuthConfig, updates: Tuple[CookieUpdate, ...]) -> None:
    for update in updates:
        response.set_cookie(**cookie_update_kwargs(cfg, update))


@app.middleware("http")
async def gate_requests(request: Request, call_next):
    """Apply the request gate and log every request."""
    start_time = time.time()
    path = request.url.path or ""
    logger.debug("%s %s", request.method, path)
    try:
        if request.method == "OPTIONS" or _is_ungated_path(path):
            response = await call_next(request)
            logger.debug("%s %s - %d (%.3fs)", request.method, path, response.status_code, time.time() - start_time)
            return response

        cfg = load_auth_config()
        cookies = dict(request.cookies)
        decision = await run_in_threadpool(
            evaluate_request,
            cfg,
            path,
            cookies,
            resolve_hosted=lambda c: _resolve_hosted(cfg, c),
        )

        if decision.location is not None:
            target = str(request.url.replace(path=decision.location, query=""))
            logger.info("Gate: %s %s -> %s (%s)", request.method, path, decision.location, decision.outcome.value)
            resp = RedirectResponse(url=target, status_code=307)
            _set_cookies(resp, cfg, decision.cookies)
            return resp

        request.state.user = decision.user
        request.state.access_token = decision.access_token
        request.state.admin = decision.admin

        response = await call_next(request)
        _set_cookies(response, cfg, decision.cookies)
        logger.debug("%s %s - %d (%.3fs)", request.method, path, response.status_code, time.time() - start_time)
        return response
    except Exception as e:
        process_time = time.time() - start_time
        logger.exception("%s %s - ERROR after %.3fs: %s", request.method, path, process_time, str(e))
        raise


@app.get("/healthz")
def healthz() -> Dict[str, Any]:
    return {"ok": True}


# ---- Admin portal auth ----


@app.post("/api/admin/auth")
def admin_sign_in(credentials: Dict[str, Any]) -> JSONResponse:
    """
    Admin portal sign-in with the allowlisted email and shared password.
    Failed attempts are throttled per email.
    """
    cfg = load_auth_config()
    if not cfg.admin_configured or not cfg.admin_session_secret:
        raise HTTPException(status_code=500, detail="Admin credentials not configured")

    email = str(credentials.get("email") or "").strip().lower()
    password = str(credentials.get("password") or "")
    if not email or not password:
        raise HTTPException(status_code=400, detail="Missing email or password")

    throttle = get_sign_in_throttle()
    if throttle.is_locked(email):
        raise HTTPException(status_code=429, detail="Too many failed sign-in attempts. Please try again later.")

    if not verify_admin_credentials(cfg, email, password):
        remaining = throttle.record_failure(email)
        logger.warning("Admin sign-in failed for %s (%d attempts remaining)", email, remaining)
        raise HTTPException(status_code=401, detail="Invalid email or password")

    throttle.reset(email)
    token = issue_admin_token(cfg, email)
    if not token:
        raise HTTPException(status_code=500, detail="Session signing is not configured (ADMIN_SESSION_SECRET)")

    logger.info("Admin signed in: %s", email)
    resp = JSONResponse(content={"success": True})
    resp.headers["Cache-Control"] = "no-store"
    resp.set_cookie(**admin_session_cookie_kwargs(cfg, token))
    return resp


@app.delete("/api/admin/auth")
def admin_sign_out() -> JSONResponse:
    cfg = load_auth_config()
    resp = JSONResponse(content={"success": True})
    resp.headers["Cache-Control"] = "no-store"
    resp.set_cookie(**clear_admin_session_cookie_kwargs(cfg))
    return resp


@app.get("/api/admin/auth")
def admin_session_status(request: Request) -> JSONResponse:
    cfg = load_auth_config()
    token = request.cookies.get(ADMIN_SESSION_COOKIE)
    if not token or not verify_admin_token(cfg, token):
        return JSONResponse(status_code=401, content={"authenticated": False})
    return JSONResponse(content={"authenticated": True, "email": admin_email_from_token(cfg, token)})


# ---- Hosted-auth session endpoints ----


def _dashboard_path(role: Role) -> str:
    return {
        Role.ADMIN: "/admin/dashboard",
        Role.TEACHER: "/teachers/dashboard",
        Role.PARENT: "/parents/dashboard",
    }.get(role, "/student/dashboard")


def _post_login_path(cfg: AuthConfig, profile: Optional[Dict[str, Any]]) -> str:
    role = Role.parse((profile or {}).get("role"))
    metadata = (profile or {}).get("metadata") or {}
    if not metadata.get("onboarding_complete"):
        return "/auth/onboarding"
    if role == Role.STUDENT and not cfg.skip_parent_confirmation and not metadata.get("parent_confirmed"):
        return "/auth/onboarding/student/waiting"
    return _dashboard_path(role)


@app.get("/auth/callback")
def auth_callback(
    request: Request,
    code: Optional[str] = Query(None),
    admin_check: Optional[str] = Query(None),
) -> RedirectResponse:
    """OAuth / magic-link callback: exchange the code, then route the user by role."""
    cfg = load_auth_config()
    origin = f"{request.url.scheme}://{request.url.netloc}"
    sign_in = RedirectResponse(url=f"{origin}/auth/sign-in", status_code=307)

    if not code or not cfg.hosted_configured:
        return sign_in

    client = create_session_client(cfg)
    try:
        resp = client.auth.exchange_code_for_session(
            {
                "auth_code": code,
                "code_verifier": request.cookies.get(CODE_VERIFIER_COOKIE) or "",
                "redirect_to": f"{origin}/auth/callback",
            }
        )
    except AuthApiError as e:
        logger.warning("Code exchange failed: %s", str(e))
        return sign_in

    session = getattr(resp, "session", None)
    user = getattr(resp, "user", None)
    if session is None or user is None:
        return sign_in

    session_cookies = hosted_session_cookies(
        str(session.access_token), getattr(session, "refresh_token", None), getattr(session, "expires_in", None)
    )
    client.postgrest.auth(str(session.access_token))
    profile_resp = (
        client.table("profiles").select("role, metadata").eq("id", str(user.id)).maybe_single().execute()
    )
    profile = getattr(profile_resp, "data", None) if profile_resp is not None else None

    def _redirect(url: str, cookies: Tuple[CookieUpdate, ...]) -> RedirectResponse:
        out = RedirectResponse(url=url, status_code=307)
        out.headers["Cache-Control"] = "no-store"
        _set_cookies(out, cfg, cookies)
        out.set_cookie(**cookie_update_kwargs(cfg, CookieUpdate(name=CODE_VERIFIER_COOKIE, value="", max_age=0)))
        return out

    if (admin_check or "").lower() == "true":
        if Role.parse((profile or {}).get("role")) != Role.ADMIN:
            client.auth.sign_out()
            logger.warning("Non-admin %s attempted the admin portal", getattr(user, "email", None))
            return _redirect(
                f"{origin}/auth/admin-signin?error=Access denied. Only administrators can access this portal.",
                clear_hosted_session_cookies(),
            )
        return _redirect(f"{origin}/admin/dashboard", session_cookies)

    next_path = _post_login_path(cfg, profile if isinstance(profile, dict) else None)
    base = redirect_origin(origin, request.headers.get("x-forwarded-host"), development=cfg.development)
    return _redirect(f"{base}{next_path}", session_cookies)


OAUTH_PROVIDERS = ("google",)
CODE_VERIFIER_MAX_AGE_SECONDS = 10 * 60
MIN_PASSWORD_LENGTH = 6


def _origin(request: Request) -> str:
    return f"{request.url.scheme}://{request.url.netloc}"


@app.get("/auth/oauth")
def auth_oauth(
    request: Request,
    provider: str = Query("google"),
    admin_check: Optional[str] = Query(None),
) -> RedirectResponse:
    """Start a PKCE OAuth sign-in; the provider sends the browser back to /auth/callback."""
    cfg = load_auth_config()
    origin = _origin(request)
    if provider not in OAUTH_PROVIDERS:
        raise HTTPException(status_code=400, detail="Unsupported sign-in provider")
    if not cfg.hosted_configured:
        return RedirectResponse(url=f"{origin}/auth/sign-in", status_code=307)

    redirect_to = f"{origin}/auth/callback"
    if (admin_check or "").lower() == "true":
        redirect_to += "?admin_check=true"

    client, storage = create_oauth_client(cfg)
    try:
        resp = client.auth.sign_in_with_oauth(
            {
                "provider": provider,
                "options": {
                    "redirect_to": redirect_to,
                    "query_params": {"access_type": "offline", "prompt": "consent"},
                },
            }
        )
    except AuthApiError as e:
        logger.warning("OAuth start failed for %s: %s", provider, str(e))
        return RedirectResponse(url=f"{origin}/auth/sign-in", status_code=307)

    out = RedirectResponse(url=str(resp.url), status_code=307)
    out.headers["Cache-Control"] = "no-store"
    verifier = storage.code_verifier()
    if verifier:
        update = CookieUpdate(name=CODE_VERIFIER_COOKIE, value=verifier, max_age=CODE_VERIFIER_MAX_AGE_SECONDS)
        out.set_cookie(**cookie_update_kwargs(cfg, update))
    return out


@app.post("/api/auth/sign-in")
def auth_sign_in(body: Dict[str, Any]) -> JSONResponse:
    """
    Email/password sign-in against the hosted auth service.

    Sets the session cookies and returns where the browser should go next. With
    `admin: true` only admin profiles are accepted.
    """
    cfg = load_auth_config()
    email = str(body.get("email") or "").strip()
    password = str(body.get("password") or "")
    if not email or not password:
        raise HTTPException(status_code=400, detail="Please enter both email and password")

    client = create_session_client(cfg)
    try:
        resp = client.auth.sign_in_with_password({"email": email, "password": password})
    except AuthApiError as e:
        logger.info("Hosted sign-in rejected for %s: %s", email, e.message)
        raise HTTPException(status_code=401, detail=e.message or "Failed to sign in")

    session = getattr(resp, "session", None)
    user = getattr(resp, "user", None) or getattr(session, "user", None)
    if session is None or user is None:
        raise HTTPException(status_code=401, detail="No user returned from sign in")

    client.postgrest.auth(str(session.access_token))
    profile = fetch_profile(client, str(user.id), "role, metadata")
    role = Role.parse((profile or {}).get("role"))

    if body.get("admin") is True and role != Role.ADMIN:
        client.auth.sign_out()
        logger.warning("Non-admin %s attempted the admin portal", email)
        raise HTTPException(status_code=403, detail="Access denied. Only administrators can access this portal.")

    next_path = "/admin/dashboard" if role == Role.ADMIN else _post_login_path(cfg, profile)
    out = JSONResponse(content={"success": True, "redirect": next_path})
    out.headers["Cache-Control"] = "no-store"
    _set_cookies(
        out,
        cfg,
        hosted_session_cookies(
            str(session.access_token), getattr(session, "refresh_token", None), getattr(session, "expires_in", None)
        ),
    )
    logger.info("Hosted user signed in: %s (%s)", email, role.value)
    return out


@app.post("/api/auth/sign-up")
def auth_sign_up(request: Request, body: Dict[str, Any]) -> Dict[str, Any]:
    """Create a hosted account; the confirmation link lands on /auth/callback."""
    cfg = load_auth_config()
    email = str(body.get("email") or "").strip()
    password = str(body.get("password") or "")
    if not email or not password:
        raise HTTPException(status_code=400, detail="Please enter both email and password")
    if len(password) < MIN_PASSWORD_LENGTH:
        raise HTTPException(status_code=400, detail="Password must be at least 6 characters long")

    role = Role.parse(body.get("userType"))
    if role == Role.ADMIN:
        role = Role.STUDENT
    metadata = {
        "full_name": str(body.get("fullName") or ""),
        "role": role.value,
        "parent_email": (body.get("parentEmail") or None) if role == Role.STUDENT else None,
        "onboarding_complete": False,
    }
    client = create_session_client(cfg)
    try:
        client.auth.sign_up(
            {
                "email": email,
                "password": password,
                "options": {"email_redirect_to": f"{_origin(request)}/auth/callback", "data": metadata},
            }
        )
    except AuthApiError as e:
        logger.info("Hosted sign-up rejected for %s: %s", email, e.message)
        raise HTTPException(status_code=400, detail=e.message or "Failed to create account")
    return {"success": True, "message": "Check your email to confirm your account."}


@app.post("/api/auth/reset-password")
def auth_reset_password(body: Dict[str, Any]) -> Dict[str, Any]:
    cfg = load_auth_config()
    email = str(body.get("email") or "").strip()
    if not email:
        raise HTTPException(status_code=400, detail="Please enter your email address")

    client = create_session_client(cfg)
    try:
        client.auth.reset_password_for_email(email, {"redirect_to": f"{cfg.site_url}/auth/reset-password"})
    except AuthApiError as e:
        logger.warning("Password reset email failed for %s: %s", email, e.message)
        raise HTTPException(status_code=400, detail=e.message or "Failed to send reset email")
    return {"success": True}


@app.post("/api/auth/update-password")
def auth_update_password(
    request: Request,
    body: Dict[str, Any],
    user: AuthUser = Depends(require_user),
) -> Dict[str, Any]:
    """Set a new password for the signed-in user (the reset link signs the user in first)."""
    cfg = load_auth_config()
    password = str(body.get("password") or "")
    confirm = str(body.get("confirmPassword") or "")
    if not password or not confirm:
        raise HTTPException(status_code=400, detail="Please fill in all fields")
    if len(password) < MIN_PASSWORD_LENGTH:
        raise HTTPException(status_code=400, detail="Password must be at least 6 characters long")
    if password != confirm:
        raise HTTPException(status_code=400, detail="Passwords do not match")

    client = create_session_client(cfg)
    try:
        client.auth.set_session(
            getattr(request.state, "access_token", None) or "", request.cookies.get(REFRESH_TOKEN_COOKIE) or ""
        )
        client.auth.update_user({"password": password})
    except AuthError as e:
        logger.warning("Password update failed for %s: %s", user.id, e.message)
        raise HTTPException(status_code=400, detail=e.message or "Failed to reset password")
    logger.info("Password updated for %s", user.id)
    return {"success": True}


@app.post("/api/auth/logout")
def auth_logout() -> JSONResponse:
    cfg = load_auth_config()
    resp = JSONResponse(content={"success": True})
    resp.headers["Cache-Control"] = "no-store"
    _set_cookies(resp, cfg, clear_hosted_session_cookies())
    return resp


@app.get("/api/auth/me")
def auth_me(user: Optional[AuthUser] = Depends(optional_user)) -> Dict[str, Any]:
    if user is None:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return {"id": user.id, "email": user.email, "provider": user.provider}


def run(host: str = "0.0.0.0", port: int = 8080) -> None:
    import uvicorn

    log_level = os.getenv("LOG_LEVEL", "info").upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logger.setLevel(getattr(logging, log_level, logging.INFO))

    uvicorn_log_level = (
        log_level.lower() if log_level.lower() in ["critical", "error", "warning", "info", "debug", "trace"] else "info"
    )

    logger.info("Starting API server on %s:%d (log_level=%s)", host, port, log_level)
    uvicorn.run(app, host=host, port=port, log_level=uvicorn_log_level)
