from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import HTTPException, Request
from supabase import Client

from iprof.auth.admin_token import ADMIN_SESSION_COOKIE, admin_email_from_token, verify_admin_token
from iprof.auth.config import AuthConfig, load_auth_config
from iprof.auth.models import AuthUser
from iprof.authz.policy import Role, resolve_role
from iprof.hosted.client import HostedNotConfigured, create_user_client, get_service_client

logger = logging.getLogger(__name__)


def require_user(request: Request) -> AuthUser:
    """Return the hosted user the gate attached to the request, or 401."""
    user = getattr(request.state, "user", None)
    if user is None:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user


def optional_user(request: Request) -> Optional[AuthUser]:
    return getattr(request.state, "user", None)


def user_client(request: Request) -> Client:
    """Hosted client acting as the signed-in user."""
    cfg = load_auth_config()
    try:
        return create_user_client(cfg, getattr(request.state, "access_token", None))
    except HostedNotConfigured as e:
        logger.error("Hosted backend not configured: %s", str(e))
        raise HTTPException(status_code=500, detail="Server configuration error")


def service_client() -> Client:
    """Hosted client with the service-role key (bypasses row-level policies)."""
    cfg = load_auth_config()
    try:
        return get_service_client(cfg)
    except HostedNotConfigured as e:
        logger.error("Hosted service role not configured: %s", str(e))
        raise HTTPException(status_code=500, detail="Server configuration error")


def fetch_profile(client: Client, user_id: str, columns: str = "*") -> Optional[Dict[str, Any]]:
    resp = client.table("profiles").select(columns).eq("id", user_id).maybe_single().execute()
    if resp is None:
        return None
    data = getattr(resp, "data", None)
    return data if isinstance(data, dict) else None


def user_role(cfg: AuthConfig, client: Client, user: AuthUser) -> Role:
    profile = fetch_profile(client, user.id, "role")
    return resolve_role(cfg, profile_role=(profile or {}).get("role"), email=user.email)


def admin_session_email(request: Request) -> Optional[str]:
    """Admin email from a valid `admin_session` cookie, else None."""
    cfg = load_auth_config()
    token = request.cookies.get(ADMIN_SESSION_COOKIE)
    if not token or not verify_admin_token(cfg, token):
        return None
    return admin_email_from_token(cfg, token) or ""


def require_admin_session(request: Request) -> str:
    """Admin API routes: valid `admin_session` cookie or 401. Returns the admin email."""
    email = admin_session_email(request)
    if email is None:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return email
