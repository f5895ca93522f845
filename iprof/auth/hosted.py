"""
Hosted-auth (Supabase) session resolution for the request gate.

`resolve_hosted_user` is the server-side equivalent of the SDK's "get current user":
it validates the access token, refreshes the session when the access token has
expired, and reports any cookie changes the response has to carry.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Mapping, Optional

import jwt  # PyJWT
from supabase import AuthApiError, Client

from iprof.auth.config import AuthConfig
from iprof.auth.models import AuthUser, HostedResolution
from iprof.auth.session import (
    ACCESS_TOKEN_COOKIE,
    REFRESH_TOKEN_COOKIE,
    clear_hosted_session_cookies,
    hosted_session_cookies,
)
from iprof.hosted.client import create_session_client

logger = logging.getLogger(__name__)

EXPIRY_LEEWAY_SECONDS = 30

ClientFactory = Callable[[AuthConfig], Client]


def access_token_expired(token: str, *, now: Optional[float] = None) -> bool:
    """
    Local expiry check on the access JWT (no signature check; the hosted service
    still validates the token on every call).
    """
    try:
        claims = jwt.decode(token, options={"verify_signature": False, "verify_exp": False})
    except jwt.PyJWTError:
        return True
    exp = claims.get("exp") if isinstance(claims, dict) else None
    if not isinstance(exp, (int, float)):
        return False
    current = time.time() if now is None else now
    return current >= float(exp) - EXPIRY_LEEWAY_SECONDS


def _user_from_response(resp: Any) -> Optional[AuthUser]:
    user = getattr(resp, "user", None) if resp is not None else None
    if user is None:
        return None
    return AuthUser.from_hosted(user)


def resolve_hosted_user(
    cfg: AuthConfig,
    cookies: Mapping[str, str],
    *,
    client_factory: ClientFactory = create_session_client,
) -> HostedResolution:
    """
    Resolve the signed-in hosted user from the session cookies.

    No cookies means no network call. Auth-API rejections are treated as "signed out"
    (and clear stale cookies); transport errors propagate to the caller.
    """
    access_token = (cookies.get(ACCESS_TOKEN_COOKIE) or "").strip()
    refresh_token = (cookies.get(REFRESH_TOKEN_COOKIE) or "").strip()
    if not access_token and not refresh_token:
        return HostedResolution()

    client = client_factory(cfg)

    if access_token and not access_token_expired(access_token):
        try:
            user = _user_from_response(client.auth.get_user(access_token))
        except AuthApiError as e:
            logger.debug("Access token rejected by hosted auth: %s", str(e))
            user = None
        if user is not None:
            return HostedResolution(user=user, access_token=access_token)

    if not refresh_token:
        return HostedResolution(cookies=clear_hosted_session_cookies())

    try:
        resp = client.auth.refresh_session(refresh_token)
    except AuthApiError as e:
        logger.info("Hosted session refresh rejected: %s", str(e))
        return HostedResolution(cookies=clear_hosted_session_cookies())

    session = getattr(resp, "session", None)
    user = _user_from_response(resp)
    if session is None or user is None:
        return HostedResolution(cookies=clear_hosted_session_cookies())

    new_access = str(getattr(session, "access_token", "") or "")
    new_refresh = getattr(session, "refresh_token", None)
    logger.debug("Refreshed hosted session for user %s", user.id)
    return HostedResolution(
        user=user,
        access_token=new_access,
        cookies=hosted_session_cookies(new_access, new_refresh, getattr(session, "expires_in", None)),
    )
