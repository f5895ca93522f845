from __future__ import annotations

from typing import Optional

from iprof.auth.admin_token import ADMIN_SESSION_COOKIE
from iprof.auth.config import ADMIN_SESSION_MAX_AGE_SECONDS, AuthConfig
from iprof.auth.models import CookieUpdate

# Hosted-auth session cookies (one access JWT, one opaque refresh token).
ACCESS_TOKEN_COOKIE = "sb-access-token"
REFRESH_TOKEN_COOKIE = "sb-refresh-token"
CODE_VERIFIER_COOKIE = "sb-code-verifier"

# Refresh tokens outlive access tokens; the hosted service rotates them on every refresh.
REFRESH_TOKEN_MAX_AGE_SECONDS = 60 * 60 * 24 * 30


def _cookie_kwargs(cfg: AuthConfig, *, key: str, value: str, max_age: int) -> dict:
    return {
        "key": key,
        "value": value,
        "max_age": max_age,
        "httponly": True,
        "secure": cfg.cookie_secure,
        "samesite": "lax",
        "path": "/",
    }


def admin_session_cookie_kwargs(cfg: AuthConfig, value: str) -> dict:
    return _cookie_kwargs(cfg, key=ADMIN_SESSION_COOKIE, value=value, max_age=ADMIN_SESSION_MAX_AGE_SECONDS)


def clear_admin_session_cookie_kwargs(cfg: AuthConfig) -> dict:
    return _cookie_kwargs(cfg, key=ADMIN_SESSION_COOKIE, value="", max_age=0)


def cookie_update_kwargs(cfg: AuthConfig, update: CookieUpdate) -> dict:
    return _cookie_kwargs(cfg, key=update.name, value=update.value, max_age=update.max_age)


def hosted_session_cookies(access_token: str, refresh_token: Optional[str], expires_in: Optional[int]) -> tuple:
    """Cookie updates for a freshly issued hosted session."""
    access_max_age = int(expires_in) if expires_in else 3600
    updates = [CookieUpdate(name=ACCESS_TOKEN_COOKIE, value=access_token, max_age=access_max_age)]
    if refresh_token:
        updates.append(
            CookieUpdate(name=REFRESH_TOKEN_COOKIE, value=refresh_token, max_age=REFRESH_TOKEN_MAX_AGE_SECONDS)
        )
    return tuple(updates)


def clear_hosted_session_cookies() -> tuple:
    return (
        CookieUpdate(name=ACCESS_TOKEN_COOKIE, value="", max_age=0),
        CookieUpdate(name=REFRESH_TOKEN_COOKIE, value="", max_age=0),
    )
