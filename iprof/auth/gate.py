"""
Request gate.

Every inbound request is classified by path before any handler runs:

- `/admin/...` (except the sign-in and unauthorized pages) needs a valid
  `admin_session` cookie, otherwise the browser is sent to `/admin/unauthorized`.
- everything else resolves the hosted-auth user (refreshing the session when
  needed); the role areas `/student`, `/teachers` and `/parents` send signed-out
  visitors to `/auth/sign-in`.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Mapping, Optional, Tuple

from iprof.auth.admin_token import ADMIN_SESSION_COOKIE, verify_admin_token
from iprof.auth.config import AuthConfig
from iprof.auth.models import AuthUser, CookieUpdate, HostedResolution

ADMIN_PREFIX = "/admin"
ADMIN_PUBLIC_PATHS = ("/admin/sign-in", "/admin/unauthorized")
ADMIN_UNAUTHORIZED_PATH = "/admin/unauthorized"
SIGN_IN_PATH = "/auth/sign-in"
ROLE_PREFIXES = ("/student", "/teachers", "/parents")

HostedResolver = Callable[[Mapping[str, str]], HostedResolution]


class GateOutcome(str, Enum):
    CONTINUE = "continue"
    CONTINUE_WITH_COOKIES = "continue_with_cookies"
    REDIRECT_UNAUTHORIZED = "redirect_unauthorized"
    REDIRECT_SIGN_IN = "redirect_sign_in"


@dataclass(frozen=True)
class GateDecision:
    outcome: GateOutcome
    location: Optional[str] = None
    cookies: Tuple[CookieUpdate, ...] = ()
    user: Optional[AuthUser] = None
    access_token: Optional[str] = None
    admin: bool = False

    @property
    def is_redirect(self) -> bool:
        return self.location is not None


def under_prefix(path: str, prefix: str) -> bool:
    """Segment-aware prefix match: `/admin` and `/admin/x` match, `/administrator` does not."""
    return path == prefix or path.startswith(prefix + "/")


def is_admin_area(path: str) -> bool:
    return under_prefix(path, ADMIN_PREFIX) and path not in ADMIN_PUBLIC_PATHS


def is_role_area(path: str) -> bool:
    return any(under_prefix(path, p) for p in ROLE_PREFIXES)


def evaluate_request(
    cfg: AuthConfig,
    path: str,
    cookies: Mapping[str, str],
    *,
    resolve_hosted: HostedResolver,
    at_ms: Optional[int] = None,
) -> GateDecision:
    """Decide what happens to a request before it reaches a handler."""
    if under_prefix(path, ADMIN_PREFIX):
        if path in ADMIN_PUBLIC_PATHS:
            return GateDecision(outcome=GateOutcome.CONTINUE)
        token = cookies.get(ADMIN_SESSION_COOKIE)
        if not token or not verify_admin_token(cfg, token, at_ms=at_ms):
            return GateDecision(outcome=GateOutcome.REDIRECT_UNAUTHORIZED, location=ADMIN_UNAUTHORIZED_PATH)
        return GateDecision(outcome=GateOutcome.CONTINUE, admin=True)

    resolution = resolve_hosted(cookies)

    if resolution.user is None and is_role_area(path):
        # Stale cookies are still cleared on the redirect.
        return GateDecision(
            outcome=GateOutcome.REDIRECT_SIGN_IN,
            location=SIGN_IN_PATH,
            cookies=resolution.cookies,
        )

    outcome = GateOutcome.CONTINUE_WITH_COOKIES if resolution.cookies else GateOutcome.CONTINUE
    return GateDecision(
        outcome=outcome,
        cookies=resolution.cookies,
        user=resolution.user,
        access_token=resolution.access_token,
    )
