from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple


@dataclass(frozen=True)
class AuthUser:
    """User resolved from a hosted-auth session."""

    id: str
    email: Optional[str] = None
    provider: str = "email"
    user_metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[str] = None
    last_sign_in_at: Optional[str] = None
    email_confirmed_at: Optional[str] = None

    @classmethod
    def from_hosted(cls, user: Any) -> "AuthUser":
        """Build from a supabase `User` object (or a plain dict in tests)."""

        def _get(name: str) -> Any:
            if isinstance(user, dict):
                return user.get(name)
            return getattr(user, name, None)

        app_metadata = _get("app_metadata") or {}
        return cls(
            id=str(_get("id")),
            email=str(_get("email")) if _get("email") else None,
            provider=str(app_metadata.get("provider") or "email") if isinstance(app_metadata, dict) else "email",
            user_metadata=dict(_get("user_metadata") or {}),
            created_at=_iso(_get("created_at")),
            last_sign_in_at=_iso(_get("last_sign_in_at")),
            email_confirmed_at=_iso(_get("email_confirmed_at")),
        )


def _iso(value: Any) -> Optional[str]:
    if value is None:
        return None
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return str(value)


@dataclass(frozen=True)
class CookieUpdate:
    """A cookie the response must set (value="" with max_age=0 clears it)."""

    name: str
    value: str
    max_age: int


@dataclass(frozen=True)
class HostedResolution:
    user: Optional[AuthUser] = None
    access_token: Optional[str] = None
    cookies: Tuple[CookieUpdate, ...] = ()
