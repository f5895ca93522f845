from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import FrozenSet, Optional

# Admin sessions live for 24h from issuance; the cookie max-age matches.
ADMIN_SESSION_WINDOW_MS = 24 * 60 * 60 * 1000
ADMIN_SESSION_MAX_AGE_SECONDS = ADMIN_SESSION_WINDOW_MS // 1000


@dataclass(frozen=True)
class AuthConfig:
    # Admin portal (static allowlist + shared password)
    admin_emails: FrozenSet[str]
    admin_password: Optional[str]
    admin_password_hash: Optional[str]  # bcrypt; wins over admin_password when set
    admin_session_secret: Optional[str]  # No default: unset means every admin token is rejected
    accept_legacy_admin_tokens: bool

    # Hosted backend (Supabase)
    supabase_url: Optional[str]
    supabase_anon_key: Optional[str]
    supabase_service_role_key: Optional[str]

    # Public site / cookies
    site_url: str
    cookie_secure: bool
    development: bool

    # Dev flag: students skip the parent-confirmation wait
    skip_parent_confirmation: bool

    @property
    def admin_configured(self) -> bool:
        return bool(self.admin_emails and (self.admin_password or self.admin_password_hash))

    @property
    def hosted_configured(self) -> bool:
        return bool(self.supabase_url and self.supabase_anon_key)

    def is_admin_email(self, email: Optional[str]) -> bool:
        return bool(email) and str(email).strip().lower() in self.admin_emails


def _env(*names: str) -> Optional[str]:
    # First non-empty value wins; lets the NEXT_PUBLIC_* names from the web app keep working.
    for name in names:
        raw = (os.getenv(name, "") or "").strip()
        if raw:
            return raw
    return None


def _env_bool(*names: str, default: bool = False) -> bool:
    raw = (_env(*names) or "").lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "y", "on")


def _parse_csv(value: Optional[str]) -> list:
    items = [x.strip().lower() for x in (value or "").split(",")]
    return [x for x in items if x]


@lru_cache(maxsize=1)
def load_auth_config() -> AuthConfig:
    """
    Load authentication configuration from environment variables.

    The admin allowlist is the union of ADMIN_EMAIL and ADMIN_EMAILS (comma-separated).
    """
    admin_emails = set(_parse_csv(_env("ADMIN_EMAILS")))
    admin_emails.update(_parse_csv(_env("ADMIN_EMAIL")))

    site_url = (_env("SITE_URL", "NEXT_PUBLIC_SITE_URL") or "http://localhost:3000").rstrip("/")

    cookie_secure_env = (_env("AUTH_COOKIE_SECURE") or "").lower()
    if cookie_secure_env in ("1", "true", "yes", "on"):
        cookie_secure = True
    elif cookie_secure_env in ("0", "false", "no", "off"):
        cookie_secure = False
    else:
        # Default: secure cookies when the site is served over https; otherwise allow local dev.
        cookie_secure = site_url.startswith("https://")

    app_env = (_env("APP_ENV", "NODE_ENV") or "production").lower()

    return AuthConfig(
        admin_emails=frozenset(admin_emails),
        admin_password=_env("ADMIN_PASSWORD"),
        admin_password_hash=_env("ADMIN_PASSWORD_HASH"),
        admin_session_secret=_env("ADMIN_SESSION_SECRET"),
        accept_legacy_admin_tokens=_env_bool("ADMIN_ACCEPT_LEGACY_TOKENS", default=False),
        supabase_url=_env("SUPABASE_URL", "NEXT_PUBLIC_SUPABASE_URL"),
        supabase_anon_key=_env("SUPABASE_ANON_KEY", "NEXT_PUBLIC_SUPABASE_ANON_KEY"),
        supabase_service_role_key=_env("SUPABASE_SERVICE_ROLE_KEY"),
        site_url=site_url,
        cookie_secure=cookie_secure,
        development=app_env in ("dev", "development", "local"),
        skip_parent_confirmation=_env_bool(
            "SKIP_PARENT_CONFIRMATION", "NEXT_PUBLIC_SKIP_PARENT_CONFIRMATION", default=False
        ),
    )
