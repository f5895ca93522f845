"""
Admin session tokens.

Two formats are understood:

- signed (issued by this service): itsdangerous-signed JSON `{"email", "iat"}`,
  HMAC-SHA256 with ADMIN_SESSION_SECRET.
- legacy: base64("<email>:<issued_at_ms>:<secret>"). The secret travels inside the
  token and is only compared for equality, so anyone who knows it can mint tokens.
  Accepted only when ADMIN_ACCEPT_LEGACY_TOKENS is on.

Both formats expire 24h after `issued_at`.
"""

from __future__ import annotations

import base64
import binascii
import hmac
import json
import time
from typing import Iterable, Optional

from itsdangerous import BadSignature, URLSafeSerializer

from iprof.auth.config import ADMIN_SESSION_WINDOW_MS, AuthConfig

ADMIN_SESSION_COOKIE = "admin_session"
ADMIN_SESSION_SALT = "iprof-admin-session-v1"


def now_ms() -> int:
    return int(time.time() * 1000)


def _serializer(cfg: AuthConfig) -> Optional[URLSafeSerializer]:
    if not cfg.admin_session_secret:
        return None
    return URLSafeSerializer(secret_key=cfg.admin_session_secret, salt=ADMIN_SESSION_SALT)


def _within_window(issued_at_ms: int, at_ms: int) -> bool:
    return at_ms - issued_at_ms <= ADMIN_SESSION_WINDOW_MS


def issue_admin_token(cfg: AuthConfig, email: str, *, at_ms: Optional[int] = None) -> Optional[str]:
    """Return a signed admin token, or None when no secret is configured."""
    s = _serializer(cfg)
    if s is None:
        return None
    payload = {"email": email.strip().lower(), "iat": now_ms() if at_ms is None else int(at_ms)}
    return s.dumps(payload)


def verify_signed_admin_token(cfg: AuthConfig, token: Optional[str], *, at_ms: Optional[int] = None) -> bool:
    if not token:
        return False
    s = _serializer(cfg)
    if s is None:
        return False
    try:
        data = s.loads(token)
    except BadSignature:
        return False
    if not isinstance(data, dict):
        return False
    email = data.get("email")
    iat = data.get("iat")
    if not isinstance(iat, int) or isinstance(iat, bool):
        return False
    if not cfg.is_admin_email(email):
        return False
    return _within_window(iat, now_ms() if at_ms is None else at_ms)


def encode_legacy_admin_token(email: str, issued_at_ms: int, secret: str) -> str:
    return base64.b64encode(f"{email}:{issued_at_ms}:{secret}".encode("utf-8")).decode("ascii")


def verify_legacy_admin_token(
    token: Optional[str],
    *,
    admin_emails: Iterable[str],
    secret: Optional[str],
    at_ms: Optional[int] = None,
) -> bool:
    """
    Verify a legacy base64("email:issued_at:secret") token.

    Never raises: undecodable input, a wrong field count, a non-integer timestamp,
    an unknown email, a secret mismatch or an expired timestamp all return False.
    """
    if not token or not secret:
        return False
    try:
        decoded = base64.b64decode(token.encode("ascii"), validate=False).decode("utf-8")
    except (binascii.Error, UnicodeError, ValueError):
        return False

    parts = decoded.split(":")
    if len(parts) != 3:
        return False
    email, issued_at, presented_secret = parts

    # Exact match against the configured spelling.
    if email not in {e for e in admin_emails if e}:
        return False
    if not hmac.compare_digest(presented_secret.encode("utf-8"), secret.encode("utf-8")):
        return False

    try:
        issued_at_ms = int(issued_at)
    except ValueError:
        return False
    return _within_window(issued_at_ms, now_ms() if at_ms is None else at_ms)


def verify_admin_token(cfg: AuthConfig, token: Optional[str], *, at_ms: Optional[int] = None) -> bool:
    """Gate check for the `admin_session` cookie."""
    if verify_signed_admin_token(cfg, token, at_ms=at_ms):
        return True
    if cfg.accept_legacy_admin_tokens:
        return verify_legacy_admin_token(
            token,
            admin_emails=cfg.admin_emails,
            secret=cfg.admin_session_secret,
            at_ms=at_ms,
        )
    return False


def admin_email_from_token(cfg: AuthConfig, token: Optional[str]) -> Optional[str]:
    """Best-effort email extraction for a token that already verified."""
    if not token:
        return None
    s = _serializer(cfg)
    if s is not None:
        try:
            data = s.loads(token)
            if isinstance(data, dict) and data.get("email"):
                return str(data["email"])
        except BadSignature:
            pass
    try:
        decoded = base64.b64decode(token.encode("ascii")).decode("utf-8")
        return decoded.split(":", 1)[0] or None
    except (binascii.Error, UnicodeError, ValueError):
        return None
