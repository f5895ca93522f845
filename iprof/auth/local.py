from __future__ import annotations

import hmac

import bcrypt

from iprof.auth.config import AuthConfig


def hash_password(password: str) -> str:
    """
    Hash password with bcrypt (cost factor 12).

    The result is what ADMIN_PASSWORD_HASH expects.
    """
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=12)).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    """Verify password against a bcrypt hash; invalid hashes simply fail."""
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False


def verify_admin_credentials(cfg: AuthConfig, email: str, password: str) -> bool:
    """
    Check admin portal credentials against the configured allowlist and password.

    ADMIN_PASSWORD_HASH (bcrypt) wins over a plain ADMIN_PASSWORD.
    """
    if not cfg.is_admin_email(email) or not password:
        return False
    if cfg.admin_password_hash:
        return verify_password(password, cfg.admin_password_hash)
    if cfg.admin_password:
        return hmac.compare_digest(password.encode("utf-8"), cfg.admin_password.encode("utf-8"))
    return False
