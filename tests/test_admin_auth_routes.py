from __future__ import annotations

from fastapi.testclient import TestClient

import iprof.api.app as api
from iprof.auth.admin_token import ADMIN_SESSION_COOKIE, verify_admin_token
from iprof.auth.config import load_auth_config
from iprof.auth.local import hash_password


def _admin_env(monkeypatch, **extra: str) -> None:
    monkeypatch.setenv("ADMIN_EMAILS", "a@x.com")
    monkeypatch.setenv("ADMIN_PASSWORD", "correct horse")
    monkeypatch.setenv("ADMIN_SESSION_SECRET", "test-secret-key-for-testing-purposes-only")
    for k, v in extra.items():
        monkeypatch.setenv(k, v)
    load_auth_config.cache_clear()


def test_sign_in_unconfigured_is_500() -> None:
    c = TestClient(api.app)
    r = c.post("/api/admin/auth", json={"email": "a@x.com", "password": "x"})
    assert r.status_code == 500
    assert r.json()["error"] == "Admin credentials not configured"


def test_sign_in_missing_fields_is_400(monkeypatch) -> None:
    _admin_env(monkeypatch)
    c = TestClient(api.app)
    assert c.post("/api/admin/auth", json={"email": "a@x.com"}).status_code == 400
    assert c.post("/api/admin/auth", json={"password": "x"}).status_code == 400


def test_sign_in_sets_signed_session_cookie(monkeypatch) -> None:
    _admin_env(monkeypatch)
    c = TestClient(api.app)
    r = c.post("/api/admin/auth", json={"email": "A@x.com", "password": "correct horse"})
    assert r.status_code == 200
    assert r.json() == {"success": True}

    header = next(h for h in r.headers.get_list("set-cookie") if h.startswith(f"{ADMIN_SESSION_COOKIE}="))
    assert "HttpOnly" in header
    assert "Max-Age=86400" in header
    assert "samesite=lax" in header.lower()

    token = r.cookies.get(ADMIN_SESSION_COOKIE)
    assert token and verify_admin_token(load_auth_config(), token)

    status = c.get("/api/admin/auth")
    assert status.status_code == 200
    assert status.json() == {"authenticated": True, "email": "a@x.com"}


def test_sign_in_with_bcrypt_hash(monkeypatch) -> None:
    _admin_env(monkeypatch, ADMIN_PASSWORD_HASH=hash_password("hashed pw"))
    c = TestClient(api.app)
    assert c.post("/api/admin/auth", json={"email": "a@x.com", "password": "correct horse"}).status_code == 401
    assert c.post("/api/admin/auth", json={"email": "a@x.com", "password": "hashed pw"}).status_code == 200


def test_wrong_password_is_401_and_locks_after_five(monkeypatch) -> None:
    _admin_env(monkeypatch)
    c = TestClient(api.app)
    for _ in range(5):
        r = c.post("/api/admin/auth", json={"email": "a@x.com", "password": "nope"})
        assert r.status_code == 401
        assert r.json()["error"] == "Invalid email or password"

    r = c.post("/api/admin/auth", json={"email": "a@x.com", "password": "correct horse"})
    assert r.status_code == 429


def test_non_allowlisted_email_is_401(monkeypatch) -> None:
    _admin_env(monkeypatch)
    c = TestClient(api.app)
    r = c.post("/api/admin/auth", json={"email": "b@x.com", "password": "correct horse"})
    assert r.status_code == 401


def test_sign_out_clears_cookie(monkeypatch) -> None:
    _admin_env(monkeypatch)
    c = TestClient(api.app)
    r = c.delete("/api/admin/auth")
    assert r.status_code == 200
    header = next(h for h in r.headers.get_list("set-cookie") if h.startswith(f"{ADMIN_SESSION_COOKIE}="))
    assert "Max-Age=0" in header


def test_session_status_without_cookie(monkeypatch) -> None:
    _admin_env(monkeypatch)
    c = TestClient(api.app)
    r = c.get("/api/admin/auth")
    assert r.status_code == 401
    assert r.json() == {"authenticated": False}


def test_legacy_cookie_counts_only_when_enabled(monkeypatch) -> None:
    from iprof.auth.admin_token import encode_legacy_admin_token, now_ms

    _admin_env(monkeypatch)
    legacy = encode_legacy_admin_token("a@x.com", now_ms(), "test-secret-key-for-testing-purposes-only")
    c = TestClient(api.app)
    c.cookies.set(ADMIN_SESSION_COOKIE, legacy)
    assert c.get("/api/admin/auth").status_code == 401

    _admin_env(monkeypatch, ADMIN_ACCEPT_LEGACY_TOKENS="1")
    assert c.get("/api/admin/auth").status_code == 200
