from __future__ import annotations

import base64

import pytest

from iprof.auth.admin_token import (
    admin_email_from_token,
    encode_legacy_admin_token,
    issue_admin_token,
    verify_admin_token,
    verify_legacy_admin_token,
    verify_signed_admin_token,
)
from iprof.auth.config import load_auth_config

ISSUED = 1_700_000_000_000
HOUR_MS = 3_600_000


def _b64(s: str) -> str:
    return base64.b64encode(s.encode("utf-8")).decode("ascii")


# ---- legacy format ----


def test_legacy_token_fresh_and_expired_scenario() -> None:
    token = _b64("a@x.com:1700000000000:s3cr3t")
    assert verify_legacy_admin_token(token, admin_emails=["a@x.com"], secret="s3cr3t", at_ms=ISSUED + HOUR_MS)
    assert not verify_legacy_admin_token(token, admin_emails=["a@x.com"], secret="s3cr3t", at_ms=ISSUED + 25 * HOUR_MS)


def test_legacy_token_window_boundary_is_inclusive() -> None:
    token = encode_legacy_admin_token("a@x.com", ISSUED, "s3cr3t")
    assert verify_legacy_admin_token(token, admin_emails=["a@x.com"], secret="s3cr3t", at_ms=ISSUED + 86_400_000)
    assert not verify_legacy_admin_token(token, admin_emails=["a@x.com"], secret="s3cr3t", at_ms=ISSUED + 86_400_001)


def test_legacy_token_wrong_email_or_secret() -> None:
    other = encode_legacy_admin_token("b@x.com", ISSUED, "s3cr3t")
    assert not verify_legacy_admin_token(other, admin_emails=["a@x.com"], secret="s3cr3t", at_ms=ISSUED)
    wrong = encode_legacy_admin_token("a@x.com", ISSUED, "nope")
    assert not verify_legacy_admin_token(wrong, admin_emails=["a@x.com"], secret="s3cr3t", at_ms=ISSUED)


def test_legacy_token_email_must_match_exactly() -> None:
    token = encode_legacy_admin_token("A@X.com", ISSUED, "s3cr3t")
    assert not verify_legacy_admin_token(token, admin_emails=["a@x.com"], secret="s3cr3t", at_ms=ISSUED)
    padded = encode_legacy_admin_token(" a@x.com", ISSUED, "s3cr3t")
    assert not verify_legacy_admin_token(padded, admin_emails=["a@x.com"], secret="s3cr3t", at_ms=ISSUED)
    exact = encode_legacy_admin_token("a@x.com", ISSUED, "s3cr3t")
    assert verify_legacy_admin_token(exact, admin_emails=["a@x.com"], secret="s3cr3t", at_ms=ISSUED)


@pytest.mark.parametrize(
    "token",
    [
        "",
        "!!!not-base64!!!",
        _b64("a@x.com:1700000000000"),
        _b64("a@x.com:1700000000000:s3cr3t:extra"),
        _b64("a@x.com:soon:s3cr3t"),
        base64.b64encode(b"\xff\xfe:\x00:\x01").decode("ascii"),
        "ünïcode",
    ],
)
def test_legacy_token_malformed_is_false_without_raising(token: str) -> None:
    assert verify_legacy_admin_token(token, admin_emails=["a@x.com"], secret="s3cr3t", at_ms=ISSUED) is False


def test_legacy_token_without_secret_configured_is_rejected() -> None:
    token = encode_legacy_admin_token("a@x.com", ISSUED, "")
    assert not verify_legacy_admin_token(token, admin_emails=["a@x.com"], secret=None, at_ms=ISSUED)
    assert not verify_legacy_admin_token(token, admin_emails=["a@x.com"], secret="", at_ms=ISSUED)


def test_gate_ignores_legacy_tokens_unless_enabled(auth_config) -> None:
    token = encode_legacy_admin_token("a@x.com", ISSUED, "s3cr3t")
    assert verify_admin_token(auth_config(accept_legacy_admin_tokens=True), token, at_ms=ISSUED + HOUR_MS)
    assert not verify_admin_token(auth_config(), token, at_ms=ISSUED + HOUR_MS)


# ---- signed format ----


def test_signed_token_round_trip(auth_config) -> None:
    cfg = auth_config()
    token = issue_admin_token(cfg, "A@x.com", at_ms=ISSUED)
    assert token
    assert verify_signed_admin_token(cfg, token, at_ms=ISSUED + HOUR_MS)
    assert verify_admin_token(cfg, token, at_ms=ISSUED + HOUR_MS)
    assert admin_email_from_token(cfg, token) == "a@x.com"


def test_signed_token_expires_after_24h(auth_config) -> None:
    cfg = auth_config(accept_legacy_admin_tokens=True)
    token = issue_admin_token(cfg, "a@x.com", at_ms=ISSUED)
    assert not verify_admin_token(cfg, token, at_ms=ISSUED + 25 * HOUR_MS)


def test_signed_token_tampered_or_wrong_secret(auth_config) -> None:
    cfg = auth_config(accept_legacy_admin_tokens=True)
    token = issue_admin_token(cfg, "a@x.com", at_ms=ISSUED)
    assert token
    head, _, sig = token.rpartition(".")
    tampered = head + "." + ("A" if sig[0] != "A" else "B") + sig[1:]
    assert not verify_admin_token(cfg, tampered, at_ms=ISSUED)
    assert not verify_admin_token(auth_config(admin_session_secret="other"), token, at_ms=ISSUED)


def test_signed_token_for_removed_admin_is_rejected(auth_config) -> None:
    token = issue_admin_token(auth_config(accept_legacy_admin_tokens=True), "a@x.com", at_ms=ISSUED)
    assert not verify_admin_token(auth_config(admin_emails=frozenset({"b@x.com"})), token, at_ms=ISSUED)


def test_no_secret_means_no_tokens(auth_config) -> None:
    cfg = auth_config(admin_session_secret=None)
    assert issue_admin_token(cfg, "a@x.com") is None
    assert not verify_admin_token(cfg, "anything")


def test_config_reads_allowlist_from_env(monkeypatch) -> None:
    monkeypatch.setenv("ADMIN_EMAILS", "One@x.com, two@x.com,,")
    monkeypatch.setenv("ADMIN_EMAIL", "three@x.com")
    monkeypatch.setenv("ADMIN_SESSION_SECRET", "k")
    load_auth_config.cache_clear()
    cfg = load_auth_config()
    assert cfg.admin_emails == frozenset({"one@x.com", "two@x.com", "three@x.com"})
    assert cfg.is_admin_email("ONE@x.com")
    assert not cfg.accept_legacy_admin_tokens
