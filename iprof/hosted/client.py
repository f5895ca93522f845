from __future__ import annotations

import logging
import threading
from typing import Dict, Optional, Tuple

from supabase import Client, create_client
from supabase.lib.client_options import SyncClientOptions

from iprof.auth.config import AuthConfig

logger = logging.getLogger(__name__)

_service_cache: Dict[Tuple[str, str], Client] = {}
_service_lock = threading.Lock()


class HostedNotConfigured(RuntimeError):
    """Raised when the hosted backend URL/keys are missing."""


def _stateless_options() -> SyncClientOptions:
    # Server-side clients must never keep or auto-refresh a session between requests.
    return SyncClientOptions(auto_refresh_token=False, persist_session=False)


def create_session_client(cfg: AuthConfig) -> Client:
    """
    Return a fresh anon-key client.

    Auth operations (refresh, code exchange, sign-out) store session state on the
    client, so one is created per request.
    """
    if not cfg.hosted_configured:
        raise HostedNotConfigured("SUPABASE_URL / SUPABASE_ANON_KEY are not configured")
    return create_client(str(cfg.supabase_url), str(cfg.supabase_anon_key), options=_stateless_options())


def create_user_client(cfg: AuthConfig, access_token: Optional[str]) -> Client:
    """Anon-key client whose table queries run as the signed-in user (row-level policies apply)."""
    client = create_session_client(cfg)
    if access_token:
        client.postgrest.auth(access_token)
    return client


class VerifierStorage:
    """In-memory auth storage; the PKCE code verifier written by an OAuth start can be read back."""

    def __init__(self) -> None:
        self.items: Dict[str, str] = {}

    def get_item(self, key: str) -> Optional[str]:
        return self.items.get(key)

    def set_item(self, key: str, value: str) -> None:
        self.items[key] = value

    def remove_item(self, key: str) -> None:
        self.items.pop(key, None)

    def code_verifier(self) -> Optional[str]:
        for key, value in self.items.items():
            if key.endswith("-code-verifier"):
                return value
        return None


def create_oauth_client(cfg: AuthConfig) -> Tuple[Client, VerifierStorage]:
    """
    Anon-key client for starting a PKCE OAuth sign-in.

    The caller keeps the code verifier (in a cookie) for the later code exchange.
    """
    if not cfg.hosted_configured:
        raise HostedNotConfigured("SUPABASE_URL / SUPABASE_ANON_KEY are not configured")
    storage = VerifierStorage()
    options = SyncClientOptions(auto_refresh_token=False, persist_session=False, storage=storage, flow_type="pkce")
    return create_client(str(cfg.supabase_url), str(cfg.supabase_anon_key), options=options), storage


def get_service_client(cfg: AuthConfig) -> Client:
    """
    Return a cached service-role client (bypasses row-level policies).

    Only stateless calls (table queries, storage, admin API) go through it.
    """
    if not cfg.supabase_url or not cfg.supabase_service_role_key:
        raise HostedNotConfigured("SUPABASE_URL / SUPABASE_SERVICE_ROLE_KEY are not configured")
    key = (str(cfg.supabase_url), str(cfg.supabase_service_role_key))

    cached = _service_cache.get(key)
    if cached is not None:
        return cached

    with _service_lock:
        cached = _service_cache.get(key)
        if cached is not None:
            return cached
        logger.info("Creating hosted service client for %s", cfg.supabase_url)
        client = create_client(key[0], key[1], options=_stateless_options())
        _service_cache[key] = client
        return client
