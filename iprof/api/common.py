from __future__ import annotations

from typing import Any, Dict, List, Optional

from supabase import Client

from iprof.auth.config import load_auth_config
from iprof.auth.deps import user_role
from iprof.auth.models import AuthUser
from iprof.authz.policy import Capability, Role, require_capability


def rows(resp: Any) -> List[Dict[str, Any]]:
    data = getattr(resp, "data", None) if resp is not None else None
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        return [data]
    return []


def first_row(resp: Any) -> Optional[Dict[str, Any]]:
    out = rows(resp)
    return out[0] if out else None


def role_of(client: Client, user: AuthUser) -> Role:
    return user_role(load_auth_config(), client, user)


def require_role_capability(client: Client, user: AuthUser, capability: Capability) -> Role:
    """Resolve the user's role and raise 403 unless it grants `capability`."""
    role = role_of(client, user)
    require_capability(role, capability)
    return role


def ilike_any(columns: List[str], term: str) -> str:
    """PostgREST `or` filter matching `term` case-insensitively in any column."""
    safe = term.replace(",", " ").replace("(", " ").replace(")", " ").strip()
    return ",".join(f"{c}.ilike.%{safe}%" for c in columns)


def query_flag(value: Optional[str]) -> bool:
    return (value or "").strip().lower() == "true"
