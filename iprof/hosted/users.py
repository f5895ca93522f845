from __future__ import annotations

import logging
from typing import Dict, List, Optional

from supabase import Client

from iprof.auth.models import AuthUser

logger = logging.getLogger(__name__)

USERS_PAGE_SIZE = 1000
MAX_USER_PAGES = 50


def list_auth_users(client: Client, *, per_page: int = USERS_PAGE_SIZE) -> List[AuthUser]:
    """All hosted-auth users, paging through the admin API (service client only)."""
    out: List[AuthUser] = []
    for page in range(1, MAX_USER_PAGES + 1):
        batch = client.auth.admin.list_users(page=page, per_page=per_page) or []
        out.extend(AuthUser.from_hosted(u) for u in batch)
        if len(batch) < per_page:
            break
    else:
        logger.warning("Stopped listing auth users after %d pages", MAX_USER_PAGES)
    return out


def users_by_id(users: List[AuthUser]) -> Dict[str, AuthUser]:
    return {u.id: u for u in users}


def find_auth_user_by_email(client: Client, email: str, *, per_page: int = USERS_PAGE_SIZE) -> Optional[AuthUser]:
    want = (email or "").strip().lower()
    if not want:
        return None
    for u in list_auth_users(client, per_page=per_page):
        if (u.email or "").lower() == want:
            return u
    return None


def get_auth_user(client: Client, user_id: str) -> Optional[AuthUser]:
    resp = client.auth.admin.get_user_by_id(user_id)
    user = getattr(resp, "user", None) if resp is not None else None
    return AuthUser.from_hosted(user) if user is not None else None
