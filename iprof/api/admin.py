from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from dateutil.parser import isoparse
from fastapi import APIRouter, Depends, Query

from iprof.api.common import rows
from iprof.auth.deps import require_admin_session, service_client
from iprof.hosted.users import list_auth_users, users_by_id

logger = logging.getLogger(__name__)

router = APIRouter()

_STUDENT_COLUMNS = (
    "id, full_name, role, country, country_code, grade_level, age, parent_email, "
    "parent_confirmed, onboarding_completed_at, metadata, created_at, updated_at"
)


def _latest_session_start(sessions: List[Dict[str, Any]]) -> Optional[str]:
    best: Optional[str] = None
    best_key = None
    for s in sessions:
        raw = s.get("started_at")
        if not raw:
            continue
        try:
            key = isoparse(str(raw))
        except ValueError:
            continue
        if best_key is None or key > best_key:
            best, best_key = str(raw), key
    return best


@router.get("/api/admin/users")
def admin_users(admin_email: str = Depends(require_admin_session)) -> List[Dict[str, Any]]:
    """Every profile merged with its auth user (email, sign-in timestamps)."""
    client = service_client()
    profiles = rows(client.table("profiles").select("*").order("created_at", desc=True).execute())
    auth_users = users_by_id(list_auth_users(client))

    out: List[Dict[str, Any]] = []
    for profile in profiles:
        au = auth_users.get(str(profile.get("id")))
        meta = au.user_metadata if au else {}
        out.append(
            {
                "id": profile.get("id"),
                "email": au.email if au else None,
                "created_at": profile.get("created_at"),
                "last_sign_in_at": au.last_sign_in_at if au else None,
                "email_confirmed_at": au.email_confirmed_at if au else None,
                "onboarding_completed_at": profile.get("onboarding_completed_at"),
                "metadata": profile.get("metadata"),
                "user_metadata": {
                    "full_name": profile.get("full_name") or meta.get("full_name"),
                    "avatar_url": profile.get("avatar_url") or meta.get("avatar_url"),
                },
                "app_metadata": {"role": profile.get("role") or "user"},
            }
        )
    logger.debug("Admin %s listed %d users", admin_email, len(out))
    return out


@router.get("/api/admin/students")
def admin_students(
    country_code: Optional[str] = Query(None),
    grade_level: Optional[str] = Query(None),
    admin_email: str = Depends(require_admin_session),
) -> List[Dict[str, Any]]:
    """Student profiles with email, last sign-in and last completed practice session."""
    client = service_client()
    query = client.table("profiles").select(_STUDENT_COLUMNS).eq("role", "student").order("created_at", desc=True)
    if country_code:
        query = query.eq("country_code", country_code)
    if grade_level:
        query = query.eq("grade_level", grade_level)
    students = rows(query.execute())

    auth_users = users_by_id(list_auth_users(client))

    sessions = rows(
        client.table("practice_sessions")
        .select("user_id, started_at, score, total_questions, is_completed")
        .eq("is_completed", True)
        .execute()
    )
    by_user: Dict[str, List[Dict[str, Any]]] = {}
    for s in sessions:
        by_user.setdefault(str(s.get("user_id")), []).append(s)

    out: List[Dict[str, Any]] = []
    for student in students:
        sid = str(student.get("id"))
        au = auth_users.get(sid)
        last_active = _latest_session_start(by_user.get(sid, [])) or student.get("updated_at") or student.get("created_at")
        out.append(
            {
                **student,
                "email": au.email if au else None,
                "last_sign_in_at": au.last_sign_in_at if au else None,
                "last_active": last_active,
            }
        )
    logger.debug("Admin %s listed %d students", admin_email, len(out))
    return out
