"""
Parent invitations and student confirmation.

A student's sign-up invites the parent by email; once the parent signs in they
confirm the student, which unlocks the student dashboard.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException
from postgrest.exceptions import APIError
from supabase import AuthApiError

from iprof.api.common import first_row
from iprof.auth.config import load_auth_config
from iprof.auth.deps import fetch_profile, require_user, service_client
from iprof.auth.models import AuthUser
from iprof.authz.policy import Capability, Role, require_capability
from iprof.hosted.users import find_auth_user_by_email, get_auth_user

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/api/send-parent-confirmation")
def send_parent_confirmation(body: Dict[str, Any]) -> Dict[str, Any]:
    parent_email = str(body.get("parentEmail") or "").strip()
    student_name = str(body.get("studentName") or "").strip()
    student_email = str(body.get("studentEmail") or "").strip()
    if not parent_email or not student_name or not student_email:
        raise HTTPException(status_code=400, detail="Missing required fields")

    cfg = load_auth_config()
    if cfg.skip_parent_confirmation:
        logger.info("Parent confirmation skipped for %s", student_email)
        return {"message": "Parent confirmation is disabled", "skipped": True}
    if not cfg.supabase_url or not cfg.supabase_service_role_key:
        raise HTTPException(status_code=500, detail="Email service not configured")

    redirect_to = f"{cfg.site_url.rstrip('/')}/auth/parent-confirmed"
    try:
        resp = service_client().auth.admin.invite_user_by_email(
            parent_email,
            {
                "redirect_to": redirect_to,
                "data": {
                    "role": "parent",
                    "full_name": "",
                    "invited_by": student_email,
                    "invited_student": student_name,
                },
            },
        )
    except AuthApiError as e:
        logger.error("Parent invite for %s failed: %s", student_email, e.message)
        raise HTTPException(status_code=500, detail=e.message or "Failed to invite parent")

    user = getattr(resp, "user", None)
    logger.info("Invited parent of %s (user=%s)", student_email, getattr(user, "id", None))
    return {"message": "Parent invited", "skipped": False, "userId": getattr(user, "id", None)}


@router.post("/api/confirm-parent")
def confirm_parent(user: AuthUser = Depends(require_user)) -> Dict[str, Any]:
    """The signed-in parent confirms the student who invited them."""
    admin = service_client()
    try:
        parent = get_auth_user(admin, user.id)
    except AuthApiError as e:
        logger.error("Fetching parent %s failed: %s", user.id, e.message)
        raise HTTPException(status_code=500, detail="Failed to fetch parent user data")
    if parent is None:
        raise HTTPException(status_code=500, detail="Failed to fetch parent user data")

    meta = parent.user_metadata or {}
    profile = fetch_profile(admin, parent.id, "role")
    require_capability(Role.parse((profile or {}).get("role") or meta.get("role")), Capability.CONFIRM_STUDENT)

    invited_by = meta.get("invited_by")
    invited_student = meta.get("invited_student")
    if not invited_by:
        raise HTTPException(status_code=400, detail="Missing student information")

    try:
        student = find_auth_user_by_email(admin, str(invited_by))
    except AuthApiError as e:
        logger.error("Listing users failed: %s", e.message)
        raise HTTPException(status_code=500, detail="Failed to find student")
    if student is None:
        raise HTTPException(status_code=404, detail="Student not found")

    confirmation = {
        "parent_confirmed": True,
        "confirmed_at": datetime.now(timezone.utc).isoformat(),
        "confirmed_by": user.email,
    }
    student_profile = fetch_profile(admin, student.id, "id, metadata, full_name, role")

    if student_profile is None:
        student_meta = student.user_metadata or {}
        if student_meta.get("role") != "student":
            raise HTTPException(
                status_code=404,
                detail="Student profile not found. The student may not have completed signup yet.",
            )
        try:
            admin.table("profiles").insert(
                {
                    "id": student.id,
                    "role": "student",
                    "full_name": student_meta.get("full_name") or "",
                    "metadata": {**student_meta, **confirmation},
                }
            ).execute()
        except APIError as e:
            logger.error("Creating profile for %s failed: %s", student.id, e.message)
            raise HTTPException(status_code=500, detail="Failed to create student profile")
        logger.info("Created and confirmed profile for student %s", student.id)
        return {"success": True, "studentName": invited_student or student_meta.get("full_name") or "the student"}

    try:
        resp = (
            admin.table("profiles")
            .update({"metadata": {**(student_profile.get("metadata") or {}), **confirmation}})
            .eq("id", student.id)
            .execute()
        )
    except APIError as e:
        logger.error("Confirming student %s failed: %s", student.id, e.message)
        raise HTTPException(status_code=500, detail="Failed to update student profile")

    logger.info("Parent %s confirmed student %s", user.id, student.id)
    updated = first_row(resp) or student_profile
    return {"success": True, "studentName": invited_student or updated.get("full_name")}
