"""
Study content, uploads, storage cleanup and flashcards.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile
from postgrest.exceptions import APIError
from supabase import Client

from iprof.api.common import first_row, ilike_any, query_flag, require_role_capability, role_of, rows
from iprof.auth.deps import require_user, service_client, user_client
from iprof.auth.models import AuthUser
from iprof.authz.policy import Capability, has_capability
from iprof.core.youtube import thumbnail_url
from iprof.hosted.storage import (
    CONTENT_BUCKET,
    MAX_UPLOAD_BYTES,
    ContentStorage,
    UploadRejected,
    content_object_path,
    strip_extension,
    validate_upload,
)

logger = logging.getLogger(__name__)

router = APIRouter()

# Columns callers may never set directly on a content row.
_SERVER_OWNED_CONTENT_FIELDS = ("id", "uploaded_by", "is_admin_upload", "created_at")


def _content_row(body: Dict[str, Any], *, user_id: str, is_admin_upload: bool) -> Dict[str, Any]:
    row = {k: v for k, v in body.items() if k not in _SERVER_OWNED_CONTENT_FIELDS}
    if row.get("content_type") == "video" and row.get("video_url") and not row.get("thumbnail_url"):
        thumb = thumbnail_url(str(row["video_url"]))
        if thumb:
            row["thumbnail_url"] = thumb
    row["uploaded_by"] = user_id
    row["is_admin_upload"] = is_admin_upload
    return row


@router.get("/api/content")
def list_content(
    type: Optional[str] = Query(None),
    search: Optional[str] = Query(None),
    adminOnly: Optional[str] = Query(None),
    userOnly: Optional[str] = Query(None),
    country_code: Optional[str] = Query(None),
    user: AuthUser = Depends(require_user),
    client: Client = Depends(user_client),
) -> List[Dict[str, Any]]:
    query = client.table("content").select("*").order("created_at", desc=True)
    if type:
        query = query.eq("content_type", type)
    if country_code:
        query = query.eq("country_code", country_code)
    if query_flag(adminOnly):
        query = query.eq("is_admin_upload", True)
    if query_flag(userOnly):
        query = query.eq("uploaded_by", user.id).eq("is_admin_upload", False)
    if search:
        query = query.or_(ilike_any(["title", "description"], search))
    return rows(query.execute())


@router.post("/api/content")
def create_content(
    body: Dict[str, Any],
    user: AuthUser = Depends(require_user),
    client: Client = Depends(user_client),
) -> Dict[str, Any]:
    """
    Create a content record.

    `is_admin_upload` is only honoured for roles that may publish; those rows are
    written with the service client. Everyone else creates their own upload.
    """
    role = require_role_capability(client, user, Capability.UPLOAD_CONTENT)
    publish = bool(body.get("is_admin_upload")) and has_capability(role, Capability.PUBLISH_CONTENT)

    writer = service_client() if publish else client
    resp = writer.table("content").insert(_content_row(body, user_id=user.id, is_admin_upload=publish)).execute()
    logger.info("Content created by %s (admin_upload=%s)", user.id, publish)
    return {"data": first_row(resp)}


@router.delete("/api/content")
def delete_content(
    id: Optional[str] = Query(None),
    user: AuthUser = Depends(require_user),
    client: Client = Depends(user_client),
) -> Dict[str, Any]:
    if not id:
        raise HTTPException(status_code=400, detail="Content ID required")

    if has_capability(role_of(client, user), Capability.DELETE_ANY_CONTENT):
        service_client().table("content").delete().eq("id", id).execute()
    else:
        client.table("content").delete().eq("id", id).eq("uploaded_by", user.id).execute()
    return {"success": True}


@router.post("/api/content/upload")
def upload_content(
    file: Optional[UploadFile] = File(None),
    type: str = Form(""),
    country_code: Optional[str] = Form(None),
    title: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    subject: Optional[str] = Form(None),
    grade_level: Optional[str] = Form(None),
    user: AuthUser = Depends(require_user),
    client: Client = Depends(user_client),
) -> Dict[str, Any]:
    """
    Store an uploaded file in the `content` bucket and record it.

    The stored object is removed again when the record insert fails.
    """
    role = require_role_capability(client, user, Capability.UPLOAD_CONTENT)
    if file is None or not file.filename:
        raise HTTPException(status_code=400, detail="No file provided")

    try:
        # Reject on the declared size before buffering, then bound the read itself.
        validate_upload(type, file.content_type, file.size or 0)
        body = file.file.read(MAX_UPLOAD_BYTES + 1)
        validate_upload(type, file.content_type, len(body))
    except UploadRejected as e:
        raise HTTPException(status_code=400, detail=str(e))

    admin = service_client()
    storage = ContentStorage(admin, CONTENT_BUCKET)
    path = content_object_path(type, country_code, file.filename)
    try:
        stored = storage.upload(path, body, mime_type=file.content_type)
    except Exception as e:
        logger.exception("Upload to %s failed: %s", path, str(e))
        raise HTTPException(status_code=500, detail=f"Failed to upload file: {e}")

    record = {
        "title": title or strip_extension(file.filename),
        "description": description or "",
        "content_type": type,
        "file_url": stored.public_url,
        "file_name": file.filename,
        "file_size": len(body),
        "mime_type": file.content_type,
        "country_code": country_code or None,
        "subject": subject or None,
        "grade_level": grade_level or None,
        "uploaded_by": user.id,
        "is_admin_upload": has_capability(role, Capability.PUBLISH_CONTENT),
    }
    try:
        resp = admin.table("content").insert(record).execute()
    except APIError as e:
        logger.error("Content record insert failed for %s: %s", path, e.message)
        storage.remove([path])
        raise HTTPException(status_code=500, detail=f"Failed to save content record: {e.message}")

    logger.info("Uploaded %s (%d bytes) for %s", path, len(body), user.id)
    return first_row(resp) or record


@router.post("/api/storage/delete")
def delete_storage_object(
    body: Dict[str, Any],
    user: AuthUser = Depends(require_user),
    client: Client = Depends(user_client),
) -> Dict[str, Any]:
    require_role_capability(client, user, Capability.MANAGE_STORAGE)
    bucket = str(body.get("bucket") or "")
    path = str(body.get("path") or "")
    if not bucket or not path:
        raise HTTPException(status_code=400, detail="Bucket and path required")
    try:
        ContentStorage(service_client(), bucket).remove([path])
    except HTTPException:
        raise
    except Exception as e:
        logger.exception("Storage delete failed for %s/%s: %s", bucket, path, str(e))
        raise HTTPException(status_code=500, detail=str(e))
    return {"success": True}


# ---- Flashcards ----


@router.get("/api/flashcards")
def list_flashcards(
    country_code: Optional[str] = Query(None),
    subject: Optional[str] = Query(None),
    grade_level: Optional[str] = Query(None),
    search: Optional[str] = Query(None),
    user: AuthUser = Depends(require_user),
    client: Client = Depends(user_client),
) -> List[Dict[str, Any]]:
    query = client.table("flashcards").select("*").order("created_at", desc=True)
    if country_code:
        query = query.eq("country_code", country_code)
    if subject:
        query = query.eq("subject", subject)
    if grade_level:
        query = query.eq("grade_level", grade_level)
    if search:
        query = query.or_(ilike_any(["question", "answer"], search))
    return rows(query.execute())


@router.post("/api/flashcards")
def create_flashcard(
    body: Dict[str, Any],
    user: AuthUser = Depends(require_user),
    client: Client = Depends(user_client),
) -> Dict[str, Any]:
    require_role_capability(client, user, Capability.MANAGE_FLASHCARDS)
    row = {k: v for k, v in body.items() if k != "id"}
    row["created_by"] = user.id
    resp = service_client().table("flashcards").insert(row).execute()
    return first_row(resp) or {}


@router.put("/api/flashcards")
def update_flashcard(
    body: Dict[str, Any],
    user: AuthUser = Depends(require_user),
    client: Client = Depends(user_client),
) -> Dict[str, Any]:
    card_id = body.get("id")
    if not card_id:
        raise HTTPException(status_code=400, detail="Flashcard ID required")
    require_role_capability(client, user, Capability.MANAGE_FLASHCARDS)
    update = {k: v for k, v in body.items() if k != "id"}
    resp = service_client().table("flashcards").update(update).eq("id", card_id).execute()
    row = first_row(resp)
    if row is None:
        raise HTTPException(status_code=404, detail="Flashcard not found")
    return row


@router.delete("/api/flashcards")
def delete_flashcard(
    id: Optional[str] = Query(None),
    user: AuthUser = Depends(require_user),
    client: Client = Depends(user_client),
) -> Dict[str, Any]:
    if not id:
        raise HTTPException(status_code=400, detail="Flashcard ID required")
    require_role_capability(client, user, Capability.MANAGE_FLASHCARDS)
    service_client().table("flashcards").delete().eq("id", id).execute()
    return {"success": True}
