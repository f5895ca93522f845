"""
Country packs: per-country currency and settings bundles.

Readable by any signed-in user (active packs only). Changes need the admin
portal session or a hosted account with the admin role.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from supabase import Client

from iprof.api.common import first_row, query_flag, role_of, rows
from iprof.auth.deps import admin_session_email, optional_user, service_client, user_client
from iprof.auth.models import AuthUser
from iprof.authz.policy import Role

logger = logging.getLogger(__name__)

router = APIRouter()

DEFAULT_CURRENCY = "USD"
_EDITABLE_FIELDS = ("name", "flag", "currency", "is_active", "settings")


def _caller(request: Request, user: Optional[AuthUser]) -> Tuple[Client, bool]:
    """(client, is_admin) for the request; 401 when nobody is signed in."""
    if admin_session_email(request) is not None:
        return service_client(), True
    if user is None:
        raise HTTPException(status_code=401, detail="Unauthorized")
    client = user_client(request)
    return client, role_of(client, user) is Role.ADMIN


def _require_admin(request: Request, user: Optional[AuthUser]) -> Client:
    _, is_admin = _caller(request, user)
    if not is_admin:
        raise HTTPException(status_code=403, detail="Admin access required")
    return service_client()


def _count(client: Client, table: str, country_code: str) -> int:
    resp = client.table(table).select("id", count="exact").eq("country_code", country_code).execute()
    return getattr(resp, "count", None) or 0


@router.get("/api/country-packs")
def list_country_packs(
    request: Request,
    code: Optional[str] = Query(None),
    stats: Optional[str] = Query(None),
    active: Optional[str] = Query(None),
    user: Optional[AuthUser] = Depends(optional_user),
) -> Dict[str, Any]:
    client, is_admin = _caller(request, user)

    if code:
        pack = first_row(client.table("country_packs").select("*").eq("code", code.upper()).execute())
        if pack is None:
            raise HTTPException(status_code=404, detail="Country pack not found")
        return {"pack": pack}

    if query_flag(stats) and is_admin:
        return {"stats": rows(client.table("country_stats").select("*").order("name").execute())}

    q = client.table("country_packs").select("*")
    # Non-admins only ever see active packs.
    if not is_admin or (active or "").strip().lower() != "false":
        q = q.eq("is_active", True)
    return {"packs": rows(q.order("name").execute())}


@router.post("/api/country-packs")
def create_country_pack(
    request: Request,
    body: Dict[str, Any],
    user: Optional[AuthUser] = Depends(optional_user),
) -> JSONResponse:
    client = _require_admin(request, user)
    code, name = body.get("code"), body.get("name")
    if not code or not name:
        raise HTTPException(status_code=400, detail="Code and name are required")

    pack = first_row(
        client.table("country_packs")
        .insert(
            {
                "code": str(code).upper(),
                "name": name,
                "flag": body.get("flag"),
                "currency": body.get("currency") or DEFAULT_CURRENCY,
                "is_active": body.get("is_active") is not False,
                "settings": body.get("settings") or {},
            }
        )
        .execute()
    )
    logger.info("Country pack %s created", str(code).upper())
    return JSONResponse(status_code=201, content={"pack": pack})


@router.put("/api/country-packs")
def update_country_pack(
    request: Request,
    body: Dict[str, Any],
    user: Optional[AuthUser] = Depends(optional_user),
) -> Dict[str, Any]:
    client = _require_admin(request, user)
    pack_id = body.get("id")
    if not pack_id:
        raise HTTPException(status_code=400, detail="ID is required")

    updates: Dict[str, Any] = {"updated_at": datetime.now(timezone.utc).isoformat()}
    for field in _EDITABLE_FIELDS:
        if body.get(field) is not None:
            updates[field] = body[field]

    pack = first_row(client.table("country_packs").update(updates).eq("id", pack_id).execute())
    if pack is None:
        raise HTTPException(status_code=404, detail="Country pack not found")
    return {"pack": pack}


@router.delete("/api/country-packs")
def delete_country_pack(
    request: Request,
    id: Optional[str] = Query(None),
    user: Optional[AuthUser] = Depends(optional_user),
) -> Dict[str, Any]:
    client = _require_admin(request, user)
    if not id:
        raise HTTPException(status_code=400, detail="ID is required")

    pack = first_row(client.table("country_packs").select("code").eq("id", id).execute())
    if pack is None:
        raise HTTPException(status_code=404, detail="Country pack not found")

    users = _count(client, "profiles", pack["code"])
    if users:
        raise HTTPException(status_code=400, detail=f"Cannot delete: {users} users are in this country")
    items = _count(client, "content", pack["code"])
    if items:
        raise HTTPException(status_code=400, detail=f"Cannot delete: {items} content items exist for this country")

    client.table("country_packs").delete().eq("id", id).execute()
    logger.info("Country pack %s deleted", pack["code"])
    return {"success": True}
