"""
Student study tools: mistake log, pomodoro lock, profile and tutor chat.
"""

from __future__ import annotations

import json
import logging
import math
from datetime import datetime, timezone
from typing import Any, AsyncGenerator, Dict, List, Optional, Tuple

from dateutil.parser import isoparse
from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import StreamingResponse
from postgrest.exceptions import APIError
from starlette.concurrency import run_in_threadpool
from supabase import AuthApiError, Client

from iprof.api.common import first_row, query_flag, rows
from iprof.auth.config import load_auth_config
from iprof.auth.deps import fetch_profile, require_user, service_client, user_client
from iprof.auth.models import AuthUser
from iprof.llm.client import chat_completion, llm_configured
from iprof.llm.client_streaming import stream_chat
from iprof.llm.prompts import TUTOR_SYSTEM_PROMPT, build_student_tutor_prompt
from iprof.llm.schemas import MAX_HISTORY_TURNS, ChatRequest, ChatTurn

logger = logging.getLogger(__name__)

router = APIRouter()

STUDY_DURATION_SECONDS = 25 * 60
SHORT_BREAK_SECONDS = 5 * 60
LONG_BREAK_SECONDS = 30 * 60
CYCLES_FOR_LONG_BREAK = 4

TUTOR_MAX_OUTPUT_TOKENS = 1500
FALLBACK_REPLY = "I'm sorry, I couldn't generate a response. Please try again."
CHAT_TEMPERATURE = 1.3
DEFAULT_STUDENT_AGE = 12


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---- Mistakes ----


@router.get("/api/mistakes")
def list_mistakes(
    sourceType: Optional[str] = Query(None),
    subject: Optional[str] = Query(None),
    resolved: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    stats: Optional[str] = Query(None),
    user: AuthUser = Depends(require_user),
    client: Client = Depends(user_client),
) -> Dict[str, Any]:
    try:
        if query_flag(stats):
            resp = client.rpc("get_mistake_stats", {"p_user_id": user.id}).execute()
            return {"stats": first_row(resp)}

        query = (
            client.table("mistake_logs")
            .select("*", count="exact")
            .eq("user_id", user.id)
            .order("created_at", desc=True)
        )
        if sourceType:
            query = query.eq("source_type", sourceType)
        if subject:
            query = query.eq("subject", subject)
        if resolved == "true":
            query = query.eq("is_resolved", True)
        elif resolved == "false":
            query = query.eq("is_resolved", False)

        offset = (page - 1) * limit
        resp = query.range(offset, offset + limit - 1).execute()
        total = int(getattr(resp, "count", None) or 0)

        subjects_resp = (
            client.table("mistake_logs").select("subject").eq("user_id", user.id).not_.is_("subject", "null").execute()
        )
        subjects: List[str] = []
        for row in rows(subjects_resp):
            s = row.get("subject")
            if s and s not in subjects:
                subjects.append(s)

        return {
            "mistakes": rows(resp),
            "total": total,
            "page": page,
            "limit": limit,
            "totalPages": math.ceil(total / limit),
            "subjects": subjects,
        }
    except APIError as e:
        logger.error("Error fetching mistakes for %s: %s", user.id, e.message)
        raise HTTPException(status_code=500, detail="Failed to get stats" if query_flag(stats) else "Failed to fetch mistakes")


@router.post("/api/mistakes")
def log_mistake(
    body: Dict[str, Any],
    user: AuthUser = Depends(require_user),
    client: Client = Depends(user_client),
) -> Dict[str, Any]:
    required = ("sourceType", "questionText", "userAnswer", "correctAnswer")
    if any(not body.get(k) for k in required):
        raise HTTPException(status_code=400, detail="Missing required fields")

    row = {
        "user_id": user.id,
        "source_type": body["sourceType"],
        "source_id": body.get("sourceId") or None,
        "question_id": body.get("questionId") or None,
        "question_text": body["questionText"],
        "question_type": body.get("questionType") or None,
        "user_answer": body["userAnswer"],
        "correct_answer": body["correctAnswer"],
        "explanation": body.get("explanation") or None,
        "subject": body.get("subject") or None,
        "topic": body.get("topic") or None,
        "tags": body.get("tags") or [],
        "difficulty": body.get("difficulty") or None,
        "time_spent_seconds": body.get("timeSpentSeconds") or 0,
    }
    try:
        resp = client.table("mistake_logs").insert(row).execute()
    except APIError as e:
        logger.error("Error logging mistake for %s: %s", user.id, e.message)
        raise HTTPException(status_code=500, detail="Failed to log mistake")
    return {"mistake": first_row(resp)}


@router.patch("/api/mistakes")
def update_mistake(
    body: Dict[str, Any],
    user: AuthUser = Depends(require_user),
    client: Client = Depends(user_client),
) -> Dict[str, Any]:
    mistake_id = body.get("mistakeId")
    if not mistake_id:
        raise HTTPException(status_code=400, detail="mistakeId is required")

    updates: Dict[str, Any] = {"updated_at": _now_iso()}
    if isinstance(body.get("isResolved"), bool):
        updates["is_resolved"] = body["isResolved"]
    reviewed_at = body.get("reviewedAt")
    if reviewed_at:
        try:
            updates["reviewed_at"] = isoparse(str(reviewed_at)).isoformat()
        except ValueError:
            raise HTTPException(status_code=400, detail="reviewedAt must be an ISO-8601 timestamp")

    try:
        resp = client.table("mistake_logs").update(updates).eq("id", mistake_id).eq("user_id", user.id).execute()
    except APIError as e:
        logger.error("Error updating mistake %s: %s", mistake_id, e.message)
        raise HTTPException(status_code=500, detail="Failed to update mistake")
    mistake = first_row(resp)
    if mistake is None:
        raise HTTPException(status_code=404, detail="Mistake not found")
    return {"mistake": mistake}


# ---- Pomodoro ----


def pomodoro_state(raw: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    state = raw or {}
    return {
        "isLocked": bool(state.get("is_locked") or False),
        "lockType": state.get("lock_type") or None,
        "lockRemainingSeconds": state.get("lock_remaining_seconds") or 0,
        "studyElapsedSeconds": state.get("study_elapsed_seconds") or 0,
        "cyclesCompleted": state.get("cycles_completed") or 0,
        "totalStudyTimeToday": state.get("total_study_time_today") or 0,
        "studyDurationSeconds": STUDY_DURATION_SECONDS,
        "shortBreakSeconds": SHORT_BREAK_SECONDS,
        "longBreakSeconds": LONG_BREAK_SECONDS,
        "cyclesForLongBreak": CYCLES_FOR_LONG_BREAK,
    }


@router.get("/api/pomodoro")
def get_pomodoro(
    user: AuthUser = Depends(require_user),
    client: Client = Depends(user_client),
) -> Dict[str, Any]:
    try:
        resp = client.rpc("get_pomodoro_state", {"p_user_id": user.id}).execute()
    except APIError as e:
        logger.error("Error getting pomodoro state for %s: %s", user.id, e.message)
        raise HTTPException(status_code=500, detail="Failed to get pomodoro state")
    return pomodoro_state(first_row(resp))


@router.post("/api/pomodoro")
def pomodoro_action(
    body: Dict[str, Any],
    user: AuthUser = Depends(require_user),
    client: Client = Depends(user_client),
) -> Dict[str, Any]:
    action = body.get("action")

    if action == "trigger_lock":
        try:
            resp = client.rpc("trigger_pomodoro_lock", {"p_user_id": user.id}).execute()
        except APIError as e:
            logger.error("Error triggering lock for %s: %s", user.id, e.message)
            raise HTTPException(status_code=500, detail="Failed to trigger lock")
        result = first_row(resp) or {}
        return {
            "success": bool(result.get("success") or False),
            "lockType": result.get("lock_type"),
            "lockDurationMinutes": result.get("lock_duration_minutes"),
            "cyclesCompleted": result.get("cycles_completed"),
        }

    if action == "reset_study":
        now = _now_iso()
        try:
            client.table("pomodoro_tracking").update({"study_started_at": now, "updated_at": now}).eq(
                "user_id", user.id
            ).execute()
        except APIError as e:
            logger.error("Error resetting study for %s: %s", user.id, e.message)
            raise HTTPException(status_code=500, detail="Failed to reset study")
        return {"success": True}

    raise HTTPException(status_code=400, detail="Invalid action")


# ---- Profile ----

EDITABLE_PROFILE_FIELDS = (
    "full_name",
    "language",
    "country",
    "grade_level",
    "school_name",
    "date_of_birth",
    "phone",
    "timezone",
    "notification_preferences",
    "avatar_url",
)

DEFAULT_NOTIFICATION_PREFERENCES = {"email": True, "push": True, "weekly_report": True}


def merge_profile(user: AuthUser, profile: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    p = profile or {}
    meta = user.user_metadata or {}
    return {
        "id": user.id,
        "email": user.email,
        "email_verified": bool(user.email_confirmed_at),
        "provider": user.provider,
        "created_at": user.created_at,
        "last_sign_in": user.last_sign_in_at,
        "full_name": p.get("full_name") or meta.get("full_name") or "",
        "avatar_url": p.get("avatar_url") or meta.get("avatar_url") or meta.get("picture") or None,
        "role": p.get("role") or "student",
        "language": p.get("language") or "en",
        "country": p.get("country") or None,
        "grade_level": p.get("grade_level") or None,
        "school_name": p.get("school_name") or None,
        "date_of_birth": p.get("date_of_birth") or None,
        "phone": p.get("phone") or None,
        "timezone": p.get("timezone") or "UTC",
        "notification_preferences": p.get("notification_preferences") or dict(DEFAULT_NOTIFICATION_PREFERENCES),
        "updated_at": p.get("updated_at"),
    }


@router.get("/api/profile")
def get_profile(
    user: AuthUser = Depends(require_user),
    client: Client = Depends(user_client),
) -> Dict[str, Any]:
    try:
        profile = fetch_profile(client, user.id)
    except APIError as e:
        logger.error("Profile fetch failed for %s: %s", user.id, e.message)
        raise HTTPException(status_code=500, detail="Failed to fetch profile")
    return merge_profile(user, profile)


@router.put("/api/profile")
def update_profile(
    body: Dict[str, Any],
    user: AuthUser = Depends(require_user),
    client: Client = Depends(user_client),
) -> Dict[str, Any]:
    updates: Dict[str, Any] = {k: body[k] for k in EDITABLE_PROFILE_FIELDS if k in body}
    updates["updated_at"] = _now_iso()
    try:
        resp = client.table("profiles").update(updates).eq("id", user.id).execute()
    except APIError as e:
        logger.error("Profile update failed for %s: %s", user.id, e.message)
        raise HTTPException(status_code=500, detail="Failed to update profile")

    if "full_name" in body and load_auth_config().supabase_service_role_key:
        try:
            service_client().auth.admin.update_user_by_id(
                user.id, {"user_metadata": {**(user.user_metadata or {}), "full_name": body["full_name"]}}
            )
        except AuthApiError as e:
            # Profile row is saved; only the auth metadata copy is stale.
            logger.error("Auth metadata sync failed for %s: %s", user.id, e.message)
    return {"success": True, "profile": first_row(resp)}


# ---- Tutor chat ----


def _chat_request(body: Dict[str, Any]) -> ChatRequest:
    message = body.get("message")
    if not isinstance(message, str) or not message.strip():
        raise HTTPException(status_code=400, detail="Message is required")
    return ChatRequest.model_validate(body)


def _reply(req: ChatRequest, system: str) -> Dict[str, Any]:
    if not llm_configured():
        raise HTTPException(status_code=500, detail="AI service not configured")
    turns = list(req.history) + [ChatTurn(role="user", content=req.message)]
    text, err = chat_completion(turns, system=system, max_output_tokens=TUTOR_MAX_OUTPUT_TOKENS)
    if err == "empty_response":
        return {"reply": FALLBACK_REPLY}
    if err:
        logger.error("Tutor completion failed: %s", err)
        raise HTTPException(status_code=500, detail="Failed to get response from AI tutor")
    return {"reply": text}


@router.post("/api/tutor")
def tutor(body: Dict[str, Any]) -> Dict[str, Any]:
    """Public tutor widget: no session needed."""
    return _reply(_chat_request(body), TUTOR_SYSTEM_PROMPT)


# ---- Student chat (one stored conversation per user, streamed replies) ----


def _format_sse_event(event_type: str, data: Dict[str, Any]) -> str:
    return f"event: {event_type}\ndata: {json.dumps(data)}\n\n"


def student_profile_settings(profile: Optional[Dict[str, Any]]) -> Tuple[str, int]:
    """(language, age) from profile metadata; age defaults to 12."""
    meta = (profile or {}).get("metadata") or {}
    try:
        age = int(meta.get("age"))
    except (TypeError, ValueError):
        age = DEFAULT_STUDENT_AGE
    return str(meta.get("language") or "en"), age


def conversation_turns(messages: Any) -> List[ChatTurn]:
    """The stored messages the model sees as context (last 10)."""
    if not isinstance(messages, list):
        return []
    valid = [m for m in messages if isinstance(m, dict) and m.get("content")]
    return [ChatTurn.model_validate(m) for m in valid[-MAX_HISTORY_TURNS:]]


def _user_conversation(client: Client, user_id: str) -> Dict[str, Any]:
    resp = (
        client.table("conversations")
        .select("id, messages")
        .eq("user_id", user_id)
        .order("created_at", desc=True)
        .limit(1)
        .execute()
    )
    existing = first_row(resp)
    if existing:
        return existing
    try:
        created = first_row(
            client.table("conversations").insert({"user_id": user_id, "messages": [], "title": "Chat History"}).execute()
        )
    except APIError as e:
        logger.error("Error creating conversation for %s: %s", user_id, e.message)
        created = None
    if not created:
        raise HTTPException(status_code=500, detail="Failed to create conversation")
    return created


def _append_turns(client: Client, conversation_id: str, message: str, reply: str) -> None:
    resp = client.table("conversations").select("messages").eq("id", conversation_id).limit(1).execute()
    stored = (first_row(resp) or {}).get("messages")
    now = _now_iso()
    messages = list(stored) if isinstance(stored, list) else []
    messages.append({"role": "user", "content": message, "timestamp": now})
    messages.append({"role": "assistant", "content": reply, "timestamp": now})
    client.table("conversations").update({"messages": messages, "updated_at": now}).eq("id", conversation_id).execute()


async def _chat_stream(
    client: Client, conversation_id: str, message: str, turns: List[ChatTurn], system: str
) -> AsyncGenerator[str, None]:
    reply_parts: List[str] = []
    async for chunk in stream_chat(turns, system=system, temperature=CHAT_TEMPERATURE):
        if chunk.error:
            logger.error("Chat stream failed for conversation %s: %s", conversation_id, chunk.error)
            yield _format_sse_event("error", {"error": "Stream error"})
            return
        if chunk.content:
            reply_parts.append(chunk.content)
            yield _format_sse_event("token", {"content": chunk.content})

    try:
        await run_in_threadpool(_append_turns, client, conversation_id, message, "".join(reply_parts))
    except APIError as e:
        # The reply was delivered; only its persistence failed.
        logger.error("Failed to save chat turns to %s: %s", conversation_id, e.message)
    yield _format_sse_event("done", {"done": True, "conversationId": conversation_id})


@router.post("/api/chat")
def chat(
    body: Dict[str, Any],
    user: AuthUser = Depends(require_user),
    client: Client = Depends(user_client),
) -> StreamingResponse:
    """Student tutor chat; the reply is streamed as Server-Sent Events."""
    message = body.get("message")
    if not isinstance(message, str) or not message.strip():
        raise HTTPException(status_code=400, detail="Message is required")
    if not llm_configured():
        raise HTTPException(status_code=500, detail="AI service not configured")

    language, age = student_profile_settings(fetch_profile(client, user.id, "metadata"))
    conversation = _user_conversation(client, user.id)
    turns = conversation_turns(conversation.get("messages")) + [ChatTurn(role="user", content=message)]
    system = build_student_tutor_prompt(language=language, age=age)

    return StreamingResponse(
        _chat_stream(client, str(conversation["id"]), message, turns, system),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@router.get("/api/chat")
def chat_history(
    conversationId: Optional[str] = Query(None),
    user: AuthUser = Depends(require_user),
    client: Client = Depends(user_client),
) -> Any:
    if conversationId:
        resp = client.table("conversations").select("*").eq("id", conversationId).eq("user_id", user.id).execute()
        conversation = first_row(resp)
        if conversation is None:
            raise HTTPException(status_code=404, detail="Conversation not found")
        return conversation

    try:
        resp = (
            client.table("conversations")
            .select("id, title, created_at, updated_at")
            .eq("user_id", user.id)
            .order("updated_at", desc=True)
            .limit(50)
            .execute()
        )
    except APIError as e:
        logger.error("Error fetching conversations for %s: %s", user.id, e.message)
        raise HTTPException(status_code=500, detail="Failed to fetch conversations")
    return rows(resp)


@router.delete("/api/chat")
def clear_chat(
    user: AuthUser = Depends(require_user),
    client: Client = Depends(user_client),
) -> Dict[str, Any]:
    client.table("conversations").delete().eq("user_id", user.id).execute()
    logger.info("Cleared chat history for %s", user.id)
    return {"success": True}
