"""
Practice topics, questions and LLM question generation.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from postgrest.exceptions import APIError
from supabase import Client

from iprof.api.common import first_row, require_role_capability, rows
from iprof.auth.deps import require_user, service_client, user_client
from iprof.auth.models import AuthUser
from iprof.authz.policy import Capability
from iprof.llm.client import generate_json
from iprof.llm.prompts import QUESTION_GENERATOR_SYSTEM_PROMPT, build_question_prompt
from iprof.llm.schemas import parse_generated_questions

logger = logging.getLogger(__name__)

router = APIRouter()

DEFAULT_QUESTION_COUNT = 10
MAX_QUESTION_COUNT = 50
GENERATION_MAX_OUTPUT_TOKENS = 4000


# ---- Topics ----


@router.get("/api/practice/topics")
def list_topics(
    subject: Optional[str] = Query(None),
    country_code: Optional[str] = Query(None),
    grade_level: Optional[str] = Query(None),
    user: AuthUser = Depends(require_user),
    client: Client = Depends(user_client),
) -> List[Dict[str, Any]]:
    query = (
        client.table("practice_topics")
        .select("*, practice_questions(count)")
        .eq("is_active", True)
        .order("created_at", desc=True)
    )
    if subject:
        query = query.eq("subject", subject)
    if country_code:
        query = query.eq("country_code", country_code)
    if grade_level:
        query = query.eq("grade_level", grade_level)

    out: List[Dict[str, Any]] = []
    for topic in rows(query.execute()):
        counts = topic.pop("practice_questions", None) or []
        topic["question_count"] = int((counts[0] or {}).get("count") or 0) if counts else 0
        out.append(topic)
    return out


@router.post("/api/practice/topics")
def create_topic(
    body: Dict[str, Any],
    user: AuthUser = Depends(require_user),
    client: Client = Depends(user_client),
) -> Dict[str, Any]:
    require_role_capability(client, user, Capability.MANAGE_PRACTICE)
    if not str(body.get("name") or "").strip():
        raise HTTPException(status_code=400, detail="Topic name required")
    row = {k: v for k, v in body.items() if k != "id"}
    row["created_by"] = user.id
    return first_row(service_client().table("practice_topics").insert(row).execute()) or {}


@router.put("/api/practice/topics")
def update_topic(
    body: Dict[str, Any],
    user: AuthUser = Depends(require_user),
    client: Client = Depends(user_client),
) -> Dict[str, Any]:
    topic_id = body.get("id")
    if not topic_id:
        raise HTTPException(status_code=400, detail="Topic ID required")
    require_role_capability(client, user, Capability.MANAGE_PRACTICE)
    update = {k: v for k, v in body.items() if k != "id"}
    row = first_row(service_client().table("practice_topics").update(update).eq("id", topic_id).execute())
    if row is None:
        raise HTTPException(status_code=404, detail="Topic not found")
    return row


@router.delete("/api/practice/topics")
def delete_topic(
    id: Optional[str] = Query(None),
    user: AuthUser = Depends(require_user),
    client: Client = Depends(user_client),
) -> Dict[str, Any]:
    if not id:
        raise HTTPException(status_code=400, detail="Topic ID required")
    require_role_capability(client, user, Capability.MANAGE_PRACTICE)
    admin = service_client()
    admin.table("practice_questions").delete().eq("topic_id", id).execute()
    admin.table("practice_topics").delete().eq("id", id).execute()
    return {"success": True}


# ---- Questions ----


@router.get("/api/practice/questions")
def list_questions(
    topic_id: Optional[str] = Query(None),
    difficulty: Optional[str] = Query(None),
    limit: Optional[int] = Query(None, ge=1, le=200),
    user: AuthUser = Depends(require_user),
    client: Client = Depends(user_client),
) -> List[Dict[str, Any]]:
    query = client.table("practice_questions").select("*").order("created_at")
    if topic_id:
        query = query.eq("topic_id", topic_id)
    if difficulty:
        query = query.eq("difficulty", difficulty)
    if limit:
        query = query.limit(limit)
    return rows(query.execute())


@router.post("/api/practice/questions")
def create_question(
    body: Dict[str, Any],
    user: AuthUser = Depends(require_user),
    client: Client = Depends(user_client),
) -> Dict[str, Any]:
    require_role_capability(client, user, Capability.MANAGE_PRACTICE)
    if not str(body.get("question") or "").strip():
        raise HTTPException(status_code=400, detail="Question text required")
    row = {k: v for k, v in body.items() if k != "id"}
    row["created_by"] = user.id
    row.setdefault("is_admin_created", True)
    return first_row(service_client().table("practice_questions").insert(row).execute()) or {}


@router.put("/api/practice/questions")
def update_question(
    body: Dict[str, Any],
    user: AuthUser = Depends(require_user),
    client: Client = Depends(user_client),
) -> Dict[str, Any]:
    question_id = body.get("id")
    if not question_id:
        raise HTTPException(status_code=400, detail="Question ID required")
    require_role_capability(client, user, Capability.MANAGE_PRACTICE)
    update = {k: v for k, v in body.items() if k != "id"}
    row = first_row(service_client().table("practice_questions").update(update).eq("id", question_id).execute())
    if row is None:
        raise HTTPException(status_code=404, detail="Question not found")
    return row


@router.delete("/api/practice/questions")
def delete_question(
    id: Optional[str] = Query(None),
    user: AuthUser = Depends(require_user),
    client: Client = Depends(user_client),
) -> Dict[str, Any]:
    if not id:
        raise HTTPException(status_code=400, detail="Question ID required")
    require_role_capability(client, user, Capability.MANAGE_PRACTICE)
    service_client().table("practice_questions").delete().eq("id", id).execute()
    return {"success": True}


# ---- Generation ----


@router.get("/api/practice/generate")
def generation_sources(
    user: AuthUser = Depends(require_user),
    client: Client = Depends(user_client),
) -> Dict[str, Any]:
    """Admin study guides and active topics that questions can be generated from."""
    guides = (
        client.table("content")
        .select("id, title, description, file_name, created_at")
        .eq("content_type", "study_guide")
        .eq("is_admin_upload", True)
        .order("created_at", desc=True)
        .execute()
    )
    topics = client.table("practice_topics").select("*").eq("is_active", True).order("name").execute()
    return {"studyGuides": rows(guides), "topics": rows(topics)}


def _question_count(raw: Any) -> int:
    try:
        n = int(raw)
    except (TypeError, ValueError):
        return DEFAULT_QUESTION_COUNT
    return max(1, min(n, MAX_QUESTION_COUNT))


@router.post("/api/practice/generate")
def generate_questions(
    body: Dict[str, Any],
    user: AuthUser = Depends(require_user),
    client: Client = Depends(user_client),
) -> Dict[str, Any]:
    """
    Generate practice questions from a study guide, a topic or free text.

    Generated questions are stored as AI-generated rows; when the insert fails
    the questions are still returned with `saved: false`.
    """
    require_role_capability(client, user, Capability.GENERATE_QUESTIONS)

    content_id = body.get("contentId")
    topic_id = body.get("topicId")
    count = _question_count(body.get("count", DEFAULT_QUESTION_COUNT))
    study_content = str(body.get("customContent") or "")
    topic = str(body.get("topicName") or "")

    if content_id:
        resp = client.table("content").select("*").eq("id", content_id).maybe_single().execute()
        content = getattr(resp, "data", None) if resp is not None else None
        if not content:
            raise HTTPException(status_code=404, detail="Content not found")
        # Only the record text is used; files are not parsed.
        study_content = f"{content.get('title') or ''}\n\n{content.get('description') or ''}".strip()

    if topic_id and not topic:
        resp = client.table("practice_topics").select("name").eq("id", topic_id).maybe_single().execute()
        topic_row = getattr(resp, "data", None) if resp is not None else None
        topic = str((topic_row or {}).get("name") or "General")

    if not study_content and not topic:
        raise HTTPException(status_code=400, detail="Please provide content or topic to generate questions from")

    raw, err = generate_json(
        build_question_prompt(content=study_content, topic=topic, count=count),
        system=QUESTION_GENERATOR_SYSTEM_PROMPT,
        max_output_tokens=GENERATION_MAX_OUTPUT_TOKENS,
        mock_count=count,
    )
    if err:
        logger.error("Question generation failed for %s: %s", user.id, err)
        if err == "json_parse_failed":
            raise HTTPException(status_code=500, detail="Failed to parse generated questions")
        if err == "missing_api_key":
            raise HTTPException(status_code=500, detail="AI service not configured")
        raise HTTPException(status_code=500, detail=f"Failed to generate questions ({err})")

    questions = parse_generated_questions(raw)
    if not questions:
        raise HTTPException(status_code=500, detail="No questions generated")

    to_insert = [q.to_row(topic_id=topic_id, source_content_id=content_id, created_by=user.id) for q in questions]
    try:
        saved = rows(client.table("practice_questions").insert(to_insert).execute())
    except APIError as e:
        logger.warning("Generated %d questions but saving failed: %s", len(questions), e.message)
        return {"questions": [q.model_dump() for q in questions], "saved": False, "error": e.message}

    logger.info("Generated and saved %d questions (topic=%s content=%s)", len(saved), topic_id, content_id)
    return {"questions": saved, "saved": True, "count": len(saved)}
