"""
Student practice sessions over admin study guides.

A session mixes banked questions with freshly generated ones, is answered one
question at a time or all at once, and is auto-graded. Daily/monthly practice
allowances are enforced by the `check_practice_limits` database function.
"""

from __future__ import annotations

import logging
import os
import random
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from postgrest.exceptions import APIError
from supabase import Client

from iprof.api.common import first_row, rows
from iprof.auth.deps import require_user, service_client, user_client
from iprof.auth.models import AuthUser
from iprof.core.grading import (
    correct_answer,
    grade_answer,
    parse_options,
    pick_questions,
    public_question,
    question_mix,
    score_percent,
)
from iprof.llm.client import generate_json
from iprof.llm.prompts import QUESTION_GENERATOR_SYSTEM_PROMPT, build_question_prompt
from iprof.llm.schemas import parse_generated_questions

logger = logging.getLogger(__name__)

router = APIRouter()

DEFAULT_SESSION_SIZE = 10
MAX_SESSION_SIZE = 50
GENERATION_MAX_OUTPUT_TOKENS = 4000
RECENT_SESSIONS = 5

GUIDE_ICON = "📚"
GUIDE_COLOR = "#0794d4"
DEFAULT_GUIDE_DESCRIPTION = "Practice questions from this study guide"

UNLIMITED_PRACTICE = {
    "can_practice": True,
    "questions_remaining_today": 9999,
    "questions_remaining_month": 99999,
    "is_paid_user": True,
    "daily_limit": 9999,
    "monthly_limit": 99999,
}

_SESSION_DETAIL_COLUMNS = (
    "*, content:source_content_id (id, title, description), "
    "practice_answers (id, question_id, user_answer, is_correct, time_spent_seconds, answered_at, "
    "practice_questions (id, question, question_type, difficulty, answer, options, correct_option, explanation))"
)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _limits_disabled() -> bool:
    raw = (os.getenv("DEV_MODE") or os.getenv("NEXT_PUBLIC_DEV_MODE") or "").strip().lower()
    return raw in ("1", "true", "yes", "on")


def _practice_limits(client: Client, user_id: str) -> Optional[Dict[str, Any]]:
    if _limits_disabled():
        return dict(UNLIMITED_PRACTICE)
    return first_row(client.rpc("check_practice_limits", {"p_user_id": user_id}).execute())


def _session_size(raw: Any) -> int:
    try:
        n = int(raw)
    except (TypeError, ValueError):
        return DEFAULT_SESSION_SIZE
    return max(1, min(n, MAX_SESSION_SIZE))


def _own_session(client: Client, user: AuthUser, session_id: Any, *, open_only: bool = True) -> Dict[str, Any]:
    session = first_row(
        client.table("practice_sessions").select("*").eq("id", session_id).eq("user_id", user.id).execute()
    )
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    if open_only and session.get("is_completed"):
        raise HTTPException(status_code=400, detail="Session already completed")
    return session


def practice_stats(sessions: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Totals over completed sessions."""
    return {
        "totalSessions": len(sessions),
        "totalQuestions": sum(s.get("total_questions") or 0 for s in sessions),
        "totalCorrect": sum(s.get("correct_answers") or 0 for s in sessions),
        "averageScore": (sum(s.get("score") or 0 for s in sessions) / len(sessions)) if sessions else 0,
    }


# ---- GET ----


@router.get("/api/practice")
def practice_overview(
    sessionId: Optional[str] = Query(None),
    studyGuideId: Optional[str] = Query(None),
    user: AuthUser = Depends(require_user),
    client: Client = Depends(user_client),
) -> Dict[str, Any]:
    """Session detail, a guide's question bank, or the practice home (guides, limits, history, stats)."""
    if sessionId:
        session = first_row(
            client.table("practice_sessions")
            .select(_SESSION_DETAIL_COLUMNS)
            .eq("id", sessionId)
            .eq("user_id", user.id)
            .execute()
        )
        if session is None:
            raise HTTPException(status_code=404, detail="Session not found")
        return {"session": session}

    if studyGuideId:
        resp = (
            client.table("practice_questions")
            .select("*")
            .eq("source_content_id", studyGuideId)
            .order("created_at", desc=True)
            .execute()
        )
        return {"questions": rows(resp)}

    guides = rows(
        client.table("content")
        .select("*")
        .eq("content_type", "study_guide")
        .eq("is_admin_upload", True)
        .order("created_at", desc=True)
        .execute()
    )
    counts: Dict[str, int] = {}
    if guides:
        bank = client.table("practice_questions").select("source_content_id").in_(
            "source_content_id", [g["id"] for g in guides]
        )
        for row in rows(bank.execute()):
            key = str(row.get("source_content_id"))
            counts[key] = counts.get(key, 0) + 1

    topics = [
        {
            "id": g["id"],
            "name": g.get("title"),
            "description": g.get("description") or DEFAULT_GUIDE_DESCRIPTION,
            "file_url": g.get("file_url"),
            "file_name": g.get("file_name"),
            "icon": GUIDE_ICON,
            "color": GUIDE_COLOR,
            "questionCount": counts.get(str(g["id"]), 0),
            "created_at": g.get("created_at"),
        }
        for g in guides
    ]

    recent = rows(
        client.table("practice_sessions")
        .select("*, content:source_content_id (id, title)")
        .eq("user_id", user.id)
        .order("started_at", desc=True)
        .limit(RECENT_SESSIONS)
        .execute()
    )
    for s in recent:
        s["practice_topics"] = {
            "name": (s.get("content") or {}).get("title") or "Unknown",
            "icon": GUIDE_ICON,
            "color": GUIDE_COLOR,
        }

    completed = rows(
        client.table("practice_sessions")
        .select("score, total_questions, correct_answers")
        .eq("user_id", user.id)
        .eq("is_completed", True)
        .execute()
    )

    return {
        "topics": topics,
        "limits": _practice_limits(client, user.id),
        "recentSessions": recent,
        "stats": practice_stats(completed),
    }


# ---- POST: start ----


def _generate_for_guide(guide: Dict[str, Any], count: int, user: AuthUser) -> List[Dict[str, Any]]:
    """Generate, store and return up to `count` questions for a study guide. Failures yield []."""
    title = str(guide.get("title") or "")
    material = f"{title}\n\n{guide.get('description') or ''}".strip()
    raw, err = generate_json(
        build_question_prompt(content=material, topic=title, count=count),
        system=QUESTION_GENERATOR_SYSTEM_PROMPT,
        max_output_tokens=GENERATION_MAX_OUTPUT_TOKENS,
        mock_count=count,
    )
    if err:
        logger.warning("Question generation for guide %s failed: %s", guide.get("id"), err)
        return []

    questions = parse_generated_questions(raw)[:count]
    if not questions:
        return []
    to_insert = [q.to_row(topic_id=None, source_content_id=guide.get("id"), created_by=user.id) for q in questions]
    try:
        saved = rows(service_client().table("practice_questions").insert(to_insert).execute())
    except APIError as e:
        logger.error("Saving %d generated questions failed: %s", len(to_insert), e.message)
        return []
    return saved[:count]


@router.post("/api/practice")
def start_practice(
    body: Dict[str, Any],
    user: AuthUser = Depends(require_user),
    client: Client = Depends(user_client),
) -> Any:
    if body.get("action") != "start":
        raise HTTPException(status_code=400, detail="Invalid action")

    guide_id = body.get("studyGuideId")
    difficulty = body.get("difficulty")
    size = _session_size(body.get("questionCount", DEFAULT_SESSION_SIZE))

    limits = _practice_limits(client, user.id)
    if limits and not limits.get("can_practice"):
        return JSONResponse(status_code=429, content={"error": "Practice limit reached", "limits": limits})

    guide = first_row(client.table("content").select("*").eq("id", guide_id).execute()) if guide_id else None
    if guide is None:
        raise HTTPException(status_code=404, detail="Study guide not found")

    bank = rows(client.table("practice_questions").select("*").eq("source_content_id", guide_id).execute())
    if difficulty and difficulty != "all":
        bank = [q for q in bank if q.get("difficulty") == difficulty]

    from_bank, _ = question_mix(size)
    banked = pick_questions(bank, from_bank)
    needed = size - len(banked)
    generated = _generate_for_guide(guide, needed, user) if needed > 0 else []

    questions = banked + generated
    if not questions:
        raise HTTPException(status_code=404, detail="No questions available. Please try again later.")
    random.shuffle(questions)

    session = first_row(
        client.table("practice_sessions")
        .insert(
            {
                "user_id": user.id,
                "source_content_id": guide_id,
                "difficulty": difficulty or "mixed",
                "total_questions": len(questions),
            }
        )
        .execute()
    )
    if session is None:
        raise HTTPException(status_code=500, detail="Failed to create practice session")

    logger.info(
        "Practice session %s for %s: %d banked + %d generated", session.get("id"), user.id, len(banked), len(generated)
    )
    return {
        "session": session,
        "studyGuide": {"id": guide.get("id"), "title": guide.get("title")},
        "questions": [public_question(q) for q in questions],
        "meta": {"fromDatabase": len(banked), "fromAI": len(generated)},
    }


# ---- PUT: answer / submit_all / complete ----


def _submit_all(client: Client, user: AuthUser, session: Dict[str, Any], answers: List[Dict[str, Any]]) -> Dict[str, Any]:
    session_id = session["id"]
    question_ids = [a.get("questionId") for a in answers]
    try:
        questions = rows(client.table("practice_questions").select("*").in_("id", question_ids).execute())
    except APIError as e:
        logger.error("Fetching questions for session %s failed: %s", session_id, e.message)
        raise HTTPException(status_code=500, detail="Failed to fetch questions")
    by_id = {str(q.get("id")): q for q in questions}

    results: List[Dict[str, Any]] = []
    answer_rows: List[Dict[str, Any]] = []
    mistakes: List[Dict[str, Any]] = []
    total_correct = 0
    total_time = 0

    for ans in answers:
        question = by_id.get(str(ans.get("questionId")))
        if question is None:
            continue
        is_correct = grade_answer(question, ans.get("answer"))
        spent = int(ans.get("timeSpent") or 0)
        total_correct += int(is_correct)
        total_time += spent

        answer_rows.append(
            {
                "session_id": session_id,
                "question_id": question.get("id"),
                "user_answer": ans.get("answer"),
                "is_correct": is_correct,
                "time_spent_seconds": spent,
            }
        )
        result = {
            "questionId": question.get("id"),
            "question": question.get("question"),
            "question_type": question.get("question_type"),
            "userAnswer": ans.get("answer"),
            "correctAnswer": correct_answer(question),
            "isCorrect": is_correct,
            "explanation": question.get("explanation"),
            "options": parse_options(question.get("options")),
        }
        results.append(result)
        if not is_correct:
            mistakes.append(
                {
                    "user_id": user.id,
                    "source_type": "practice",
                    "source_id": session_id,
                    "question_id": question.get("id"),
                    "question_text": question.get("question"),
                    "question_type": question.get("question_type"),
                    "user_answer": ans.get("answer"),
                    "correct_answer": result["correctAnswer"],
                    "explanation": question.get("explanation"),
                    "subject": session.get("subject"),
                    "topic": session.get("topic"),
                    "tags": session.get("tags") or [],
                    "difficulty": question.get("difficulty"),
                    "time_spent_seconds": spent,
                }
            )

    if answer_rows:
        client.table("practice_answers").insert(answer_rows).execute()

    score = score_percent(total_correct, len(answers))
    client.table("practice_sessions").update(
        {
            "is_completed": True,
            "completed_at": _now_iso(),
            "correct_answers": total_correct,
            "score": score,
            "time_spent_seconds": total_time,
        }
    ).eq("id", session_id).execute()
    client.rpc("increment_practice_usage", {"p_user_id": user.id, "p_count": len(answers)}).execute()

    if mistakes:
        client.table("mistake_logs").insert(mistakes).execute()
    client.table("score_history").insert(
        {
            "user_id": user.id,
            "source_type": "practice",
            "source_id": session_id,
            "subject": session.get("subject"),
            "topic": session.get("topic"),
            "score": score,
            "total_questions": len(answers),
            "correct_answers": total_correct,
            "time_spent_seconds": total_time,
        }
    ).execute()

    logger.info("Session %s submitted: %d/%d correct", session_id, total_correct, len(answers))
    return {
        "results": results,
        "stats": {"correct": total_correct, "total": len(answers), "score": score, "timeSpent": total_time},
    }


def _answer_one(client: Client, user: AuthUser, session: Dict[str, Any], body: Dict[str, Any]) -> Dict[str, Any]:
    question = first_row(client.table("practice_questions").select("*").eq("id", body.get("questionId")).execute())
    if question is None:
        raise HTTPException(status_code=404, detail="Question not found")

    is_correct = grade_answer(question, body.get("answer"))
    saved = first_row(
        client.table("practice_answers")
        .insert(
            {
                "session_id": session["id"],
                "question_id": question.get("id"),
                "user_answer": body.get("answer"),
                "is_correct": is_correct,
                "time_spent_seconds": int(body.get("timeSpent") or 0),
            }
        )
        .execute()
    )
    client.rpc("increment_practice_usage", {"p_user_id": user.id, "p_count": 1}).execute()
    return {
        "answer": saved,
        "isCorrect": is_correct,
        "correctAnswer": correct_answer(question),
        "explanation": question.get("explanation"),
    }


def _complete(client: Client, session: Dict[str, Any]) -> Dict[str, Any]:
    session_id = session["id"]
    answered = rows(
        client.table("practice_answers").select("is_correct, time_spent_seconds").eq("session_id", session_id).execute()
    )
    correct = sum(1 for a in answered if a.get("is_correct"))
    total_time = sum(a.get("time_spent_seconds") or 0 for a in answered)
    score = score_percent(correct, len(answered))

    updated = first_row(
        client.table("practice_sessions")
        .update(
            {
                "is_completed": True,
                "completed_at": _now_iso(),
                "correct_answers": correct,
                "score": score,
                "time_spent_seconds": total_time,
            }
        )
        .eq("id", session_id)
        .execute()
    )
    return {
        "session": updated,
        "stats": {"correct": correct, "total": len(answered), "score": score, "timeSpent": total_time},
    }


@router.put("/api/practice")
def update_practice(
    body: Dict[str, Any],
    user: AuthUser = Depends(require_user),
    client: Client = Depends(user_client),
) -> Dict[str, Any]:
    action = body.get("action")
    session_id = body.get("sessionId")

    if action == "submit_all":
        answers = [a for a in (body.get("answers") or []) if isinstance(a, dict)]
        return _submit_all(client, user, _own_session(client, user, session_id), answers)
    if action == "answer":
        return _answer_one(client, user, _own_session(client, user, session_id), body)
    if action == "complete":
        return _complete(client, _own_session(client, user, session_id, open_only=False))
    raise HTTPException(status_code=400, detail="Invalid action")
