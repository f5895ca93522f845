"""
Timed mock exams.

Exams are published by admins with an optional availability window. A student
gets one session per exam: answers are saved as they go, and submission is
graded by the `submit_mock_exam` database function.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from dateutil.parser import isoparse
from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from postgrest.exceptions import APIError
from supabase import Client

from iprof.api.common import first_row, rows
from iprof.auth.deps import require_user, user_client
from iprof.auth.models import AuthUser

logger = logging.getLogger(__name__)

router = APIRouter()

DEFAULT_DURATION_MINUTES = 60

_EXAM_LIST_COLUMNS = (
    "id, title, description, subject, country_code, duration_minutes, total_marks, "
    "passing_marks, difficulty, start_date, end_date, created_at"
)
_STUDENT_QUESTION_COLUMNS = "id, question_number, question_type, question, options, marks, topic, difficulty"
_SESSION_WITH_EXAM = "*, exam:mock_exams(*)"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _aware(raw: Any) -> datetime:
    dt = isoparse(str(raw))
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def exam_window_error(exam: Dict[str, Any], now: datetime) -> Optional[str]:
    """Why the exam cannot be taken at `now`, or None when it is open."""
    start, end = exam.get("start_date"), exam.get("end_date")
    if start and _aware(start) > now:
        return "Exam has not started yet"
    if end and _aware(end) < now:
        return "Exam has expired"
    return None


def _open_exam(client: Client, exam_id: Any) -> Dict[str, Any]:
    exam = first_row(
        client.table("mock_exams").select("*").eq("id", exam_id).eq("status", "published").execute()
    )
    if exam is None:
        raise HTTPException(status_code=404, detail="Exam not found")
    problem = exam_window_error(exam, _now())
    if problem:
        raise HTTPException(status_code=400, detail=problem)
    return exam


def _existing_session(client: Client, user: AuthUser, exam_id: Any) -> Optional[Dict[str, Any]]:
    return first_row(
        client.table("mock_exam_sessions").select("*").eq("exam_id", exam_id).eq("user_id", user.id).execute()
    )


def _own_session(client: Client, user: AuthUser, session_id: Any, columns: str = "*") -> Dict[str, Any]:
    session = first_row(
        client.table("mock_exam_sessions").select(columns).eq("id", session_id).eq("user_id", user.id).execute()
    )
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return session


def merge_answers(
    questions: List[Dict[str, Any]], answers: List[Dict[str, Any]], *, graded: bool = False
) -> List[Dict[str, Any]]:
    """Attach the student's saved answer (and, once graded, the marking) to each question."""
    by_question = {str(a.get("question_id")): a for a in answers}
    out = []
    for q in questions:
        a = by_question.get(str(q.get("id")))
        item = dict(q)
        item["userAnswer"] = a.get("user_answer") if a else None
        item["isAnswered"] = a is not None
        if graded:
            item["isCorrect"] = a.get("is_correct") if a else None
            item["marksObtained"] = (a.get("marks_obtained") or 0) if a else 0
            item["graderFeedback"] = a.get("grader_feedback") if a else None
        out.append(item)
    return out


def _session_with_questions(client: Client, user: AuthUser, session_id: str, *, graded: bool) -> Dict[str, Any]:
    session = _own_session(client, user, session_id, _SESSION_WITH_EXAM)
    questions = rows(
        client.table("mock_exam_questions")
        .select("*")
        .eq("exam_id", session.get("exam_id"))
        .order("question_number")
        .execute()
    )
    answers = rows(client.table("mock_exam_answers").select("*").eq("session_id", session_id).execute())
    return {"session": session, "questions": merge_answers(questions, answers, graded=graded)}


# ---- GET ----


@router.get("/api/mock-exam")
def get_mock_exams(
    examId: Optional[str] = Query(None),
    sessionId: Optional[str] = Query(None),
    action: Optional[str] = Query(None),
    user: AuthUser = Depends(require_user),
    client: Client = Depends(user_client),
) -> Any:
    """Exam list, an exam ready to start, a session in progress, or graded results."""
    if sessionId and action == "session":
        return _session_with_questions(client, user, sessionId, graded=False)

    if sessionId and action == "results":
        return _session_with_questions(client, user, sessionId, graded=True)

    if examId and action == "start":
        exam = _open_exam(client, examId)
        existing = _existing_session(client, user, examId)
        if existing and existing.get("is_submitted"):
            return JSONResponse(
                status_code=400,
                content={"error": "You have already submitted this exam", "session": existing},
            )
        try:
            questions = rows(
                client.table("mock_exam_questions")
                .select(_STUDENT_QUESTION_COLUMNS)
                .eq("exam_id", examId)
                .order("question_number")
                .execute()
            )
        except APIError as e:
            logger.error("Loading questions for exam %s failed: %s", examId, e.message)
            raise HTTPException(status_code=500, detail="Failed to load questions")
        return {"exam": exam, "questions": questions, "existingSession": existing}

    try:
        exams = rows(
            client.table("mock_exams")
            .select(_EXAM_LIST_COLUMNS)
            .eq("status", "published")
            .order("created_at", desc=True)
            .execute()
        )
    except APIError as e:
        logger.error("Loading exams failed: %s", e.message)
        raise HTTPException(status_code=500, detail="Failed to load exams")

    sessions = rows(
        client.table("mock_exam_sessions")
        .select("id, exam_id, is_submitted, total_score, percentage, passed, submitted_at")
        .eq("user_id", user.id)
        .execute()
    )
    by_exam = {str(s.get("exam_id")): s for s in sessions}
    return {"exams": [dict(e, userSession=by_exam.get(str(e.get("id")))) for e in exams]}


# ---- POST: start / save_answer / update_time ----


@router.post("/api/mock-exam")
def mock_exam_action(
    body: Dict[str, Any],
    user: AuthUser = Depends(require_user),
    client: Client = Depends(user_client),
) -> Dict[str, Any]:
    action = body.get("action")

    if action == "start":
        exam_id = body.get("examId")
        existing = _existing_session(client, user, exam_id)
        if existing:
            if existing.get("is_submitted"):
                raise HTTPException(status_code=400, detail="You have already submitted this exam")
            return {"session": existing, "resumed": True}

        exam = _open_exam(client, exam_id)
        minutes = exam.get("duration_minutes") or DEFAULT_DURATION_MINUTES
        try:
            session = first_row(
                client.table("mock_exam_sessions")
                .insert({"exam_id": exam_id, "user_id": user.id, "time_remaining_seconds": int(minutes) * 60})
                .execute()
            )
        except APIError as e:
            logger.error("Starting exam %s for %s failed: %s", exam_id, user.id, e.message)
            raise HTTPException(status_code=500, detail="Failed to start exam")
        return {"session": session, "resumed": False}

    if action == "save_answer":
        session = _own_session(client, user, body.get("sessionId"))
        if session.get("is_submitted"):
            raise HTTPException(status_code=400, detail="Exam already submitted")
        try:
            client.table("mock_exam_answers").upsert(
                {
                    "session_id": session["id"],
                    "question_id": body.get("questionId"),
                    "user_answer": body.get("answer"),
                    "answered_at": _now().isoformat(),
                },
                on_conflict="session_id,question_id",
            ).execute()
        except APIError as e:
            logger.error("Saving answer in session %s failed: %s", session["id"], e.message)
            raise HTTPException(status_code=500, detail="Failed to save answer")
        return {"success": True}

    if action == "update_time":
        client.table("mock_exam_sessions").update(
            {"time_remaining_seconds": body.get("timeRemaining")}
        ).eq("id", body.get("sessionId")).eq("user_id", user.id).execute()
        return {"success": True}

    raise HTTPException(status_code=400, detail="Invalid action")


# ---- PUT: submit ----


def _mistake_rows(
    user: AuthUser, session: Dict[str, Any], questions: List[Dict[str, Any]], answers: List[Dict[str, Any]]
) -> List[Dict[str, Any]]:
    exam = session.get("exam") or {}
    by_id = {str(q.get("id")): q for q in questions}
    out = []
    for a in answers:
        if a.get("is_correct") is not False:
            continue
        q = by_id.get(str(a.get("question_id")))
        if q is None:
            continue
        out.append(
            {
                "user_id": user.id,
                "source_type": "exam",
                "source_id": session["id"],
                "question_id": q.get("id"),
                "question_text": q.get("question"),
                "question_type": q.get("question_type"),
                "user_answer": a.get("user_answer"),
                "correct_answer": q.get("correct_answer") or q.get("answer_key") or "",
                "explanation": q.get("explanation"),
                "subject": exam.get("subject"),
                "topic": q.get("topic"),
                "difficulty": q.get("difficulty"),
            }
        )
    return out


@router.put("/api/mock-exam")
def submit_mock_exam(
    body: Dict[str, Any],
    user: AuthUser = Depends(require_user),
    client: Client = Depends(user_client),
) -> Dict[str, Any]:
    session = _own_session(client, user, body.get("sessionId"), _SESSION_WITH_EXAM)
    if session.get("is_submitted"):
        raise HTTPException(status_code=400, detail="Exam already submitted")
    session_id = session["id"]

    now = _now().isoformat()
    answers = [a for a in (body.get("answers") or []) if isinstance(a, dict)]
    if answers:
        client.table("mock_exam_answers").upsert(
            [
                {
                    "session_id": session_id,
                    "question_id": a.get("questionId"),
                    "user_answer": a.get("answer"),
                    "answered_at": now,
                }
                for a in answers
            ],
            on_conflict="session_id,question_id",
        ).execute()

    try:
        result = first_row(client.rpc("submit_mock_exam", {"p_session_id": session_id}).execute()) or {}
    except APIError as e:
        logger.error("Grading session %s failed: %s", session_id, e.message)
        raise HTTPException(status_code=500, detail="Failed to grade exam")

    questions = rows(
        client.table("mock_exam_questions").select("*").eq("exam_id", session.get("exam_id")).execute()
    )
    graded = rows(client.table("mock_exam_answers").select("*").eq("session_id", session_id).execute())
    mistakes = _mistake_rows(user, session, questions, graded)
    if mistakes:
        client.table("mistake_logs").insert(mistakes).execute()

    exam = session.get("exam") or {}
    client.table("score_history").insert(
        {
            "user_id": user.id,
            "source_type": "mock_exam",
            "source_id": session_id,
            "subject": exam.get("subject"),
            "score": result.get("percentage"),
            "total_questions": len(questions),
            "correct_answers": sum(1 for a in graded if a.get("is_correct")),
        }
    ).execute()

    updated = first_row(client.table("mock_exam_sessions").select("*").eq("id", session_id).execute())
    logger.info("Exam session %s submitted by %s: %s%%", session_id, user.id, result.get("percentage"))
    return {"success": True, "result": result, "session": updated}
