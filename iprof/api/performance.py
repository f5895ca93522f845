"""Study-time tracking and the student performance report."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from postgrest.exceptions import APIError
from supabase import Client

from iprof.api.common import first_row, rows
from iprof.auth.deps import require_user, user_client
from iprof.auth.models import AuthUser
from iprof.core.performance import WEEK_DAYS, build_report, elapsed_seconds

logger = logging.getLogger(__name__)

router = APIRouter()

DEFAULT_REPORT_DAYS = 30
MAX_REPORT_DAYS = 365


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _manual_report(client: Client, user_id: str, days: int) -> Dict[str, Any]:
    now = _now()
    since = now - timedelta(days=days)
    week_start = now - timedelta(days=WEEK_DAYS)

    summaries = rows(
        client.table("daily_activity_summary")
        .select("section, date, total_time_seconds, session_count, last_activity_at")
        .eq("user_id", user_id)
        .gte("date", since.date().isoformat())
        .execute()
    )
    sessions = rows(
        client.table("practice_sessions")
        .select(
            "id, score, total_questions, correct_answers, time_spent_seconds, started_at, completed_at, "
            "content:source_content_id (title, subject)"
        )
        .eq("user_id", user_id)
        .eq("is_completed", True)
        .gte("started_at", since.isoformat())
        .order("started_at", desc=True)
        .execute()
    )
    history = rows(
        client.table("score_history")
        .select("*")
        .eq("user_id", user_id)
        .gte("created_at", since.isoformat())
        .order("created_at", desc=True)
        .execute()
    )
    week_sessions = rows(
        client.table("practice_sessions")
        .select("started_at, score, is_completed")
        .eq("user_id", user_id)
        .gte("started_at", week_start.isoformat())
        .execute()
    )
    return build_report(
        now.date(),
        summaries=summaries,
        sessions=sessions,
        practice_history=[h for h in history if h.get("source_type") == "practice"],
        exam_history=[h for h in history if h.get("source_type") == "mock_exam"],
        week_sessions=week_sessions,
    )


@router.get("/api/performance")
def performance_report(
    days: int = Query(DEFAULT_REPORT_DAYS, ge=1, le=MAX_REPORT_DAYS),
    user: AuthUser = Depends(require_user),
    client: Client = Depends(user_client),
) -> Any:
    try:
        resp = client.rpc("get_performance_stats", {"p_user_id": user.id, "p_days": days}).execute()
        return getattr(resp, "data", None)
    except APIError as e:
        logger.warning("get_performance_stats unavailable (%s); aggregating rows", e.message)

    try:
        return _manual_report(client, user.id, days)
    except APIError as e:
        logger.error("Performance report for %s failed: %s", user.id, e.message)
        raise HTTPException(status_code=500, detail="Failed to fetch performance data")


def add_daily_time(client: Client, user_id: str, section: Optional[str], seconds: int) -> None:
    """Add one session of `seconds` to today's per-section summary row."""
    now = _now()
    today = now.date().isoformat()
    existing = first_row(
        client.table("daily_activity_summary")
        .select("*")
        .eq("user_id", user_id)
        .eq("date", today)
        .eq("section", section)
        .execute()
    )
    if existing:
        client.table("daily_activity_summary").update(
            {
                "total_time_seconds": (existing.get("total_time_seconds") or 0) + seconds,
                "session_count": (existing.get("session_count") or 0) + 1,
                "last_activity_at": now.isoformat(),
            }
        ).eq("id", existing["id"]).execute()
        return
    client.table("daily_activity_summary").insert(
        {
            "user_id": user_id,
            "date": today,
            "section": section,
            "total_time_seconds": seconds,
            "session_count": 1,
            "last_activity_at": now.isoformat(),
        }
    ).execute()


@router.post("/api/performance")
def track_activity(
    body: Dict[str, Any],
    user: AuthUser = Depends(require_user),
    client: Client = Depends(user_client),
) -> Dict[str, Any]:
    """Activity start/end, quick time logs and score logs."""
    action = body.get("action")
    duration = body.get("duration")

    if action == "start":
        try:
            log = first_row(
                client.table("activity_logs")
                .insert(
                    {
                        "user_id": user.id,
                        "section": body.get("section"),
                        "content_id": body.get("contentId") or None,
                        "content_title": body.get("contentTitle") or None,
                        "started_at": _now().isoformat(),
                    }
                )
                .execute()
            )
        except APIError as e:
            logger.error("Starting activity log for %s failed: %s", user.id, e.message)
            raise HTTPException(status_code=500, detail="Failed to start activity tracking")
        if log is None:
            raise HTTPException(status_code=500, detail="Failed to start activity tracking")
        return {"logId": log.get("id")}

    if action == "end" and body.get("logId"):
        log_id = body["logId"]
        log = first_row(
            client.table("activity_logs")
            .select("started_at, section")
            .eq("id", log_id)
            .eq("user_id", user.id)
            .execute()
        )
        if log:
            now = _now()
            seconds = int(duration) if duration else elapsed_seconds(log.get("started_at"), now)
            client.table("activity_logs").update(
                {"ended_at": now.isoformat(), "duration_seconds": seconds}
            ).eq("id", log_id).execute()
            add_daily_time(client, user.id, log.get("section"), seconds)
        return {"success": True}

    if action == "log_score":
        try:
            client.table("score_history").insert(
                {
                    "user_id": user.id,
                    "source_type": body.get("sourceType"),
                    "source_id": body.get("sourceId") or None,
                    "subject": body.get("subject") or None,
                    "topic": body.get("topic") or None,
                    "score": body.get("score"),
                    "total_questions": body.get("totalQuestions") or None,
                    "correct_answers": body.get("correctAnswers") or None,
                    "time_spent_seconds": body.get("timeSpent") or 0,
                }
            ).execute()
        except APIError as e:
            logger.error("Logging score for %s failed: %s", user.id, e.message)
            raise HTTPException(status_code=500, detail="Failed to log score")
        return {"success": True}

    if action == "log_time":
        add_daily_time(client, user.id, body.get("section"), int(duration or 0))
        return {"success": True}

    raise HTTPException(status_code=400, detail="Invalid action")
