"""
Study-performance report built from activity and score rows.

Used when the `get_performance_stats` database function is unavailable; the
output has the same shape as that function's result.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Mapping, Sequence

from dateutil.parser import isoparse

WEEK_DAYS = 7
STREAK_LOOKBACK_DAYS = 30


def _day(raw: Any) -> str:
    return str(raw or "")[:10]


def _mean(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def _round1(x: float) -> float:
    return round(x * 10) / 10


def last_days(today: date, n: int) -> List[date]:
    """The `n` days ending today, oldest first."""
    return [today - timedelta(days=i) for i in range(n - 1, -1, -1)]


def current_streak(today: date, active_days: Iterable[str], *, lookback: int = STREAK_LOOKBACK_DAYS) -> int:
    """
    Consecutive active days ending today.

    A quiet today does not break the streak (the student may not have studied yet).
    """
    active = set(active_days)
    streak = 0
    for i in range(lookback):
        if (today - timedelta(days=i)).isoformat() in active:
            streak += 1
        elif i > 0:
            break
    return streak


def build_report(
    today: date,
    *,
    summaries: Sequence[Mapping[str, Any]],
    sessions: Sequence[Mapping[str, Any]],
    practice_history: Sequence[Mapping[str, Any]],
    exam_history: Sequence[Mapping[str, Any]],
    week_sessions: Sequence[Mapping[str, Any]],
) -> Dict[str, Any]:
    """
    Aggregate a student's rows for the report window.

    - summaries: daily_activity_summary rows in the window
    - sessions: completed practice_sessions in the window (with `content` joined)
    - practice_history / exam_history: score_history rows by source type
    - week_sessions: every practice session started in the last week
    """
    section_totals: Dict[str, Dict[str, int]] = {}
    last_activity: Dict[str, str] = {}
    daily: Dict[str, Dict[str, int]] = {}
    for row in summaries:
        section = str(row.get("section") or "")
        totals = section_totals.setdefault(section, {"total_seconds": 0, "sessions": 0})
        totals["total_seconds"] += row.get("total_time_seconds") or 0
        totals["sessions"] += row.get("session_count") or 0

        seen = row.get("last_activity_at")
        if seen and str(seen) > last_activity.get(section, ""):
            last_activity[section] = str(seen)

        d = daily.setdefault(_day(row.get("date")), {"total_seconds": 0, "sessions": 0})
        d["total_seconds"] += row.get("total_time_seconds") or 0
        d["sessions"] += row.get("session_count") or 0

    practice_scores = []
    for s in sessions:
        content = s.get("content") or {}
        practice_scores.append(
            {
                "date": s.get("completed_at") or s.get("started_at"),
                "score": s.get("score") or 0,
                "total_questions": s.get("total_questions"),
                "correct_answers": s.get("correct_answers"),
                "time_spent": s.get("time_spent_seconds"),
                "subject": content.get("subject"),
                "topic": content.get("title"),
            }
        )
    # Completed sessions already write their own score_history row.
    session_ids = {str(s.get("id")) for s in sessions}
    for h in practice_history:
        if h.get("source_id") is not None and str(h.get("source_id")) in session_ids:
            continue
        practice_scores.append(
            {
                "date": h.get("created_at"),
                "score": h.get("score") or 0,
                "total_questions": h.get("total_questions"),
                "correct_answers": h.get("correct_answers"),
                "time_spent": h.get("time_spent_seconds"),
                "subject": h.get("subject"),
                "topic": h.get("topic"),
            }
        )
    practice_scores.sort(key=lambda p: str(p.get("date") or ""), reverse=True)

    week_by_day: Dict[str, Dict[str, Any]] = {}
    for s in week_sessions:
        d = week_by_day.setdefault(_day(s.get("started_at")), {"sessions": 0, "scores": []})
        d["sessions"] += 1
        if s.get("is_completed") and s.get("score") is not None:
            d["scores"].append(s["score"])

    week = last_days(today, WEEK_DAYS)
    daily_activity = []
    weekly_activity = []
    for day in week:
        key = day.isoformat()
        totals = daily.get(key, {})
        practice = week_by_day.get(key, {})
        daily_activity.append(
            {"date": key, "total_seconds": totals.get("total_seconds", 0), "sessions": totals.get("sessions", 0)}
        )
        weekly_activity.append(
            {
                "date": key,
                "day": day.strftime("%a"),
                "sessions": practice.get("sessions", 0),
                "avgScore": round(_mean(practice.get("scores", []))),
                "studyTime": totals.get("total_seconds", 0),
            }
        )

    by_subject: Dict[str, Dict[str, Any]] = {}
    for s in sessions:
        subject = (s.get("content") or {}).get("subject") or "General"
        perf = by_subject.setdefault(subject, {"scores": [], "last": ""})
        perf["scores"].append(s.get("score") or 0)
        started = str(s.get("started_at") or "")
        if started > perf["last"]:
            perf["last"] = started

    active_days = [k for k, v in daily.items() if v["sessions"] > 0]
    active_days += [k for k, v in week_by_day.items() if v["sessions"] > 0]

    study_time = sum(t["total_seconds"] for t in section_totals.values())
    practice_time = sum(s.get("time_spent_seconds") or 0 for s in sessions)

    return {
        "time_by_section": [{"section": k, **v} for k, v in section_totals.items()],
        "last_activity": [{"section": k, "last_activity_at": v} for k, v in last_activity.items()],
        "practice_scores": practice_scores,
        "exam_scores": [
            {"date": e.get("created_at"), "score": e.get("score"), "subject": e.get("subject"), "topic": e.get("topic")}
            for e in exam_history
        ],
        "daily_activity": daily_activity,
        "weekly_activity": weekly_activity,
        "subjects_performance": [
            {
                "subject": subject,
                "avg_score": round(_mean(perf["scores"])),
                "attempts": len(perf["scores"]),
                "last_attempt": perf["last"],
            }
            for subject, perf in by_subject.items()
        ],
        "overall": {
            "total_study_time": study_time + practice_time,
            "total_practice_sessions": len(sessions),
            "total_exams_taken": len(exam_history),
            "avg_practice_score": _round1(_mean([p["score"] for p in practice_scores])),
            "avg_exam_score": _round1(_mean([e.get("score") or 0 for e in exam_history])),
            "current_streak": current_streak(today, active_days),
            "total_questions_answered": sum(s.get("total_questions") or 0 for s in sessions),
            "total_correct_answers": sum(s.get("correct_answers") or 0 for s in sessions),
        },
    }


def elapsed_seconds(started_at: Any, now: datetime) -> int:
    """Whole seconds since an ISO timestamp (naive values are UTC); never negative."""
    if not started_at:
        return 0
    started = isoparse(str(started_at))
    if started.tzinfo is None:
        started = started.replace(tzinfo=timezone.utc)
    return max(0, int((now - started).total_seconds()))
