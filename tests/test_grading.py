from __future__ import annotations

import random
from datetime import date, datetime, timezone

import pytest

from iprof.core.grading import (
    correct_answer,
    grade_answer,
    parse_options,
    pick_questions,
    public_question,
    question_mix,
    score_percent,
)
from iprof.core.performance import build_report, current_streak, elapsed_seconds


@pytest.mark.parametrize(
    "question,answer,expected",
    [
        ({"question_type": "multiple_choice", "correct_option": "B"}, "b", True),
        ({"question_type": "multiple_choice", "correct_option": "B"}, "C", False),
        ({"question_type": "true_false", "correct_option": "True"}, "true", True),
        ({"question_type": "true_false", "correct_option": "false"}, "true", False),
        ({"question_type": "fill_blank", "answer": "Photosynthesis"}, "  photosynthesis ", True),
        ({"question_type": "fill_blank", "answer": "Photosynthesis"}, "respiration", False),
        (
            {"question_type": "short_answer", "answer": "Plants convert sunlight into chemical energy"},
            "they convert sunlight to energy",
            True,
        ),
        (
            {"question_type": "short_answer", "answer": "Plants convert sunlight into chemical energy"},
            "plants grow",
            False,
        ),
        ({"question_type": "essay", "answer": "x"}, "x", False),
        ({"question_type": "multiple_choice", "correct_option": None}, "A", False),
    ],
)
def test_grade_answer(question, answer, expected) -> None:
    assert grade_answer(question, answer) is expected


def test_missing_answer_is_never_correct() -> None:
    assert grade_answer({"question_type": "fill_blank", "answer": None}, None) is False
    assert grade_answer({"question_type": "multiple_choice", "correct_option": "A"}, None) is False


def test_short_answer_with_only_short_key_words_matches_anything() -> None:
    # No significant words in the key: zero of zero matched.
    assert grade_answer({"question_type": "short_answer", "answer": "a b c"}, "xyz") is True


def test_correct_answer_and_options() -> None:
    assert correct_answer({"question_type": "multiple_choice", "correct_option": "A", "answer": "Paris"}) == "A"
    assert correct_answer({"question_type": "fill_blank", "answer": "Paris"}) == "Paris"
    assert parse_options('["A. one", "B. two"]') == ["A. one", "B. two"]
    assert parse_options(["A"]) == ["A"]
    assert parse_options("not json") is None
    assert parse_options({"a": 1}) is None


def test_scores_and_mix() -> None:
    assert score_percent(3, 4) == 75.0
    assert score_percent(0, 0) == 0.0
    assert question_mix(10) == (5, 5)
    assert question_mix(7) == (4, 3)
    assert question_mix(1) == (0, 1)


def test_pick_questions_samples_without_repeats() -> None:
    bank = [{"id": i} for i in range(10)]
    picked = pick_questions(bank, 4, rng=random.Random(7))
    assert len(picked) == 4
    assert len({q["id"] for q in picked}) == 4
    assert len(pick_questions(bank[:2], 5)) == 2
    assert pick_questions(bank, 0) == []


def test_public_question_hides_answer_key() -> None:
    q = {
        "id": "q1",
        "question": "2+2?",
        "question_type": "multiple_choice",
        "difficulty": "easy",
        "options": '["A. 4", "B. 5"]',
        "correct_option": "A",
        "answer": "4",
        "explanation": "sum",
    }
    assert public_question(q) == {
        "id": "q1",
        "question": "2+2?",
        "question_type": "multiple_choice",
        "difficulty": "easy",
        "options": ["A. 4", "B. 5"],
    }


# ---- Performance report ----


def test_streak_tolerates_a_quiet_today() -> None:
    today = date(2026, 3, 10)
    assert current_streak(today, ["2026-03-10", "2026-03-09", "2026-03-08", "2026-03-06"]) == 3
    assert current_streak(today, ["2026-03-09", "2026-03-08"]) == 2
    assert current_streak(today, ["2026-03-07"]) == 0


def test_elapsed_seconds() -> None:
    now = datetime(2026, 3, 10, 12, 0, 0, tzinfo=timezone.utc)
    assert elapsed_seconds("2026-03-10T11:58:30+00:00", now) == 90
    assert elapsed_seconds("2026-03-10T11:59:00", now) == 60
    assert elapsed_seconds("2026-03-10T13:00:00+00:00", now) == 0
    assert elapsed_seconds(None, now) == 0


def test_report_aggregates_and_skips_duplicate_history() -> None:
    today = date(2026, 3, 10)
    report = build_report(
        today,
        summaries=[
            {"section": "study", "date": "2026-03-10", "total_time_seconds": 600, "session_count": 2,
             "last_activity_at": "2026-03-10T09:00:00+00:00"},
            {"section": "study", "date": "2026-03-09", "total_time_seconds": 300, "session_count": 1,
             "last_activity_at": "2026-03-09T09:00:00+00:00"},
        ],
        sessions=[
            {"id": "s1", "score": 80, "total_questions": 10, "correct_answers": 8, "time_spent_seconds": 120,
             "started_at": "2026-03-10T08:00:00+00:00", "completed_at": "2026-03-10T08:05:00+00:00",
             "content": {"title": "Fractions", "subject": "math"}},
        ],
        practice_history=[
            {"source_id": "s1", "score": 80, "created_at": "2026-03-10T08:05:00+00:00"},
            {"source_id": None, "score": 60, "created_at": "2026-03-01T08:00:00+00:00"},
        ],
        exam_history=[{"score": 70, "created_at": "2026-03-05T10:00:00+00:00", "subject": "math"}],
        week_sessions=[{"started_at": "2026-03-10T08:00:00+00:00", "score": 80, "is_completed": True}],
    )

    assert report["time_by_section"] == [{"section": "study", "total_seconds": 900, "sessions": 3}]
    assert report["last_activity"] == [{"section": "study", "last_activity_at": "2026-03-10T09:00:00+00:00"}]
    assert [p["score"] for p in report["practice_scores"]] == [80, 60]
    assert len(report["daily_activity"]) == 7
    assert report["daily_activity"][-1] == {"date": "2026-03-10", "total_seconds": 600, "sessions": 2}
    assert report["weekly_activity"][-1]["avgScore"] == 80
    assert report["subjects_performance"] == [
        {"subject": "math", "avg_score": 80, "attempts": 1, "last_attempt": "2026-03-10T08:00:00+00:00"}
    ]
    overall = report["overall"]
    assert overall["total_study_time"] == 1020
    assert overall["avg_practice_score"] == 70.0
    assert overall["avg_exam_score"] == 70.0
    assert overall["current_streak"] == 2
    assert overall["total_questions_answered"] == 10
