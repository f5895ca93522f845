"""
Practice answer grading and session scoring.

Pure functions over question rows as stored in `practice_questions`.
"""

from __future__ import annotations

import json
import random
import re
from typing import Any, List, Mapping, Optional, Sequence, Tuple

# Short answers: words of this length or less are ignored when matching.
SHORT_ANSWER_MIN_WORD_LEN = 4
SHORT_ANSWER_MATCH_RATIO = 0.5


def _text(value: Any) -> str:
    return "" if value is None else str(value)


def _significant_words(text: str) -> List[str]:
    return [w for w in re.split(r"\s+", text.lower()) if len(w) >= SHORT_ANSWER_MIN_WORD_LEN]


def grade_answer(question: Mapping[str, Any], answer: Any) -> bool:
    """
    Auto-grade one answer.

    - multiple_choice: option label, case-insensitive
    - true_false: case-insensitive against `correct_option`
    - fill_blank: trimmed, case-insensitive against `answer`
    - short_answer: at least half of the answer key's significant words appear
    Unknown question types and missing answers are never correct.
    """
    if answer is None:
        return False
    given = _text(answer)
    qtype = question.get("question_type")

    if qtype == "multiple_choice":
        expected = question.get("correct_option")
        return expected is not None and given.upper() == _text(expected).upper()
    if qtype == "true_false":
        expected = question.get("correct_option")
        return expected is not None and given.lower() == _text(expected).lower()
    if qtype == "fill_blank":
        expected = question.get("answer")
        return expected is not None and given.strip().lower() == _text(expected).strip().lower()
    if qtype == "short_answer":
        expected = question.get("answer")
        if expected is None:
            return False
        key_words = _significant_words(_text(expected))
        matched = [w for w in _significant_words(given) if w in key_words]
        return len(matched) >= len(key_words) * SHORT_ANSWER_MATCH_RATIO
    return False


def correct_answer(question: Mapping[str, Any]) -> Optional[str]:
    """What to show the student as the right answer."""
    if question.get("question_type") == "multiple_choice":
        return question.get("correct_option")
    return question.get("answer")


def parse_options(raw: Any) -> Optional[list]:
    """Options are stored either as a JSON array or as a JSON-encoded string."""
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            return None
    return raw if isinstance(raw, list) else None


def score_percent(correct: int, total: int) -> float:
    return (correct / total) * 100 if total > 0 else 0.0


def question_mix(requested: int) -> Tuple[int, int]:
    """(from_bank, from_llm) for a session of `requested` questions; at least one is always generated."""
    from_llm = max(1, requested // 2)
    return requested - from_llm, from_llm


def pick_questions(bank: Sequence[Mapping[str, Any]], count: int, *, rng: Optional[random.Random] = None) -> list:
    """Random sample of up to `count` questions from the bank."""
    if count <= 0 or not bank:
        return []
    r = rng or random
    return r.sample(list(bank), min(count, len(bank)))


def public_question(question: Mapping[str, Any]) -> dict:
    """A question as sent to the student before answering (no answer key)."""
    return {
        "id": question.get("id"),
        "question": question.get("question"),
        "question_type": question.get("question_type"),
        "difficulty": question.get("difficulty"),
        "options": parse_options(question.get("options")),
    }
