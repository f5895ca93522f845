from __future__ import annotations

from typing import Any, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

QuestionType = Literal["multiple_choice", "true_false", "fill_blank", "short_answer"]
Difficulty = Literal["easy", "medium", "hard"]

MAX_HISTORY_TURNS = 10


def _clamp_str(s: Any, *, max_chars: int) -> str:
    txt = "" if s is None else str(s)
    txt = txt.strip()
    if max_chars > 0 and len(txt) > max_chars:
        return txt[: max_chars - 1] + "…"
    return txt


def _clamp_list(xs: Any, *, max_items: int) -> list:
    if not isinstance(xs, list):
        return []
    if max_items > 0 and len(xs) > max_items:
        return xs[:max_items]
    return xs


class ChatTurn(BaseModel):
    model_config = ConfigDict(extra="ignore")

    role: Literal["user", "assistant"] = "user"
    content: str = ""

    @field_validator("role", mode="before")
    @classmethod
    def _role_default(cls, v: Any) -> str:
        return "assistant" if str(v or "").strip().lower() == "assistant" else "user"

    @field_validator("content", mode="before")
    @classmethod
    def _content_trim(cls, v: Any) -> str:
        return _clamp_str(v, max_chars=8000)


class ChatRequest(BaseModel):
    """Tutor chat payload: the new message plus prior turns (only the last 10 are sent)."""

    model_config = ConfigDict(extra="ignore")

    message: str
    history: List[ChatTurn] = Field(default_factory=list)

    @field_validator("history", mode="before")
    @classmethod
    def _history_tail(cls, v: Any) -> list:
        if not isinstance(v, list):
            return []
        return [x for x in v if isinstance(x, dict)][-MAX_HISTORY_TURNS:]


class QuestionOption(BaseModel):
    model_config = ConfigDict(extra="ignore")

    label: str = ""
    text: str = ""

    @field_validator("label", "text", mode="before")
    @classmethod
    def _trim(cls, v: Any) -> str:
        return _clamp_str(v, max_chars=500)


class GeneratedQuestion(BaseModel):
    """One practice question as returned by the model."""

    model_config = ConfigDict(extra="ignore")

    question_type: QuestionType = "short_answer"
    difficulty: Difficulty = "medium"
    question: str = ""
    answer: Optional[str] = None
    options: List[QuestionOption] = Field(default_factory=list)
    correct_option: Optional[str] = None
    explanation: str = ""

    @field_validator("question_type", mode="before")
    @classmethod
    def _type_known(cls, v: Any) -> str:
        s = str(v or "").strip().lower()
        return s if s in ("multiple_choice", "true_false", "fill_blank", "short_answer") else "short_answer"

    @field_validator("difficulty", mode="before")
    @classmethod
    def _difficulty_known(cls, v: Any) -> str:
        s = str(v or "").strip().lower()
        return s if s in ("easy", "medium", "hard") else "medium"

    @field_validator("question", "explanation", mode="before")
    @classmethod
    def _text_trim(cls, v: Any) -> str:
        return _clamp_str(v, max_chars=4000)

    @field_validator("answer", "correct_option", mode="before")
    @classmethod
    def _optional_trim(cls, v: Any) -> Optional[str]:
        s = _clamp_str(v, max_chars=1000)
        return s or None

    @field_validator("options", mode="before")
    @classmethod
    def _options_cap(cls, v: Any) -> list:
        return [x for x in _clamp_list(v, max_items=6) if isinstance(x, dict)]

    def to_row(
        self,
        *,
        topic_id: Optional[str],
        source_content_id: Optional[str],
        created_by: str,
    ) -> dict:
        return {
            "topic_id": topic_id,
            "question_type": self.question_type,
            "difficulty": self.difficulty,
            "question": self.question,
            "answer": self.answer or self.correct_option,
            "options": [o.model_dump() for o in self.options] if self.options else None,
            "correct_option": self.correct_option,
            "explanation": self.explanation,
            "source_content_id": source_content_id,
            "is_ai_generated": True,
            "is_admin_created": False,
            "created_by": created_by,
        }


def parse_generated_questions(raw: Any) -> List[GeneratedQuestion]:
    """Validate model output; a wrapping object with a `questions` list is accepted too."""
    if isinstance(raw, dict) and isinstance(raw.get("questions"), list):
        raw = raw["questions"]
    if not isinstance(raw, list):
        return []
    out: List[GeneratedQuestion] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        q = GeneratedQuestion.model_validate(item)
        if q.question:
            out.append(q)
    return out
