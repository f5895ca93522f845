from __future__ import annotations

from typing import Optional

TUTOR_SYSTEM_PROMPT = (
    "You are iProf Tutor, a patient learning assistant for students. "
    "Explain concepts step by step in plain language, use examples, and guide the "
    "student toward the answer instead of completing assignments for them. "
    "Stay on educational topics. Use markdown for lists, formulas and code."
)

QUESTION_GENERATOR_SYSTEM_PROMPT = (
    "You write practice questions for students. Always answer with a JSON array only."
)

_QUESTION_PROMPT_TEMPLATE = """Write {count} practice questions on the topic "{topic}".

Each array element is an object with:
- "question_type": one of "multiple_choice", "true_false", "fill_blank", "short_answer"
- "difficulty": one of "easy", "medium", "hard"
- "question": the question text (use ___ for the blank in fill_blank)
- "answer": the correct answer for fill_blank and short_answer
- "options": for multiple_choice only, four objects {{"label": "A".."D", "text": "..."}}
- "correct_option": "A".."D" for multiple_choice, "true"/"false" for true_false
- "explanation": why the answer is correct

Study material:
{content}
"""

DEFAULT_TOPIC = "General Knowledge"
NO_CONTENT_PLACEHOLDER = "No specific material was provided. Write general questions about the topic."


def build_question_prompt(*, content: str, topic: str, count: int) -> str:
    return _QUESTION_PROMPT_TEMPLATE.format(
        count=count,
        topic=topic or DEFAULT_TOPIC,
        content=content or NO_CONTENT_PLACEHOLDER,
    )


def build_student_tutor_prompt(*, language: str = "en", age: Optional[int] = None) -> str:
    """Tutor prompt personalised from the student's profile."""
    lines = [TUTOR_SYSTEM_PROMPT]
    if age and age > 4:
        lines.append(f"The student is {age} years old; explain as if to a {age - 2}-year-old.")
    if language and language != "en":
        lines.append(f"Answer in the student's preferred language ({language}).")
    return "\n\n".join(lines)
