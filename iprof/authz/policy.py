from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional

from fastapi import HTTPException

from iprof.auth.config import AuthConfig

logger = logging.getLogger(__name__)


class Role(str, Enum):
    ADMIN = "admin"
    TEACHER = "teacher"
    STUDENT = "student"
    PARENT = "parent"

    @classmethod
    def parse(cls, raw: Any) -> "Role":
        """Profile role string -> Role. Missing or unknown values fall back to student."""
        value = str(raw or "").strip().lower()
        if not value:
            return cls.STUDENT
        try:
            return cls(value)
        except ValueError:
            logger.debug("Unknown profile role %r; treating as student", value)
            return cls.STUDENT


class Capability(str, Enum):
    STUDY = "study"
    UPLOAD_CONTENT = "upload_content"
    PUBLISH_CONTENT = "publish_content"
    DELETE_ANY_CONTENT = "delete_any_content"
    MANAGE_FLASHCARDS = "manage_flashcards"
    MANAGE_PRACTICE = "manage_practice"
    GENERATE_QUESTIONS = "generate_questions"
    MANAGE_STORAGE = "manage_storage"
    CONFIRM_STUDENT = "confirm_student"


ROLE_CAPABILITIES: Dict[Role, FrozenSet[Capability]] = {
    Role.ADMIN: frozenset(
        {
            Capability.STUDY,
            Capability.UPLOAD_CONTENT,
            Capability.PUBLISH_CONTENT,
            Capability.DELETE_ANY_CONTENT,
            Capability.MANAGE_FLASHCARDS,
            Capability.MANAGE_PRACTICE,
            Capability.GENERATE_QUESTIONS,
            Capability.MANAGE_STORAGE,
        }
    ),
    Role.TEACHER: frozenset(
        {
            Capability.STUDY,
            Capability.UPLOAD_CONTENT,
            Capability.MANAGE_PRACTICE,
            Capability.GENERATE_QUESTIONS,
        }
    ),
    Role.STUDENT: frozenset({Capability.STUDY, Capability.UPLOAD_CONTENT}),
    Role.PARENT: frozenset({Capability.CONFIRM_STUDENT}),
}

_DENIED_MESSAGES: Dict[Capability, str] = {
    Capability.PUBLISH_CONTENT: "Admin access required",
    Capability.DELETE_ANY_CONTENT: "Admin access required",
    Capability.MANAGE_FLASHCARDS: "Admin access required",
    Capability.MANAGE_STORAGE: "Admin access required",
    Capability.MANAGE_PRACTICE: "Only admins and teachers can manage practice content",
    Capability.GENERATE_QUESTIONS: "Only admins and teachers can generate questions",
    Capability.CONFIRM_STUDENT: "Only parents can confirm a student account",
}


def resolve_role(cfg: AuthConfig, *, profile_role: Any, email: Optional[str]) -> Role:
    """Allowlisted admin emails are admins regardless of the profile row."""
    if cfg.is_admin_email(email):
        return Role.ADMIN
    return Role.parse(profile_role)


def has_capability(role: Role, capability: Capability) -> bool:
    return capability in ROLE_CAPABILITIES.get(role, frozenset())


def require_capability(role: Role, capability: Capability) -> None:
    """Raise 403 unless `role` grants `capability`."""
    if not has_capability(role, capability):
        raise HTTPException(status_code=403, detail=_DENIED_MESSAGES.get(capability, "Forbidden"))
