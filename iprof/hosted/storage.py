from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from typing import Dict, FrozenSet, List, Optional

from supabase import Client

logger = logging.getLogger(__name__)

CONTENT_BUCKET = "content"
MAX_UPLOAD_BYTES = 50 * 1024 * 1024

_ALLOWED_MIME_TYPES: Dict[str, FrozenSet[str]] = {
    "study_guide": frozenset(
        {
            "application/pdf",
            "application/msword",
            "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        }
    ),
    "extra": frozenset({"image/jpeg", "image/png", "image/gif", "image/webp"}),
}

_MIME_ERRORS: Dict[str, str] = {
    "study_guide": "Invalid file type. Please upload PDF or Word documents.",
    "extra": "Invalid file type. Please upload images only.",
}


class UploadRejected(ValueError):
    """The file fails type or size validation (maps to 400)."""


@dataclass(frozen=True)
class StoredObject:
    path: str
    public_url: str


def sanitize_file_name(name: str) -> str:
    return re.sub(r"[^a-zA-Z0-9.-]", "_", name or "") or "file"


def strip_extension(name: str) -> str:
    return re.sub(r"\.[^/.]+$", "", name or "")


def validate_upload(content_type: str, mime_type: Optional[str], size: int) -> None:
    allowed = _ALLOWED_MIME_TYPES.get(content_type)
    if allowed is not None and (mime_type or "") not in allowed:
        raise UploadRejected(_MIME_ERRORS[content_type])
    if size > MAX_UPLOAD_BYTES:
        raise UploadRejected("File too large. Maximum size is 50MB.")


def content_object_path(content_type: str, country_code: Optional[str], file_name: str, *, at_ms: Optional[int] = None) -> str:
    stamp = int(time.time() * 1000) if at_ms is None else at_ms
    return f"{content_type}/{country_code or 'global'}/{stamp}_{sanitize_file_name(file_name)}"


class ContentStorage:
    """Bucket-scoped wrapper over hosted object storage."""

    def __init__(self, client: Client, bucket: str = CONTENT_BUCKET):
        self._client = client
        self.bucket = bucket

    def _bucket(self):
        return self._client.storage.from_(self.bucket)

    def upload(self, path: str, body: bytes, *, mime_type: Optional[str]) -> StoredObject:
        self._bucket().upload(
            path,
            body,
            {
                "content-type": mime_type or "application/octet-stream",
                "cache-control": "3600",
                "upsert": "false",
            },
        )
        return StoredObject(path=path, public_url=self.public_url(path))

    def public_url(self, path: str) -> str:
        return str(self._bucket().get_public_url(path))

    def remove(self, paths: List[str]) -> None:
        self._bucket().remove(paths)
        logger.info("Removed %d object(s) from bucket %s", len(paths), self.bucket)
