from __future__ import annotations

from fastapi.testclient import TestClient
from postgrest.exceptions import APIError

import iprof.api.app as api


def _as_role(hosted, sign_in_as, role: str, **kw):
    hosted.respond("profiles", "select", {"role": role})
    return sign_in_as(**kw)


def test_requires_signed_in_user() -> None:
    c = TestClient(api.app)
    r = c.get("/api/content")
    assert r.status_code == 401
    assert r.json() == {"error": "Unauthorized"}


def test_list_applies_filters(hosted, sign_in_as) -> None:
    sign_in_as(user_id="u1")
    hosted.respond("content", "select", [{"id": "c1", "title": "Algebra"}])
    c = TestClient(api.app)
    r = c.get("/api/content", params={"type": "video", "search": "alg", "userOnly": "true"})
    assert r.status_code == 200
    assert r.json() == [{"id": "c1", "title": "Algebra"}]

    (q,) = hosted.queries("content")
    filters = q.filters()
    assert ("eq", ("content_type", "video")) in filters
    assert ("eq", ("uploaded_by", "u1")) in filters
    assert ("or_", ("title.ilike.%alg%,description.ilike.%alg%",)) in filters


def test_student_cannot_publish_and_gets_video_thumbnail(hosted, sign_in_as) -> None:
    _as_role(hosted, sign_in_as, "student", user_id="u1")
    hosted.respond("content", "insert", [{"id": "c9"}])
    c = TestClient(api.app)
    r = c.post(
        "/api/content",
        json={
            "title": "Lesson",
            "content_type": "video",
            "video_url": "https://youtu.be/dQw4w9WgXcQ",
            "is_admin_upload": True,
            "uploaded_by": "someone-else",
        },
    )
    assert r.status_code == 200
    assert r.json() == {"data": {"id": "c9"}}

    row = hosted.queries("content", "insert")[0].payload()
    assert row["is_admin_upload"] is False
    assert row["uploaded_by"] == "u1"
    assert row["thumbnail_url"] == "https://img.youtube.com/vi/dQw4w9WgXcQ/mqdefault.jpg"


def test_admin_publishes(monkeypatch, hosted, sign_in_as) -> None:
    monkeypatch.setenv("ADMIN_EMAILS", "boss@x.com")
    _as_role(hosted, sign_in_as, "student", email="boss@x.com")
    c = TestClient(api.app)
    r = c.post("/api/content", json={"title": "Guide", "content_type": "study_guide", "is_admin_upload": True})
    assert r.status_code == 200
    assert hosted.queries("content", "insert")[0].payload()["is_admin_upload"] is True


def test_parent_cannot_create_content(hosted, sign_in_as) -> None:
    _as_role(hosted, sign_in_as, "parent")
    c = TestClient(api.app)
    assert c.post("/api/content", json={"title": "x"}).status_code == 403


def test_delete_scoping(monkeypatch, hosted, sign_in_as) -> None:
    _as_role(hosted, sign_in_as, "teacher", user_id="t1")
    c = TestClient(api.app)
    r = c.delete("/api/content")
    assert r.status_code == 400
    assert r.json() == {"error": "Content ID required"}

    assert c.delete("/api/content", params={"id": "c1"}).json() == {"success": True}
    (q,) = hosted.queries("content", "delete")
    assert ("eq", ("uploaded_by", "t1")) in q.filters()


def test_admin_delete_is_unscoped(monkeypatch, hosted, sign_in_as) -> None:
    monkeypatch.setenv("ADMIN_EMAILS", "boss@x.com")
    _as_role(hosted, sign_in_as, "admin", email="boss@x.com")
    c = TestClient(api.app)
    assert c.delete("/api/content", params={"id": "c1"}).status_code == 200
    (q,) = hosted.queries("content", "delete")
    assert q.filters() == [("eq", ("id", "c1"))]


def test_upload_stores_file_and_record(hosted, sign_in_as) -> None:
    _as_role(hosted, sign_in_as, "teacher", user_id="t1")
    hosted.respond("content", "insert", [{"id": "c1", "title": "notes"}])
    c = TestClient(api.app)
    r = c.post(
        "/api/content/upload",
        files={"file": ("notes.pdf", b"%PDF-1.4", "application/pdf")},
        data={"type": "study_guide", "country_code": "ZA"},
    )
    assert r.status_code == 200
    assert r.json() == {"id": "c1", "title": "notes"}

    bucket, path, body, _ = hosted.uploads[0]
    assert bucket == "content"
    assert path.startswith("study_guide/ZA/") and path.endswith("_notes.pdf")
    record = hosted.queries("content", "insert")[0].payload()
    assert record["title"] == "notes"
    assert record["file_url"] == f"https://storage.test/content/{path}"
    assert record["file_size"] == len(b"%PDF-1.4")
    assert record["is_admin_upload"] is False


def test_upload_validation(hosted, sign_in_as) -> None:
    _as_role(hosted, sign_in_as, "student")
    c = TestClient(api.app)
    r = c.post("/api/content/upload", data={"type": "study_guide"})
    assert r.status_code == 400
    assert r.json() == {"error": "No file provided"}

    r = c.post(
        "/api/content/upload",
        files={"file": ("cat.png", b"png", "image/png")},
        data={"type": "study_guide"},
    )
    assert r.status_code == 400
    assert "PDF or Word" in r.json()["error"]
    assert hosted.uploads == []


def test_upload_removes_object_when_record_fails(hosted, sign_in_as) -> None:
    _as_role(hosted, sign_in_as, "student")
    hosted.respond("content", "insert", APIError({"message": "violates check", "code": "23514"}))
    c = TestClient(api.app)
    r = c.post(
        "/api/content/upload",
        files={"file": ("pic.png", b"png", "image/png")},
        data={"type": "extra"},
    )
    assert r.status_code == 500
    assert r.json() == {"error": "Failed to save content record: violates check"}
    _, path, _, _ = hosted.uploads[0]
    assert hosted.removed == [("content", [path])]


def test_upload_storage_failure_is_500(hosted, sign_in_as) -> None:
    _as_role(hosted, sign_in_as, "student")
    hosted.upload_error = RuntimeError("bucket missing")
    c = TestClient(api.app)
    r = c.post("/api/content/upload", files={"file": ("a.mp4", b"v", "video/mp4")}, data={"type": "video"})
    assert r.status_code == 500
    assert r.json() == {"error": "Failed to upload file: bucket missing"}
    assert hosted.queries("content", "insert") == []


def test_storage_delete_is_admin_only(monkeypatch, hosted, sign_in_as) -> None:
    _as_role(hosted, sign_in_as, "teacher")
    c = TestClient(api.app)
    r = c.post("/api/storage/delete", json={"bucket": "content", "path": "a"})
    assert r.status_code == 403
    assert r.json() == {"error": "Admin access required"}


def test_storage_delete_by_admin(monkeypatch, hosted, sign_in_as) -> None:
    monkeypatch.setenv("ADMIN_EMAILS", "boss@x.com")
    _as_role(hosted, sign_in_as, "admin", email="boss@x.com")
    c = TestClient(api.app)
    assert c.post("/api/storage/delete", json={"bucket": "content"}).status_code == 400
    assert c.post("/api/storage/delete", json={"bucket": "content", "path": "x/y.pdf"}).status_code == 200
    assert hosted.removed == [("content", ["x/y.pdf"])]


def test_flashcard_update_unknown_is_404(monkeypatch, hosted, sign_in_as) -> None:
    monkeypatch.setenv("ADMIN_EMAILS", "boss@x.com")
    _as_role(hosted, sign_in_as, "admin", email="boss@x.com")
    c = TestClient(api.app)
    assert c.put("/api/flashcards", json={"question": "q"}).status_code == 400
    r = c.put("/api/flashcards", json={"id": "f1", "question": "q"})
    assert r.status_code == 404

    hosted.respond("flashcards", "update", [{"id": "f1", "question": "q"}])
    assert c.put("/api/flashcards", json={"id": "f1", "question": "q"}).json() == {"id": "f1", "question": "q"}


def test_students_cannot_manage_flashcards(hosted, sign_in_as) -> None:
    _as_role(hosted, sign_in_as, "student")
    c = TestClient(api.app)
    assert c.post("/api/flashcards", json={"question": "q", "answer": "a"}).status_code == 403
    assert c.delete("/api/flashcards", params={"id": "f1"}).status_code == 403


def test_oversized_upload_is_rejected_before_storage(monkeypatch, hosted, sign_in_as) -> None:
    monkeypatch.setattr("iprof.hosted.storage.MAX_UPLOAD_BYTES", 8)
    monkeypatch.setattr("iprof.api.content.MAX_UPLOAD_BYTES", 8)
    _as_role(hosted, sign_in_as, "student")
    c = TestClient(api.app)
    r = c.post(
        "/api/content/upload",
        files={"file": ("big.pdf", b"%PDF" + b"x" * 64, "application/pdf")},
        data={"type": "study_guide"},
    )
    assert r.status_code == 400
    assert r.json() == {"error": "File too large. Maximum size is 50MB."}
    assert hosted.uploads == []


def test_upload_read_is_bounded_without_declared_size(monkeypatch, hosted) -> None:
    import io

    from fastapi import HTTPException, UploadFile
    from starlette.datastructures import Headers

    import iprof.api.content as content
    from iprof.auth.models import AuthUser

    monkeypatch.setattr("iprof.hosted.storage.MAX_UPLOAD_BYTES", 8)
    monkeypatch.setattr(content, "MAX_UPLOAD_BYTES", 8)
    hosted.respond("profiles", "select", {"role": "student"})

    reads = []

    class _Stream(io.BytesIO):
        def read(self, size=-1):
            reads.append(size)
            return super().read(size)

    upload = UploadFile(_Stream(b"y" * 1000), filename="big.pdf", headers=Headers({"content-type": "application/pdf"}))
    try:
        content.upload_content(
            file=upload,
            type="study_guide",
            country_code=None,
            title=None,
            description=None,
            subject=None,
            grade_level=None,
            user=AuthUser(id="u1", email="s@x.com"),
            client=hosted,
        )
    except HTTPException as e:
        assert e.status_code == 400
    else:
        raise AssertionError("oversized upload was accepted")
    assert reads == [9]
    assert hosted.uploads == []
