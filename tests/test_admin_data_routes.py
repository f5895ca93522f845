from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

import iprof.api.app as api
from iprof.auth.admin_token import ADMIN_SESSION_COOKIE, issue_admin_token
from iprof.auth.config import load_auth_config
from iprof.hosted.users import find_auth_user_by_email, list_auth_users


@pytest.fixture
def admin_client(monkeypatch) -> TestClient:
    monkeypatch.setenv("ADMIN_EMAILS", "a@x.com")
    monkeypatch.setenv("ADMIN_PASSWORD", "pw")
    monkeypatch.setenv("ADMIN_SESSION_SECRET", "test-secret-key-for-testing-purposes-only")
    load_auth_config.cache_clear()
    c = TestClient(api.app)
    c.cookies.set(ADMIN_SESSION_COOKIE, issue_admin_token(load_auth_config(), "a@x.com"))
    return c


def test_admin_routes_need_session(hosted) -> None:
    c = TestClient(api.app)
    assert c.get("/api/admin/users").status_code == 401
    assert c.get("/api/admin/students").status_code == 401


def test_users_merge_profile_and_auth_data(hosted, admin_client) -> None:
    hosted.respond(
        "profiles",
        "select",
        [
            {"id": "u1", "full_name": "Sam", "role": "student", "created_at": "2024-01-01T00:00:00Z"},
            {"id": "u2", "full_name": None, "role": None},
        ],
    )
    hosted.auth.admin.list_users.return_value = [
        {"id": "u1", "email": "sam@example.com", "last_sign_in_at": "2024-02-01T00:00:00Z"},
        {"id": "u2", "email": "t@example.com", "user_metadata": {"full_name": "Terry"}},
    ]
    r = admin_client.get("/api/admin/users")
    assert r.status_code == 200
    users = r.json()
    assert users[0]["email"] == "sam@example.com"
    assert users[0]["last_sign_in_at"] == "2024-02-01T00:00:00Z"
    assert users[0]["app_metadata"] == {"role": "student"}
    assert users[1]["user_metadata"]["full_name"] == "Terry"
    assert users[1]["app_metadata"] == {"role": "user"}


def test_students_last_active_prefers_latest_session(hosted, admin_client) -> None:
    hosted.respond(
        "profiles",
        "select",
        [
            {"id": "s1", "role": "student", "updated_at": "2024-01-05T00:00:00Z"},
            {"id": "s2", "role": "student", "created_at": "2024-01-02T00:00:00Z"},
        ],
    )
    hosted.respond(
        "practice_sessions",
        "select",
        [
            {"user_id": "s1", "started_at": "2024-03-01T09:00:00+02:00"},
            {"user_id": "s1", "started_at": "2024-03-01T08:00:00Z"},
            {"user_id": "s1", "started_at": "garbage"},
        ],
    )
    hosted.auth.admin.list_users.return_value = [{"id": "s1", "email": "s1@example.com"}]
    r = admin_client.get("/api/admin/students", params={"grade_level": "7"})
    assert r.status_code == 200
    s1, s2 = r.json()
    assert s1["email"] == "s1@example.com"
    assert s1["last_active"] == "2024-03-01T08:00:00Z"
    assert s2["email"] is None
    assert s2["last_active"] == "2024-01-02T00:00:00Z"

    q = hosted.queries("profiles")[0]
    assert ("eq", ("role", "student")) in q.filters()
    assert ("eq", ("grade_level", "7")) in q.filters()


def test_list_auth_users_pages_until_short_batch(hosted) -> None:
    pages = {1: [{"id": "a"}, {"id": "b"}], 2: [{"id": "c", "email": "C@x.com"}]}
    hosted.auth.admin.list_users.side_effect = lambda page, per_page: pages.get(page, [])
    users = list_auth_users(hosted, per_page=2)
    assert [u.id for u in users] == ["a", "b", "c"]
    assert hosted.auth.admin.list_users.call_count == 2

    assert find_auth_user_by_email(hosted, "c@X.com", per_page=2).id == "c"
    assert find_auth_user_by_email(hosted, "") is None


def test_auth_listing_failure_renders_json_500(hosted, admin_client) -> None:
    from supabase import AuthApiError

    hosted.auth.admin.list_users.side_effect = AuthApiError("User not allowed", 403, "not_admin")
    c = TestClient(api.app, raise_server_exceptions=False)
    c.cookies.set(ADMIN_SESSION_COOKIE, issue_admin_token(load_auth_config(), "a@x.com"))
    r = c.get("/api/admin/users")
    assert r.status_code == 500
    assert r.json() == {"error": "Internal server error"}
