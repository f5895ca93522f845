"""
Pytest config.

Local imports like `import iprof` rely on the repo root being on sys.path. We pin
that here so a global `pytest` entrypoint can always import the local package.

The hosted backend is never contacted: `FakeHostedClient` records the query
chains handlers build and answers them from canned responses.
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
from unittest.mock import MagicMock

import pytest


def _ensure_repo_root_on_syspath() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    repo_root_str = str(repo_root)
    if repo_root_str not in sys.path:
        sys.path.insert(0, repo_root_str)


_ensure_repo_root_on_syspath()

_ENV_VARS = (
    "ADMIN_EMAIL",
    "ADMIN_EMAILS",
    "ADMIN_PASSWORD",
    "ADMIN_PASSWORD_HASH",
    "ADMIN_SESSION_SECRET",
    "ADMIN_ACCEPT_LEGACY_TOKENS",
    "SUPABASE_URL",
    "NEXT_PUBLIC_SUPABASE_URL",
    "SUPABASE_ANON_KEY",
    "NEXT_PUBLIC_SUPABASE_ANON_KEY",
    "SUPABASE_SERVICE_ROLE_KEY",
    "SITE_URL",
    "NEXT_PUBLIC_SITE_URL",
    "AUTH_COOKIE_SECURE",
    "APP_ENV",
    "NODE_ENV",
    "SKIP_PARENT_CONFIRMATION",
    "NEXT_PUBLIC_SKIP_PARENT_CONFIRMATION",
    "DEV_MODE",
    "NEXT_PUBLIC_DEV_MODE",
    "STRIPE_WEBHOOK_SECRET",
    "LLM_MOCK",
    "LLM_PROVIDER",
    "DEEPSEEK_API_KEY",
    "OPENAI_API_KEY",
)

_MUTATIONS = ("insert", "update", "upsert", "delete")


@pytest.fixture(autouse=True)
def _isolated_config(monkeypatch: pytest.MonkeyPatch):
    """Start every test from an empty environment and fresh cached config."""
    import iprof.auth.rate_limit as rl
    from iprof.auth.config import load_auth_config
    from iprof.billing.config import load_billing_config

    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    load_auth_config.cache_clear()
    load_billing_config.cache_clear()
    monkeypatch.setattr(rl, "_global_throttle", None)
    yield
    load_auth_config.cache_clear()
    load_billing_config.cache_clear()


class FakeResponse:
    def __init__(self, data: Any = None, count: Optional[int] = None):
        self.data = data
        self.count = count


class FakeQuery:
    """Chainable stand-in for a PostgREST request builder."""

    def __init__(self, client: "FakeHostedClient", target: str):
        self._client = client
        self.target = target
        self.ops: List[Tuple[str, tuple, dict]] = []

    @property
    def not_(self) -> "FakeQuery":
        self.ops.append(("not", (), {}))
        return self

    def __getattr__(self, name: str):
        if name.startswith("__"):
            raise AttributeError(name)

        def _chain(*args, **kwargs):
            self.ops.append((name, args, kwargs))
            return self

        return _chain

    def kind(self) -> str:
        for name, _, _ in self.ops:
            if name in _MUTATIONS:
                return name
        return "select"

    def payload(self) -> Any:
        for name, args, _ in self.ops:
            if name in _MUTATIONS and args:
                return args[0]
        return None

    def filters(self) -> List[Tuple[str, tuple]]:
        return [(name, args) for name, args, _ in self.ops if name in ("eq", "is_", "or_", "range", "limit")]

    def execute(self):
        self._client.executed.append(self)
        key = (self.target, self.kind())
        queue = self._client.responses.get(key)
        if not queue:
            return FakeResponse(data=[])
        result = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(result, Exception):
            raise result
        return result if isinstance(result, FakeResponse) else FakeResponse(data=result)


class FakeBucket:
    def __init__(self, client: "FakeHostedClient", name: str):
        self._client = client
        self.name = name

    def upload(self, path: str, body: bytes, options: Dict[str, str]):
        if self._client.upload_error is not None:
            raise self._client.upload_error
        self._client.uploads.append((self.name, path, body, options))
        return MagicMock(path=path)

    def get_public_url(self, path: str) -> str:
        return f"https://storage.test/{self.name}/{path}"

    def remove(self, paths: List[str]):
        self._client.removed.append((self.name, list(paths)))
        return []


class FakeStorage:
    def __init__(self, client: "FakeHostedClient"):
        self._client = client

    def from_(self, bucket: str) -> FakeBucket:
        return FakeBucket(self._client, bucket)


class FakeHostedClient:
    Response = FakeResponse

    def __init__(self):
        self.responses: Dict[Tuple[str, str], List[Any]] = {}
        self.executed: List[FakeQuery] = []
        self.uploads: List[tuple] = []
        self.removed: List[tuple] = []
        self.upload_error: Optional[Exception] = None
        self.storage = FakeStorage(self)
        self.auth = MagicMock()
        self.postgrest = MagicMock()

    def respond(self, target: str, kind: str = "select", *results: Any) -> None:
        """Queue results (data, `FakeResponse` or an exception) for `table`/`rpc:<name>` + kind; the last one repeats."""
        self.responses[(target, kind)] = list(results)

    def table(self, name: str) -> FakeQuery:
        return FakeQuery(self, name)

    def rpc(self, name: str, params: Optional[dict] = None) -> FakeQuery:
        q = FakeQuery(self, f"rpc:{name}")
        q.ops.append(("rpc", (params,), {}))
        return q

    def queries(self, target: str, kind: Optional[str] = None) -> List[FakeQuery]:
        return [q for q in self.executed if q.target == target and (kind is None or q.kind() == kind)]


@pytest.fixture
def hosted(monkeypatch: pytest.MonkeyPatch) -> FakeHostedClient:
    """One fake client serving both the per-user and the service-role paths."""
    fake = FakeHostedClient()
    monkeypatch.setattr("iprof.auth.deps.create_user_client", lambda cfg, token: fake)
    monkeypatch.setattr("iprof.auth.deps.get_service_client", lambda cfg: fake)
    return fake


@pytest.fixture
def hosted_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SUPABASE_URL", "https://project.supabase.test")
    monkeypatch.setenv("SUPABASE_ANON_KEY", "anon-key")
    monkeypatch.setenv("SUPABASE_SERVICE_ROLE_KEY", "service-key")


@pytest.fixture
def sign_in_as(monkeypatch: pytest.MonkeyPatch, hosted_env):
    """Make the gate resolve the given user for every request."""
    from iprof.auth.models import AuthUser, HostedResolution

    def _sign_in(user_id: str = "user-1", email: str = "student@example.com", **meta: Any) -> AuthUser:
        user = AuthUser(id=user_id, email=email, user_metadata=dict(meta))
        monkeypatch.setattr(
            "iprof.api.app.resolve_hosted_user",
            lambda cfg, cookies: HostedResolution(user=user, access_token="access-token"),
        )
        return user

    return _sign_in


def make_auth_config(**overrides: Any):
    from iprof.auth.config import AuthConfig

    base: Dict[str, Any] = dict(
        admin_emails=frozenset({"a@x.com"}),
        admin_password="pw",
        admin_password_hash=None,
        admin_session_secret="s3cr3t",
        accept_legacy_admin_tokens=False,
        supabase_url=None,
        supabase_anon_key=None,
        supabase_service_role_key=None,
        site_url="http://localhost:3000",
        cookie_secure=False,
        development=False,
        skip_parent_confirmation=False,
    )
    base.update(overrides)
    return AuthConfig(**base)


@pytest.fixture
def auth_config():
    """Factory for explicit configs (tests that bypass the environment)."""
    return make_auth_config
