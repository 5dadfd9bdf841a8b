"""
Pytest Configuration and Centralized Fixtures.

Provides deterministic fakes for every injected capability:
- FakeClock with manual time travel
- In-memory PersistentStore and RemoteTokenRegistry with failure toggles
- Scripted CompletionProvider that records its calls
- Service fixtures wired from the fakes
- API test client with dependency overrides
"""

import asyncio
import os
from collections.abc import Callable, Iterator
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

# Set required environment variables BEFORE importing tokengate modules
os.environ.setdefault("TOKENGATE_DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("TOKENGATE_AUTH_JWT_SECRET", "test-secret-key-for-jwt-signing-min-32-chars")
os.environ.setdefault("TOKENGATE_ADMIN_EMAILS", "admin@example.com")

from tokengate.exceptions import ProviderError, RemoteRegistryError, StorageError
from tokengate.models.domain import Principal, ProviderCompletion
from tokengate.services.credential_store import CredentialStore
from tokengate.services.orchestrator import CompletionOrchestrator
from tokengate.services.provider_policy import ProviderPolicyTable
from tokengate.services.quota_ledger import QuotaLedger
from tokengate.services.shared_registry import AllowListAuthorizer, SharedCredentialRegistry

ADMIN_EMAIL = "admin@example.com"
START = datetime(2026, 3, 10, 12, 0, tzinfo=UTC)

GEMINI_KEY = "AIzaSyD-personal-gemini-key-0001"
SHARED_GEMINI_KEY = "AIzaSyD-shared-gemini-key-000002"
OPENAI_KEY = "sk-test-openai-key-123456"
GITHUB_TOKEN = "github_pat_11ABCDEFG0123456789"


# ============================================================================
# Fakes
# ============================================================================


class FakeClock:
    """Clock whose time only moves when a test moves it."""

    def __init__(self, now: datetime = START) -> None:
        self.current = now

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs: float) -> None:
        self.current = self.current + timedelta(**kwargs)

    def set(self, now: datetime) -> None:
        self.current = now


class InMemoryPersistentStore:
    """PersistentStore over a dict; set fail=True to simulate a broken disk."""

    def __init__(self) -> None:
        self.data: dict[str, str] = {}
        self.fail = False

    def _check(self, key: str) -> None:
        if self.fail:
            raise StorageError(f"simulated failure for {key}")

    async def get_string(self, key: str) -> str | None:
        self._check(key)
        return self.data.get(key)

    async def set_string(self, key: str, value: str) -> None:
        self._check(key)
        self.data[key] = value

    async def remove(self, key: str) -> None:
        self._check(key)
        self.data.pop(key, None)

    async def compare_and_set(self, key: str, expected: str | None, value: str) -> bool:
        self._check(key)
        if self.data.get(key) != expected:
            return False
        self.data[key] = value
        return True


class InMemoryRemoteRegistry:
    """
    RemoteTokenRegistry over a dict.

    offline=True makes every call raise RemoteRegistryError; delay makes
    every call sleep first (to exercise timeouts).
    """

    def __init__(self) -> None:
        self.data: dict[str, dict[str, Any]] = {}
        self.offline = False
        self.delay = 0.0
        self.calls: list[tuple[str, str]] = []

    async def _enter(self, operation: str, path: str) -> None:
        self.calls.append((operation, path))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.offline:
            raise RemoteRegistryError(operation, path, "simulated outage")

    async def get(self, path: str) -> dict[str, Any] | None:
        await self._enter("get", path)
        value = self.data.get(path)
        return dict(value) if value is not None else None

    async def set(self, path: str, value: dict[str, Any]) -> None:
        await self._enter("set", path)
        self.data[path] = dict(value)

    async def delete(self, path: str) -> None:
        await self._enter("delete", path)
        self.data.pop(path, None)

    async def close(self) -> None:
        return None


class FakeCompletionProvider:
    """Returns scripted completions; records (secret, prompt) of every call."""

    def __init__(self, text: str = "Hello from the model", tokens_used: int | None = None) -> None:
        self.text = text
        self.tokens_used = tokens_used
        self.calls: list[tuple[str, str]] = []
        self.errors: dict[str, ProviderError] = {}

    def fail_for(self, secret: str, status_code: int | None, body: str) -> None:
        """Make calls using secret raise ProviderError."""
        self.errors[secret] = ProviderError(status_code, body)

    async def complete(self, secret: str, prompt: str) -> ProviderCompletion:
        self.calls.append((secret, prompt))
        if secret in self.errors:
            raise self.errors[secret]
        return ProviderCompletion(text=self.text, tokens_used=self.tokens_used)


# ============================================================================
# Capability Fixtures
# ============================================================================


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryPersistentStore:
    return InMemoryPersistentStore()


@pytest.fixture
def remote() -> InMemoryRemoteRegistry:
    return InMemoryRemoteRegistry()


@pytest.fixture
def policies() -> ProviderPolicyTable:
    return ProviderPolicyTable.default()


@pytest.fixture
def principal() -> Principal:
    return Principal(id="user-123", email="user@example.com")


@pytest.fixture
def admin_principal() -> Principal:
    return Principal(id="admin-1", email=ADMIN_EMAIL)


# ============================================================================
# Service Fixtures
# ============================================================================


@pytest.fixture
def credential_store(
    store: InMemoryPersistentStore,
    remote: InMemoryRemoteRegistry,
    clock: FakeClock,
    policies: ProviderPolicyTable,
    principal: Principal,
) -> CredentialStore:
    return CredentialStore(store, remote, clock, policies, principal=principal, remote_timeout=0.5)


@pytest.fixture
def shared_registry(
    store: InMemoryPersistentStore,
    remote: InMemoryRemoteRegistry,
    clock: FakeClock,
    policies: ProviderPolicyTable,
) -> SharedCredentialRegistry:
    return SharedCredentialRegistry(
        store,
        remote,
        clock,
        policies,
        AllowListAuthorizer([ADMIN_EMAIL]),
        remote_timeout=0.5,
    )


@pytest.fixture
def quota_ledger(
    store: InMemoryPersistentStore,
    remote: InMemoryRemoteRegistry,
    clock: FakeClock,
    policies: ProviderPolicyTable,
) -> QuotaLedger:
    return QuotaLedger(store, clock, policies, registry=remote, remote_timeout=0.5)


@pytest.fixture
def completion_provider() -> FakeCompletionProvider:
    return FakeCompletionProvider()


@pytest.fixture
def providers(completion_provider: FakeCompletionProvider) -> dict[str, FakeCompletionProvider]:
    return {
        "github": completion_provider,
        "openai": completion_provider,
        "gemini": completion_provider,
    }


@pytest.fixture
def orchestrator(
    credential_store: CredentialStore,
    shared_registry: SharedCredentialRegistry,
    quota_ledger: QuotaLedger,
    providers: dict[str, FakeCompletionProvider],
) -> CompletionOrchestrator:
    return CompletionOrchestrator(credential_store, shared_registry, quota_ledger, providers)


# ============================================================================
# API Fixtures
# ============================================================================


@pytest.fixture
def app() -> FastAPI:
    """FastAPI app for testing."""
    from tokengate.main import app as main_app

    return main_app


@pytest.fixture
def make_client(
    app: FastAPI,
    store: InMemoryPersistentStore,
    remote: InMemoryRemoteRegistry,
    clock: FakeClock,
    policies: ProviderPolicyTable,
    quota_ledger: QuotaLedger,
    shared_registry: SharedCredentialRegistry,
    providers: dict[str, FakeCompletionProvider],
) -> Iterator[Callable[..., TestClient]]:
    """
    Factory for a TestClient wired to the fakes.

    make_client(principal) overrides authentication with that principal;
    make_client() keeps real bearer-token authentication.
    """
    from tokengate.api import dependencies as deps

    def _make(as_principal: Principal | None = None) -> TestClient:
        app.dependency_overrides.update(
            {
                deps.get_persistent_store: lambda: store,
                deps.get_remote_registry: lambda: remote,
                deps.get_clock: lambda: clock,
                deps.get_policy_table: lambda: policies,
                deps.get_quota_ledger: lambda: quota_ledger,
                deps.get_shared_registry: lambda: shared_registry,
                deps.get_completion_providers: lambda: providers,
            }
        )
        if as_principal is not None:
            app.dependency_overrides[deps.get_current_principal] = lambda: as_principal
        return TestClient(app)

    yield _make

    app.dependency_overrides.clear()


@pytest.fixture
def user_client(make_client: Callable[..., TestClient], principal: Principal) -> TestClient:
    return make_client(principal)


@pytest.fixture
def admin_client(make_client: Callable[..., TestClient], admin_principal: Principal) -> TestClient:
    return make_client(admin_principal)
