"""
Tests for API Dependencies.

Tests bearer-token authentication and process-wide service wiring.
"""

import time
from unittest.mock import MagicMock, patch

import jwt
import pytest
from fastapi import HTTPException

from tokengate.api import dependencies as deps
from tokengate.models.domain import Principal
from tokengate.services.remote_registry import HttpRemoteTokenRegistry, OfflineRemoteRegistry

JWT_SECRET = "test-secret-key-for-jwt-signing-min-32-chars"


def _bearer(payload: dict, secret: str = JWT_SECRET) -> str:
    return f"Bearer {jwt.encode(payload, secret, algorithm='HS256')}"


@pytest.fixture
async def fresh_services():
    """Forget cached service instances before and after the test."""
    await deps.close_services()
    yield
    await deps.close_services()


class TestGetCurrentPrincipal:
    """Tests for get_current_principal()."""

    async def test_valid_token(self):
        principal = await deps.get_current_principal(
            _bearer({"sub": "user-42", "email": "u42@example.com", "exp": time.time() + 60})
        )
        assert principal == Principal(id="user-42", email="u42@example.com")

    async def test_email_optional(self):
        principal = await deps.get_current_principal(_bearer({"sub": "user-42"}))
        assert principal.email is None
        assert principal.display == "user-42"

    @pytest.mark.parametrize("header", [None, "", "Basic dXNlcjpwYXNz", "Bearer"])
    async def test_missing_or_malformed_header(self, header):
        with pytest.raises(HTTPException) as exc_info:
            await deps.get_current_principal(header)
        assert exc_info.value.status_code == 401
        assert exc_info.value.headers == {"WWW-Authenticate": "Bearer"}

    async def test_garbage_token(self):
        with pytest.raises(HTTPException) as exc_info:
            await deps.get_current_principal("Bearer not.a.jwt")
        assert exc_info.value.detail == "Invalid token"

    async def test_expired(self):
        with pytest.raises(HTTPException) as exc_info:
            await deps.get_current_principal(_bearer({"sub": "u", "exp": time.time() - 60}))
        assert exc_info.value.detail == "Token expired"

    async def test_missing_subject(self):
        with pytest.raises(HTTPException) as exc_info:
            await deps.get_current_principal(_bearer({"email": "x@example.com"}))
        assert exc_info.value.detail == "Invalid token payload"

    async def test_secret_not_configured(self):
        settings = MagicMock(auth_jwt_secret="")
        with patch("tokengate.api.dependencies.get_settings", return_value=settings):
            with pytest.raises(HTTPException) as exc_info:
                await deps.get_current_principal(_bearer({"sub": "u"}))
        assert exc_info.value.status_code == 401


class TestServiceWiring:
    """Tests for the process-wide service getters."""

    async def test_offline_registry_without_url(self, fresh_services):
        settings = MagicMock(remote_registry_url="", remote_registry_auth="")
        with patch("tokengate.api.dependencies.get_settings", return_value=settings):
            assert isinstance(deps.get_remote_registry(), OfflineRemoteRegistry)

    async def test_http_registry_with_url(self, fresh_services):
        settings = MagicMock(
            remote_registry_url="https://example.firebaseio.com", remote_registry_auth="s"
        )
        with patch("tokengate.api.dependencies.get_settings", return_value=settings):
            registry = deps.get_remote_registry()
        assert isinstance(registry, HttpRemoteTokenRegistry)
        assert registry.base_url == "https://example.firebaseio.com"

    async def test_singletons(self, fresh_services):
        assert deps.get_quota_ledger() is deps.get_quota_ledger()
        assert deps.get_shared_registry() is deps.get_shared_registry()
        assert set(deps.get_completion_providers()) == {"github", "openai", "gemini"}

    async def test_init_services_keeps_defaults_when_offline(self, fresh_services):
        await deps.init_services()
        assert deps.get_policy_table().get("gemini").daily_request_limit == 1_000

    async def test_close_services_forgets_instances(self, fresh_services):
        ledger = deps.get_quota_ledger()
        await deps.close_services()
        assert deps.get_quota_ledger() is not ledger
