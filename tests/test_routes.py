"""
Tests for the personal token, completion and quota routes.

The services run against the in-memory fakes from conftest; authentication
is overridden with a fixed principal except in TestAuthentication.
"""

import json
from datetime import timedelta

import jwt
import pytest

from conftest import ADMIN_EMAIL, GEMINI_KEY, OPENAI_KEY, SHARED_GEMINI_KEY, START

JWT_SECRET = "test-secret-key-for-jwt-signing-min-32-chars"


@pytest.fixture
def shared_gemini(remote):
    """Publish a shared gemini key in the remote registry."""
    remote.data["system/shared_ai_tokens/gemini"] = {
        "provider": "gemini",
        "token": SHARED_GEMINI_KEY,
        "updated_at": START.isoformat(),
        "updated_by": ADMIN_EMAIL,
        "expires_at": (START + timedelta(days=30)).isoformat(),
        "is_active": True,
    }


class TestPersonalTokens:
    """PUT/GET/DELETE /v1/tokens."""

    def test_save_and_list(self, user_client):
        response = user_client.put("/v1/tokens/gemini", json={"secret": GEMINI_KEY})
        assert response.status_code == 200
        body = response.json()
        assert body["provider"] == "gemini"
        assert body["has_token"] is True
        assert body["days_until_expiry"] == 365

        listed = user_client.get("/v1/tokens").json()
        assert [t["provider"] for t in listed] == ["github", "openai", "gemini"]
        assert [t["has_token"] for t in listed] == [False, False, True]

    def test_secret_never_returned(self, user_client):
        response = user_client.put("/v1/tokens/openai", json={"secret": OPENAI_KEY})
        assert OPENAI_KEY not in response.text
        assert OPENAI_KEY not in user_client.get("/v1/tokens").text

    def test_bad_format_rejected(self, user_client, store):
        response = user_client.put("/v1/tokens/github", json={"secret": "not-a-github-token"})
        assert response.status_code == 422
        assert store.data == {}

    def test_empty_secret_rejected(self, user_client):
        assert user_client.put("/v1/tokens/gemini", json={"secret": ""}).status_code == 422

    def test_unknown_provider(self, user_client):
        response = user_client.put("/v1/tokens/mistral", json={"secret": "whatever-key"})
        assert response.status_code == 404

    def test_explicit_expiry(self, user_client):
        expires = (START + timedelta(days=3)).isoformat()
        response = user_client.put(
            "/v1/tokens/gemini", json={"secret": GEMINI_KEY, "expires_at": expires}
        )
        assert response.json()["days_until_expiry"] == 3

        expiring = user_client.get("/v1/tokens/expiring").json()
        assert [t["provider"] for t in expiring] == ["gemini"]

    def test_delete(self, user_client, store):
        user_client.put("/v1/tokens/gemini", json={"secret": GEMINI_KEY})

        assert user_client.delete("/v1/tokens/gemini").status_code == 204
        assert user_client.delete("/v1/tokens/gemini").status_code == 204
        assert "ai_tokens:user-123:gemini" not in store.data

    def test_validate(self, user_client, remote):
        ok = user_client.post("/v1/tokens/openai/validate", json={"secret": OPENAI_KEY})
        bad = user_client.post("/v1/tokens/openai/validate", json={"secret": "pk-live"})

        assert ok.json() == {"provider": "openai", "valid": True}
        assert bad.json() == {"provider": "openai", "valid": False}
        assert remote.calls == []

    def test_storage_failure(self, user_client, store):
        store.fail = True
        assert user_client.get("/v1/tokens").status_code == 500


class TestCompletions:
    """POST /v1/completions."""

    def test_personal_token(self, user_client, completion_provider):
        user_client.put("/v1/tokens/gemini", json={"secret": GEMINI_KEY})

        response = user_client.post(
            "/v1/completions", json={"provider": "gemini", "user_message": "Hello"}
        )

        assert response.status_code == 200
        body = response.json()
        assert body["content"] == completion_provider.text
        assert body["is_personal_token"] is True
        assert body["quota_state"] == "unlimited"
        assert body["remaining_requests"] is None

    def test_shared_pool(self, user_client, shared_gemini):
        response = user_client.post(
            "/v1/completions",
            json={
                "user_message": "Hello",
                "system_prompt": "Be brief.",
                "history": [{"role": "user", "content": "earlier"}],
            },
        )

        assert response.status_code == 200
        body = response.json()
        assert body["provider"] == "gemini"
        assert body["is_personal_token"] is False
        assert body["quota_state"] == "available"
        assert body["remaining_requests"] == 999

    def test_quota_exhausted(self, user_client, store, shared_gemini):
        store.data["quota:gemini"] = json.dumps(
            {"period_key": "2026-03-10", "requests": 1_000, "tokens": 0}
        )

        response = user_client.post("/v1/completions", json={"user_message": "Hello"})
        assert response.status_code == 429
        assert response.json()["quota_kind"] == "requests"

    def test_no_shared_credential(self, user_client):
        response = user_client.post("/v1/completions", json={"user_message": "Hello"})
        assert response.status_code == 503

    def test_provider_failure(self, user_client, completion_provider, shared_gemini):
        completion_provider.fail_for(SHARED_GEMINI_KEY, 500, "internal")
        response = user_client.post("/v1/completions", json={"user_message": "Hello"})
        assert response.status_code == 502

    def test_provider_reported_quota(self, user_client, completion_provider, shared_gemini):
        completion_provider.fail_for(SHARED_GEMINI_KEY, 429, "Too Many Requests")
        response = user_client.post("/v1/completions", json={"user_message": "Hello"})
        assert response.status_code == 429
        assert response.json()["quota_kind"] == "provider_reported"

    def test_unknown_provider_rejected_by_schema(self, user_client):
        response = user_client.post(
            "/v1/completions", json={"provider": "mistral", "user_message": "Hello"}
        )
        assert response.status_code == 422


class TestQuota:
    """GET /v1/quota/{provider}."""

    def test_quota_status(self, user_client, shared_gemini):
        user_client.post("/v1/completions", json={"user_message": "Hello"})

        body = user_client.get("/v1/quota/gemini").json()
        assert body["scope"] == "gemini"
        assert body["period_key"] == "2026-03-10"
        assert body["used_requests"] == 1
        assert body["remaining_requests"] == 999
        assert body["near_limit_threshold_pct"] == 80
        assert body["has_personal_token"] is False

    def test_unknown_provider(self, user_client):
        assert user_client.get("/v1/quota/mistral").status_code == 404


class TestAuthentication:
    """Bearer-token authentication without the principal override."""

    def _token(self, **claims) -> str:
        payload = {"sub": "user-9", "email": "nine@example.com", **claims}
        return jwt.encode(payload, JWT_SECRET, algorithm="HS256")

    def test_missing_header(self, make_client):
        assert make_client().get("/v1/tokens").status_code == 401

    def test_valid_token(self, make_client, store):
        client = make_client()
        headers = {"Authorization": f"Bearer {self._token()}"}

        response = client.put("/v1/tokens/gemini", json={"secret": GEMINI_KEY}, headers=headers)

        assert response.status_code == 200
        assert "ai_tokens:user-9:gemini" in store.data

    def test_wrong_signature(self, make_client):
        other_secret = "another-secret-of-sufficient-length!"
        token = jwt.encode({"sub": "user-9"}, other_secret, algorithm="HS256")
        response = make_client().get("/v1/tokens", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401

    def test_expired_token(self, make_client):
        token = self._token(exp=1_000_000_000)
        response = make_client().get("/v1/tokens", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401
        assert response.json()["detail"] == "Token expired"

    def test_missing_subject(self, make_client):
        token = jwt.encode({"email": "x@example.com"}, JWT_SECRET, algorithm="HS256")
        response = make_client().get("/v1/tokens", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401
