"""
Remote Token Registry - Path-addressed JSON subtrees.

The shipped HTTP client speaks the Firebase Realtime Database REST dialect:
GET/PUT/DELETE {base}/{path}.json, where a missing node reads back as null.
Every call made by the services is bounded by a timeout and failures are
raised as RemoteRegistryError for the caller to absorb.
"""

import asyncio
import json
from collections.abc import Awaitable
from typing import Any, Protocol, TypeVar

import httpx
from structlog import get_logger

from tokengate.exceptions import RemoteRegistryError
from tokengate.observability.metrics import metrics

logger = get_logger(__name__)

T = TypeVar("T")

SHARED_TOKENS_ROOT = "system/shared_ai_tokens"
PERSONAL_TOKENS_ROOT = "system/ai_tokens"
QUOTA_LIMITS_ROOT = "system/production_config/quota_limits"
USAGE_HISTORY_ROOT = "system/ai_usage/daily/shared"


def shared_token_path(provider: str) -> str:
    """Registry path of the shared credential for provider."""
    return f"{SHARED_TOKENS_ROOT}/{provider}"


def personal_backup_path(user_id: str, provider: str) -> str:
    """Registry path of a user's sanitized personal-token backup."""
    return f"{PERSONAL_TOKENS_ROOT}/{user_id}/{provider}"


def quota_limits_path(provider: str) -> str:
    """Registry path of the production quota override for provider."""
    return f"{QUOTA_LIMITS_ROOT}/{provider}"


def usage_history_path(period_key: str, scope: str) -> str:
    """Registry path of one archived day of shared-pool usage."""
    return f"{USAGE_HISTORY_ROOT}/{period_key}/{scope}"


class RemoteTokenRegistry(Protocol):
    """Shared remote document store."""

    async def get(self, path: str) -> dict[str, Any] | None:
        """Read the JSON object at path; None when absent."""
        ...

    async def set(self, path: str, value: dict[str, Any]) -> None:
        """Replace the JSON object at path."""
        ...

    async def delete(self, path: str) -> None:
        """Remove the subtree at path."""
        ...


async def call_with_timeout(
    operation: str, path: str, call: Awaitable[T], timeout: float
) -> T:
    """
    Await a registry call, bounding it by timeout.

    Timeouts are converted to RemoteRegistryError so callers handle a slow
    registry exactly like an unreachable one.
    """
    try:
        return await asyncio.wait_for(call, timeout=timeout)
    except TimeoutError as exc:
        metrics.record_remote_failure(operation)
        raise RemoteRegistryError(operation, path, f"timed out after {timeout}s") from exc
    except RemoteRegistryError:
        metrics.record_remote_failure(operation)
        raise


class HttpRemoteTokenRegistry:
    """RemoteTokenRegistry over the Realtime Database REST API."""

    def __init__(
        self,
        base_url: str,
        auth_token: str = "",
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.auth_token = auth_token
        self._http_client = http_client

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Get HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient()
        return self._http_client

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{path.strip('/')}.json"

    def _params(self) -> dict[str, str]:
        return {"auth": self.auth_token} if self.auth_token else {}

    async def _send(
        self, operation: str, path: str, method: str, body: dict[str, Any] | None = None
    ) -> httpx.Response:
        try:
            response = await self.http_client.request(
                method, self._url(path), params=self._params(), json=body
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.warning(
                "remote_registry_rejected",
                operation=operation,
                path=path,
                status_code=e.response.status_code,
            )
            raise RemoteRegistryError(
                operation, path, f"HTTP {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            raise RemoteRegistryError(operation, path, str(e) or type(e).__name__) from e
        return response

    async def get(self, path: str) -> dict[str, Any] | None:
        response = await self._send("get", path, "GET")
        try:
            data = response.json()
        except json.JSONDecodeError as e:
            raise RemoteRegistryError("get", path, "response is not JSON") from e
        if data is None:
            return None
        if not isinstance(data, dict):
            raise RemoteRegistryError("get", path, f"expected object, got {type(data).__name__}")
        return data

    async def set(self, path: str, value: dict[str, Any]) -> None:
        await self._send("set", path, "PUT", value)

    async def delete(self, path: str) -> None:
        await self._send("delete", path, "DELETE")

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None


class OfflineRemoteRegistry:
    """Registry used when no remote URL is configured: every call fails softly."""

    async def get(self, path: str) -> dict[str, Any] | None:
        raise RemoteRegistryError("get", path, "remote registry not configured")

    async def set(self, path: str, value: dict[str, Any]) -> None:
        raise RemoteRegistryError("set", path, "remote registry not configured")

    async def delete(self, path: str) -> None:
        raise RemoteRegistryError("delete", path, "remote registry not configured")

    async def close(self) -> None:
        return None
