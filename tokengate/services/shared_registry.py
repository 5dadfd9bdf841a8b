"""
Shared Credential Registry - Administrator-issued credentials for the shared pool.

NO DICTIONARIES - Records are SharedCredentialRecord dataclasses.

The remote registry is canonical and holds the full record, secret included.
A local cache entry keeps the pool usable while the registry is unreachable.
"""

import json
from collections.abc import Callable, Iterable
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any

from structlog import get_logger

from tokengate.exceptions import RemoteRegistryError, UnauthorizedError
from tokengate.models.domain import (
    Principal,
    SharedCredentialRecord,
    SharedTokenStatus,
    whole_days_until,
)
from tokengate.services.clock import Clock
from tokengate.services.credential_store import redact_secret
from tokengate.services.provider_policy import ProviderPolicyTable
from tokengate.services.remote_registry import (
    RemoteTokenRegistry,
    call_with_timeout,
    shared_token_path,
)
from tokengate.services.storage import PersistentStore

logger = get_logger(__name__)

Authorizer = Callable[[Principal | None], bool]


class AllowListAuthorizer:
    """Grants the administrator capability to a fixed set of e-mail addresses."""

    def __init__(self, emails: Iterable[str]) -> None:
        self.emails = frozenset(email.strip().lower() for email in emails if email.strip())

    def __call__(self, principal: Principal | None) -> bool:
        if principal is None or not principal.email:
            return False
        return principal.email.lower() in self.emails


class SharedCredentialRegistry:
    """Resolves and administers the shared credential of each provider."""

    def __init__(
        self,
        store: PersistentStore,
        registry: RemoteTokenRegistry,
        clock: Clock,
        policies: ProviderPolicyTable,
        authorizer: Authorizer,
        remote_timeout: float = 5.0,
    ) -> None:
        self.store = store
        self.registry = registry
        self.clock = clock
        self.policies = policies
        self.authorizer = authorizer
        self.remote_timeout = remote_timeout

    @staticmethod
    def _cache_key(provider: str) -> str:
        return f"shared_ai_tokens:{provider}"

    def _parse(
        self, provider: str, data: dict[str, Any], origin: str
    ) -> SharedCredentialRecord | None:
        try:
            return SharedCredentialRecord.from_json(provider, data)
        except ValueError as e:
            logger.warning("shared_record_invalid", provider=provider, origin=origin, error=str(e))
            return None

    async def _fetch_remote(self, provider: str) -> SharedCredentialRecord | None:
        """Read the canonical record; raises RemoteRegistryError when unreachable."""
        path = shared_token_path(provider)
        data = await call_with_timeout("get", path, self.registry.get(path), self.remote_timeout)
        if not data:
            return None
        return self._parse(provider, data, "remote")

    async def _load_cache(self, provider: str) -> SharedCredentialRecord | None:
        raw = await self.store.get_string(self._cache_key(provider))
        if raw is None:
            return None
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("shared_cache_corrupt", provider=provider)
            return None
        if not isinstance(data, dict):
            return None
        return self._parse(provider, data, "cache")

    async def _write_cache(self, record: SharedCredentialRecord) -> None:
        await self.store.set_string(self._cache_key(record.provider), json.dumps(record.to_json()))

    def is_authorized(self, principal: Principal | None) -> bool:
        return self.authorizer(principal)

    def require_admin(self, principal: Principal | None) -> Principal:
        """
        Return principal when it holds the administrator capability.

        Raises:
            UnauthorizedError: principal is missing or not on the allow-list
        """
        if principal is None or not self.is_authorized(principal):
            raise UnauthorizedError(principal.display if principal else None)
        return principal

    async def resolve(self, provider: str) -> str | None:
        """
        Return the usable shared secret for provider, or None.

        Order: the remote record when present, active and unexpired (the
        cache is refreshed from it); otherwise the cached copy when it is
        itself usable; otherwise None. An expired cache entry is removed.
        """
        self.policies.get(provider)
        now = self.clock.now()

        try:
            remote = await self._fetch_remote(provider)
        except RemoteRegistryError as e:
            logger.info("shared_remote_unavailable", provider=provider, reason=e.message)
            remote = None

        if remote is not None and remote.is_usable(now):
            await self._write_cache(remote)
            return remote.secret

        cached = await self._load_cache(provider)
        if cached is None:
            return None
        if cached.is_expired(now):
            await self.store.remove(self._cache_key(provider))
            logger.info("shared_cache_expired", provider=provider)
            return None
        if not cached.is_usable(now):
            return None
        logger.info("shared_token_from_cache", provider=provider)
        return cached.secret

    async def update(
        self,
        provider: str,
        secret: str,
        updated_by: Principal | None,
        expires_at: datetime | None = None,
    ) -> bool:
        """Publish a new shared secret. Returns False when not authorized or not published."""
        policy = self.policies.get(provider)
        if updated_by is None or not self.is_authorized(updated_by):
            logger.warning(
                "shared_update_unauthorized",
                provider=provider,
                principal=updated_by.display if updated_by else None,
            )
            return False
        now = self.clock.now()
        record = SharedCredentialRecord(
            provider=provider,
            secret=secret,
            updated_at=now,
            updated_by=updated_by.display,
            expires_at=expires_at or now + timedelta(days=policy.default_expiry_days),
            active=True,
        )
        path = shared_token_path(provider)
        try:
            await call_with_timeout(
                "set", path, self.registry.set(path, record.to_json()), self.remote_timeout
            )
        except RemoteRegistryError as e:
            logger.error("shared_update_failed", provider=provider, reason=e.message)
            return False

        await self._write_cache(record)
        logger.info(
            "shared_token_updated",
            provider=provider,
            updated_by=record.updated_by,
            token_prefix=redact_secret(secret),
            expires_at=record.expires_at.isoformat(),
        )
        return True

    async def delete(self, provider: str, principal: Principal | None) -> bool:
        """Remove the shared secret remotely and from the cache."""
        self.policies.get(provider)
        if not self.is_authorized(principal):
            logger.warning(
                "shared_delete_unauthorized",
                provider=provider,
                principal=principal.display if principal else None,
            )
            return False

        path = shared_token_path(provider)
        try:
            await call_with_timeout("delete", path, self.registry.delete(path), self.remote_timeout)
        except RemoteRegistryError as e:
            logger.error("shared_delete_failed", provider=provider, reason=e.message)
            return False

        await self.store.remove(self._cache_key(provider))
        logger.info(
            "shared_token_deleted",
            provider=provider,
            principal=principal.display if principal else None,
        )
        return True

    async def deactivate(self, provider: str, principal: Principal | None) -> bool:
        """Mark the shared secret inactive without discarding it."""
        self.policies.get(provider)
        if principal is None or not self.is_authorized(principal):
            logger.warning(
                "shared_deactivate_unauthorized",
                provider=provider,
                principal=principal.display if principal else None,
            )
            return False
        try:
            current = await self._fetch_remote(provider)
        except RemoteRegistryError as e:
            logger.error("shared_deactivate_failed", provider=provider, reason=e.message)
            return False
        if current is None:
            return False

        record = replace(
            current,
            active=False,
            disabled_at=self.clock.now(),
            disabled_by=principal.display,
        )
        path = shared_token_path(provider)
        try:
            await call_with_timeout(
                "set", path, self.registry.set(path, record.to_json()), self.remote_timeout
            )
        except RemoteRegistryError as e:
            logger.error("shared_deactivate_failed", provider=provider, reason=e.message)
            return False

        await self.store.remove(self._cache_key(provider))
        logger.info("shared_token_deactivated", provider=provider, principal=principal.display)
        return True

    async def status(self, provider: str) -> SharedTokenStatus:
        """Status of the shared record, read remotely with the cache as fallback."""
        self.policies.get(provider)
        source = "remote"
        try:
            record = await self._fetch_remote(provider)
        except RemoteRegistryError:
            record = await self._load_cache(provider)
            source = "cache" if record is not None else "none"

        if record is None:
            return SharedTokenStatus(
                provider=provider,
                has_token=False,
                is_active=False,
                is_expired=False,
                expires_at=None,
                days_until_expiry=None,
                updated_by=None,
                last_updated=None,
                source=source,
            )

        now = self.clock.now()
        return SharedTokenStatus(
            provider=provider,
            has_token=bool(record.secret),
            is_active=record.active,
            is_expired=record.is_expired(now),
            expires_at=record.expires_at,
            days_until_expiry=whole_days_until(record.expires_at, now),
            updated_by=record.updated_by or None,
            last_updated=record.updated_at,
            source=source,
        )

    async def all_statuses(self) -> list[SharedTokenStatus]:
        return [await self.status(provider) for provider in self.policies.providers()]

    async def expiring_soon(self, threshold_days: int = 7) -> list[SharedTokenStatus]:
        """Shared tokens that are not yet expired but expire within threshold_days."""
        return [
            status
            for status in await self.all_statuses()
            if status.has_token
            and not status.is_expired
            and status.days_until_expiry is not None
            and status.days_until_expiry <= threshold_days
        ]
