"""
Credential Store - A user's personal AI provider credentials.

NO DICTIONARIES - Records are CredentialRecord dataclasses; JSON only at
the storage boundary.

The full record lives in the local PersistentStore, which is the source of
truth for availability. A sanitized projection (presence flag, timestamps
and a redacted prefix) is mirrored to the remote registry for backup and
audit; remote failures are logged and never surface to the caller.
"""

import json
from dataclasses import replace
from datetime import datetime, timedelta

from structlog import get_logger

from tokengate.exceptions import (
    CredentialExpiredError,
    CredentialNotFoundError,
    RemoteRegistryError,
    StorageError,
)
from tokengate.models.domain import CredentialRecord, Principal, TokenStatus, whole_days_until
from tokengate.services.clock import Clock
from tokengate.services.provider_policy import ProviderPolicyTable
from tokengate.services.remote_registry import (
    RemoteTokenRegistry,
    call_with_timeout,
    personal_backup_path,
)
from tokengate.services.storage import PersistentStore

logger = get_logger(__name__)

LOCAL_OWNER = "local"


def redact_secret(secret: str) -> str:
    """
    Redacted form of a secret for backups and logs.

    Keeps the first 8 and last 4 characters. Secrets of 10 characters or
    fewer keep only the first 2, so the whole value never leaves the device.
    """
    if len(secret) <= 10:
        return f"{secret[:2]}..."
    return f"{secret[:8]}...{secret[-4:]}"


class CredentialStore:
    """Personal credentials for one principal (or the anonymous local user)."""

    def __init__(
        self,
        store: PersistentStore,
        registry: RemoteTokenRegistry,
        clock: Clock,
        policies: ProviderPolicyTable,
        principal: Principal | None = None,
        remote_timeout: float = 5.0,
    ) -> None:
        self.store = store
        self.registry = registry
        self.clock = clock
        self.policies = policies
        self.principal = principal
        self.remote_timeout = remote_timeout

    @property
    def owner_id(self) -> str:
        return self.principal.id if self.principal else LOCAL_OWNER

    def _key(self, provider: str) -> str:
        return f"ai_tokens:{self.owner_id}:{provider}"

    async def _load(self, provider: str) -> CredentialRecord | None:
        raw = await self.store.get_string(self._key(provider))
        if raw is None:
            return None
        try:
            return CredentialRecord.from_json(json.loads(raw))
        except (ValueError, KeyError, TypeError) as e:
            logger.error("credential_record_corrupt", provider=provider, error=str(e))
            raise StorageError(f"corrupt credential record for {provider}") from e

    async def _save_record(self, record: CredentialRecord) -> None:
        await self.store.set_string(self._key(record.provider), json.dumps(record.to_json()))

    async def save(
        self, provider: str, secret: str, expires_at: datetime | None = None
    ) -> CredentialRecord:
        """
        Save (or overwrite) the personal credential for provider.

        expires_at defaults to now + the provider's default expiry. The
        original created_at is kept when a record is overwritten.
        """
        policy = self.policies.get(provider)
        now = self.clock.now()
        if expires_at is None:
            expires_at = now + timedelta(days=policy.default_expiry_days)

        existing = await self._load(provider)
        record = CredentialRecord(
            provider=provider,
            secret=secret,
            created_at=existing.created_at if existing else now,
            updated_at=now,
            expires_at=expires_at,
            last_validated_at=now,
        )
        await self._save_record(record)
        logger.info(
            "credential_saved",
            provider=provider,
            owner=self.owner_id,
            token_prefix=redact_secret(secret),
            expires_at=expires_at.isoformat(),
        )

        await self._backup(record)
        return record

    async def _backup(self, record: CredentialRecord) -> None:
        if self.principal is None:
            return
        path = personal_backup_path(self.principal.id, record.provider)
        projection = {
            "has_token": True,
            "updated_at": record.updated_at.isoformat(),
            "expires_at": record.expires_at.isoformat(),
            "token_prefix": redact_secret(record.secret),
        }
        try:
            await call_with_timeout(
                "set", path, self.registry.set(path, projection), self.remote_timeout
            )
        except RemoteRegistryError as e:
            logger.warning("remote_backup_failed", provider=record.provider, reason=e.message)

    async def get(self, provider: str) -> str | None:
        """Return the secret, or None when missing or expired."""
        self.policies.get(provider)
        record = await self._load(provider)
        if record is None or record.is_expired(self.clock.now()):
            return None
        return record.secret

    async def require(self, provider: str) -> CredentialRecord:
        """Return the record, distinguishing a missing one from an expired one."""
        self.policies.get(provider)
        record = await self._load(provider)
        if record is None:
            raise CredentialNotFoundError(provider)
        if record.is_expired(self.clock.now()):
            raise CredentialExpiredError(provider, record.expires_at.isoformat())
        return record

    async def mark_validated(self, provider: str) -> None:
        """Stamp last_validated_at after the provider accepted the secret."""
        record = await self.require(provider)
        await self._save_record(replace(record, last_validated_at=self.clock.now()))

    async def delete(self, provider: str) -> None:
        """Remove the credential locally and attempt remote removal."""
        self.policies.get(provider)
        await self.store.remove(self._key(provider))
        logger.info("credential_deleted", provider=provider, owner=self.owner_id)

        if self.principal is None:
            return
        path = personal_backup_path(self.principal.id, provider)
        try:
            await call_with_timeout(
                "delete", path, self.registry.delete(path), self.remote_timeout
            )
        except RemoteRegistryError as e:
            logger.warning("remote_backup_delete_failed", provider=provider, reason=e.message)

    async def status(self, provider: str) -> TokenStatus:
        self.policies.get(provider)
        record = await self._load(provider)
        if record is None:
            return TokenStatus(
                provider=provider,
                has_token=False,
                is_expired=False,
                expires_at=None,
                days_until_expiry=None,
                last_updated=None,
            )
        now = self.clock.now()
        return TokenStatus(
            provider=provider,
            has_token=True,
            is_expired=record.is_expired(now),
            expires_at=record.expires_at,
            days_until_expiry=whole_days_until(record.expires_at, now),
            last_updated=record.updated_at,
        )

    async def all_statuses(self) -> list[TokenStatus]:
        return [await self.status(provider) for provider in self.policies.providers()]

    def validate_format(self, provider: str, secret: str) -> bool:
        """Offline syntactic check; never contacts the provider."""
        if not secret:
            return False
        return self.policies.get(provider).secret_format_validator(secret)

    async def expiring_soon(self, threshold_days: int = 7) -> list[TokenStatus]:
        """Non-expired tokens within threshold_days of expiry."""
        return [
            status
            for status in await self.all_statuses()
            if status.has_token
            and not status.is_expired
            and status.days_until_expiry is not None
            and status.days_until_expiry <= threshold_days
        ]
