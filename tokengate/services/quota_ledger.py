"""
Quota Ledger - Daily request and token counters for the shared pool.

NO DICTIONARIES - Counters are QuotaCounters dataclasses.

Counters are keyed by calendar day in the ledger's time zone. A stored
counter for any other day is stale: it is archived under
quota_history:{scope}:{period_key} (and mirrored softly to the remote
registry) and replaced by zeros, never decremented.

Every counter write is a compare-and-set against the value just read, so
processes sharing one database never lose each other's commits; a per-scope
asyncio.Lock keeps callers inside one process from contending on it.
Admission is advisory: no lock is held across the outbound provider call,
so concurrent requests may overshoot a limit by at most the number in
flight.
"""

import asyncio
import json
import math
from datetime import UTC, timedelta, tzinfo
from zoneinfo import ZoneInfo

from structlog import get_logger

from tokengate.exceptions import RemoteRegistryError, StorageError
from tokengate.models.api import AdmissionDecision
from tokengate.models.domain import QuotaCounters, QuotaRemaining, QuotaStatus
from tokengate.services.clock import Clock
from tokengate.services.provider_policy import ProviderPolicyTable
from tokengate.services.remote_registry import (
    RemoteTokenRegistry,
    call_with_timeout,
    usage_history_path,
)
from tokengate.services.storage import PersistentStore

logger = get_logger(__name__)

NEAR_LIMIT_THRESHOLD_PCT = 80
CHARS_PER_TOKEN = 4
MAX_WRITE_ATTEMPTS = 5
DEFAULT_HISTORY_DAYS = 30


def estimate_tokens(text: str) -> int:
    """Approximate token count: ceil(len(text) / 4)."""
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def resolve_timezone(name: str) -> tzinfo:
    if name.upper() == "UTC":
        return UTC
    return ZoneInfo(name)


class QuotaLedger:
    """Per-scope daily usage accounting."""

    def __init__(
        self,
        store: PersistentStore,
        clock: Clock,
        policies: ProviderPolicyTable,
        timezone: str | tzinfo = "UTC",
        registry: RemoteTokenRegistry | None = None,
        remote_timeout: float = 5.0,
    ) -> None:
        self.store = store
        self.clock = clock
        self.policies = policies
        self.timezone = resolve_timezone(timezone) if isinstance(timezone, str) else timezone
        self.registry = registry
        self.remote_timeout = remote_timeout
        self._scope_locks: dict[str, asyncio.Lock] = {}

    @staticmethod
    def _key(scope: str) -> str:
        return f"quota:{scope}"

    @staticmethod
    def _history_key(scope: str, period_key: str) -> str:
        return f"quota_history:{scope}:{period_key}"

    def _lock(self, scope: str) -> asyncio.Lock:
        lock = self._scope_locks.get(scope)
        if lock is None:
            lock = asyncio.Lock()
            self._scope_locks[scope] = lock
        return lock

    def today(self) -> str:
        """Period key for the current calendar day (YYYY-MM-DD)."""
        return self.clock.now().astimezone(self.timezone).date().isoformat()

    def _parse(self, scope: str, raw: str | None) -> QuotaCounters | None:
        if raw is None:
            return None
        try:
            return QuotaCounters.from_json(json.loads(raw))
        except (ValueError, KeyError, TypeError) as e:
            logger.error("quota_counters_corrupt", scope=scope, error=str(e))
            raise StorageError(f"corrupt quota counters for {scope}") from e

    async def _load(self, scope: str) -> QuotaCounters | None:
        return self._parse(scope, await self.store.get_string(self._key(scope)))

    async def _apply(
        self, scope: str, requests_delta: int = 0, tokens_delta: int = 0
    ) -> tuple[QuotaCounters, QuotaCounters | None]:
        """
        Roll over if stale, add the deltas, and write with compare-and-set.

        Returns today's counters and the stale counters that were archived,
        if any. Caller holds the scope lock.
        """
        key = self._key(scope)
        for _ in range(MAX_WRITE_ATTEMPTS):
            raw = await self.store.get_string(key)
            stored = self._parse(scope, raw)
            today = self.today()
            stale = stored if stored is not None and stored.period_key != today else None
            base = (
                stored if stored is not None and stale is None else QuotaCounters(period_key=today)
            )
            updated = QuotaCounters(
                period_key=today,
                requests_used=base.requests_used + requests_delta,
                tokens_used=base.tokens_used + tokens_delta,
            )
            if updated == stored:
                return updated, None
            if await self.store.compare_and_set(key, raw, json.dumps(updated.to_json())):
                if stale is not None:
                    await self._archive(scope, stale, today)
                return updated, stale
            logger.info("quota_write_conflict", scope=scope)

        raise StorageError(
            f"quota counters for {scope} kept changing; gave up after {MAX_WRITE_ATTEMPTS} writes"
        )

    async def _archive(self, scope: str, stale: QuotaCounters, today: str) -> None:
        await self.store.set_string(
            self._history_key(scope, stale.period_key), json.dumps(stale.to_json())
        )
        logger.info(
            "quota_rolled_over",
            scope=scope,
            previous_period=stale.period_key,
            previous_requests=stale.requests_used,
            previous_tokens=stale.tokens_used,
            period_key=today,
        )

    async def _mirror(self, scope: str, stale: QuotaCounters | None) -> None:
        """Copy an archived day to the remote registry; failures are logged only."""
        if stale is None or self.registry is None:
            return
        path = usage_history_path(stale.period_key, scope)
        value = {"scope": scope, **stale.to_json()}
        try:
            await call_with_timeout(
                "set", path, self.registry.set(path, value), self.remote_timeout
            )
        except RemoteRegistryError as e:
            logger.warning("usage_history_mirror_failed", scope=scope, reason=e.message)

    async def current_usage(self, scope: str) -> QuotaCounters:
        """Today's counters for scope (reset to zero on a new day)."""
        self.policies.get(scope)
        async with self._lock(scope):
            counters, stale = await self._apply(scope)
        await self._mirror(scope, stale)
        return counters

    async def check_and_reserve(self, scope: str, estimated_tokens: int = 0) -> AdmissionDecision:
        """
        Advisory admission check, evaluated before the outbound call.

        Nothing is debited here; usage is added by commit() after success.
        """
        policy = self.policies.get(scope)
        usage = await self.current_usage(scope)
        if usage.requests_used >= policy.daily_request_limit:
            decision = AdmissionDecision.REQUESTS_EXCEEDED
        elif usage.tokens_used >= policy.daily_token_limit:
            decision = AdmissionDecision.TOKENS_EXCEEDED
        else:
            decision = AdmissionDecision.ALLOWED

        if decision != AdmissionDecision.ALLOWED:
            logger.info(
                "quota_admission_rejected",
                scope=scope,
                decision=decision.value,
                requests_used=usage.requests_used,
                tokens_used=usage.tokens_used,
                estimated_tokens=estimated_tokens,
            )
        return decision

    async def commit(self, scope: str, requests_delta: int, tokens_delta: int) -> QuotaCounters:
        """Add usage to today's counters and return the updated counters."""
        if requests_delta < 0 or tokens_delta < 0:
            raise ValueError(
                f"Quota deltas cannot be negative: requests={requests_delta}, tokens={tokens_delta}"
            )
        self.policies.get(scope)
        async with self._lock(scope):
            updated, stale = await self._apply(scope, requests_delta, tokens_delta)
        await self._mirror(scope, stale)

        logger.info(
            "quota_committed",
            scope=scope,
            requests_used=updated.requests_used,
            tokens_used=updated.tokens_used,
        )
        return updated

    async def _peek(self, scope: str) -> QuotaCounters:
        """Today's counters without writing; a stale day reads as zeros."""
        today = self.today()
        stored = await self._load(scope)
        if stored is not None and stored.period_key == today:
            return stored
        return QuotaCounters(period_key=today)

    async def remaining(self, scope: str) -> QuotaRemaining:
        return (await self.status(scope)).remaining

    async def status(self, scope: str) -> QuotaStatus:
        """Usage snapshot for scope. Read-only: a pending rollover is not written."""
        policy = self.policies.get(scope)
        usage = await self._peek(scope)
        request_limit = policy.daily_request_limit
        token_limit = policy.daily_token_limit
        return QuotaStatus(
            scope=scope,
            period_key=usage.period_key,
            used_requests=usage.requests_used,
            used_tokens=usage.tokens_used,
            request_limit=request_limit,
            token_limit=token_limit,
            near_limit_threshold_pct=NEAR_LIMIT_THRESHOLD_PCT,
            is_near_limit=(
                usage.requests_used * 100 >= request_limit * NEAR_LIMIT_THRESHOLD_PCT
                or usage.tokens_used * 100 >= token_limit * NEAR_LIMIT_THRESHOLD_PCT
            ),
            is_exceeded=(
                usage.requests_used >= request_limit or usage.tokens_used >= token_limit
            ),
        )

    async def history(self, scope: str, days: int = DEFAULT_HISTORY_DAYS) -> list[QuotaCounters]:
        """
        Daily usage for the last `days` calendar days, newest first.

        Today is always present (zeros when unused); earlier days appear only
        when they were recorded. Read-only.
        """
        if days < 1:
            raise ValueError(f"days must be positive: {days}")
        self.policies.get(scope)
        today = self.clock.now().astimezone(self.timezone).date()
        stored = await self._load(scope)

        entries: list[QuotaCounters] = []
        for offset in range(days):
            period_key = (today - timedelta(days=offset)).isoformat()
            if stored is not None and stored.period_key == period_key:
                entries.append(stored)
            elif offset == 0:
                entries.append(QuotaCounters(period_key=period_key))
            else:
                raw = await self.store.get_string(self._history_key(scope, period_key))
                archived = self._parse(scope, raw)
                if archived is not None:
                    entries.append(archived)
        return entries

    estimate_tokens = staticmethod(estimate_tokens)
