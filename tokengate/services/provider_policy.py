"""
Provider Policy Table - Per-provider expiry, quota limits and format checks.

Policies are resolved once at process start: built-in defaults, then
settings overrides, then the production override published in the remote
registry. Override values that are missing, non-integer or negative are
ignored so every policy always carries concrete limits.
"""

from collections.abc import Iterable, Mapping
from dataclasses import replace
from typing import Any

from structlog import get_logger

from tokengate.config import Settings
from tokengate.exceptions import RemoteRegistryError, UnknownProviderError
from tokengate.models.api import ProviderId
from tokengate.models.domain import ProviderPolicy
from tokengate.services.remote_registry import (
    RemoteTokenRegistry,
    call_with_timeout,
    quota_limits_path,
)

logger = get_logger(__name__)


def is_github_token(secret: str) -> bool:
    """Fine-grained (github_pat_) or classic (ghp_) personal access token."""
    return secret.startswith("github_pat_") or secret.startswith("ghp_")


def is_openai_key(secret: str) -> bool:
    return secret.startswith("sk-")


def is_gemini_key(secret: str) -> bool:
    return len(secret) > 20


DEFAULT_POLICIES: dict[str, ProviderPolicy] = {
    ProviderId.GITHUB.value: ProviderPolicy(
        default_expiry_days=90,
        daily_request_limit=100,
        daily_token_limit=50_000,
        secret_format_validator=is_github_token,
    ),
    ProviderId.OPENAI.value: ProviderPolicy(
        default_expiry_days=365,
        daily_request_limit=200,
        daily_token_limit=40_000,
        secret_format_validator=is_openai_key,
    ),
    ProviderId.GEMINI.value: ProviderPolicy(
        default_expiry_days=365,
        daily_request_limit=1_000,
        daily_token_limit=800_000,
        secret_format_validator=is_gemini_key,
    ),
}


def _limit_value(value: Any) -> int | None:
    """Accept non-negative integers only (bools are not limits)."""
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    if value < 0:
        return None
    return value


class ProviderPolicyTable:
    """Immutable lookup of ProviderPolicy by provider id."""

    def __init__(self, policies: Mapping[str, ProviderPolicy]) -> None:
        self._policies = dict(policies)

    def get(self, provider: str) -> ProviderPolicy:
        """Return the policy for provider, raising UnknownProviderError."""
        try:
            return self._policies[provider]
        except KeyError:
            raise UnknownProviderError(provider) from None

    def providers(self) -> list[str]:
        """Known provider ids in declaration order."""
        return list(self._policies)

    def __contains__(self, provider: object) -> bool:
        return provider in self._policies

    def with_overrides(
        self,
        provider: str,
        daily_request_limit: Any = None,
        daily_token_limit: Any = None,
    ) -> "ProviderPolicyTable":
        """Return a new table with provider's limits replaced where valid."""
        policy = self.get(provider)
        requests = _limit_value(daily_request_limit)
        tokens = _limit_value(daily_token_limit)
        if requests is None and tokens is None:
            return self
        updated = replace(
            policy,
            daily_request_limit=policy.daily_request_limit if requests is None else requests,
            daily_token_limit=policy.daily_token_limit if tokens is None else tokens,
        )
        return ProviderPolicyTable({**self._policies, provider: updated})

    @classmethod
    def default(cls) -> "ProviderPolicyTable":
        return cls(DEFAULT_POLICIES)

    @classmethod
    def from_settings(cls, settings: Settings) -> "ProviderPolicyTable":
        """Built-in defaults with TOKENGATE_{PROVIDER}_DAILY_*_LIMIT applied."""
        table = cls.default()
        for provider in table.providers():
            table = table.with_overrides(
                provider,
                daily_request_limit=getattr(settings, f"{provider}_daily_request_limit", None),
                daily_token_limit=getattr(settings, f"{provider}_daily_token_limit", None),
            )
        return table


async def load_remote_overrides(
    table: ProviderPolicyTable,
    registry: RemoteTokenRegistry,
    timeout: float,
    providers: Iterable[str] | None = None,
) -> ProviderPolicyTable:
    """
    Apply quota overrides published under system/production_config/quota_limits.

    An unreachable registry leaves the table unchanged.
    """
    for provider in providers if providers is not None else table.providers():
        path = quota_limits_path(provider)
        try:
            data = await call_with_timeout("get", path, registry.get(path), timeout)
        except RemoteRegistryError as e:
            logger.info("quota_override_unavailable", provider=provider, reason=e.message)
            continue
        if not data:
            continue
        table = table.with_overrides(
            provider,
            daily_request_limit=data.get("daily_requests"),
            daily_token_limit=data.get("daily_tokens"),
        )
        policy = table.get(provider)
        logger.info(
            "quota_override_applied",
            provider=provider,
            daily_request_limit=policy.daily_request_limit,
            daily_token_limit=policy.daily_token_limit,
        )
    return table
