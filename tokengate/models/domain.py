"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
Records that are persisted expose to_json()/from_json() for the flat JSON
objects kept in the local store and the remote registry.
"""

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from tokengate.models.api import QuotaState


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO 8601 timestamp, treating naive values as UTC."""
    if not value or not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def whole_days_until(expires_at: datetime, now: datetime) -> int:
    """Whole days between now and expires_at, truncated toward zero."""
    return int((expires_at - now) / timedelta(days=1))


@dataclass(frozen=True)
class Principal:
    """Authenticated caller identity."""

    id: str
    email: str | None = None

    def __post_init__(self) -> None:
        """Validate principal fields."""
        if not self.id:
            raise ValueError("Principal id cannot be empty")

    @property
    def display(self) -> str:
        """Identifier used when attributing writes."""
        return self.email or self.id


@dataclass(frozen=True)
class ProviderPolicy:
    """Static per-provider configuration."""

    default_expiry_days: int
    daily_request_limit: int
    daily_token_limit: int
    secret_format_validator: Callable[[str], bool]

    def __post_init__(self) -> None:
        """Validate policy values are concrete and non-negative."""
        if self.default_expiry_days <= 0:
            raise ValueError(f"default_expiry_days must be positive: {self.default_expiry_days}")
        if self.daily_request_limit < 0:
            raise ValueError(f"daily_request_limit cannot be negative: {self.daily_request_limit}")
        if self.daily_token_limit < 0:
            raise ValueError(f"daily_token_limit cannot be negative: {self.daily_token_limit}")


@dataclass(frozen=True)
class CredentialRecord:
    """A user's personal credential for one provider."""

    provider: str
    secret: str
    created_at: datetime
    updated_at: datetime
    expires_at: datetime
    last_validated_at: datetime

    def is_expired(self, now: datetime) -> bool:
        """True once now is past the expiry."""
        return now > self.expires_at

    def to_json(self) -> dict[str, Any]:
        """Serialize for the local store."""
        return {
            "provider": self.provider,
            "token": self.secret,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "last_validated": self.last_validated_at.isoformat(),
        }

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> "CredentialRecord":
        """Deserialize from the local store."""
        expires_at = parse_timestamp(data.get("expires_at"))
        updated_at = parse_timestamp(data.get("updated_at"))
        if expires_at is None or updated_at is None:
            raise ValueError("Credential record is missing expires_at or updated_at")
        return cls(
            provider=str(data["provider"]),
            secret=str(data["token"]),
            created_at=parse_timestamp(data.get("created_at")) or updated_at,
            updated_at=updated_at,
            expires_at=expires_at,
            last_validated_at=parse_timestamp(data.get("last_validated")) or updated_at,
        )


@dataclass(frozen=True)
class SharedCredentialRecord:
    """The administrator-issued credential for one provider."""

    provider: str
    secret: str
    updated_at: datetime
    updated_by: str
    expires_at: datetime
    active: bool = True
    disabled_at: datetime | None = None
    disabled_by: str | None = None

    def is_expired(self, now: datetime) -> bool:
        """True once now is past the expiry."""
        return now > self.expires_at

    def is_usable(self, now: datetime) -> bool:
        """Active, unexpired and non-empty."""
        return self.active and bool(self.secret) and not self.is_expired(now)

    def to_json(self) -> dict[str, Any]:
        """Serialize for the remote registry and the local cache."""
        data: dict[str, Any] = {
            "provider": self.provider,
            "token": self.secret,
            "updated_at": self.updated_at.isoformat(),
            "updated_by": self.updated_by,
            "expires_at": self.expires_at.isoformat(),
            "is_active": self.active,
        }
        if self.disabled_at is not None:
            data["disabled_at"] = self.disabled_at.isoformat()
        if self.disabled_by is not None:
            data["disabled_by"] = self.disabled_by
        return data

    @classmethod
    def from_json(cls, provider: str, data: dict[str, Any]) -> "SharedCredentialRecord":
        """Deserialize a registry or cache entry."""
        expires_at = parse_timestamp(data.get("expires_at"))
        updated_at = parse_timestamp(data.get("updated_at"))
        if expires_at is None or updated_at is None:
            raise ValueError("Shared credential record is missing expires_at or updated_at")
        return cls(
            provider=provider,
            secret=str(data.get("token") or ""),
            updated_at=updated_at,
            updated_by=str(data.get("updated_by") or ""),
            expires_at=expires_at,
            active=data.get("is_active") is True,
            disabled_at=parse_timestamp(data.get("disabled_at")),
            disabled_by=data.get("disabled_by"),
        )


@dataclass(frozen=True)
class QuotaCounters:
    """Daily counters for one quota scope."""

    period_key: str
    requests_used: int = 0
    tokens_used: int = 0

    def __post_init__(self) -> None:
        """Validate counters are non-negative."""
        if self.requests_used < 0:
            raise ValueError(f"requests_used cannot be negative: {self.requests_used}")
        if self.tokens_used < 0:
            raise ValueError(f"tokens_used cannot be negative: {self.tokens_used}")

    def to_json(self) -> dict[str, Any]:
        """Serialize for the local store."""
        return {
            "period_key": self.period_key,
            "requests": self.requests_used,
            "tokens": self.tokens_used,
        }

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> "QuotaCounters":
        """Deserialize from the local store."""
        return cls(
            period_key=str(data["period_key"]),
            requests_used=int(data.get("requests", 0)),
            tokens_used=int(data.get("tokens", 0)),
        )


@dataclass(frozen=True)
class TokenStatus:
    """Status of a personal token."""

    provider: str
    has_token: bool
    is_expired: bool
    expires_at: datetime | None
    days_until_expiry: int | None
    last_updated: datetime | None


@dataclass(frozen=True)
class SharedTokenStatus:
    """Status of a shared token."""

    provider: str
    has_token: bool
    is_active: bool
    is_expired: bool
    expires_at: datetime | None
    days_until_expiry: int | None
    updated_by: str | None
    last_updated: datetime | None
    source: str  # "remote", "cache" or "none"


@dataclass(frozen=True)
class QuotaRemaining:
    """Requests and tokens left today."""

    requests: int
    tokens: int


@dataclass(frozen=True)
class QuotaStatus:
    """Usage snapshot for one quota scope."""

    scope: str
    period_key: str
    used_requests: int
    used_tokens: int
    request_limit: int
    token_limit: int
    near_limit_threshold_pct: int
    is_near_limit: bool
    is_exceeded: bool

    @property
    def remaining(self) -> QuotaRemaining:
        """Remaining allowance, clamped at zero."""
        return QuotaRemaining(
            requests=max(0, self.request_limit - self.used_requests),
            tokens=max(0, self.token_limit - self.used_tokens),
        )


@dataclass(frozen=True)
class QuotaInfo:
    """Quota status plus whether the caller bypasses it."""

    status: QuotaStatus
    has_personal_token: bool


@dataclass(frozen=True)
class HistoryTurn:
    """One prior conversation turn."""

    role: str
    content: str


@dataclass(frozen=True)
class CompletionRequest:
    """A request for a completion from one provider."""

    provider: str
    user_message: str
    system_prompt: str = ""
    history: tuple[HistoryTurn, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class ProviderCompletion:
    """Raw completion returned by a CompletionProvider."""

    text: str
    tokens_used: int | None = None


@dataclass(frozen=True)
class CompletionResult:
    """Successful orchestrated completion."""

    content: str
    provider: str
    tokens_used: int
    is_personal_token: bool
    quota_state: QuotaState
    remaining_requests: int | None = None
    remaining_tokens: int | None = None

    @property
    def near_limit(self) -> bool:
        """True when the shared pool is close to today's limits."""
        return self.quota_state == QuotaState.NEAR_LIMIT
