"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
"""

from datetime import datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field


class ProviderId(str, Enum):
    """AI providers known out of the box."""

    GITHUB = "github"
    OPENAI = "openai"
    GEMINI = "gemini"


class QuotaKind(str, Enum):
    """Which limit rejected a shared-pool request."""

    REQUESTS = "requests"
    TOKENS = "tokens"
    PROVIDER_REPORTED = "provider_reported"


class AdmissionDecision(str, Enum):
    """Outcome of the advisory quota admission check."""

    ALLOWED = "allowed"
    REQUESTS_EXCEEDED = "requests_exceeded"
    TOKENS_EXCEEDED = "tokens_exceeded"


class QuotaState(str, Enum):
    """Quota state reported alongside a successful completion."""

    AVAILABLE = "available"
    NEAR_LIMIT = "near_limit"
    UNLIMITED = "unlimited"


# ============================================================================
# Personal Token Models
# ============================================================================


class SaveTokenRequest(BaseModel):
    """PUT /v1/tokens/{provider} request body."""

    secret: str = Field(..., min_length=1, max_length=4096)
    expires_at: datetime | None = Field(
        None, description="Explicit expiry; defaults to the provider policy"
    )


class ValidateTokenRequest(BaseModel):
    """POST /v1/tokens/{provider}/validate request body."""

    secret: str = Field(..., min_length=1, max_length=4096)


class ValidateTokenResponse(BaseModel):
    """Result of the offline format check."""

    provider: str
    valid: bool


class TokenStatusResponse(BaseModel):
    """Status of one personal token."""

    provider: str
    has_token: bool
    is_expired: bool
    expires_at: datetime | None = None
    days_until_expiry: int | None = None
    last_updated: datetime | None = None


# ============================================================================
# Shared Token Models
# ============================================================================


class UpdateSharedTokenRequest(BaseModel):
    """PUT /v1/admin/shared-tokens/{provider} request body."""

    secret: str = Field(..., min_length=1, max_length=4096)
    expires_at: datetime | None = None


class SharedTokenStatusResponse(BaseModel):
    """Status of one shared token."""

    provider: str
    has_token: bool
    is_active: bool
    is_expired: bool
    expires_at: datetime | None = None
    days_until_expiry: int | None = None
    updated_by: str | None = None
    last_updated: datetime | None = None
    source: Literal["remote", "cache", "none"]


# ============================================================================
# Quota Models
# ============================================================================


class QuotaStatusResponse(BaseModel):
    """GET /v1/quota/{provider} response."""

    scope: str
    period_key: str
    used_requests: int
    used_tokens: int
    request_limit: int
    token_limit: int
    remaining_requests: int
    remaining_tokens: int
    near_limit_threshold_pct: int
    is_near_limit: bool
    is_exceeded: bool
    has_personal_token: bool


class UsageDayResponse(BaseModel):
    """One day of shared-pool usage in GET /v1/admin/usage/{provider}."""

    period_key: str
    requests_used: int
    tokens_used: int


# ============================================================================
# Completion Models
# ============================================================================


class HistoryTurnModel(BaseModel):
    """One prior conversation turn."""

    role: str = Field(..., min_length=1, max_length=50)
    content: str


class CompletionRequestModel(BaseModel):
    """POST /v1/completions request body."""

    provider: ProviderId = ProviderId.GEMINI
    system_prompt: str = ""
    user_message: str = Field(..., min_length=1)
    history: list[HistoryTurnModel] = Field(default_factory=list)


class CompletionResponse(BaseModel):
    """POST /v1/completions response."""

    content: str
    provider: str
    tokens_used: int
    is_personal_token: bool
    quota_state: QuotaState
    remaining_requests: int | None = None
    remaining_tokens: int | None = None
    near_limit: bool = False


class ErrorResponse(BaseModel):
    """Error body for quota rejections."""

    detail: str
    quota_kind: QuotaKind | None = None
