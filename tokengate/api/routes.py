"""
API Routes - Personal tokens, completions and quota status.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from fastapi.responses import JSONResponse

from tokengate.api.dependencies import get_credential_store, get_orchestrator
from tokengate.exceptions import (
    ConfigurationError,
    ProviderError,
    QuotaExceededError,
    StorageError,
    UnknownProviderError,
)
from tokengate.models.api import (
    CompletionRequestModel,
    CompletionResponse,
    ErrorResponse,
    QuotaStatusResponse,
    SaveTokenRequest,
    TokenStatusResponse,
    ValidateTokenRequest,
    ValidateTokenResponse,
)
from tokengate.models.domain import CompletionRequest, HistoryTurn, TokenStatus
from tokengate.services.credential_store import CredentialStore
from tokengate.services.orchestrator import CompletionOrchestrator

router = APIRouter()


def _token_status_response(token_status: TokenStatus) -> TokenStatusResponse:
    return TokenStatusResponse(
        provider=token_status.provider,
        has_token=token_status.has_token,
        is_expired=token_status.is_expired,
        expires_at=token_status.expires_at,
        days_until_expiry=token_status.days_until_expiry,
        last_updated=token_status.last_updated,
    )


def _unknown_provider(exc: UnknownProviderError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))


def _storage_failure(exc: StorageError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


# ============================================================================
# Personal Tokens
# ============================================================================


@router.get("/v1/tokens", response_model=list[TokenStatusResponse])
async def list_tokens(
    store: CredentialStore = Depends(get_credential_store),
) -> list[TokenStatusResponse]:
    """Status of the caller's token for every known provider."""
    try:
        statuses = await store.all_statuses()
    except StorageError as exc:
        raise _storage_failure(exc) from exc
    return [_token_status_response(s) for s in statuses]


@router.get("/v1/tokens/expiring", response_model=list[TokenStatusResponse])
async def list_expiring_tokens(
    threshold_days: int = Query(7, ge=0, le=365),
    store: CredentialStore = Depends(get_credential_store),
) -> list[TokenStatusResponse]:
    """The caller's tokens expiring within threshold_days."""
    try:
        statuses = await store.expiring_soon(threshold_days)
    except StorageError as exc:
        raise _storage_failure(exc) from exc
    return [_token_status_response(s) for s in statuses]


@router.put("/v1/tokens/{provider}", response_model=TokenStatusResponse)
async def save_token(
    provider: str,
    request: SaveTokenRequest,
    store: CredentialStore = Depends(get_credential_store),
) -> TokenStatusResponse:
    """
    Save the caller's personal token for provider.

    The secret must pass the provider's offline format check.
    """
    try:
        if not store.validate_format(provider, request.secret):
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=f"Token format is not valid for {provider}",
            )
        await store.save(provider, request.secret, request.expires_at)
        return _token_status_response(await store.status(provider))
    except UnknownProviderError as exc:
        raise _unknown_provider(exc) from exc
    except StorageError as exc:
        raise _storage_failure(exc) from exc


@router.delete("/v1/tokens/{provider}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_token(
    provider: str,
    store: CredentialStore = Depends(get_credential_store),
) -> Response:
    """Delete the caller's personal token. Deleting a missing token succeeds."""
    try:
        await store.delete(provider)
    except UnknownProviderError as exc:
        raise _unknown_provider(exc) from exc
    except StorageError as exc:
        raise _storage_failure(exc) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/v1/tokens/{provider}/validate", response_model=ValidateTokenResponse)
async def validate_token(
    provider: str,
    request: ValidateTokenRequest,
    store: CredentialStore = Depends(get_credential_store),
) -> ValidateTokenResponse:
    """Offline format check; the provider is never contacted."""
    try:
        valid = store.validate_format(provider, request.secret)
    except UnknownProviderError as exc:
        raise _unknown_provider(exc) from exc
    return ValidateTokenResponse(provider=provider, valid=valid)


# ============================================================================
# Completions and Quota
# ============================================================================


@router.post(
    "/v1/completions",
    response_model=CompletionResponse,
    responses={429: {"model": ErrorResponse}},
)
async def create_completion(
    request: CompletionRequestModel,
    orchestrator: CompletionOrchestrator = Depends(get_orchestrator),
) -> CompletionResponse | JSONResponse:
    """
    Complete a prompt with the caller's own token, or the shared pool.

    Errors:
        429: shared pool quota exhausted (quota_kind says which limit)
        503: no usable shared credential
        502: provider call failed
    """
    completion_request = CompletionRequest(
        provider=request.provider.value,
        user_message=request.user_message,
        system_prompt=request.system_prompt,
        history=tuple(HistoryTurn(role=t.role, content=t.content) for t in request.history),
    )
    try:
        result = await orchestrator.complete(completion_request)
    except QuotaExceededError as exc:
        return JSONResponse(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            content=ErrorResponse(detail=str(exc), quota_kind=exc.kind).model_dump(mode="json"),
        )
    except ConfigurationError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=str(exc),
        ) from exc
    except ProviderError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Provider call failed with status {exc.status_code}",
        ) from exc
    except UnknownProviderError as exc:
        raise _unknown_provider(exc) from exc
    except StorageError as exc:
        raise _storage_failure(exc) from exc

    return CompletionResponse(
        content=result.content,
        provider=result.provider,
        tokens_used=result.tokens_used,
        is_personal_token=result.is_personal_token,
        quota_state=result.quota_state,
        remaining_requests=result.remaining_requests,
        remaining_tokens=result.remaining_tokens,
        near_limit=result.near_limit,
    )


@router.get("/v1/quota/{provider}", response_model=QuotaStatusResponse)
async def get_quota(
    provider: str,
    orchestrator: CompletionOrchestrator = Depends(get_orchestrator),
) -> QuotaStatusResponse:
    """Today's shared-pool usage for provider."""
    try:
        info = await orchestrator.quota_info(provider)
    except UnknownProviderError as exc:
        raise _unknown_provider(exc) from exc
    except StorageError as exc:
        raise _storage_failure(exc) from exc

    quota = info.status
    remaining = quota.remaining
    return QuotaStatusResponse(
        scope=quota.scope,
        period_key=quota.period_key,
        used_requests=quota.used_requests,
        used_tokens=quota.used_tokens,
        request_limit=quota.request_limit,
        token_limit=quota.token_limit,
        remaining_requests=remaining.requests,
        remaining_tokens=remaining.tokens,
        near_limit_threshold_pct=quota.near_limit_threshold_pct,
        is_near_limit=quota.is_near_limit,
        is_exceeded=quota.is_exceeded,
        has_personal_token=info.has_personal_token,
    )
