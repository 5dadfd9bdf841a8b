"""
Admin API Routes - Shared credential administration and usage history.

Every route requires an authenticated principal on the administrator
allow-list.
"""

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from structlog import get_logger

from tokengate.api.dependencies import (
    get_current_principal,
    get_quota_ledger,
    get_shared_registry,
)
from tokengate.exceptions import StorageError, UnauthorizedError, UnknownProviderError
from tokengate.models.api import (
    SharedTokenStatusResponse,
    UpdateSharedTokenRequest,
    UsageDayResponse,
)
from tokengate.models.domain import Principal, SharedTokenStatus
from tokengate.services.quota_ledger import QuotaLedger
from tokengate.services.shared_registry import SharedCredentialRegistry

logger = get_logger(__name__)

router = APIRouter(prefix="/v1/admin", tags=["admin"])


def require_admin(
    principal: Principal = Depends(get_current_principal),
    registry: SharedCredentialRegistry = Depends(get_shared_registry),
) -> Principal:
    """
    Require the administrator capability.

    Raises:
        HTTPException(403): principal is not on the allow-list
    """
    try:
        return registry.require_admin(principal)
    except UnauthorizedError as exc:
        logger.warning("admin_access_denied", principal=exc.principal)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Administrator access required",
        ) from exc


def _shared_status_response(shared: SharedTokenStatus) -> SharedTokenStatusResponse:
    return SharedTokenStatusResponse(
        provider=shared.provider,
        has_token=shared.has_token,
        is_active=shared.is_active,
        is_expired=shared.is_expired,
        expires_at=shared.expires_at,
        days_until_expiry=shared.days_until_expiry,
        updated_by=shared.updated_by,
        last_updated=shared.last_updated,
        source=shared.source,  # type: ignore[arg-type]
    )


@router.get("/shared-tokens", response_model=list[SharedTokenStatusResponse])
async def list_shared_tokens(
    admin: Principal = Depends(require_admin),
    registry: SharedCredentialRegistry = Depends(get_shared_registry),
) -> list[SharedTokenStatusResponse]:
    """Status of the shared token of every provider."""
    try:
        statuses = await registry.all_statuses()
    except StorageError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    return [_shared_status_response(s) for s in statuses]


@router.get("/shared-tokens/expiring", response_model=list[SharedTokenStatusResponse])
async def list_expiring_shared_tokens(
    threshold_days: int = Query(7, ge=0, le=365),
    admin: Principal = Depends(require_admin),
    registry: SharedCredentialRegistry = Depends(get_shared_registry),
) -> list[SharedTokenStatusResponse]:
    """Shared tokens that expire within threshold_days."""
    try:
        statuses = await registry.expiring_soon(threshold_days)
    except StorageError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    return [_shared_status_response(s) for s in statuses]


@router.put("/shared-tokens/{provider}", response_model=SharedTokenStatusResponse)
async def update_shared_token(
    provider: str,
    request: UpdateSharedTokenRequest,
    admin: Principal = Depends(require_admin),
    registry: SharedCredentialRegistry = Depends(get_shared_registry),
) -> SharedTokenStatusResponse:
    """Publish a new shared token for provider."""
    try:
        policy = registry.policies.get(provider)
        if not policy.secret_format_validator(request.secret):
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=f"Token format is not valid for {provider}",
            )
        updated = await registry.update(provider, request.secret, admin, request.expires_at)
        if not updated:
            raise HTTPException(
                status_code=status.HTTP_502_BAD_GATEWAY,
                detail="Remote registry did not accept the update",
            )
        return _shared_status_response(await registry.status(provider))
    except UnknownProviderError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except StorageError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc


@router.delete("/shared-tokens/{provider}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_shared_token(
    provider: str,
    admin: Principal = Depends(require_admin),
    registry: SharedCredentialRegistry = Depends(get_shared_registry),
) -> Response:
    """Remove the shared token for provider."""
    try:
        deleted = await registry.delete(provider, admin)
    except UnknownProviderError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except StorageError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    if not deleted:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Remote registry did not accept the delete",
        )
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/shared-tokens/{provider}/deactivate", response_model=SharedTokenStatusResponse)
async def deactivate_shared_token(
    provider: str,
    admin: Principal = Depends(require_admin),
    registry: SharedCredentialRegistry = Depends(get_shared_registry),
) -> SharedTokenStatusResponse:
    """Disable the shared token for provider without deleting it."""
    try:
        deactivated = await registry.deactivate(provider, admin)
        if not deactivated:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=f"No shared token to deactivate for {provider}",
            )
        return _shared_status_response(await registry.status(provider))
    except UnknownProviderError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except StorageError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc


@router.get("/usage/{provider}", response_model=list[UsageDayResponse])
async def usage_history(
    provider: str,
    days: int = Query(30, ge=1, le=365),
    admin: Principal = Depends(require_admin),
    ledger: QuotaLedger = Depends(get_quota_ledger),
) -> list[UsageDayResponse]:
    """Daily shared-pool usage for provider, newest first."""
    try:
        history = await ledger.history(provider, days)
    except UnknownProviderError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except StorageError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    return [
        UsageDayResponse(
            period_key=day.period_key,
            requests_used=day.requests_used,
            tokens_used=day.tokens_used,
        )
        for day in history
    ]
