"""
API Dependencies - Identity and service wiring for the FastAPI routes.

Services that carry process-wide state (the quota ledger's per-scope locks,
the HTTP clients) are created once and shared; the credential store is built
per request for the calling principal.
"""

import jwt
from fastapi import Depends, Header, HTTPException, status
from structlog import get_logger

from tokengate.config import get_settings
from tokengate.db.session import get_session_factory
from tokengate.models.domain import Principal
from tokengate.services.clock import Clock, SystemClock
from tokengate.services.completion_provider import CompletionProvider, build_providers
from tokengate.services.credential_store import CredentialStore
from tokengate.services.orchestrator import CompletionOrchestrator
from tokengate.services.provider_policy import ProviderPolicyTable, load_remote_overrides
from tokengate.services.quota_ledger import QuotaLedger
from tokengate.services.remote_registry import (
    HttpRemoteTokenRegistry,
    OfflineRemoteRegistry,
    RemoteTokenRegistry,
)
from tokengate.services.shared_registry import AllowListAuthorizer, SharedCredentialRegistry
from tokengate.services.storage import PersistentStore, SqlPersistentStore

logger = get_logger(__name__)

# Process-wide service instances
_store: PersistentStore | None = None
_registry: HttpRemoteTokenRegistry | OfflineRemoteRegistry | None = None
_clock: Clock | None = None
_policies: ProviderPolicyTable | None = None
_quota_ledger: QuotaLedger | None = None
_shared_registry: SharedCredentialRegistry | None = None
_providers: dict[str, CompletionProvider] | None = None


def get_persistent_store() -> PersistentStore:
    global _store
    if _store is None:
        _store = SqlPersistentStore(get_session_factory())
    return _store


def get_remote_registry() -> RemoteTokenRegistry:
    """HTTP registry when a URL is configured, otherwise offline mode."""
    global _registry
    if _registry is None:
        settings = get_settings()
        if settings.remote_registry_url:
            _registry = HttpRemoteTokenRegistry(
                settings.remote_registry_url, settings.remote_registry_auth
            )
        else:
            logger.info("remote_registry_offline")
            _registry = OfflineRemoteRegistry()
    return _registry


def get_clock() -> Clock:
    global _clock
    if _clock is None:
        _clock = SystemClock()
    return _clock


def get_policy_table() -> ProviderPolicyTable:
    global _policies
    if _policies is None:
        _policies = ProviderPolicyTable.from_settings(get_settings())
    return _policies


def get_quota_ledger() -> QuotaLedger:
    """The single ledger instance; counter writes are compare-and-set in the store."""
    global _quota_ledger
    if _quota_ledger is None:
        settings = get_settings()
        _quota_ledger = QuotaLedger(
            get_persistent_store(),
            get_clock(),
            get_policy_table(),
            timezone=settings.quota_timezone,
            registry=get_remote_registry(),
            remote_timeout=settings.remote_timeout_seconds,
        )
    return _quota_ledger


def get_shared_registry() -> SharedCredentialRegistry:
    global _shared_registry
    if _shared_registry is None:
        settings = get_settings()
        _shared_registry = SharedCredentialRegistry(
            get_persistent_store(),
            get_remote_registry(),
            get_clock(),
            get_policy_table(),
            AllowListAuthorizer(settings.admin_email_list),
            remote_timeout=settings.remote_timeout_seconds,
        )
    return _shared_registry


def get_completion_providers() -> dict[str, CompletionProvider]:
    global _providers
    if _providers is None:
        _providers = build_providers(get_settings())
    return _providers


async def init_services() -> None:
    """Resolve provider policies, applying remote quota overrides once at startup."""
    global _policies
    settings = get_settings()
    _policies = await load_remote_overrides(
        ProviderPolicyTable.from_settings(settings),
        get_remote_registry(),
        settings.remote_timeout_seconds,
    )


async def close_services() -> None:
    """Close outbound HTTP clients and forget the service instances."""
    global _store, _registry, _clock, _policies, _quota_ledger, _shared_registry, _providers
    if _registry is not None:
        await _registry.close()
    if _providers is not None:
        for provider in _providers.values():
            close = getattr(provider, "close", None)
            if close is not None:
                await close()
    _store = _registry = _clock = _policies = None
    _quota_ledger = _shared_registry = _providers = None


async def get_current_principal(authorization: str | None = Header(None)) -> Principal:
    """
    Resolve the caller from an HS256 bearer token (sub, email claims).

    Raises:
        HTTPException(401): missing, invalid or expired token
    """
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    secret = get_settings().auth_jwt_secret
    if not secret:
        logger.error("auth_jwt_secret_not_configured")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication is not configured",
        )

    token = authorization.removeprefix("Bearer ").strip()
    try:
        payload = jwt.decode(token, secret, algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        logger.warning("auth_token_expired")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token expired",
            headers={"WWW-Authenticate": "Bearer"},
        ) from None
    except jwt.InvalidTokenError as e:
        logger.warning("auth_token_invalid", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
            headers={"WWW-Authenticate": "Bearer"},
        ) from e

    subject = payload.get("sub")
    if not subject:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
        )
    email = payload.get("email")
    return Principal(id=str(subject), email=str(email) if email else None)


def get_credential_store(
    principal: Principal = Depends(get_current_principal),
    store: PersistentStore = Depends(get_persistent_store),
    registry: RemoteTokenRegistry = Depends(get_remote_registry),
    clock: Clock = Depends(get_clock),
    policies: ProviderPolicyTable = Depends(get_policy_table),
) -> CredentialStore:
    """Credential store scoped to the calling principal."""
    return CredentialStore(
        store,
        registry,
        clock,
        policies,
        principal=principal,
        remote_timeout=get_settings().remote_timeout_seconds,
    )


def get_orchestrator(
    credential_store: CredentialStore = Depends(get_credential_store),
    shared_registry: SharedCredentialRegistry = Depends(get_shared_registry),
    quota_ledger: QuotaLedger = Depends(get_quota_ledger),
    providers: dict[str, CompletionProvider] = Depends(get_completion_providers),
) -> CompletionOrchestrator:
    return CompletionOrchestrator(credential_store, shared_registry, quota_ledger, providers)
