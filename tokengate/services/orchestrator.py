"""
Completion Orchestrator - Personal-first, shared-fallback completion policy.

A user's own credential is tried first and is never metered. Without one,
or when the personal call fails, the request goes to the shared pool:
admission check, shared credential resolution, provider call, then a debit
of the actual (or estimated) usage after success only.
"""

import time
from collections.abc import Mapping, Sequence

from structlog import get_logger

from tokengate.exceptions import (
    ConfigurationError,
    CredentialExpiredError,
    CredentialNotFoundError,
    ProviderError,
    QuotaExceededError,
    StorageError,
    UnknownProviderError,
)
from tokengate.models.api import AdmissionDecision, QuotaKind, QuotaState
from tokengate.models.domain import (
    CompletionRequest,
    CompletionResult,
    HistoryTurn,
    ProviderCompletion,
    QuotaInfo,
)
from tokengate.observability.metrics import metrics
from tokengate.observability.tracing import trace_operation
from tokengate.services.completion_provider import CompletionProvider
from tokengate.services.credential_store import CredentialStore
from tokengate.services.quota_ledger import QuotaLedger, estimate_tokens
from tokengate.services.shared_registry import SharedCredentialRegistry

logger = get_logger(__name__)

HISTORY_WINDOW = 10
NEAR_LIMIT_REQUESTS = 5
NEAR_LIMIT_TOKENS = 10_000

_REJECTIONS = {
    AdmissionDecision.REQUESTS_EXCEEDED: QuotaKind.REQUESTS,
    AdmissionDecision.TOKENS_EXCEEDED: QuotaKind.TOKENS,
}


def build_prompt(
    system_prompt: str, user_message: str, history: Sequence[HistoryTurn] = ()
) -> str:
    """
    Render the prompt sent to the provider.

    Only the last 10 history turns are included, one "role: content" line each.
    """
    prompt = system_prompt
    window = list(history)[-HISTORY_WINDOW:]
    if window:
        prompt += "\n\nConversation History:\n"
        for turn in window:
            prompt += f"{turn.role}: {turn.content}\n"
    prompt += f"\n\nUser: {user_message}\n\nAssistant:"
    return prompt


class CompletionOrchestrator:
    """Routes a completion request to the personal or shared credential."""

    def __init__(
        self,
        credential_store: CredentialStore,
        shared_registry: SharedCredentialRegistry,
        quota_ledger: QuotaLedger,
        providers: Mapping[str, CompletionProvider],
    ) -> None:
        self.credential_store = credential_store
        self.shared_registry = shared_registry
        self.quota_ledger = quota_ledger
        self.providers = providers

    def _provider(self, provider: str) -> CompletionProvider:
        try:
            return self.providers[provider]
        except KeyError:
            raise UnknownProviderError(provider) from None

    async def _call(
        self, client: CompletionProvider, provider: str, path: str, secret: str, prompt: str
    ) -> ProviderCompletion:
        started = time.perf_counter()
        try:
            with trace_operation("provider_call", provider=provider, path=path):
                return await client.complete(secret, prompt)
        finally:
            metrics.record_provider_call(provider, path, time.perf_counter() - started)

    async def complete(self, request: CompletionRequest) -> CompletionResult:
        """
        Produce a completion for request.

        Raises:
            QuotaExceededError: shared pool exhausted (locally or provider-reported)
            ConfigurationError: no usable shared credential
            ProviderError: the shared-path provider call failed
        """
        provider = request.provider
        client = self._provider(provider)
        prompt = build_prompt(request.system_prompt, request.user_message, request.history)

        personal_secret = await self.credential_store.get(provider)
        if personal_secret is not None:
            try:
                completion = await self._call(client, provider, "personal", personal_secret, prompt)
            except ProviderError as e:
                metrics.record_completion(provider, "personal", "fallback")
                logger.warning(
                    "personal_completion_failed",
                    provider=provider,
                    status_code=e.status_code,
                    quota_exhausted=e.is_quota_exhausted,
                )
            else:
                await self._stamp_validated(provider)
                metrics.record_completion(provider, "personal", "success")
                return CompletionResult(
                    content=completion.text,
                    provider=provider,
                    tokens_used=completion.tokens_used
                    if completion.tokens_used is not None
                    else estimate_tokens(prompt + completion.text),
                    is_personal_token=True,
                    quota_state=QuotaState.UNLIMITED,
                )

        return await self._complete_shared(client, provider, prompt)

    async def _stamp_validated(self, provider: str) -> None:
        try:
            await self.credential_store.mark_validated(provider)
        except (CredentialNotFoundError, CredentialExpiredError) as e:
            logger.info("personal_token_changed_during_call", provider=provider, reason=str(e))
        except StorageError as e:
            logger.warning("personal_validation_stamp_failed", provider=provider, error=e.message)

    async def _complete_shared(
        self, client: CompletionProvider, provider: str, prompt: str
    ) -> CompletionResult:
        decision = await self.quota_ledger.check_and_reserve(provider, estimate_tokens(prompt))
        if decision != AdmissionDecision.ALLOWED:
            kind = _REJECTIONS[decision]
            metrics.record_quota_rejection(provider, kind.value)
            metrics.record_completion(provider, "shared", "quota")
            raise QuotaExceededError(kind, provider)

        secret = await self.shared_registry.resolve(provider)
        if secret is None:
            metrics.record_completion(provider, "shared", "error")
            raise ConfigurationError(f"no usable shared credential for {provider}")

        try:
            completion = await self._call(client, provider, "shared", secret, prompt)
        except ProviderError as e:
            if e.is_quota_exhausted:
                metrics.record_quota_rejection(provider, QuotaKind.PROVIDER_REPORTED.value)
                metrics.record_completion(provider, "shared", "quota")
                logger.warning(
                    "shared_provider_quota_exhausted",
                    provider=provider,
                    status_code=e.status_code,
                )
                raise QuotaExceededError(QuotaKind.PROVIDER_REPORTED, provider) from e
            metrics.record_completion(provider, "shared", "error")
            raise

        tokens = (
            completion.tokens_used
            if completion.tokens_used is not None
            else estimate_tokens(prompt + completion.text)
        )
        await self.quota_ledger.commit(provider, 1, tokens)
        metrics.record_tokens_committed(provider, tokens)
        metrics.record_completion(provider, "shared", "success")

        remaining = await self.quota_ledger.remaining(provider)
        near_limit = (
            remaining.requests <= NEAR_LIMIT_REQUESTS or remaining.tokens <= NEAR_LIMIT_TOKENS
        )
        return CompletionResult(
            content=completion.text,
            provider=provider,
            tokens_used=tokens,
            is_personal_token=False,
            quota_state=QuotaState.NEAR_LIMIT if near_limit else QuotaState.AVAILABLE,
            remaining_requests=remaining.requests,
            remaining_tokens=remaining.tokens,
        )

    async def quota_info(self, provider: str) -> QuotaInfo:
        """Shared-pool status plus whether the caller has a personal token."""
        status = await self.quota_ledger.status(provider)
        has_personal = await self.credential_store.get(provider) is not None
        return QuotaInfo(status=status, has_personal_token=has_personal)
