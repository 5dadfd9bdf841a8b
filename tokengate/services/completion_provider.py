"""
Completion Providers - Outbound calls to AI completion APIs.

Each provider takes a secret and a fully built prompt string and returns
the completion text plus the provider-reported token usage when available.
Non-2xx responses and transport failures raise ProviderError.
"""

from typing import Any, Protocol

import httpx
from structlog import get_logger

from tokengate.config import Settings
from tokengate.exceptions import ProviderError
from tokengate.models.api import ProviderId
from tokengate.models.domain import ProviderCompletion

logger = get_logger(__name__)


class CompletionProvider(Protocol):
    """Collaborator that turns a prompt into a completion."""

    async def complete(self, secret: str, prompt: str) -> ProviderCompletion:
        ...


class _HttpCompletionProvider:
    """Shared HTTP plumbing for provider implementations."""

    name = "provider"

    def __init__(
        self,
        base_url: str,
        model: str,
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self._http_client = http_client

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Get HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout)
        return self._http_client

    async def _post(
        self,
        url: str,
        body: dict[str, Any],
        headers: dict[str, str] | None = None,
        params: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        try:
            response = await self.http_client.post(url, json=body, headers=headers, params=params)
        except httpx.HTTPError as e:
            logger.warning("provider_transport_failed", provider=self.name, error=type(e).__name__)
            raise ProviderError(None, str(e) or type(e).__name__) from e

        if response.status_code < 200 or response.status_code >= 300:
            logger.warning(
                "provider_call_failed",
                provider=self.name,
                status_code=response.status_code,
            )
            raise ProviderError(response.status_code, response.text)

        try:
            data = response.json()
        except ValueError as e:
            raise ProviderError(response.status_code, "response is not JSON") from e
        if not isinstance(data, dict):
            raise ProviderError(response.status_code, "unexpected response shape")
        return data

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None


class GeminiCompletionProvider(_HttpCompletionProvider):
    """Google Gemini generateContent."""

    name = ProviderId.GEMINI.value

    GENERATION_CONFIG = {
        "temperature": 0.7,
        "maxOutputTokens": 1000,
        "topP": 0.8,
        "topK": 10,
    }
    SAFETY_SETTINGS = [
        {"category": category, "threshold": "BLOCK_MEDIUM_AND_ABOVE"}
        for category in (
            "HARM_CATEGORY_HARASSMENT",
            "HARM_CATEGORY_HATE_SPEECH",
            "HARM_CATEGORY_SEXUALLY_EXPLICIT",
            "HARM_CATEGORY_DANGEROUS_CONTENT",
        )
    ]

    async def complete(self, secret: str, prompt: str) -> ProviderCompletion:
        data = await self._post(
            f"{self.base_url}/models/{self.model}:generateContent",
            {
                "contents": [{"parts": [{"text": prompt}]}],
                "generationConfig": self.GENERATION_CONFIG,
                "safetySettings": self.SAFETY_SETTINGS,
            },
            params={"key": secret},
        )

        candidates = data.get("candidates") or []
        if not candidates:
            raise ProviderError(200, "Gemini returned no candidates")
        parts = (candidates[0].get("content") or {}).get("parts") or []
        if not parts:
            raise ProviderError(200, "Gemini returned invalid content structure")

        text = str(parts[0].get("text") or "").strip()
        usage = data.get("usageMetadata") or {}
        total = usage.get("totalTokenCount")
        return ProviderCompletion(text=text, tokens_used=total if isinstance(total, int) else None)


class OpenAICompatibleCompletionProvider(_HttpCompletionProvider):
    """Chat completions API (OpenAI and GitHub Models)."""

    max_tokens = 500

    def __init__(
        self,
        name: str,
        base_url: str,
        model: str,
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(base_url, model, timeout=timeout, http_client=http_client)
        self.name = name

    async def complete(self, secret: str, prompt: str) -> ProviderCompletion:
        data = await self._post(
            f"{self.base_url}/chat/completions",
            {
                "model": self.model,
                "messages": [{"role": "user", "content": prompt}],
                "max_tokens": self.max_tokens,
                "temperature": 0.7,
            },
            headers={"Authorization": f"Bearer {secret}"},
        )

        choices = data.get("choices") or []
        if not choices:
            raise ProviderError(200, f"{self.name} returned no choices")
        message = choices[0].get("message") or {}
        text = str(message.get("content") or "").strip()
        total = (data.get("usage") or {}).get("total_tokens")
        return ProviderCompletion(text=text, tokens_used=total if isinstance(total, int) else None)


def build_providers(settings: Settings) -> dict[str, CompletionProvider]:
    """One provider client per known provider id."""
    timeout = settings.provider_timeout_seconds
    return {
        ProviderId.GITHUB.value: OpenAICompatibleCompletionProvider(
            ProviderId.GITHUB.value,
            settings.github_models_api_url,
            settings.github_models_model,
            timeout=timeout,
        ),
        ProviderId.OPENAI.value: OpenAICompatibleCompletionProvider(
            ProviderId.OPENAI.value,
            settings.openai_api_url,
            settings.openai_model,
            timeout=timeout,
        ),
        ProviderId.GEMINI.value: GeminiCompletionProvider(
            settings.gemini_api_url,
            settings.gemini_model,
            timeout=timeout,
        ),
    }
