"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.
"""

from tokengate.models.api import QuotaKind


class TokenGateError(Exception):
    """Base exception for all token gate errors."""

    pass


class UnknownProviderError(TokenGateError):
    """Raised when a provider has no policy."""

    def __init__(self, provider: str) -> None:
        self.provider = provider
        super().__init__(f"Unknown provider: {provider}")


class CredentialNotFoundError(TokenGateError):
    """Raised when no credential record exists."""

    def __init__(self, provider: str) -> None:
        self.provider = provider
        super().__init__(f"No credential for provider: {provider}")


class CredentialExpiredError(TokenGateError):
    """Raised when a credential record exists but is past its expiry."""

    def __init__(self, provider: str, expires_at: str) -> None:
        self.provider = provider
        self.expires_at = expires_at
        super().__init__(f"Credential for {provider} expired at {expires_at}")


class UnauthorizedError(TokenGateError):
    """Raised when a non-administrator attempts a shared-credential mutation."""

    def __init__(self, principal: str | None) -> None:
        self.principal = principal
        super().__init__(f"Not authorized to manage shared credentials: {principal or 'anonymous'}")


class QuotaExceededError(TokenGateError):
    """Raised when the shared pool cannot serve a request."""

    def __init__(self, kind: QuotaKind, provider: str) -> None:
        self.kind = kind
        self.provider = provider
        super().__init__(f"Quota exceeded for {provider}: {kind.value}")


class ConfigurationError(TokenGateError):
    """Raised when no usable credential is available anywhere."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Configuration error: {message}")


class ProviderError(TokenGateError):
    """Raised when the AI provider call fails (non-2xx or transport failure)."""

    def __init__(self, status_code: int | None, body: str) -> None:
        self.status_code = status_code
        self.body = body
        super().__init__(f"Provider error {status_code}: {body[:200]}")

    @property
    def is_quota_exhausted(self) -> bool:
        """True when the provider itself reports a quota or rate limit."""
        if self.status_code == 429:
            return True
        text = self.body.lower()
        return "quota" in text or "limit" in text


class StorageError(TokenGateError):
    """Raised when the local persistent store fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Storage error: {message}")


class RemoteRegistryError(TokenGateError):
    """Raised when the remote token registry is unreachable or rejects a call."""

    def __init__(self, operation: str, path: str, message: str) -> None:
        self.operation = operation
        self.path = path
        self.message = message
        super().__init__(f"Remote registry {operation} {path} failed: {message}")
