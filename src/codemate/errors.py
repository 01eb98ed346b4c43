"""Error taxonomy shared by every codemate component."""

from __future__ import annotations


class CodemateError(Exception):
    """Base class for all codemate errors."""


class ValidationError(CodemateError):
    """Raised when caller input is malformed (empty messages, bad JSON, ...)."""


class NotFoundError(CodemateError):
    """Raised when a referenced conversation, branch, message or version is absent."""

    def __init__(self, kind: str, identifier: str) -> None:
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} not found: {identifier}")


class ProviderError(CodemateError):
    """Raised when an upstream AI provider call fails or returns non-success."""

    def __init__(
        self,
        message: str,
        provider: str,
        status_code: int | None = None,
        retryable: bool = False,
    ) -> None:
        self.provider = provider
        self.status_code = status_code
        self.retryable = retryable
        super().__init__(message)

    @classmethod
    def from_status(cls, provider: str, status_code: int, detail: str) -> ProviderError:
        """Build an error for an HTTP status; 429 and 5xx are retryable."""
        retryable = status_code == 429 or status_code >= 500
        msg = f"{provider} API error {status_code}: {detail}"
        return cls(msg, provider=provider, status_code=status_code, retryable=retryable)


class ConfigurationError(CodemateError):
    """Raised for unknown provider/model combinations or missing credentials."""


class StorageError(CodemateError):
    """Raised when persisted state cannot be read, written or decoded."""
