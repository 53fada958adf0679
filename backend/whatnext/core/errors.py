"""
errors.py

Exceptions raised when an external provider (catalog, embedding, vector index)
fails. Both are retryable: the failure is recorded against the item and a
later invocation picks it up again.
"""
from typing import Optional


class ProviderError(Exception):
    """Transient failure talking to an external provider (network error or 5xx)."""

    def __init__(self, service: str, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.service = service
        self.message = message
        self.status_code = status_code

    def __str__(self) -> str:
        if self.status_code:
            return f"{self.service}: {self.message} (HTTP {self.status_code})"
        return f"{self.service}: {self.message}"


class ProviderRateLimited(ProviderError):
    """The provider answered 429. Surfaced immediately, never retried with a delay."""

    def __init__(self, service: str, message: str = "Rate limited by provider"):
        super().__init__(service, message, status_code=429)
