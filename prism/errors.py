"""
Error taxonomy for Prism
========================

Every error raised by the core derives from PrismError so callers can
catch the whole family at a task or command boundary.
"""

from __future__ import annotations


class PrismError(Exception):
    """Base class for all Prism errors"""


class ConfigurationError(PrismError):
    """A selected provider has no credential or no adapter"""


class TransportError(PrismError):
    """Network failure or non-success HTTP status from a provider"""


class ProviderError(TransportError):
    """Failure reported by (or while talking to) a specific provider"""

    def __init__(
        self, provider: str, message: str, status_code: int | None = None
    ) -> None:
        super().__init__(message)
        self.provider = provider
        self.message = message
        self.status_code = status_code

    def __repr__(self) -> str:
        return (
            f"ProviderError(provider={self.provider!r}, "
            f"status_code={self.status_code!r}, message={self.message!r})"
        )


class CryptoError(PrismError):
    """Authentication-tag failure or malformed vault blob"""


class ValidationError(PrismError):
    """One or more routing rules failed validation"""

    def __init__(self, errors: list[str]) -> None:
        super().__init__("; ".join(errors) if errors else "Invalid routing rule")
        self.errors = list(errors)


class TaskStateError(PrismError):
    """Operation not valid for the task's current state"""


class StorageError(PrismError):
    """Persisting to durable storage failed"""
