from __future__ import annotations


PROVIDER_ERROR_KINDS = frozenset({"network", "auth", "timeout", "malformed"})


class DialogueMemoryError(Exception):
    """Base class for errors raised by the dialogue memory core."""


class ValidationError(DialogueMemoryError):
    """Recognition payload violated the schema or a value range."""

    def __init__(self, field: str, message: str) -> None:
        self.field = str(field or "")
        self.message = str(message or "")
        super().__init__(f"{self.field}: {self.message}" if self.field else self.message)


class ProviderError(DialogueMemoryError):
    def __init__(self, kind: str, message: str = "", *, status_code: int | None = None) -> None:
        normalized = str(kind or "").strip().lower()
        self.kind = normalized if normalized in PROVIDER_ERROR_KINDS else "network"
        self.message = str(message or "")
        self.status_code = status_code
        status = f" (status={status_code})" if status_code is not None else ""
        super().__init__(f"{self.kind} provider error{status}: {self.message}")

    @property
    def retryable(self) -> bool:
        return self.kind != "auth"


class PersistenceError(DialogueMemoryError):
    """Storage I/O failed. Raised by every store operation instead of raw sqlite errors."""


class StorageConstraintError(PersistenceError):
    """A write violated a schema constraint. Retrying the same rows cannot succeed."""


class ConfigError(DialogueMemoryError, ValueError):
    """Invalid configuration detected at startup."""
