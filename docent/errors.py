"""Error types raised by the document assistant.

Loader and index errors are input/programmer errors and are never retried.
Service errors carry a kind; transient and rate-limited ones are retried by
the component that issued the call, permanent ones propagate immediately.
"""
from enum import Enum
from typing import Optional


class DocentError(Exception):
    """Base class for all docent errors."""


class UnsupportedFormat(DocentError):
    """The document's content does not match any supported format."""


class ParseError(DocentError):
    """The document matched a format but could not be extracted."""


class DimensionMismatch(DocentError):
    """A vector's length differs from the index dimension."""

    def __init__(self, expected: int, actual: int):
        super().__init__(
            f"Embedding dimension mismatch: expected {expected}, got {actual}"
        )
        self.expected = expected
        self.actual = actual


class ServiceErrorKind(str, Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    RATE_LIMITED = "rate_limited"


class ServiceError(DocentError):
    """Failure talking to an external model endpoint."""

    def __init__(
        self,
        message: str,
        kind: ServiceErrorKind = ServiceErrorKind.TRANSIENT,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message)
        self.kind = ServiceErrorKind(kind)
        self.status_code = status_code
        self.retry_after = retry_after

    @property
    def retryable(self) -> bool:
        return self.kind in (ServiceErrorKind.TRANSIENT, ServiceErrorKind.RATE_LIMITED)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({str(self)!r}, kind={self.kind.value})"


class EmbeddingServiceError(ServiceError):
    """The embedding endpoint failed (transient, permanent or rate-limited)."""


class GenerationServiceError(ServiceError):
    """The generation endpoint failed (transient or permanent)."""

    def __init__(
        self,
        message: str,
        kind: ServiceErrorKind = ServiceErrorKind.TRANSIENT,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
    ):
        # Generation has no separate rate-limit state; it is retried like any
        # other transient failure.
        if ServiceErrorKind(kind) is ServiceErrorKind.RATE_LIMITED:
            kind = ServiceErrorKind.TRANSIENT
        super().__init__(message, kind, status_code, retry_after)


class RetrievalUnavailable(DocentError):
    """Retrieval could not run because the embedding service failed."""

    def __init__(self, cause: EmbeddingServiceError):
        super().__init__(f"Retrieval unavailable: {cause}")
        self.cause = cause
