"""Exception taxonomy shared by the ingestion and answering pipelines."""
from __future__ import annotations


class DocQAError(RuntimeError):
    """Base class for errors surfaced by the core."""

    code = "internal_error"
    retryable = False

    def __init__(self, message: str, *, cause: Exception | None = None) -> None:
        super().__init__(message)
        self.message = message
        if cause is not None:
            self.__cause__ = cause


class ValidationFailed(DocQAError):
    """Raised when an upload violates the size/type policy."""

    code = "validation_failed"


class IdempotencyConflict(DocQAError):
    """Raised when an idempotency key is reused for a different request."""

    code = "idempotency_conflict"


class RequestInProgress(DocQAError):
    """Raised when a request with the same key is still being processed."""

    code = "request_in_progress"
    retryable = True

    def __init__(self, message: str, *, retry_after: float = 1.0) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class EmbeddingUnavailable(DocQAError):
    """Raised when the embedding provider kept failing after all retries."""

    code = "embedding_unavailable"


class UnsupportedFormat(DocQAError):
    """Raised when no plain text can be extracted from an upload."""

    code = "unsupported_format"


class GenerationFailed(DocQAError):
    """Raised when the generation provider fails mid-stream."""

    code = "generation_failed"


class IllegalTransition(DocQAError):
    """Raised when a document status mutation is not a legal transition."""

    code = "illegal_transition"


class DocumentNotFound(DocQAError):
    """Raised when a document does not exist or belongs to another owner."""

    code = "document_not_found"


class VectorStoreUnavailableError(DocQAError):
    """Raised when the vector store backend cannot be initialised or queried."""

    code = "vector_store_unavailable"
    retryable = True


class TransientProviderError(Exception):
    """Provider failure that is worth retrying (timeouts, throttling, 5xx)."""


class ProviderTimeout(TransientProviderError):
    """The provider did not answer in time."""


class ProviderRateLimited(TransientProviderError):
    """The provider rejected the call because of rate limits."""

    def __init__(self, message: str = "rate limited", *, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


__all__ = [
    "DocQAError",
    "DocumentNotFound",
    "EmbeddingUnavailable",
    "GenerationFailed",
    "IdempotencyConflict",
    "IllegalTransition",
    "ProviderRateLimited",
    "ProviderTimeout",
    "RequestInProgress",
    "TransientProviderError",
    "UnsupportedFormat",
    "ValidationFailed",
    "VectorStoreUnavailableError",
]
