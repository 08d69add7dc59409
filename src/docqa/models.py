"""Data models shared by the ingestion and retrieval pipelines."""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import FrozenSet, Mapping, Optional, Tuple

from .errors import IllegalTransition


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DocumentStatus(str, Enum):
    """Lifecycle of an uploaded document."""

    PENDING = "pending"
    PROCESSING = "processing"
    READY = "ready"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (DocumentStatus.READY, DocumentStatus.FAILED)

    def can_transition_to(self, target: "DocumentStatus") -> bool:
        return target in _LEGAL_TRANSITIONS[self]

    def ensure_transition(self, target: "DocumentStatus") -> None:
        """Raise :class:`IllegalTransition` unless ``self -> target`` is legal."""

        if not self.can_transition_to(target):
            raise IllegalTransition(f"Illegal document transition {self.value} -> {target.value}")


_LEGAL_TRANSITIONS: Mapping[DocumentStatus, FrozenSet[DocumentStatus]] = {
    DocumentStatus.PENDING: frozenset({DocumentStatus.PROCESSING, DocumentStatus.FAILED}),
    DocumentStatus.PROCESSING: frozenset({DocumentStatus.READY, DocumentStatus.FAILED}),
    DocumentStatus.READY: frozenset(),
    DocumentStatus.FAILED: frozenset(),
}


@dataclass(slots=True)
class Document:
    """An uploaded document and its ingestion state."""

    id: str
    owner_id: str
    content_hash: str
    status: DocumentStatus
    file_name: Optional[str] = None
    content_type: Optional[str] = None
    size_bytes: int = 0
    chunk_count: int = 0
    text_length: int = 0
    error: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def transitioned(self, target: DocumentStatus, **changes: object) -> "Document":
        self.status.ensure_transition(target)
        return replace(self, status=target, updated_at=utcnow(), **changes)


@dataclass(frozen=True, slots=True)
class TextSpan:
    """Half-open character range ``[start, end)`` into the extracted text."""

    start: int
    end: int

    def __post_init__(self) -> None:
        if self.start < 0 or self.end < self.start:
            raise ValueError(f"Invalid span [{self.start}, {self.end})")

    @property
    def length(self) -> int:
        return self.end - self.start


@dataclass(frozen=True, slots=True)
class Chunk:
    """Immutable fragment of a document, the unit of embedding and retrieval."""

    id: str
    document_id: str
    owner_id: str
    ordinal: int
    span: TextSpan
    text: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True, slots=True)
class RetrievedChunk:
    """Query-scoped search hit."""

    chunk: Chunk
    score: float
    rank: int
    truncated: bool = False


@dataclass(frozen=True, slots=True)
class Citation:
    """Span of generated answer text and the chunks grounding it."""

    start: int
    end: int
    chunk_ids: Tuple[str, ...]
    markers: Tuple[int, ...] = ()


class IdempotencyStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(slots=True)
class IdempotencyRecord:
    """Ledger entry binding a client key to a request fingerprint."""

    key: str
    fingerprint: str
    status: IdempotencyStatus
    result: Optional[str] = None
    error: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


__all__ = [
    "Chunk",
    "Citation",
    "Document",
    "DocumentStatus",
    "IdempotencyRecord",
    "IdempotencyStatus",
    "RetrievedChunk",
    "TextSpan",
    "utcnow",
]
