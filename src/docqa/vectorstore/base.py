"""Vector store contract shared by the in-memory and Chroma backends."""
from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import FrozenSet, Iterable, List, Optional, Protocol, Sequence, Tuple

from ..models import Chunk, RetrievedChunk

ChunkVector = Tuple[Chunk, Sequence[float]]


@dataclass(frozen=True, slots=True)
class SearchFilter:
    """Restrict a search to an owner and/or an explicit document set.

    ``document_ids=None`` means "any document"; an empty set matches nothing.
    """

    owner_id: Optional[str] = None
    document_ids: Optional[FrozenSet[str]] = None

    @classmethod
    def for_owner(cls, owner_id: str, document_ids: Optional[Iterable[str]] = None) -> "SearchFilter":
        return cls(
            owner_id=owner_id,
            document_ids=frozenset(document_ids) if document_ids is not None else None,
        )

    @property
    def matches_nothing(self) -> bool:
        return self.document_ids is not None and not self.document_ids

    def matches(self, chunk: Chunk) -> bool:
        if self.owner_id is not None and chunk.owner_id != self.owner_id:
            return False
        if self.document_ids is not None and chunk.document_id not in self.document_ids:
            return False
        return True


class ChunkVectorStore(Protocol):
    backend: str
    persistent: bool

    def upsert(self, document_id: str, items: Sequence[ChunkVector]) -> None:
        """Make every chunk of ``document_id`` searchable at once, or none of them."""

    def search(
        self, query_vector: Sequence[float], k: int, search_filter: Optional[SearchFilter] = None
    ) -> List[RetrievedChunk]:
        """Return up to ``k`` hits by descending cosine similarity."""

    def delete_document(self, document_id: str) -> None:
        """Remove all chunks of a document; unknown documents are a no-op."""

    def count(self, document_id: Optional[str] = None) -> int:
        """Number of searchable chunks, optionally for a single document."""

    def ping(self) -> None:
        """Raise :class:`VectorStoreUnavailableError` when the backend cannot be reached."""


def chunk_id_for(document_id: str, ordinal: int) -> str:
    """Deterministic chunk identity derived from its document and position."""

    return uuid.uuid5(uuid.NAMESPACE_URL, f"docqa:{document_id}:{ordinal}").hex


def validate_upsert(document_id: str, items: Sequence[ChunkVector]) -> int:
    """Check that ``items`` form one document's complete chunk set.

    Returns the common vector dimension.
    """

    if not items:
        raise ValueError(f"Refusing to index document {document_id} without chunks")
    ordinals = []
    dimensions = set()
    for chunk, vector in items:
        if chunk.document_id != document_id:
            raise ValueError(f"Chunk {chunk.id} belongs to {chunk.document_id}, not {document_id}")
        ordinals.append(chunk.ordinal)
        dimensions.add(len(vector))
    if sorted(ordinals) != list(range(len(items))):
        raise ValueError(f"Chunk ordinals for {document_id} must be contiguous from 0")
    if len(dimensions) != 1 or 0 in dimensions:
        raise ValueError(f"Inconsistent vector dimensions for {document_id}: {sorted(dimensions)}")
    return dimensions.pop()


def rank_hits(hits: Iterable[Tuple[float, Chunk]], k: int) -> List[RetrievedChunk]:
    """Order by descending score, then lower ordinal, then lower document id."""

    ordered = sorted(hits, key=lambda hit: (-hit[0], hit[1].ordinal, hit[1].document_id))
    return [
        RetrievedChunk(chunk=chunk, score=float(score), rank=rank)
        for rank, (score, chunk) in enumerate(ordered[: max(k, 0)], start=1)
    ]


__all__ = [
    "ChunkVector",
    "ChunkVectorStore",
    "SearchFilter",
    "chunk_id_for",
    "rank_hits",
    "validate_upsert",
]
