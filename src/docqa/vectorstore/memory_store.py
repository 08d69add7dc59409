"""In-process vector store with exact cosine search over numpy matrices."""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from ..models import Chunk, RetrievedChunk
from ..telemetry import emit_vectorstore_event
from .base import ChunkVector, SearchFilter, rank_hits, validate_upsert

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class _DocumentIndex:
    chunks: Tuple[Chunk, ...]
    matrix: np.ndarray


def _normalise_rows(matrix: np.ndarray) -> np.ndarray:
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    norms[norms == 0.0] = 1.0
    return matrix / norms


class InMemoryVectorStore:
    """Per-document immutable indexes swapped in under a lock.

    An upsert builds the complete index for a document before publishing it
    with a single dictionary assignment, so searches see either the whole
    chunk set or nothing.
    """

    backend = "memory"
    persistent = False

    def __init__(self) -> None:
        self._documents: Dict[str, _DocumentIndex] = {}
        self._dimension: Optional[int] = None
        self._lock = threading.Lock()

    @property
    def dimension(self) -> Optional[int]:
        return self._dimension

    def upsert(self, document_id: str, items: Sequence[ChunkVector]) -> None:
        started = time.perf_counter()
        dimension = validate_upsert(document_id, items)
        ordered = sorted(items, key=lambda item: item[0].ordinal)
        matrix = _normalise_rows(np.asarray([vector for _, vector in ordered], dtype=np.float32))
        index = _DocumentIndex(chunks=tuple(chunk for chunk, _ in ordered), matrix=matrix)
        with self._lock:
            if self._dimension is None:
                self._dimension = dimension
            elif dimension != self._dimension:
                raise ValueError(f"Expected vectors of dimension {self._dimension}, got {dimension}")
            self._documents[document_id] = index
        emit_vectorstore_event(
            "vectorstore.upsert",
            backend=self.backend,
            count=len(ordered),
            document_id=document_id,
            duration_ms=(time.perf_counter() - started) * 1000.0,
        )

    def search(
        self, query_vector: Sequence[float], k: int, search_filter: Optional[SearchFilter] = None
    ) -> List[RetrievedChunk]:
        search_filter = search_filter or SearchFilter()
        if k <= 0 or search_filter.matches_nothing:
            return []
        with self._lock:
            candidates = [
                index
                for document_id, index in self._documents.items()
                if search_filter.document_ids is None or document_id in search_filter.document_ids
            ]
        if not candidates:
            return []

        query = np.asarray(query_vector, dtype=np.float32)
        if query.shape != (candidates[0].matrix.shape[1],):
            raise ValueError(f"Query dimension {query.shape} does not match index dimension")
        norm = float(np.linalg.norm(query))
        if norm:
            query = query / norm

        hits: List[Tuple[float, Chunk]] = []
        for index in candidates:
            if search_filter.owner_id is not None and index.chunks[0].owner_id != search_filter.owner_id:
                continue
            scores = index.matrix @ query
            hits.extend(
                (float(score), chunk)
                for score, chunk in zip(scores, index.chunks)
                if search_filter.matches(chunk)
            )
        return rank_hits(hits, k)

    def delete_document(self, document_id: str) -> None:
        with self._lock:
            removed = self._documents.pop(document_id, None)
        if removed is not None:
            emit_vectorstore_event(
                "vectorstore.delete",
                backend=self.backend,
                count=len(removed.chunks),
                document_id=document_id,
            )

    def count(self, document_id: Optional[str] = None) -> int:
        with self._lock:
            if document_id is not None:
                index = self._documents.get(document_id)
                return len(index.chunks) if index else 0
            return sum(len(index.chunks) for index in self._documents.values())

    def ping(self) -> None:
        return None


__all__ = ["InMemoryVectorStore"]
