"""Chroma-backed persistent vector store."""
from __future__ import annotations

import logging
import time
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence, Tuple

import chromadb

from ..errors import VectorStoreUnavailableError
from ..models import Chunk, RetrievedChunk, TextSpan
from ..telemetry import emit_vectorstore_event
from .base import ChunkVector, SearchFilter, rank_hits, validate_upsert

if TYPE_CHECKING:  # pragma: no cover - import for typing only
    from chromadb.api import ClientAPI
    from chromadb.api.models.Collection import Collection

LOGGER = logging.getLogger(__name__)

DEFAULT_COLLECTION_NAME = "docqa_chunks"
DEFAULT_DISTANCE_METRIC = "cosine"
DEFAULT_WRITE_BATCH = 4096


class ChromaVectorStore:
    """Adapter around a Chroma collection using HNSW cosine distance.

    Rows carry a ``visible`` metadata flag. An upsert first writes every row
    hidden, then publishes them; searches only match visible rows. A document
    that fits in a single write batch is published by one ``update`` call, so
    readers never observe a partially indexed document. Any failure removes
    everything written for the document.
    """

    backend = "chroma"
    persistent = True

    def __init__(
        self,
        persist_dir: str | Path | None = None,
        *,
        collection_name: str = DEFAULT_COLLECTION_NAME,
        distance_metric: str = DEFAULT_DISTANCE_METRIC,
        client: Optional["ClientAPI"] = None,
        write_batch_size: int = DEFAULT_WRITE_BATCH,
    ) -> None:
        self.collection_name = collection_name
        self.write_batch_size = max(1, write_batch_size)
        try:
            if client is None:
                if persist_dir is None:
                    raise ValueError("persist_dir is required when no client is supplied")
                path = Path(persist_dir)
                path.mkdir(parents=True, exist_ok=True)
                client = chromadb.PersistentClient(path=str(path))
            self._client = client
            self._collection: "Collection" = client.get_or_create_collection(
                name=collection_name,
                metadata={"hnsw:space": distance_metric},
            )
        except VectorStoreUnavailableError:
            raise
        except Exception as exc:
            raise VectorStoreUnavailableError(
                "Failed to initialise Chroma collection", cause=exc
            ) from exc

    def upsert(self, document_id: str, items: Sequence[ChunkVector]) -> None:
        started = time.perf_counter()
        validate_upsert(document_id, items)
        ordered = sorted(items, key=lambda item: item[0].ordinal)
        ids = [chunk.id for chunk, _ in ordered]
        try:
            self._collection.delete(where={"document_id": document_id})
            for offset in range(0, len(ordered), self.write_batch_size):
                window = ordered[offset : offset + self.write_batch_size]
                self._collection.upsert(
                    ids=[chunk.id for chunk, _ in window],
                    embeddings=[[float(value) for value in vector] for _, vector in window],
                    documents=[chunk.text for chunk, _ in window],
                    metadatas=[_chunk_metadata(chunk, visible=False) for chunk, _ in window],
                )
            for offset in range(0, len(ordered), self.write_batch_size):
                window = ordered[offset : offset + self.write_batch_size]
                self._collection.update(
                    ids=[chunk.id for chunk, _ in window],
                    metadatas=[_chunk_metadata(chunk, visible=True) for chunk, _ in window],
                )
        except Exception as exc:
            emit_vectorstore_event(
                "vectorstore.upsert.failed",
                backend=self.backend,
                count=len(ids),
                document_id=document_id,
                error=exc,
            )
            self._discard(document_id)
            raise VectorStoreUnavailableError(
                f"Failed to index document {document_id}", cause=exc
            ) from exc
        emit_vectorstore_event(
            "vectorstore.upsert",
            backend=self.backend,
            count=len(ids),
            document_id=document_id,
            duration_ms=(time.perf_counter() - started) * 1000.0,
        )

    def search(
        self, query_vector: Sequence[float], k: int, search_filter: Optional[SearchFilter] = None
    ) -> List[RetrievedChunk]:
        search_filter = search_filter or SearchFilter()
        if k <= 0 or search_filter.matches_nothing:
            return []
        try:
            available = self._collection.count()
            if available == 0:
                return []
            result = self._collection.query(
                query_embeddings=[[float(value) for value in query_vector]],
                n_results=min(k, available),
                where=_where_clause(search_filter),
                include=["documents", "metadatas", "distances"],
            )
        except Exception as exc:
            raise VectorStoreUnavailableError("Vector store query failed", cause=exc) from exc

        ids = (result.get("ids") or [[]])[0]
        documents = (result.get("documents") or [[]])[0]
        metadatas = (result.get("metadatas") or [[]])[0]
        distances = (result.get("distances") or [[]])[0]

        hits: List[Tuple[float, Chunk]] = []
        for chunk_id, text, metadata, distance in zip(ids, documents, metadatas, distances):
            chunk = _chunk_from_row(chunk_id, text, metadata or {})
            # owner isolation is re-checked locally
            if not search_filter.matches(chunk):
                continue
            hits.append((1.0 - float(distance), chunk))
        return rank_hits(hits, k)

    def delete_document(self, document_id: str) -> None:
        try:
            self._collection.delete(where={"document_id": document_id})
        except Exception as exc:
            raise VectorStoreUnavailableError(
                f"Failed to delete chunks for {document_id}", cause=exc
            ) from exc
        emit_vectorstore_event(
            "vectorstore.delete", backend=self.backend, count=0, document_id=document_id
        )

    def count(self, document_id: Optional[str] = None) -> int:
        clauses: List[Dict[str, Any]] = [{"visible": 1}]
        if document_id is not None:
            clauses.append({"document_id": document_id})
        where = clauses[0] if len(clauses) == 1 else {"$and": clauses}
        try:
            records = self._collection.get(where=where, include=["metadatas"])
        except Exception as exc:
            raise VectorStoreUnavailableError("Vector store count failed", cause=exc) from exc
        return len(records.get("ids") or [])

    def ping(self) -> None:
        try:
            self._collection.count()
        except Exception as exc:
            raise VectorStoreUnavailableError("Vector store is not reachable", cause=exc) from exc

    def _discard(self, document_id: str) -> None:
        try:
            self._collection.delete(where={"document_id": document_id})
        except Exception as cleanup_error:
            LOGGER.error(
                "Failed to remove partial index for %s: %s", document_id, cleanup_error
            )


def _chunk_metadata(chunk: Chunk, *, visible: bool) -> Dict[str, Any]:
    return {
        "document_id": chunk.document_id,
        "owner_id": chunk.owner_id,
        "ordinal": chunk.ordinal,
        "start": chunk.span.start,
        "end": chunk.span.end,
        "created_at": chunk.created_at.isoformat(),
        "visible": int(visible),
    }


def _chunk_from_row(chunk_id: str, text: str, metadata: Dict[str, Any]) -> Chunk:
    return Chunk(
        id=str(chunk_id),
        document_id=str(metadata.get("document_id", "")),
        owner_id=str(metadata.get("owner_id", "")),
        ordinal=int(metadata.get("ordinal", 0)),
        span=TextSpan(int(metadata.get("start", 0)), int(metadata.get("end", 0))),
        text=text or "",
        created_at=datetime.fromisoformat(str(metadata["created_at"])),
    )


def _where_clause(search_filter: SearchFilter) -> Dict[str, Any]:
    clauses: List[Dict[str, Any]] = [{"visible": 1}]
    if search_filter.owner_id is not None:
        clauses.append({"owner_id": search_filter.owner_id})
    if search_filter.document_ids is not None:
        clauses.append({"document_id": {"$in": sorted(search_filter.document_ids)}})
    if len(clauses) == 1:
        return clauses[0]
    return {"$and": clauses}


__all__ = ["ChromaVectorStore", "DEFAULT_COLLECTION_NAME"]
