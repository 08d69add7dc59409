"""Vector store backends selected through configuration."""

from __future__ import annotations

from ..config import Settings
from ..errors import VectorStoreUnavailableError
from .base import ChunkVector, ChunkVectorStore, SearchFilter, chunk_id_for, rank_hits
from .memory_store import InMemoryVectorStore


def create_vector_store(settings: Settings) -> ChunkVectorStore:
    """Return the backend named by ``VECTOR_STORE`` (``memory`` or ``chroma``)."""

    backend = settings.vector_store
    if backend in {"memory", "mock"}:
        return InMemoryVectorStore()
    if backend == "chroma":
        from .chroma_store import ChromaVectorStore

        return ChromaVectorStore(
            settings.chroma_persist_dir, collection_name=settings.chroma_collection
        )
    raise ValueError(f"Unsupported VECTOR_STORE backend: {backend!r}")


__all__ = [
    "ChunkVector",
    "ChunkVectorStore",
    "InMemoryVectorStore",
    "SearchFilter",
    "VectorStoreUnavailableError",
    "chunk_id_for",
    "create_vector_store",
    "rank_hits",
]
