"""Composition root wiring the ingestion and answering pipelines together."""
from __future__ import annotations

import logging
from functools import lru_cache
from typing import Optional

from .chunker import ChunkingConfig
from .config import Settings, get_settings
from .documents import DocumentRepository
from .embedding import CooldownGate, EmbeddingClient
from .extract import DefaultTextExtractor, TextExtractor
from .ingestion import IngestionCoordinator, IngestPolicy
from .ledger import IdempotencyLedger
from .providers import (
    EmbeddingProvider,
    GenerationProvider,
    create_embedding_provider,
    create_generation_provider,
)
from .retrieval import RetrievalEngine
from .storage import Database
from .streaming import AnswerStreamer
from .vectorstore import ChunkVectorStore, create_vector_store

LOGGER = logging.getLogger(__name__)


class DocQAService:
    """Own every long-lived collaborator of the core.

    The :class:`CooldownGate` lives here so that all embedding clients built
    by one service share a single rate-limit backpressure state.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        database: Optional[Database] = None,
        embedding_provider: Optional[EmbeddingProvider] = None,
        generation_provider: Optional[GenerationProvider] = None,
        vector_store: Optional[ChunkVectorStore] = None,
        extractor: Optional[TextExtractor] = None,
        gate: Optional[CooldownGate] = None,
    ) -> None:
        self.settings = settings
        self.vector_store = vector_store or create_vector_store(settings)
        self.database = database or Database(self._database_path(settings, self.vector_store))
        self.ledger = IdempotencyLedger(self.database)
        self.documents = DocumentRepository(self.database)
        self.gate = gate or CooldownGate(default_cooldown=settings.embedding_cooldown_seconds)
        self.embedding_provider = embedding_provider or create_embedding_provider(settings)
        self.generation_provider = generation_provider or create_generation_provider(settings)
        self.extractor = extractor or DefaultTextExtractor()

        self.embedding_client = EmbeddingClient(
            self.embedding_provider,
            self.gate,
            batch_size=settings.embedding_batch_size,
            max_attempts=settings.embedding_max_attempts,
            backoff_base=settings.embedding_backoff_base,
            backoff_max=settings.embedding_backoff_max,
            timeout=settings.embedding_timeout_seconds or None,
        )
        self.ingestion = IngestionCoordinator(
            database=self.database,
            ledger=self.ledger,
            documents=self.documents,
            extractor=self.extractor,
            embedding_client=self.embedding_client,
            vector_store=self.vector_store,
            chunking=ChunkingConfig(
                max_chunk_size=settings.chunk_max_chars,
                overlap=settings.chunk_overlap_chars,
            ),
            policy=IngestPolicy.from_settings(settings),
            wait_seconds=settings.idempotency_wait_seconds,
        )
        self.retrieval = RetrievalEngine(
            self.embedding_client,
            self.vector_store,
            default_k=settings.retrieval_top_k,
            default_budget=settings.retrieval_context_budget,
        )
        self.streamer = AnswerStreamer(
            self.generation_provider, grace_seconds=settings.stream_cancel_grace_seconds
        )
        LOGGER.info(
            "DocQA service ready (vector_store=%s, embedding=%s, generation=%s)",
            self.vector_store.backend,
            self.embedding_provider.name,
            self.generation_provider.name,
        )

    @staticmethod
    def _database_path(settings: Settings, vector_store: ChunkVectorStore) -> str:
        """Keep documents and ledger no longer lived than the chunks they describe."""

        if vector_store.persistent or settings.db_path == ":memory:":
            return settings.db_path
        LOGGER.warning(
            "Vector store %s is not persistent; keeping documents in memory instead of %s",
            vector_store.backend,
            settings.db_path,
        )
        return ":memory:"

    def close(self) -> None:
        self.database.close()


@lru_cache()
def get_service() -> DocQAService:
    """FastAPI dependency returning the shared :class:`DocQAService` instance."""

    return DocQAService(get_settings())


def reset_service_cache() -> None:
    """Clear the cached service (primarily for testing)."""

    get_service.cache_clear()  # type: ignore[attr-defined]


__all__ = ["DocQAService", "get_service", "reset_service_cache"]
