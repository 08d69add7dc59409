"""Exactly-once ingestion of uploads into the vector index."""
from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, Tuple

from .chunker import ChunkingConfig, split
from .config import DEFAULT_ALLOWED_TYPES, Settings
from .documents import DocumentRepository
from .embedding import EmbeddingClient
from .errors import (
    DocQAError,
    DocumentNotFound,
    IdempotencyConflict,
    IllegalTransition,
    RequestInProgress,
    UnsupportedFormat,
    ValidationFailed,
)
from .extract import DocumentFormat, TextExtractor, detect_format, normalize_content_type
from .ledger import BeginOutcome, BeginResult, IdempotencyLedger
from .logging_config import AUDIT_LOGGER_NAME
from .models import Chunk, Document, DocumentStatus, utcnow
from .storage import Database
from .telemetry import emit_exception, emit_ingest_event
from .vectorstore import ChunkVectorStore, chunk_id_for

LOGGER = logging.getLogger(__name__)
AUDIT_LOGGER = logging.getLogger(AUDIT_LOGGER_NAME)

_CANONICAL_TYPES = {
    DocumentFormat.TXT: "text/plain",
    DocumentFormat.MARKDOWN: "text/markdown",
    DocumentFormat.PDF: "application/pdf",
    DocumentFormat.DOCX: "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
}


@dataclass(frozen=True, slots=True)
class IngestPolicy:
    """Size and declared-type limits applied before a document is created."""

    max_bytes: int = 10 * 1024 * 1024
    allowed_types: Tuple[str, ...] = field(default=DEFAULT_ALLOWED_TYPES)

    @classmethod
    def from_settings(cls, settings: Settings) -> "IngestPolicy":
        return cls(max_bytes=settings.ingest_max_bytes, allowed_types=tuple(settings.ingest_allowed_types))

    def resolve_type(self, declared_type: Optional[str], file_name: Optional[str]) -> str:
        """Return the canonical MIME type of an upload or raise :class:`ValidationFailed`.

        Generic declarations such as ``application/octet-stream`` are resolved
        from the file name.
        """

        content_type = normalize_content_type(declared_type)
        if content_type in self.allowed_types:
            return content_type
        try:
            canonical = _CANONICAL_TYPES[detect_format(declared_type, file_name)]
        except UnsupportedFormat as exc:
            raise ValidationFailed(
                f"Document type {content_type or 'unknown'!r} is not allowed", cause=exc
            ) from exc
        if canonical not in self.allowed_types:
            raise ValidationFailed(f"Document type {canonical!r} is not allowed")
        return canonical

    def validate(self, file_bytes: bytes, declared_type: Optional[str], file_name: Optional[str]) -> str:
        size = len(file_bytes)
        if size == 0:
            raise ValidationFailed("Uploaded document is empty")
        if size > self.max_bytes:
            raise ValidationFailed(f"Document of {size} bytes exceeds the {self.max_bytes} byte limit")
        return self.resolve_type(declared_type, file_name)


@dataclass(frozen=True, slots=True)
class IngestOutcome:
    document: Document
    replayed: bool = False


def request_fingerprint(content_hash: str, owner_id: str, declared_type: Optional[str]) -> str:
    """Hash of the fields that make two uploads the same logical request."""

    digest = hashlib.sha256()
    for part in (content_hash, owner_id, normalize_content_type(declared_type)):
        digest.update(part.encode("utf-8"))
        digest.update(b"\x1f")
    return digest.hexdigest()


class IngestionCoordinator:
    """Drive an upload through validation, chunking, embedding and indexing.

    The ledger guarantees at most one processing run per idempotency key.
    Each run, from the ledger claim onwards, is shielded from caller
    cancellation and always ends with the document ``ready`` or ``failed``;
    the final status change and the ledger outcome commit in one SQLite
    transaction. SQLite calls run in worker threads so a held write lock
    never stalls the event loop.
    """

    def __init__(
        self,
        *,
        database: Database,
        ledger: IdempotencyLedger,
        documents: DocumentRepository,
        extractor: TextExtractor,
        embedding_client: EmbeddingClient,
        vector_store: ChunkVectorStore,
        chunking: Optional[ChunkingConfig] = None,
        policy: Optional[IngestPolicy] = None,
        wait_seconds: float = 30.0,
        poll_interval: float = 0.05,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.database = database
        self.ledger = ledger
        self.documents = documents
        self.extractor = extractor
        self.embedding_client = embedding_client
        self.vector_store = vector_store
        self.chunking = chunking or ChunkingConfig()
        self.policy = policy or IngestPolicy()
        self.wait_seconds = max(0.0, wait_seconds)
        self.poll_interval = poll_interval
        self._sleep = sleep
        self._clock = clock

    async def ingest(
        self,
        owner_id: str,
        idempotency_key: str,
        file_bytes: bytes,
        declared_type: Optional[str],
        file_name: Optional[str] = None,
    ) -> IngestOutcome:
        if not owner_id:
            raise ValidationFailed("An owner id is required")
        if not idempotency_key:
            raise ValidationFailed("An idempotency key is required")

        content_hash = hashlib.sha256(file_bytes).hexdigest()
        fingerprint = request_fingerprint(content_hash, owner_id, declared_type)
        run = asyncio.ensure_future(
            self._run(
                owner_id,
                idempotency_key,
                fingerprint,
                content_hash,
                file_bytes,
                declared_type,
                file_name,
            )
        )
        return await asyncio.shield(run)

    async def _run(
        self,
        owner_id: str,
        idempotency_key: str,
        fingerprint: str,
        content_hash: str,
        file_bytes: bytes,
        declared_type: Optional[str],
        file_name: Optional[str],
    ) -> IngestOutcome:
        decision = await self._begin(idempotency_key, fingerprint)

        if decision.outcome is BeginOutcome.CONFLICT:
            emit_ingest_event("ingest.conflict", owner_id=owner_id, key=idempotency_key)
            self._audit("conflict", owner_id=owner_id, key=idempotency_key, file_name=file_name)
            raise IdempotencyConflict(
                f"Idempotency key {idempotency_key!r} was already used for a different request"
            )
        if decision.outcome is BeginOutcome.ALREADY_COMPLETED:
            document = await asyncio.to_thread(self.documents.get, decision.result or "")
            if document is None:
                raise DocumentNotFound(
                    f"Document {decision.result} recorded for key {idempotency_key!r} no longer exists"
                )
            emit_ingest_event(
                "ingest.replayed", owner_id=owner_id, key=idempotency_key, document_id=document.id
            )
            return IngestOutcome(document=document, replayed=True)

        try:
            content_type = self.policy.validate(file_bytes, declared_type, file_name)
            document = await asyncio.to_thread(
                self.documents.create,
                owner_id=owner_id,
                content_hash=content_hash,
                file_name=file_name,
                content_type=content_type,
                size_bytes=len(file_bytes),
            )
        except Exception as exc:
            reason = _reason(exc)
            await asyncio.to_thread(self.ledger.fail, idempotency_key, reason)
            emit_ingest_event(
                "ingest.validation.failed", owner_id=owner_id, key=idempotency_key, exc=exc
            )
            self._audit(
                "rejected", owner_id=owner_id, key=idempotency_key, file_name=file_name, error=reason
            )
            raise

        return await self._process(idempotency_key, document, file_bytes, content_type, file_name)

    async def _begin(self, key: str, fingerprint: str) -> BeginResult:
        """Call ``ledger.begin``, polling while another run holds the key."""

        deadline = self._clock() + self.wait_seconds
        delay = self.poll_interval
        while True:
            decision = await asyncio.to_thread(self.ledger.begin, key, fingerprint)
            if decision.outcome is not BeginOutcome.IN_PROGRESS:
                return decision
            remaining = deadline - self._clock()
            if remaining <= 0:
                raise RequestInProgress(
                    f"A request with idempotency key {key!r} is still being processed",
                    retry_after=max(1.0, self.poll_interval),
                )
            await self._sleep(min(delay, remaining))
            delay = min(delay * 2, 1.0)

    async def _process(
        self,
        key: str,
        document: Document,
        file_bytes: bytes,
        content_type: str,
        file_name: Optional[str],
    ) -> IngestOutcome:
        started = time.perf_counter()
        try:
            document = await asyncio.to_thread(self._start_processing, key, document.id)
            emit_ingest_event("ingest.processing", owner_id=document.owner_id, document_id=document.id)

            text = await asyncio.to_thread(self.extractor.extract, file_bytes, content_type, file_name)
            pieces = split(
                text,
                self.chunking.max_chunk_size,
                self.chunking.overlap,
                boundary_tolerance=self.chunking.boundary_tolerance,
            )
            if not pieces:
                raise UnsupportedFormat("Document produced no text to index")

            vectors = await self.embedding_client.embed_batch([piece.text for piece in pieces])
            created_at = utcnow()
            chunks: List[Chunk] = [
                Chunk(
                    id=chunk_id_for(document.id, piece.ordinal),
                    document_id=document.id,
                    owner_id=document.owner_id,
                    ordinal=piece.ordinal,
                    span=piece.span,
                    text=piece.text,
                    created_at=created_at,
                )
                for piece in pieces
            ]
            await asyncio.to_thread(self.vector_store.upsert, document.id, list(zip(chunks, vectors)))

            document = await asyncio.to_thread(
                self._finish_ready, key, document.id, len(chunks), len(text)
            )
        except Exception as exc:
            await self._mark_failed(key, document, exc)
            duration_ms = (time.perf_counter() - started) * 1000.0
            emit_ingest_event(
                "ingest.failed",
                owner_id=document.owner_id,
                document_id=document.id,
                duration_ms=duration_ms,
                exc=exc,
            )
            self._audit(
                "failed",
                owner_id=document.owner_id,
                key=key,
                document_id=document.id,
                file_name=file_name,
                error=_reason(exc),
                duration_ms=round(duration_ms, 3),
            )
            raise

        duration_ms = (time.perf_counter() - started) * 1000.0
        emit_ingest_event(
            "ingest.ready",
            owner_id=document.owner_id,
            document_id=document.id,
            chunks=document.chunk_count,
            text_length=document.text_length,
            duration_ms=duration_ms,
        )
        self._audit(
            "ready",
            owner_id=document.owner_id,
            key=key,
            document_id=document.id,
            file_name=file_name,
            chunks=document.chunk_count,
            duration_ms=round(duration_ms, 3),
        )
        return IngestOutcome(document=document, replayed=False)

    async def _mark_failed(self, key: str, document: Document, error: BaseException) -> None:
        reason = _reason(error)
        try:
            await asyncio.to_thread(self.vector_store.delete_document, document.id)
        except Exception as cleanup_error:
            emit_exception(module=__name__, error=cleanup_error, document_id=document.id)
        try:
            await asyncio.to_thread(self._finish_failed, key, document.id, reason)
        except Exception as mark_error:
            emit_exception(module=__name__, error=mark_error, document_id=document.id, key=key)

    def _start_processing(self, key: str, document_id: str) -> Document:
        with self.database.transaction():
            document = self.documents.transition(document_id, DocumentStatus.PROCESSING)
            self.ledger.attach(key, document_id)
        return document

    def _finish_ready(self, key: str, document_id: str, chunk_count: int, text_length: int) -> Document:
        with self.database.transaction():
            document = self.documents.transition(
                document_id,
                DocumentStatus.READY,
                chunk_count=chunk_count,
                text_length=text_length,
            )
            self.ledger.complete(key, document_id)
        return document

    def _finish_failed(self, key: str, document_id: str, reason: str) -> None:
        with self.database.transaction():
            self.documents.transition(document_id, DocumentStatus.FAILED, error=reason)
            self.ledger.fail(key, reason)

    def get_document(self, owner_id: str, document_id: str) -> Document:
        return self.documents.get_for_owner(owner_id, document_id)

    def list_documents(self, owner_id: str, status: Optional[DocumentStatus] = None) -> List[Document]:
        return self.documents.list_for_owner(owner_id, status)

    async def delete_document(self, owner_id: str, document_id: str) -> None:
        """Remove a finished document and every chunk indexed for it."""

        document = await asyncio.to_thread(self.documents.get_for_owner, owner_id, document_id)
        if not document.status.is_terminal:
            raise IllegalTransition(f"Document {document_id} is still being ingested")
        await asyncio.to_thread(self.vector_store.delete_document, document_id)
        await asyncio.to_thread(self.documents.delete, document_id)
        emit_ingest_event("ingest.deleted", owner_id=owner_id, document_id=document_id)
        self._audit("deleted", owner_id=owner_id, document_id=document_id)

    def _audit(self, outcome: str, **fields: object) -> None:
        AUDIT_LOGGER.info(
            {
                "event": "ingest",
                "outcome": outcome,
                **{name: value for name, value in fields.items() if value is not None},
            }
        )


def _reason(error: BaseException) -> str:
    if isinstance(error, DocQAError):
        return f"{error.code}: {error.message}"
    return f"{error.__class__.__name__}: {error}"


__all__ = ["IngestOutcome", "IngestPolicy", "IngestionCoordinator", "request_fingerprint"]
