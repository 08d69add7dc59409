"""Request and response bodies of the HTTP API."""
from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from ..models import Document, RetrievedChunk


class DocumentResponse(BaseModel):
    """Current state of an uploaded document."""

    id: str
    owner_id: str
    status: str
    content_hash: str
    file_name: str | None = None
    content_type: str | None = None
    size_bytes: int
    chunk_count: int
    text_length: int
    error: str | None = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_document(cls, document: Document) -> "DocumentResponse":
        return cls(
            id=document.id,
            owner_id=document.owner_id,
            status=document.status.value,
            content_hash=document.content_hash,
            file_name=document.file_name,
            content_type=document.content_type,
            size_bytes=document.size_bytes,
            chunk_count=document.chunk_count,
            text_length=document.text_length,
            error=document.error,
            created_at=document.created_at,
            updated_at=document.updated_at,
        )


class DocumentListResponse(BaseModel):
    documents: list[DocumentResponse]


class QuestionRequest(BaseModel):
    """Question asked against the caller's documents."""

    question: str = Field(..., min_length=1, description="User question to ask against the documents.")
    k: int | None = Field(None, ge=1, le=100, description="How many chunks should be retrieved.")
    context_budget: int | None = Field(
        None, ge=1, description="Maximum number of context characters passed to the model."
    )
    document_ids: list[str] | None = Field(
        None, description="Restrict the search to these documents instead of all owned ones."
    )


class RetrievedChunkResponse(BaseModel):
    id: str
    document_id: str
    ordinal: int
    start: int
    end: int
    text: str
    score: float
    rank: int
    included: bool
    truncated: bool = False

    @classmethod
    def from_hit(cls, hit: RetrievedChunk, *, included: bool) -> "RetrievedChunkResponse":
        return cls(
            id=hit.chunk.id,
            document_id=hit.chunk.document_id,
            ordinal=hit.chunk.ordinal,
            start=hit.chunk.span.start,
            end=hit.chunk.span.end,
            text=hit.chunk.text,
            score=hit.score,
            rank=hit.rank,
            included=included,
            truncated=hit.truncated,
        )


class RetrieveResponse(BaseModel):
    question: str
    context: str
    chunks: list[RetrievedChunkResponse]


__all__ = [
    "DocumentListResponse",
    "DocumentResponse",
    "QuestionRequest",
    "RetrieveResponse",
    "RetrievedChunkResponse",
]
