"""Question embedding, owner-scoped search and bounded context assembly."""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from typing import Iterable, List, Optional, Sequence, Tuple

from .embedding import EmbeddingClient
from .errors import ValidationFailed
from .models import RetrievedChunk, TextSpan
from .telemetry import emit_retriever_event
from .vectorstore import ChunkVectorStore, SearchFilter

LOGGER = logging.getLogger(__name__)

CONTEXT_SEPARATOR = "\n\n"


@dataclass(frozen=True, slots=True)
class RetrievalResult:
    """Search hits for a question and the context assembled from them.

    ``chunks`` holds every hit in rank order; ``included`` the subset that
    made it into ``context``, in the same order.
    """

    chunks: Tuple[RetrievedChunk, ...] = ()
    context: str = ""
    included: Tuple[RetrievedChunk, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.included


class RetrievalEngine:
    def __init__(
        self,
        embedding_client: EmbeddingClient,
        vector_store: ChunkVectorStore,
        *,
        default_k: int = 8,
        default_budget: int = 6000,
    ) -> None:
        self.embedding_client = embedding_client
        self.vector_store = vector_store
        self.default_k = default_k
        self.default_budget = default_budget

    async def retrieve(
        self,
        question: str,
        owner_id: str,
        k: Optional[int] = None,
        context_budget: Optional[int] = None,
        document_ids: Optional[Iterable[str]] = None,
    ) -> RetrievalResult:
        """Return the owner's best matching chunks and a context within budget.

        No hits is not an error: the result is empty and the caller decides
        how to answer.
        """

        if not question or not question.strip():
            raise ValidationFailed("Question must not be empty")
        top_k = self.default_k if k is None else k
        budget = self.default_budget if context_budget is None else context_budget
        if top_k < 1:
            raise ValidationFailed("k must be at least 1")
        if budget < 1:
            raise ValidationFailed("context_budget must be at least 1")

        started = time.perf_counter()
        search_filter = SearchFilter.for_owner(owner_id, document_ids)
        if search_filter.matches_nothing:
            hits: List[RetrievedChunk] = []
        else:
            query_vector = await self.embedding_client.embed_one(question.strip())
            hits = await asyncio.to_thread(self.vector_store.search, query_vector, top_k, search_filter)

        included, context = assemble_context(hits, budget)
        emit_retriever_event(
            owner_id=owner_id,
            top_k=top_k,
            results=[
                {
                    "chunk_id": hit.chunk.id,
                    "document_id": hit.chunk.document_id,
                    "score": round(hit.score, 4),
                    "rank": hit.rank,
                }
                for hit in hits
            ],
            included=len(included),
            context_chars=len(context),
            duration_ms=(time.perf_counter() - started) * 1000.0,
        )
        return RetrievalResult(chunks=tuple(hits), context=context, included=tuple(included))


def assemble_context(
    hits: Sequence[RetrievedChunk], budget: int
) -> Tuple[List[RetrievedChunk], str]:
    """Concatenate whole chunks in rank order while they fit in ``budget``.

    A chunk that would overflow is skipped and later ones are still tried.
    Only when no chunk fits whole is the best one cut to the budget, and
    that hit is returned with ``truncated=True``.
    """

    included: List[RetrievedChunk] = []
    parts: List[str] = []
    used = 0
    for hit in hits:
        cost = len(hit.chunk.text) + (len(CONTEXT_SEPARATOR) if parts else 0)
        if used + cost > budget:
            continue
        included.append(hit)
        parts.append(hit.chunk.text)
        used += cost

    if not included and hits:
        best = hits[0]
        text = best.chunk.text[:budget]
        chunk = replace(
            best.chunk,
            text=text,
            span=TextSpan(best.chunk.span.start, best.chunk.span.start + len(text)),
        )
        LOGGER.info("Context budget %d smaller than every hit; truncating chunk %s", budget, chunk.id)
        return [replace(best, chunk=chunk, truncated=True)], text

    return included, CONTEXT_SEPARATOR.join(parts)


__all__ = ["CONTEXT_SEPARATOR", "RetrievalEngine", "RetrievalResult", "assemble_context"]
