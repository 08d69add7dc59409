"""Provider test doubles implementing the real provider interfaces."""
from __future__ import annotations

import asyncio
from typing import AsyncIterator, List, Optional, Sequence

from docqa.errors import ProviderRateLimited, ProviderTimeout
from docqa.models import Chunk, RetrievedChunk, TextSpan
from docqa.providers import EmbeddingProvider, GenerationChunk, GenerationProvider, HashEmbeddingProvider
from docqa.vectorstore import chunk_id_for


class RecordingEmbeddingProvider(EmbeddingProvider):
    """Hash embeddings that remember every batch they were asked for."""

    name = "recording"

    def __init__(self, dimension: int = 32, *, max_batch_size: int = 64) -> None:
        self.max_batch_size = max_batch_size
        self._delegate = HashEmbeddingProvider(dimension, max_batch_size=max_batch_size)
        self.calls: List[List[str]] = []

    async def embed(self, texts: Sequence[str]) -> List[List[float]]:
        self.calls.append(list(texts))
        return await self._delegate.embed(texts)


class FlakyEmbeddingProvider(RecordingEmbeddingProvider):
    """Fail the first ``failures`` calls with a timeout, then succeed."""

    name = "flaky"

    def __init__(self, failures: int, dimension: int = 32, *, max_batch_size: int = 64) -> None:
        super().__init__(dimension, max_batch_size=max_batch_size)
        self.failures = failures

    async def embed(self, texts: Sequence[str]) -> List[List[float]]:
        self.calls.append(list(texts))
        if self.failures > 0:
            self.failures -= 1
            raise ProviderTimeout("simulated timeout")
        return await self._delegate.embed(texts)


class RateLimitedEmbeddingProvider(RecordingEmbeddingProvider):
    """Answer the first ``limited`` calls with a rate-limit response."""

    name = "rate-limited"

    def __init__(self, limited: int, *, retry_after: Optional[float] = 3.0, dimension: int = 32) -> None:
        super().__init__(dimension)
        self.limited = limited
        self.retry_after = retry_after

    async def embed(self, texts: Sequence[str]) -> List[List[float]]:
        self.calls.append(list(texts))
        if self.limited > 0:
            self.limited -= 1
            raise ProviderRateLimited(retry_after=self.retry_after)
        return await self._delegate.embed(texts)


class PartialEmbeddingProvider(RecordingEmbeddingProvider):
    """Drop the last vector of every response."""

    name = "partial"

    async def embed(self, texts: Sequence[str]) -> List[List[float]]:
        self.calls.append(list(texts))
        vectors = await self._delegate.embed(texts)
        return vectors[:-1]


class BrokenEmbeddingProvider(RecordingEmbeddingProvider):
    """Raise a non-transient error on every call."""

    name = "broken"

    async def embed(self, texts: Sequence[str]) -> List[List[float]]:
        self.calls.append(list(texts))
        raise PermissionError("invalid api key")


class ScriptedGenerationProvider(GenerationProvider):
    """Yield a fixed script of chunks, optionally slowly or failing midway."""

    name = "scripted"

    def __init__(
        self,
        pieces: Sequence[GenerationChunk | str],
        *,
        delay: float = 0.0,
        fail_after: Optional[int] = None,
    ) -> None:
        self.pieces = [
            piece if isinstance(piece, GenerationChunk) else GenerationChunk(text=piece)
            for piece in pieces
        ]
        self.delay = delay
        self.fail_after = fail_after
        self.prompts: List[str] = []
        self.closed = False
        self.produced = 0

    async def generate(self, prompt: str) -> AsyncIterator[GenerationChunk]:
        self.prompts.append(prompt)
        try:
            for index, piece in enumerate(self.pieces):
                if self.fail_after is not None and index >= self.fail_after:
                    raise RuntimeError("model crashed")
                if self.delay:
                    await asyncio.sleep(self.delay)
                self.produced += 1
                yield piece
        finally:
            self.closed = True


class RecordingSleep:
    """Awaitable stand-in for ``asyncio.sleep`` that never blocks."""

    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        await asyncio.sleep(0)


def make_hit(text: str, *, rank: int = 1, score: float = 1.0, document_id: str = "doc-1", ordinal: int = 0):
    """Build a retrieval hit for a chunk of ``text``."""

    chunk = Chunk(
        id=chunk_id_for(document_id, ordinal),
        document_id=document_id,
        owner_id="alice",
        ordinal=ordinal,
        span=TextSpan(0, len(text)),
        text=text,
    )
    return RetrievedChunk(chunk=chunk, score=score, rank=rank)
