"""Base provider interfaces for embeddings and language models."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import AsyncIterator, List, Optional, Sequence, Tuple

__all__ = ["EmbeddingProvider", "GenerationChunk", "GenerationProvider"]


@dataclass(frozen=True, slots=True)
class GenerationChunk:
    """A piece of generated text.

    ``sources`` carries the provider's own grounding signal as citation
    marker numbers when the backend supports it, and is ``None`` otherwise.
    """

    text: str
    sources: Optional[Tuple[int, ...]] = None


class EmbeddingProvider(ABC):
    """Abstract interface for embedding providers.

    Implementations raise :class:`docqa.errors.TransientProviderError`
    subclasses for failures worth retrying; anything else is treated as
    permanent by :class:`docqa.embedding.EmbeddingClient`.
    """

    name: str = "embedding"
    max_batch_size: int = 64

    @abstractmethod
    async def embed(self, texts: Sequence[str]) -> List[List[float]]:
        """Encode the provided texts into embeddings."""


class GenerationProvider(ABC):
    """Abstract interface for streaming large language model providers."""

    name: str = "generation"

    @abstractmethod
    def generate(self, prompt: str) -> AsyncIterator[GenerationChunk]:
        """Stream the completion for ``prompt``.

        Closing the returned iterator (``aclose``) must release the
        underlying generation call.
        """
