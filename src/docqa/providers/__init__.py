"""Embedding and generation provider implementations."""
from __future__ import annotations

from ..config import Settings
from .base import EmbeddingProvider, GenerationChunk, GenerationProvider
from .echo_generation import EchoGenerationProvider
from .hash_embedding import HashEmbeddingProvider


def create_embedding_provider(settings: Settings) -> EmbeddingProvider:
    """Instantiate the embedding provider selected by ``EMBEDDING_PROVIDER``."""

    backend = settings.embedding_provider
    if backend == "hash":
        return HashEmbeddingProvider(
            settings.embedding_dimension, max_batch_size=settings.embedding_batch_size
        )
    if backend in {"sentence-transformers", "sentence_transformers"}:
        from .sentence_transformer import SentenceTransformerProvider

        return SentenceTransformerProvider(
            settings.embedding_model_path, max_batch_size=settings.embedding_batch_size
        )
    raise ValueError(f"Unsupported EMBEDDING_PROVIDER: {backend!r}")


def create_generation_provider(settings: Settings) -> GenerationProvider:
    """Instantiate the generation provider selected by ``GENERATION_PROVIDER``."""

    backend = settings.generation_provider
    if backend == "echo":
        return EchoGenerationProvider()
    if backend == "transformers":
        from .transformers_generation import TransformersGenerationProvider

        return TransformersGenerationProvider(
            settings.llm_model_path or "",
            max_new_tokens=settings.llm_max_tokens,
            temperature=settings.llm_temperature,
        )
    raise ValueError(f"Unsupported GENERATION_PROVIDER: {backend!r}")


__all__ = [
    "EchoGenerationProvider",
    "EmbeddingProvider",
    "GenerationChunk",
    "GenerationProvider",
    "HashEmbeddingProvider",
    "create_embedding_provider",
    "create_generation_provider",
]
