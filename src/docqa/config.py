"""Runtime configuration sourced from environment variables."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Tuple

LOGGER = logging.getLogger(__name__)

DEFAULT_ALLOWED_TYPES: Tuple[str, ...] = (
    "text/plain",
    "text/markdown",
    "application/pdf",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
)


def _str_from_env(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip()


def _int_from_env(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        LOGGER.warning("Invalid integer for %s: %s; using default %s", name, value, default)
        return default


def _float_from_env(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        LOGGER.warning("Invalid float for %s: %s; using default %s", name, value, default)
        return default


def _tuple_from_env(name: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    value = os.getenv(name)
    if value is None:
        return default
    items = tuple(item.strip().lower() for item in value.split(",") if item.strip())
    return items or default


@dataclass(slots=True)
class Settings:
    db_path: str = "data/docqa.db"
    vector_store: str = "memory"
    chroma_persist_dir: str = "chroma_db"
    chroma_collection: str = "docqa_chunks"

    embedding_provider: str = "hash"
    embedding_model_path: str = "sentence-transformers/all-MiniLM-L6-v2"
    embedding_dimension: int = 384
    embedding_batch_size: int = 64
    embedding_max_attempts: int = 5
    embedding_backoff_base: float = 0.5
    embedding_backoff_max: float = 8.0
    embedding_cooldown_seconds: float = 5.0
    embedding_timeout_seconds: float = 30.0

    generation_provider: str = "echo"
    llm_model_path: str | None = None
    llm_max_tokens: int = 256
    llm_temperature: float = 0.0

    chunk_max_chars: int = 1000
    chunk_overlap_chars: int = 100
    ingest_max_bytes: int = 10 * 1024 * 1024
    ingest_allowed_types: Tuple[str, ...] = field(default=DEFAULT_ALLOWED_TYPES)
    idempotency_wait_seconds: float = 30.0

    retrieval_top_k: int = 8
    retrieval_context_budget: int = 6000
    stream_cancel_grace_seconds: float = 2.0

    @classmethod
    def from_env(cls) -> "Settings":
        defaults = cls()
        return cls(
            db_path=_str_from_env("DOCQA_DB_PATH", defaults.db_path),
            vector_store=_str_from_env("VECTOR_STORE", defaults.vector_store).lower(),
            chroma_persist_dir=_str_from_env("CHROMA_PERSIST_DIR", defaults.chroma_persist_dir),
            chroma_collection=_str_from_env("CHROMA_COLLECTION", defaults.chroma_collection),
            embedding_provider=_str_from_env("EMBEDDING_PROVIDER", defaults.embedding_provider).lower(),
            embedding_model_path=_str_from_env("EMBEDDING_MODEL_PATH", defaults.embedding_model_path),
            embedding_dimension=_int_from_env("EMBEDDING_DIMENSION", defaults.embedding_dimension),
            embedding_batch_size=_int_from_env("EMBEDDING_BATCH_SIZE", defaults.embedding_batch_size),
            embedding_max_attempts=_int_from_env("EMBEDDING_MAX_ATTEMPTS", defaults.embedding_max_attempts),
            embedding_backoff_base=_float_from_env("EMBEDDING_BACKOFF_BASE", defaults.embedding_backoff_base),
            embedding_backoff_max=_float_from_env("EMBEDDING_BACKOFF_MAX", defaults.embedding_backoff_max),
            embedding_cooldown_seconds=_float_from_env(
                "EMBEDDING_COOLDOWN_SECONDS", defaults.embedding_cooldown_seconds
            ),
            embedding_timeout_seconds=_float_from_env(
                "EMBEDDING_TIMEOUT_SECONDS", defaults.embedding_timeout_seconds
            ),
            generation_provider=_str_from_env("GENERATION_PROVIDER", defaults.generation_provider).lower(),
            llm_model_path=os.getenv("LLM_MODEL_PATH") or None,
            llm_max_tokens=_int_from_env("LLM_MAX_TOKENS", defaults.llm_max_tokens),
            llm_temperature=_float_from_env("LLM_TEMPERATURE", defaults.llm_temperature),
            chunk_max_chars=_int_from_env("CHUNK_MAX_CHARS", defaults.chunk_max_chars),
            chunk_overlap_chars=_int_from_env("CHUNK_OVERLAP_CHARS", defaults.chunk_overlap_chars),
            ingest_max_bytes=_int_from_env("INGEST_MAX_BYTES", defaults.ingest_max_bytes),
            ingest_allowed_types=_tuple_from_env("INGEST_ALLOWED_TYPES", defaults.ingest_allowed_types),
            idempotency_wait_seconds=_float_from_env(
                "IDEMPOTENCY_WAIT_SECONDS", defaults.idempotency_wait_seconds
            ),
            retrieval_top_k=_int_from_env("RETRIEVAL_TOP_K", defaults.retrieval_top_k),
            retrieval_context_budget=_int_from_env(
                "RETRIEVAL_CONTEXT_BUDGET", defaults.retrieval_context_budget
            ),
            stream_cancel_grace_seconds=_float_from_env(
                "STREAM_CANCEL_GRACE_SECONDS", defaults.stream_cancel_grace_seconds
            ),
        )


@lru_cache()
def get_settings() -> Settings:
    """Return the process-wide settings instance."""

    return Settings.from_env()


def reset_settings_cache() -> None:
    """Clear the cached settings (primarily for testing)."""

    get_settings.cache_clear()  # type: ignore[attr-defined]
