"""Embedding provider backed by a local Sentence Transformers model."""
from __future__ import annotations

import asyncio
import logging
import threading
from typing import List, Optional, Sequence

from .base import EmbeddingProvider

LOGGER = logging.getLogger(__name__)


class SentenceTransformerProvider(EmbeddingProvider):
    """Lazy-loading wrapper around ``SentenceTransformer.encode``.

    Requires the ``heavy`` extra. Encoding runs in a worker thread so the
    event loop keeps serving other requests while the model computes.
    """

    name = "sentence-transformers"

    def __init__(
        self,
        model_name_or_path: str,
        *,
        device: Optional[str] = None,
        max_batch_size: int = 64,
    ) -> None:
        self.model_name = model_name_or_path
        self.device = device
        self.max_batch_size = max_batch_size
        self._model = None
        self._lock = threading.Lock()

    def _ensure_loaded(self):
        if self._model is not None:
            return self._model
        with self._lock:
            if self._model is None:
                from sentence_transformers import SentenceTransformer

                LOGGER.info("Loading sentence-transformers model %s", self.model_name)
                self._model = SentenceTransformer(self.model_name, device=self.device)
        return self._model

    @property
    def dimension(self) -> int:
        return int(self._ensure_loaded().get_sentence_embedding_dimension())

    async def embed(self, texts: Sequence[str]) -> List[List[float]]:
        return await asyncio.to_thread(self._encode, list(texts))

    def _encode(self, texts: List[str]) -> List[List[float]]:
        model = self._ensure_loaded()
        embeddings = model.encode(
            texts,
            convert_to_numpy=True,
            show_progress_bar=False,
            normalize_embeddings=True,
        )
        return embeddings.tolist()
