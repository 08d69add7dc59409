"""Deterministic feature-hashing embedding provider for offline use and tests."""
from __future__ import annotations

import hashlib
import math
import re
from typing import List, Sequence

from .base import EmbeddingProvider

_TOKEN_RE = re.compile(r"\w+", re.UNICODE)


class HashEmbeddingProvider(EmbeddingProvider):
    """Map texts to unit vectors by hashing their lower-cased word tokens.

    Texts sharing vocabulary end up close in cosine space, which is enough
    for retrieval to behave sensibly without a model download.
    """

    name = "hash"

    def __init__(self, dimension: int = 384, *, max_batch_size: int = 64) -> None:
        if dimension <= 0:
            raise ValueError("dimension must be a positive integer")
        self.dimension = dimension
        self.max_batch_size = max_batch_size

    async def embed(self, texts: Sequence[str]) -> List[List[float]]:
        return [self.embed_one(text) for text in texts]

    def embed_one(self, text: str) -> List[float]:
        vector = [0.0] * self.dimension
        for token in _TOKEN_RE.findall(text.lower()):
            digest = hashlib.sha256(token.encode("utf-8")).digest()
            index = int.from_bytes(digest[:8], "big") % self.dimension
            vector[index] += 1.0 if digest[8] & 1 else -1.0
        norm = math.sqrt(sum(value * value for value in vector))
        if norm == 0.0:
            return vector
        return [value / norm for value in vector]
