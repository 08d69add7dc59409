"""Batched, retried access to the embedding provider."""
from __future__ import annotations

import asyncio
import logging
import math
import threading
import time
from typing import Awaitable, Callable, List, Optional, Sequence

from .errors import EmbeddingUnavailable, ProviderRateLimited, ProviderTimeout, TransientProviderError
from .providers.base import EmbeddingProvider
from .telemetry import emit_embeddings_event

LOGGER = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


class CooldownGate:
    """Process-wide rate-limit backpressure shared by embedding clients.

    A rate-limit response trips the gate until ``now + cooldown``; every
    client waits on the gate before calling the provider, so concurrent
    callers back off together instead of retrying independently. The gate
    clears when the interval elapses or when any call succeeds.
    """

    def __init__(
        self,
        *,
        default_cooldown: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.default_cooldown = default_cooldown
        self._clock = clock
        self._sleep = sleep
        self._until = 0.0
        self._lock = threading.Lock()

    def remaining(self) -> float:
        with self._lock:
            return max(0.0, self._until - self._clock())

    @property
    def active(self) -> bool:
        return self.remaining() > 0.0

    def trip(self, seconds: Optional[float] = None) -> float:
        duration = self.default_cooldown if seconds is None else max(0.0, seconds)
        with self._lock:
            self._until = max(self._until, self._clock() + duration)
            until = self._until
        LOGGER.warning("Embedding provider rate limited; cooling down for %.2fs", duration)
        return until

    def reset(self) -> None:
        with self._lock:
            self._until = 0.0

    async def wait(self) -> None:
        remaining = self.remaining()
        while remaining > 0.0:
            await self._sleep(remaining)
            remaining = self.remaining()


class EmbeddingClient:
    """Embed ordered texts through a provider with batching and retries."""

    def __init__(
        self,
        provider: EmbeddingProvider,
        gate: CooldownGate,
        *,
        batch_size: Optional[int] = None,
        max_attempts: int = 5,
        backoff_base: float = 0.5,
        backoff_max: float = 8.0,
        timeout: Optional[float] = 30.0,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        provider_limit = getattr(provider, "max_batch_size", None) or batch_size or 64
        self.batch_size = max(1, min(batch_size or provider_limit, provider_limit))
        self.provider = provider
        self.gate = gate
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.timeout = timeout
        self._sleep = sleep

    async def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        """Return one vector per text, in input order.

        Raises :class:`EmbeddingUnavailable` once any batch exhausts its
        retry budget; no partial result is ever returned.
        """

        if not texts:
            return []
        started = time.perf_counter()
        vectors: List[List[float]] = []
        attempts = 0
        errors: List[str] = []
        batches = 0
        try:
            for offset in range(0, len(texts), self.batch_size):
                batch = list(texts[offset : offset + self.batch_size])
                batch_vectors, batch_attempts = await self._embed_with_retry(batch, errors)
                attempts += batch_attempts
                batches += 1
                vectors.extend(batch_vectors)
        finally:
            emit_embeddings_event(
                provider=self.provider.name,
                count=len(texts),
                batches=batches,
                attempts=attempts,
                duration_ms=(time.perf_counter() - started) * 1000.0,
                errors=errors,
            )
        return vectors

    async def embed_one(self, text: str) -> List[float]:
        return (await self.embed_batch([text]))[0]

    async def _embed_with_retry(self, batch: List[str], errors: List[str]) -> tuple[List[List[float]], int]:
        attempt = 0
        while True:
            attempt += 1
            await self.gate.wait()
            try:
                vectors = await self._call_provider(batch)
            except ProviderRateLimited as error:
                self.gate.trip(error.retry_after)
                failure: Exception = error
            except TransientProviderError as error:
                failure = error
            except Exception as error:
                errors.append(f"{error.__class__.__name__}: {error}")
                raise EmbeddingUnavailable(
                    f"Embedding provider failed permanently: {error}", cause=error
                ) from error
            else:
                self.gate.reset()
                return vectors, attempt

            errors.append(f"{failure.__class__.__name__}: {failure}")
            if attempt >= self.max_attempts:
                raise EmbeddingUnavailable(
                    f"Embedding provider unavailable after {attempt} attempts: {failure}",
                    cause=failure,
                ) from failure
            delay = self._backoff(attempt)
            LOGGER.info(
                "Embedding attempt %d/%d failed (%s); retrying in %.2fs",
                attempt,
                self.max_attempts,
                failure,
                delay,
            )
            await self._sleep(delay)

    async def _call_provider(self, batch: List[str]) -> List[List[float]]:
        try:
            if self.timeout is None:
                raw = await self.provider.embed(batch)
            else:
                raw = await asyncio.wait_for(self.provider.embed(batch), self.timeout)
        except asyncio.TimeoutError as error:
            raise ProviderTimeout(f"Embedding call exceeded {self.timeout}s") from error
        return _validate_vectors(raw, len(batch))

    def _backoff(self, attempt: int) -> float:
        return min(self.backoff_max, self.backoff_base * (2 ** (attempt - 1)))


def _validate_vectors(raw: Sequence[Sequence[float]], expected: int) -> List[List[float]]:
    """Reject partial or malformed responses as a whole-batch transient failure."""

    vectors = [list(map(float, vector)) for vector in (raw or [])]
    if len(vectors) != expected:
        raise TransientProviderError(f"Provider returned {len(vectors)} vectors for {expected} texts")
    dimensions = {len(vector) for vector in vectors}
    if len(dimensions) != 1 or 0 in dimensions:
        raise TransientProviderError(f"Provider returned inconsistent dimensions {sorted(dimensions)}")
    if any(not math.isfinite(value) for vector in vectors for value in vector):
        raise TransientProviderError("Provider returned non-finite embedding values")
    return vectors


__all__ = ["CooldownGate", "EmbeddingClient"]
