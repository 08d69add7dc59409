"""Streaming answer generation with citation tracking and cancellation."""
from __future__ import annotations

import asyncio
import logging
import re
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from .errors import GenerationFailed
from .logging_config import AUDIT_LOGGER_NAME
from .models import Citation
from .prompt_builder import BuiltPrompt, build_prompt
from .providers.base import GenerationChunk, GenerationProvider
from .retrieval import RetrievalResult
from .telemetry import emit_stream_event

LOGGER = logging.getLogger(__name__)
AUDIT_LOGGER = logging.getLogger(AUDIT_LOGGER_NAME)

_MARKER_RE = re.compile(r"\[(\d{1,4})\]")
_MARKER_LOOKBACK = 6

INSUFFICIENT_CONTEXT_MESSAGE = "No relevant information was found in your documents."


class StreamEventType(str, Enum):
    """Events delivered to the caller of :meth:`AnswerStreamer.stream`."""

    TOKEN = "token"
    CITATIONS = "citations"
    DONE = "done"
    CANCELLED = "cancelled"
    ERROR = "error"
    INSUFFICIENT_CONTEXT = "insufficient_context"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_EVENTS


_TERMINAL_EVENTS = frozenset(
    {
        StreamEventType.DONE,
        StreamEventType.CANCELLED,
        StreamEventType.ERROR,
        StreamEventType.INSUFFICIENT_CONTEXT,
    }
)


@dataclass(frozen=True, slots=True)
class StreamEvent:
    type: StreamEventType
    text: Optional[str] = None
    chunk_ids: Tuple[str, ...] = ()
    citations: Tuple[Citation, ...] = ()
    code: Optional[str] = None
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-serialisable payload."""

        data: Dict[str, Any] = {}
        if self.type is StreamEventType.TOKEN:
            data = {"text": self.text, "chunk_ids": list(self.chunk_ids)}
        elif self.type is StreamEventType.CITATIONS:
            data = {
                "citations": [
                    {
                        "start": citation.start,
                        "end": citation.end,
                        "chunk_ids": list(citation.chunk_ids),
                        "markers": list(citation.markers),
                    }
                    for citation in self.citations
                ]
            }
        elif self.code or self.message:
            data = {"code": self.code, "message": self.message}
        return {"event": self.type.value, "data": data}


class CitationTracker:
    """Attribute spans of the generated answer to included chunks.

    A span is a maximal run of answer text sharing one attribution. Explicit
    ``sources`` on a generation chunk win; otherwise an inline ``[n]`` marker
    opens a new span attributed to passage ``n``. Text with neither signal
    is attributed to every included chunk. Markers without a passage are
    ignored.
    """

    def __init__(self, prompt: BuiltPrompt) -> None:
        self._prompt = prompt
        self._fallback = prompt.all_chunk_ids
        self._answer: List[str] = []
        self._length = 0
        self._tail = ""
        self._span_start = 0
        self._current: Tuple[str, ...] = self._fallback
        self._markers: Tuple[int, ...] = ()
        self._spans: List[Citation] = []

    @property
    def answer(self) -> str:
        return "".join(self._answer)

    def feed(self, piece: GenerationChunk) -> Tuple[str, ...]:
        """Record ``piece`` and return the chunk ids it is attributed to."""

        previous = self._length
        self._answer.append(piece.text)
        self._length += len(piece.text)
        window = self._tail + piece.text
        offset = previous - len(self._tail)
        self._tail = window[-_MARKER_LOOKBACK:]

        if piece.sources is not None:
            markers = tuple(piece.sources)
            chunk_ids = self._prompt.chunk_ids_for(markers) or self._fallback
            self._switch(previous, chunk_ids, markers if chunk_ids != self._fallback else ())
            return self._current

        new_markers = [match for match in _MARKER_RE.finditer(window) if offset + match.end() > previous]
        valid = [match for match in new_markers if int(match.group(1)) in self._prompt.markers]
        if valid:
            markers = tuple(dict.fromkeys(int(match.group(1)) for match in valid))
            self._switch(offset + valid[0].start(), self._prompt.chunk_ids_for(markers), markers)
        return self._current

    def _switch(self, position: int, chunk_ids: Tuple[str, ...], markers: Tuple[int, ...]) -> None:
        if chunk_ids == self._current and markers == self._markers:
            return
        position = max(position, self._span_start)
        if position > self._span_start:
            self._spans.append(
                Citation(
                    start=self._span_start,
                    end=position,
                    chunk_ids=self._current,
                    markers=self._markers,
                )
            )
        self._span_start = position
        self._current = chunk_ids
        self._markers = markers

    def finish(self) -> Tuple[Citation, ...]:
        spans = list(self._spans)
        if self._length > self._span_start:
            spans.append(
                Citation(
                    start=self._span_start,
                    end=self._length,
                    chunk_ids=self._current,
                    markers=self._markers,
                )
            )
        return tuple(spans)


async def _next_piece(generator: AsyncIterator[GenerationChunk]) -> GenerationChunk:
    return await generator.__anext__()


class AnswerStreamer:
    """Drive the generation provider and relay its output as stream events.

    Tokens are yielded as soon as the provider produces them. Setting
    ``cancel_event`` or closing the returned iterator stops consumption and
    closes the provider stream within ``grace_seconds``.
    """

    def __init__(self, provider: GenerationProvider, *, grace_seconds: float = 2.0) -> None:
        self.provider = provider
        self.grace_seconds = grace_seconds

    async def stream(
        self,
        question: str,
        retrieval: RetrievalResult,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> AsyncIterator[StreamEvent]:
        req_id = uuid.uuid4().hex
        started = time.perf_counter()

        if retrieval.is_empty:
            emit_stream_event("stream.insufficient_context", req_id=req_id)
            self._audit(req_id, "insufficient_context", tokens=0, started=started)
            yield StreamEvent(
                StreamEventType.INSUFFICIENT_CONTEXT,
                code="insufficient_context",
                message=INSUFFICIENT_CONTEXT_MESSAGE,
            )
            return

        prompt = build_prompt(question, retrieval.included)
        tracker = CitationTracker(prompt)
        generator = self.provider.generate(prompt.text)
        cancel_waiter = asyncio.ensure_future(cancel_event.wait()) if cancel_event else None
        pending: Optional[asyncio.Task] = None
        outcome = "done"
        tokens = 0
        failure: Optional[BaseException] = None
        completed = False
        emit_stream_event(
            "stream.started", req_id=req_id, provider=self.provider.name, passages=len(prompt.markers)
        )

        try:
            while True:
                if cancel_event is not None and cancel_event.is_set():
                    outcome = "cancelled"
                    break
                pending = asyncio.ensure_future(_next_piece(generator))
                waiters = {pending} if cancel_waiter is None else {pending, cancel_waiter}
                done, _ = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
                if pending not in done:
                    outcome = "cancelled"
                    break
                task, pending = pending, None
                try:
                    piece = task.result()
                except StopAsyncIteration:
                    break
                except Exception as exc:
                    outcome = "error"
                    failure = exc
                    break
                if not piece.text:
                    continue
                tokens += 1
                yield StreamEvent(StreamEventType.TOKEN, text=piece.text, chunk_ids=tracker.feed(piece))

            completed = True
            if outcome == "done":
                citations = tracker.finish()
                yield StreamEvent(StreamEventType.CITATIONS, citations=citations)
                yield StreamEvent(StreamEventType.DONE)
            elif outcome == "cancelled":
                yield StreamEvent(StreamEventType.CANCELLED, message="Stream cancelled by caller")
            else:
                error = GenerationFailed(f"Generation failed: {failure}", cause=failure)
                yield StreamEvent(StreamEventType.ERROR, code=error.code, message=error.message)
        except (GeneratorExit, asyncio.CancelledError):
            if not completed:
                outcome = "cancelled"
            raise
        finally:
            if cancel_waiter is not None:
                cancel_waiter.cancel()
            await self._release(generator, pending, req_id)
            emit_stream_event(
                f"stream.{outcome}",
                req_id=req_id,
                tokens=tokens,
                duration_ms=(time.perf_counter() - started) * 1000.0,
                exc=failure,
            )
            self._audit(req_id, outcome, tokens=tokens, started=started)

    async def _release(
        self,
        generator: AsyncIterator[GenerationChunk],
        pending: Optional[asyncio.Task],
        req_id: str,
    ) -> None:
        """Stop the provider stream, waiting at most ``grace_seconds``."""

        async def _close() -> None:
            if pending is not None and not pending.done():
                pending.cancel()
                await asyncio.gather(pending, return_exceptions=True)
            aclose = getattr(generator, "aclose", None)
            if aclose is not None:
                await aclose()

        try:
            await asyncio.wait_for(_close(), timeout=self.grace_seconds)
        except asyncio.TimeoutError:
            LOGGER.warning("Generation stream %s did not stop within %.2fs", req_id, self.grace_seconds)
        except Exception as exc:
            LOGGER.warning("Error while closing generation stream %s: %s", req_id, exc)

    def _audit(self, req_id: str, outcome: str, *, tokens: int, started: float) -> None:
        AUDIT_LOGGER.info(
            {
                "event": "query",
                "req_id": req_id,
                "outcome": outcome,
                "tokens": tokens,
                "duration_ms": round((time.perf_counter() - started) * 1000.0, 3),
            }
        )


__all__ = [
    "AnswerStreamer",
    "CitationTracker",
    "INSUFFICIENT_CONTEXT_MESSAGE",
    "StreamEvent",
    "StreamEventType",
]
