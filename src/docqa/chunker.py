"""Deterministic splitting of extracted text into overlapping chunks."""
from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Sequence

from .models import TextSpan

_SENTENCE_END = frozenset(".!?")


@dataclass(frozen=True, slots=True)
class TextChunk:
    ordinal: int
    span: TextSpan
    text: str


@dataclass(frozen=True, slots=True)
class ChunkingConfig:
    max_chunk_size: int = 1000
    overlap: int = 100
    boundary_tolerance: Optional[int] = None

    def __post_init__(self) -> None:
        if self.max_chunk_size <= 0:
            raise ValueError("max_chunk_size must be a positive integer")
        if self.overlap < 0:
            raise ValueError("overlap must be a non-negative integer")
        if self.overlap >= self.max_chunk_size:
            raise ValueError("overlap must be strictly smaller than max_chunk_size")
        if self.boundary_tolerance is not None and self.boundary_tolerance < 0:
            raise ValueError("boundary_tolerance must be a non-negative integer")

    @property
    def effective_tolerance(self) -> int:
        """Width of the window searched for a natural break before a cut.

        Capped so that every window advances by at least one character past
        the overlap, which bounds the chunk count and guarantees termination.
        """

        requested = self.boundary_tolerance
        if requested is None:
            requested = max(1, self.max_chunk_size // 10)
        return max(0, min(requested, self.max_chunk_size - self.overlap - 1))


def split(
    text: str,
    max_chunk_size: int,
    overlap: int,
    *,
    boundary_tolerance: Optional[int] = None,
) -> List[TextChunk]:
    """Split ``text`` into windows of at most ``max_chunk_size`` characters.

    Consecutive windows share exactly ``overlap`` characters. Each cut is
    moved back to the nearest paragraph, sentence or whitespace boundary
    found within the tolerance window, falling back to a hard cut. Empty
    input yields no chunks; any other input yields at least one.
    """

    config = ChunkingConfig(max_chunk_size, overlap, boundary_tolerance)
    if not text:
        return []

    tolerance = config.effective_tolerance
    text_length = len(text)
    chunks: List[TextChunk] = []
    start = 0
    while True:
        end = min(start + config.max_chunk_size, text_length)
        if end < text_length and tolerance:
            end = _find_break(text, end, tolerance)
        chunks.append(TextChunk(ordinal=len(chunks), span=TextSpan(start, end), text=text[start:end]))
        if end >= text_length:
            break
        start = end - config.overlap
    return chunks


def _find_break(text: str, cut: int, tolerance: int) -> int:
    lowest = cut - tolerance
    sentence_break = None
    word_break = None
    for position in range(cut, lowest, -1):
        previous = text[position - 1]
        if not previous.isspace():
            continue
        if previous == "\n" and text[position - 2 : position] == "\n\n":
            return position
        if sentence_break is None and position >= 2 and text[position - 2] in _SENTENCE_END:
            sentence_break = position
        if word_break is None:
            word_break = position
    if sentence_break is not None:
        return sentence_break
    if word_break is not None:
        return word_break
    return cut


def reconstruct(chunks: Sequence[TextChunk]) -> str:
    """Rebuild the source text from ordered chunks, dropping repeated overlap."""

    parts: List[str] = []
    covered = 0
    for chunk in chunks:
        if chunk.span.start > covered:
            raise ValueError(f"Gap before chunk {chunk.ordinal}: {covered} < {chunk.span.start}")
        parts.append(chunk.text[covered - chunk.span.start :])
        covered = chunk.span.end
    return "".join(parts)


__all__ = ["ChunkingConfig", "TextChunk", "reconstruct", "split"]
