"""Utilities for constructing grounded prompts with numbered citation markers."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Mapping, Sequence

from .models import RetrievedChunk

_PROMPTS_DIR = Path(__file__).resolve().parent / "prompts"
_SYSTEM_PROMPT_PATH = _PROMPTS_DIR / "system.txt"
_USER_PROMPT_PATH = _PROMPTS_DIR / "user.md"

NO_CONTEXT_TEXT = "No context available."


def _load_template(path: Path) -> str:
    """Read and trim the contents of a template file."""
    return path.read_text(encoding="utf-8").strip()


_SYSTEM_TEXT = _load_template(_SYSTEM_PROMPT_PATH)
_USER_TEMPLATE = _load_template(_USER_PROMPT_PATH)


@dataclass(frozen=True, slots=True)
class BuiltPrompt:
    text: str
    markers: Mapping[int, RetrievedChunk]

    def chunk_ids_for(self, markers: Sequence[int]) -> tuple[str, ...]:
        """Map citation markers to chunk ids, dropping markers with no passage."""

        seen: Dict[str, None] = {}
        for marker in markers:
            hit = self.markers.get(marker)
            if hit is not None:
                seen.setdefault(hit.chunk.id, None)
        return tuple(seen)

    @property
    def all_chunk_ids(self) -> tuple[str, ...]:
        return tuple(self.markers[marker].chunk.id for marker in sorted(self.markers))


def build_prompt(question: str, included: Sequence[RetrievedChunk]) -> BuiltPrompt:
    """Compose the prompt, numbering passages ``[1]..[n]`` in rank order."""

    if question is None:
        raise ValueError("question must not be None")

    markers: Dict[int, RetrievedChunk] = {}
    sections = []
    for index, hit in enumerate(included, start=1):
        content = hit.chunk.text.strip()
        if not content:
            continue
        markers[index] = hit
        sections.append(f"[{index}] {content}")

    contexts_block = "\n\n".join(sections) if sections else NO_CONTEXT_TEXT
    user_block = _USER_TEMPLATE.format(question=question.strip())
    text = f"{_SYSTEM_TEXT}\n\n{contexts_block}\n\n{user_block}".strip()
    return BuiltPrompt(text=text, markers=markers)


__all__ = ["BuiltPrompt", "NO_CONTEXT_TEXT", "build_prompt"]
