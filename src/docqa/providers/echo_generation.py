"""Deterministic streaming generation provider that quotes the prompt context."""
from __future__ import annotations

import asyncio
import re
from typing import AsyncIterator

from .base import GenerationChunk, GenerationProvider

_CONTEXT_BLOCK_RE = re.compile(r"^\[(\d+)\]\s+(.+)$", re.MULTILINE)


class EchoGenerationProvider(GenerationProvider):
    """Answer by quoting the first context block, word by word.

    Every quoted sentence is prefixed with its ``[n]`` marker so the
    inline-marker grounding path is exercised end to end.
    """

    name = "echo"

    def __init__(self, *, max_words: int = 40, token_delay: float = 0.0) -> None:
        self.max_words = max_words
        self.token_delay = token_delay

    async def generate(self, prompt: str) -> AsyncIterator[GenerationChunk]:
        blocks = _CONTEXT_BLOCK_RE.findall(prompt)
        if blocks:
            marker, text = blocks[0]
            words = text.split()[: self.max_words]
            tokens = [f"[{marker}]", *words]
        else:
            tokens = ["I", "could", "not", "find", "relevant", "information."]

        for index, token in enumerate(tokens):
            if self.token_delay:
                await asyncio.sleep(self.token_delay)
            yield GenerationChunk(text=token if index == 0 else f" {token}")
