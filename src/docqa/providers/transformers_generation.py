"""Streaming generation provider backed by a local ``transformers`` causal LM."""
from __future__ import annotations

import asyncio
import logging
import threading
from typing import AsyncIterator, Optional

from .base import GenerationChunk, GenerationProvider

LOGGER = logging.getLogger(__name__)

_STREAM_END = object()


class TransformersGenerationProvider(GenerationProvider):
    """Lazy-loading ``AutoModelForCausalLM`` with token streaming.

    ``model.generate`` runs in a background thread feeding a
    ``TextIteratorStreamer``. Closing the async iterator sets a stop flag
    that a stopping criterion checks after every generated token, so the
    thread finishes promptly once the consumer goes away.
    """

    name = "transformers"

    def __init__(
        self,
        model_path: str,
        *,
        max_new_tokens: int = 256,
        temperature: float = 0.0,
        device: Optional[str] = None,
    ) -> None:
        if not model_path:
            raise ValueError("LLM_MODEL_PATH must be set for the transformers provider")
        self.model_path = model_path
        self.max_new_tokens = max_new_tokens
        self.temperature = temperature
        self.device = device or "cpu"
        self._model = None
        self._tokenizer = None
        self._lock = threading.RLock()

    def _ensure_loaded(self) -> None:
        if self._model is not None:
            return
        with self._lock:
            if self._model is not None:
                return
            from transformers import AutoModelForCausalLM, AutoTokenizer

            LOGGER.info("Loading causal LM from %s on %s", self.model_path, self.device)
            self._tokenizer = AutoTokenizer.from_pretrained(self.model_path)
            model = AutoModelForCausalLM.from_pretrained(self.model_path)
            self._model = model.to(self.device)

    async def generate(self, prompt: str) -> AsyncIterator[GenerationChunk]:
        await asyncio.to_thread(self._ensure_loaded)

        from transformers import StoppingCriteria, StoppingCriteriaList, TextIteratorStreamer

        stop_event = threading.Event()

        class _StopOnEvent(StoppingCriteria):
            def __call__(self, input_ids, scores, **kwargs) -> bool:  # noqa: D401 - callback
                return stop_event.is_set()

        tokenizer = self._tokenizer
        inputs = tokenizer(prompt, return_tensors="pt").to(self.device)
        streamer = TextIteratorStreamer(tokenizer, skip_prompt=True, skip_special_tokens=True)
        generation_kwargs = dict(
            **inputs,
            streamer=streamer,
            max_new_tokens=self.max_new_tokens,
            do_sample=self.temperature > 0.0,
            stopping_criteria=StoppingCriteriaList([_StopOnEvent()]),
            pad_token_id=tokenizer.pad_token_id or tokenizer.eos_token_id,
        )
        if self.temperature > 0.0:
            generation_kwargs["temperature"] = self.temperature

        worker = threading.Thread(target=self._model.generate, kwargs=generation_kwargs, daemon=True)
        worker.start()
        try:
            while True:
                piece = await asyncio.to_thread(next, streamer, _STREAM_END)
                if piece is _STREAM_END:
                    break
                if piece:
                    yield GenerationChunk(text=piece)
        finally:
            stop_event.set()
