"""Retrieval and streamed question answering endpoints."""
from __future__ import annotations

import asyncio
import json
import logging
from typing import AsyncIterator

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse

from ..errors import DocQAError
from ..retrieval import RetrievalResult
from ..services import DocQAService, get_service
from ..streaming import StreamEvent
from .documents import require_owner
from .errors import to_http_exception
from .schemas import QuestionRequest, RetrievedChunkResponse, RetrieveResponse

LOGGER = logging.getLogger(__name__)

router = APIRouter(tags=["query"])

_DISCONNECT_POLL_SECONDS = 0.25


async def _retrieve(service: DocQAService, owner_id: str, request: QuestionRequest) -> RetrievalResult:
    try:
        return await service.retrieval.retrieve(
            request.question,
            owner_id,
            k=request.k,
            context_budget=request.context_budget,
            document_ids=request.document_ids,
        )
    except DocQAError as exc:
        raise to_http_exception(exc) from exc


@router.post("/retrieve", response_model=RetrieveResponse)
async def retrieve_chunks(
    request: QuestionRequest,
    owner_id: str = Depends(require_owner),
    service: DocQAService = Depends(get_service),
) -> RetrieveResponse:
    """Return ranked chunks and the context that would be sent to the model."""

    result = await _retrieve(service, owner_id, request)
    included = {hit.chunk.id: hit for hit in result.included}
    return RetrieveResponse(
        question=request.question,
        context=result.context,
        chunks=[
            RetrievedChunkResponse.from_hit(
                included.get(hit.chunk.id, hit), included=hit.chunk.id in included
            )
            for hit in result.chunks
        ],
    )


def format_sse(event: StreamEvent) -> str:
    payload = event.to_dict()
    return f"event: {payload['event']}\ndata: {json.dumps(payload['data'], ensure_ascii=False)}\n\n"


async def _watch_disconnect(request: Request, cancel_event: asyncio.Event) -> None:
    while not cancel_event.is_set():
        if await request.is_disconnected():
            LOGGER.info("Client disconnected; cancelling answer stream")
            cancel_event.set()
            return
        await asyncio.sleep(_DISCONNECT_POLL_SECONDS)


@router.post("/query")
async def stream_answer(
    request: QuestionRequest,
    http_request: Request,
    owner_id: str = Depends(require_owner),
    service: DocQAService = Depends(get_service),
) -> StreamingResponse:
    """Stream a grounded answer as server-sent events."""

    retrieval = await _retrieve(service, owner_id, request)

    async def event_stream() -> AsyncIterator[str]:
        cancel_event = asyncio.Event()
        watcher = asyncio.ensure_future(_watch_disconnect(http_request, cancel_event))
        events = service.streamer.stream(request.question, retrieval, cancel_event=cancel_event)
        try:
            async for event in events:
                yield format_sse(event)
        finally:
            cancel_event.set()
            watcher.cancel()
            await events.aclose()

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
