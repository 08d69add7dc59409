"""Structured lifecycle events for the ingestion and answering pipelines."""

from __future__ import annotations

import logging
import traceback
from typing import Any, Iterable, Optional

LOGGER = logging.getLogger("docqa.telemetry")


def _format_exception(error: BaseException) -> str:
    return "".join(traceback.format_exception(error.__class__, error, error.__traceback__))


def log_event(
    logger: Optional[logging.Logger],
    step: str,
    *,
    level: str = "info",
    req_id: str | None = None,
    owner_id: str | None = None,
    duration_ms: float | None = None,
    exc: BaseException | str | None = None,
    **payload: Any,
) -> None:
    """Emit a structured log event with the shared schema."""

    logger = logger or LOGGER
    event: dict[str, Any] = {"step": step, "module": logger.name}
    if req_id:
        event["req_id"] = req_id
    if owner_id:
        event["owner_id"] = owner_id
    if duration_ms is not None:
        event["duration_ms"] = round(duration_ms, 3)
    event.update({key: value for key, value in payload.items() if value is not None})

    exc_info = None
    if exc is not None:
        if isinstance(exc, BaseException):
            event["exc"] = f"{exc.__class__.__name__}: {exc}"
            exc_info = (exc.__class__, exc, exc.__traceback__)
        else:
            event["exc"] = str(exc)

    log_method = getattr(logger, level.lower(), logger.info)
    log_method(event, exc_info=exc_info)


def emit_exception(*, module: str, error: BaseException, **context: Any) -> None:
    log_event(
        logging.getLogger(module),
        "exception",
        level="error",
        error_type=error.__class__.__name__,
        traceback=_format_exception(error),
        **context,
    )


def emit_ingest_event(step: str, **payload: Any) -> None:
    level = "warning" if step.endswith(".failed") else "info"
    log_event(logging.getLogger("docqa.ingestion"), step, level=level, **payload)


def emit_embeddings_event(
    *,
    provider: str,
    count: int,
    batches: int,
    attempts: int,
    duration_ms: float,
    errors: Iterable[str] | None = None,
) -> None:
    error_list = list(errors or [])
    log_event(
        logging.getLogger("docqa.embedding"),
        "embeddings.batch",
        level="warning" if error_list else "info",
        provider=provider,
        count=count,
        batches=batches,
        attempts=attempts,
        duration_ms=duration_ms,
        errors=error_list or None,
    )


def emit_vectorstore_event(
    step: str,
    *,
    backend: str,
    count: int,
    document_id: str | None = None,
    duration_ms: float | None = None,
    error: BaseException | None = None,
) -> None:
    log_event(
        logging.getLogger("docqa.vectorstore"),
        step,
        level="error" if error else "info",
        backend=backend,
        count=count,
        document_id=document_id,
        duration_ms=duration_ms,
        exc=error,
    )


def emit_retriever_event(
    *,
    owner_id: str,
    top_k: int,
    results: list[dict[str, Any]],
    included: int,
    context_chars: int,
    duration_ms: float,
) -> None:
    log_event(
        logging.getLogger("docqa.retrieval"),
        "retriever.query",
        owner_id=owner_id,
        top_k=top_k,
        results=results,
        included=included,
        context_chars=context_chars,
        duration_ms=duration_ms,
    )


def emit_stream_event(step: str, *, req_id: str, **payload: Any) -> None:
    level = "warning" if step.endswith((".error", ".cancelled")) else "info"
    log_event(logging.getLogger("docqa.streaming"), step, level=level, req_id=req_id, **payload)
