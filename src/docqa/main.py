import logging
from typing import Any, Callable, TypeVar

from fastapi import FastAPI, HTTPException
from fastapi.responses import PlainTextResponse

from docqa.api import documents_router, query_router
from docqa.errors import VectorStoreUnavailableError
from docqa.logging_config import configure_logging
from docqa.services import get_service

configure_logging()

LOGGER = logging.getLogger(__name__)

app = FastAPI(title="DocQA API")
app.include_router(documents_router)
app.include_router(query_router)


T = TypeVar("T")


def _resolve_dependency(factory: Callable[[], T]) -> T:
    """Resolve a dependency while respecting FastAPI overrides."""

    override: Any | None = app.dependency_overrides.get(factory)
    resolved: Any = override if override is not None else factory
    return resolved() if callable(resolved) else resolved


@app.get("/healthz", response_class=PlainTextResponse)
def healthcheck() -> str:
    """Liveness probe used by container orchestrators."""
    return "ok"


@app.get("/readyz", response_class=PlainTextResponse)
def readiness_probe() -> str:
    """Readiness probe that ensures the database and vector store answer."""

    errors: list[str] = []
    try:
        service = _resolve_dependency(get_service)
    except VectorStoreUnavailableError as exc:
        raise HTTPException(status_code=503, detail=f"vector_store_unavailable: {exc}") from exc

    try:
        service.database.fetchone("SELECT 1")
    except Exception as exc:  # pragma: no cover - depends on the filesystem
        errors.append(f"database_unavailable: {exc}")

    try:
        service.vector_store.ping()
    except VectorStoreUnavailableError as exc:
        errors.append(f"vector_store_unavailable: {exc}")

    if service.gate.active:
        errors.append(f"embedding_cooling_down: {service.gate.remaining():.1f}s")

    if errors:
        raise HTTPException(status_code=503, detail="; ".join(errors))
    return "ok"
