"""Shared fixtures: temporary storage and a fully wired offline service."""
from __future__ import annotations

import pytest

from docqa.config import Settings, reset_settings_cache
from docqa.services import DocQAService, reset_service_cache
from docqa.storage import Database

from doubles import RecordingEmbeddingProvider


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(autouse=True)
def _clear_caches():
    reset_settings_cache()
    reset_service_cache()
    yield
    reset_settings_cache()
    reset_service_cache()


@pytest.fixture
def database(tmp_path):
    db = Database(tmp_path / "docqa.db")
    yield db
    db.close()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        db_path=str(tmp_path / "docqa.db"),
        chroma_persist_dir=str(tmp_path / "chroma"),
        embedding_dimension=64,
        embedding_backoff_base=0.0,
        embedding_backoff_max=0.0,
        embedding_cooldown_seconds=0.0,
        idempotency_wait_seconds=5.0,
        stream_cancel_grace_seconds=1.0,
    )


@pytest.fixture
def service(settings):
    svc = DocQAService(settings, embedding_provider=RecordingEmbeddingProvider(dimension=64))
    yield svc
    svc.close()
