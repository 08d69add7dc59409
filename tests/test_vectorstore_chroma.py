import dataclasses

import pytest

pytest.importorskip("chromadb")

from docqa.errors import VectorStoreUnavailableError  # noqa: E402
from docqa.services import DocQAService  # noqa: E402
from docqa.vectorstore import SearchFilter  # noqa: E402
from docqa.vectorstore.chroma_store import ChromaVectorStore  # noqa: E402

from doubles import RecordingEmbeddingProvider  # noqa: E402
from test_vectorstore_memory import make_items  # noqa: E402


class GetFailingCollection:
    """Delegate to a real collection but fail every filtered read."""

    def __init__(self, collection):
        self._collection = collection

    def get(self, **kwargs):
        raise RuntimeError("filtered scan not allowed")

    def __getattr__(self, name):
        return getattr(self._collection, name)


class UpdateFailingCollection:
    """Delegate to a real collection but fail when rows are published."""

    def __init__(self, collection):
        self._collection = collection

    def update(self, **kwargs):
        raise RuntimeError("disk full")

    def __getattr__(self, name):
        return getattr(self._collection, name)


@pytest.fixture
def store(tmp_path):
    return ChromaVectorStore(tmp_path / "chroma", collection_name="test_chunks")


def test_search_orders_by_cosine_similarity(store):
    store.upsert("doc-a", make_items("doc-a", [[1.0, 0.0, 0.0], [0.8, 0.6, 0.0], [0.0, 0.0, 1.0]]))

    hits = store.search([1.0, 0.0, 0.0], k=2)

    assert [hit.chunk.ordinal for hit in hits] == [0, 1]
    assert [hit.rank for hit in hits] == [1, 2]
    assert hits[0].score == pytest.approx(1.0, abs=1e-3)
    assert hits[1].score == pytest.approx(0.8, abs=1e-3)
    assert hits[0].chunk.text == "doc-a chunk 0"
    assert hits[0].chunk.owner_id == "alice"


def test_owner_and_document_filters(store):
    store.upsert("doc-a", make_items("doc-a", [[1.0, 0.0]], owner_id="alice"))
    store.upsert("doc-b", make_items("doc-b", [[1.0, 0.1]], owner_id="bob"))
    store.upsert("doc-c", make_items("doc-c", [[1.0, 0.2]], owner_id="alice"))

    alice = store.search([1.0, 0.0], 10, SearchFilter.for_owner("alice"))
    only_c = store.search([1.0, 0.0], 10, SearchFilter.for_owner("alice", ["doc-c", "doc-b"]))

    assert [hit.chunk.document_id for hit in alice] == ["doc-a", "doc-c"]
    assert [hit.chunk.document_id for hit in only_c] == ["doc-c"]
    assert store.search([1.0, 0.0], 10, SearchFilter.for_owner("alice", [])) == []


def test_upsert_replaces_and_delete_removes(store):
    store.upsert("doc-a", make_items("doc-a", [[1.0, 0.0]] * 3))
    store.upsert("doc-a", make_items("doc-a", [[0.0, 1.0]]))

    assert store.count("doc-a") == 1

    store.delete_document("doc-a")
    store.delete_document("doc-a")

    assert store.count() == 0
    assert store.search([1.0, 0.0], k=3) == []


def test_index_persists_across_instances(tmp_path):
    first = ChromaVectorStore(tmp_path / "chroma", collection_name="persisted")
    first.upsert("doc-a", make_items("doc-a", [[1.0, 0.0], [0.0, 1.0]]))

    second = ChromaVectorStore(tmp_path / "chroma", collection_name="persisted")

    assert second.count("doc-a") == 2
    assert second.search([0.0, 1.0], k=1)[0].chunk.ordinal == 1


def test_failed_publish_leaves_nothing_searchable(store):
    real_collection = store._collection
    store._collection = UpdateFailingCollection(real_collection)

    with pytest.raises(VectorStoreUnavailableError):
        store.upsert("doc-a", make_items("doc-a", [[1.0, 0.0]] * 3))

    store._collection = real_collection
    assert store.count("doc-a") == 0
    assert real_collection.get(where={"document_id": "doc-a"})["ids"] == []


def test_missing_location_is_reported():
    with pytest.raises(VectorStoreUnavailableError):
        ChromaVectorStore(None)


def test_ping_does_not_scan_rows(store):
    store.upsert("doc-a", make_items("doc-a", [[1.0, 0.0]] * 3))
    store._collection = GetFailingCollection(store._collection)

    store.ping()


def test_ping_reports_unreachable_collection(store):
    class Unreachable:
        def count(self):
            raise ConnectionError("server gone")

    store._collection = Unreachable()

    with pytest.raises(VectorStoreUnavailableError):
        store.ping()


@pytest.mark.anyio
async def test_restarted_service_replays_indexed_document(settings):
    chroma_settings = dataclasses.replace(settings, vector_store="chroma")
    payload = b"The tenant pays rent on the first day of every month."

    first = DocQAService(chroma_settings, embedding_provider=RecordingEmbeddingProvider(dimension=64))
    try:
        created = await first.ingestion.ingest("alice", "key-1", payload, "text/plain", "lease.txt")
    finally:
        first.close()

    restarted = DocQAService(chroma_settings, embedding_provider=RecordingEmbeddingProvider(dimension=64))
    try:
        replayed = await restarted.ingestion.ingest("alice", "key-1", payload, "text/plain", "lease.txt")
        indexed = restarted.vector_store.count(created.document.id)
    finally:
        restarted.close()

    assert restarted.database.path == settings.db_path
    assert replayed.replayed is True
    assert replayed.document.id == created.document.id
    assert indexed == created.document.chunk_count > 0
