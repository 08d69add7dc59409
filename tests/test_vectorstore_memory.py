import threading

import pytest

from docqa.models import Chunk, TextSpan
from docqa.vectorstore import InMemoryVectorStore, SearchFilter, chunk_id_for


def make_items(document_id, vectors, owner_id="alice"):
    items = []
    position = 0
    for ordinal, vector in enumerate(vectors):
        text = f"{document_id} chunk {ordinal}"
        chunk = Chunk(
            id=chunk_id_for(document_id, ordinal),
            document_id=document_id,
            owner_id=owner_id,
            ordinal=ordinal,
            span=TextSpan(position, position + len(text)),
            text=text,
        )
        position += len(text)
        items.append((chunk, vector))
    return items


@pytest.fixture
def store():
    return InMemoryVectorStore()


def test_search_orders_by_descending_similarity(store):
    store.upsert("doc-a", make_items("doc-a", [[1.0, 0.0], [0.8, 0.6], [0.0, 1.0]]))

    hits = store.search([1.0, 0.0], k=3)

    assert [hit.chunk.ordinal for hit in hits] == [0, 1, 2]
    assert [hit.rank for hit in hits] == [1, 2, 3]
    assert hits[0].score == pytest.approx(1.0)
    assert hits[1].score == pytest.approx(0.8)
    assert hits[2].score == pytest.approx(0.0, abs=1e-6)


def test_ties_break_on_ordinal_then_document_id(store):
    store.upsert("doc-b", make_items("doc-b", [[1.0, 0.0], [2.0, 0.0]]))
    store.upsert("doc-a", make_items("doc-a", [[3.0, 0.0], [1.0, 0.0]]))

    hits = store.search([1.0, 0.0], k=10)

    assert [(hit.chunk.document_id, hit.chunk.ordinal) for hit in hits] == [
        ("doc-a", 0),
        ("doc-b", 0),
        ("doc-a", 1),
        ("doc-b", 1),
    ]


def test_k_limits_results(store):
    store.upsert("doc-a", make_items("doc-a", [[1.0, 0.0]] * 5))

    assert len(store.search([1.0, 0.0], k=2)) == 2
    assert store.search([1.0, 0.0], k=0) == []


def test_filters_restrict_owner_and_documents(store):
    store.upsert("doc-a", make_items("doc-a", [[1.0, 0.0]], owner_id="alice"))
    store.upsert("doc-b", make_items("doc-b", [[1.0, 0.0]], owner_id="alice"))
    store.upsert("doc-c", make_items("doc-c", [[1.0, 0.0]], owner_id="bob"))

    by_owner = store.search([1.0, 0.0], 10, SearchFilter.for_owner("alice"))
    by_document = store.search([1.0, 0.0], 10, SearchFilter.for_owner("alice", ["doc-b", "doc-c"]))
    nothing = store.search([1.0, 0.0], 10, SearchFilter.for_owner("alice", []))

    assert {hit.chunk.document_id for hit in by_owner} == {"doc-a", "doc-b"}
    assert [hit.chunk.document_id for hit in by_document] == ["doc-b"]
    assert nothing == []


def test_upsert_replaces_previous_chunks(store):
    store.upsert("doc-a", make_items("doc-a", [[1.0, 0.0]] * 4))
    store.upsert("doc-a", make_items("doc-a", [[0.0, 1.0]] * 2))

    assert store.count("doc-a") == 2
    assert store.count() == 2
    hits = store.search([0.0, 1.0], k=10)
    assert [hit.chunk.ordinal for hit in hits] == [0, 1]


@pytest.mark.parametrize(
    "items",
    [
        [],
        make_items("doc-a", [[1.0, 0.0], [1.0, 0.0]])[1:],
        make_items("doc-a", [[1.0, 0.0], [1.0, 0.0, 0.0]]),
        make_items("doc-b", [[1.0, 0.0]]),
    ],
    ids=["empty", "gap", "mixed-dimensions", "foreign-document"],
)
def test_invalid_upserts_rejected(store, items):
    with pytest.raises(ValueError):
        store.upsert("doc-a", items)

    assert store.count() == 0


def test_dimension_is_fixed_by_first_upsert(store):
    store.upsert("doc-a", make_items("doc-a", [[1.0, 0.0]]))

    with pytest.raises(ValueError):
        store.upsert("doc-b", make_items("doc-b", [[1.0, 0.0, 0.0]]))
    with pytest.raises(ValueError):
        store.search([1.0, 0.0, 0.0], k=1)


def test_delete_is_idempotent(store):
    store.upsert("doc-a", make_items("doc-a", [[1.0, 0.0]] * 3))

    store.delete_document("doc-a")
    store.delete_document("doc-a")
    store.delete_document("never-indexed")

    assert store.count() == 0
    assert store.search([1.0, 0.0], k=5) == []


def test_readers_never_see_partial_documents(store):
    size = 50
    items = make_items("doc-a", [[1.0, float(index)] for index in range(size)])
    observed = set()
    stop = threading.Event()

    def reader():
        while not stop.is_set():
            observed.add(len(store.search([1.0, 0.0], k=size * 2)))

    threads = [threading.Thread(target=reader) for _ in range(4)]
    for thread in threads:
        thread.start()
    try:
        for _ in range(20):
            store.upsert("doc-a", items)
            store.delete_document("doc-a")
    finally:
        stop.set()
        for thread in threads:
            thread.join()

    assert observed <= {0, size}
