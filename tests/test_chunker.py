import pytest

from docqa.chunker import ChunkingConfig, reconstruct, split

SAMPLE = (
    "The agreement lasts for two years. Either party may terminate it early with notice.\n\n"
    "Payment is due monthly! Late payments accrue interest at the statutory rate? "
    "Disputes are resolved by arbitration in the capital.\n\n"
) * 12


def test_split_is_deterministic():
    first = split(SAMPLE, 200, 40)
    second = split(SAMPLE, 200, 40)

    assert [(chunk.span.start, chunk.span.end) for chunk in first] == [
        (chunk.span.start, chunk.span.end) for chunk in second
    ]
    assert [chunk.text for chunk in first] == [chunk.text for chunk in second]


def test_chunks_reconstruct_text_exactly():
    chunks = split(SAMPLE, 200, 40)

    assert reconstruct(chunks) == SAMPLE
    assert [chunk.ordinal for chunk in chunks] == list(range(len(chunks)))
    assert chunks[0].span.start == 0
    assert chunks[-1].span.end == len(SAMPLE)
    for chunk in chunks:
        assert 0 < chunk.span.length <= 200
        assert chunk.text == SAMPLE[chunk.span.start : chunk.span.end]
    for current, nxt in zip(chunks, chunks[1:]):
        assert current.span.end - nxt.span.start == 40


def test_ten_thousand_characters_yield_eleven_chunks():
    text = "x" * 10_000

    chunks = split(text, 1000, 100)

    assert len(chunks) == 11
    assert [chunk.ordinal for chunk in chunks] == list(range(11))
    assert [chunk.span.start for chunk in chunks] == [900 * index for index in range(11)]
    assert chunks[-1].span.end == 10_000
    assert reconstruct(chunks) == text


def test_cut_prefers_sentence_boundary():
    text = "a" * 50 + ". " + "b" * 100

    chunks = split(text, 60, 0, boundary_tolerance=15)

    assert chunks[0].text == "a" * 50 + ". "
    assert chunks[1].span.start == 52


def test_cut_prefers_paragraph_over_sentence():
    text = "a" * 40 + "\n\n" + "b" * 10 + ". " + "c" * 100

    chunks = split(text, 60, 0, boundary_tolerance=25)

    assert chunks[0].span.end == 42


def test_hard_cut_without_boundary():
    chunks = split("x" * 150, 100, 10)

    assert chunks[0].span.end == 100
    assert chunks[1].span.start == 90


def test_empty_input_yields_no_chunks_and_short_input_one():
    assert split("", 100, 10) == []

    chunks = split("hi", 100, 10)
    assert len(chunks) == 1
    assert chunks[0].text == "hi"


@pytest.mark.parametrize(
    "max_chunk_size, overlap",
    [(100, 100), (100, 150), (0, 0), (100, -1)],
)
def test_invalid_window_configuration_rejected(max_chunk_size, overlap):
    with pytest.raises(ValueError):
        split("some text", max_chunk_size, overlap)


def test_tolerance_leaves_room_to_advance():
    config = ChunkingConfig(max_chunk_size=10, overlap=8, boundary_tolerance=5)

    assert config.effective_tolerance == 1


def test_reconstruct_rejects_gaps():
    chunks = split("x" * 300, 100, 10)

    with pytest.raises(ValueError):
        reconstruct([chunks[0], chunks[2]])
