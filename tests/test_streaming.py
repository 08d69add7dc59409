import asyncio

import pytest

from docqa.models import Citation
from docqa.prompt_builder import build_prompt
from docqa.providers import EchoGenerationProvider, GenerationChunk
from docqa.retrieval import RetrievalResult
from docqa.streaming import AnswerStreamer, CitationTracker, StreamEvent, StreamEventType

from doubles import ScriptedGenerationProvider, make_hit

PARIS = make_hit("Paris is the capital of France.", rank=1, ordinal=0)
BERLIN = make_hit("Berlin is the capital of Germany.", rank=2, ordinal=1)


def _retrieval(*hits):
    return RetrievalResult(chunks=hits, context="\n\n".join(hit.chunk.text for hit in hits), included=hits)


def _track(pieces, hits=(PARIS, BERLIN)):
    tracker = CitationTracker(build_prompt("Which capitals?", list(hits)))
    attributed = [
        tracker.feed(piece if isinstance(piece, GenerationChunk) else GenerationChunk(piece))
        for piece in pieces
    ]
    return tracker, attributed


async def _collect(stream):
    return [event async for event in stream]


def test_inline_markers_open_citation_spans():
    tracker, attributed = _track(["[1]", " Paris", " is", " nice", " [2]", " Berlin"])

    assert tracker.answer == "[1] Paris is nice [2] Berlin"
    assert tracker.finish() == (
        Citation(0, 18, (PARIS.chunk.id,), (1,)),
        Citation(18, 28, (BERLIN.chunk.id,), (2,)),
    )
    assert attributed[:4] == [(PARIS.chunk.id,)] * 4
    assert attributed[4:] == [(BERLIN.chunk.id,)] * 2


def test_unmarked_text_falls_back_to_all_passages():
    tracker, attributed = _track(["The", " answer"])

    both = (PARIS.chunk.id, BERLIN.chunk.id)
    assert tracker.finish() == (Citation(0, 10, both, ()),)
    assert attributed == [both, both]


def test_explicit_sources_take_precedence():
    tracker, _ = _track(
        [GenerationChunk("Berlin", sources=(2,)), GenerationChunk(" and Paris [2]", sources=(1,))]
    )

    assert tracker.finish() == (
        Citation(0, 6, (BERLIN.chunk.id,), (2,)),
        Citation(6, 20, (PARIS.chunk.id,), (1,)),
    )


def test_unknown_markers_are_ignored():
    tracker, attributed = _track(["[7]", " guess"])

    both = (PARIS.chunk.id, BERLIN.chunk.id)
    assert tracker.finish() == (Citation(0, 9, both, ()),)
    assert attributed == [both, both]


def test_marker_split_across_tokens_is_recognised():
    tracker, attributed = _track(["Intro", " [", "2", "]", " text"])

    both = (PARIS.chunk.id, BERLIN.chunk.id)
    assert tracker.finish() == (
        Citation(0, 6, both, ()),
        Citation(6, 14, (BERLIN.chunk.id,), (2,)),
    )
    assert attributed[3] == (BERLIN.chunk.id,)


def test_marker_deep_in_long_answer_keeps_absolute_offsets():
    tracker, attributed = _track(["word "] * 400 + ["[", "1", "]", " Paris"])

    both = (PARIS.chunk.id, BERLIN.chunk.id)
    assert tracker.finish() == (
        Citation(0, 2000, both, ()),
        Citation(2000, 2009, (PARIS.chunk.id,), (1,)),
    )
    assert attributed[399] == both
    assert attributed[-1] == (PARIS.chunk.id,)


def test_event_serialisation():
    token = StreamEvent(StreamEventType.TOKEN, text="hi", chunk_ids=("c1",))
    citations = StreamEvent(StreamEventType.CITATIONS, citations=(Citation(0, 2, ("c1",), (1,)),))

    assert token.to_dict() == {"event": "token", "data": {"text": "hi", "chunk_ids": ["c1"]}}
    assert citations.to_dict()["data"]["citations"] == [
        {"start": 0, "end": 2, "chunk_ids": ["c1"], "markers": [1]}
    ]
    assert StreamEvent(StreamEventType.DONE).to_dict() == {"event": "done", "data": {}}
    assert StreamEventType.CANCELLED.is_terminal
    assert not StreamEventType.TOKEN.is_terminal


@pytest.mark.anyio
async def test_stream_relays_tokens_then_citations_and_done():
    provider = ScriptedGenerationProvider(["[1]", " Paris", " [2]", " Berlin"])
    streamer = AnswerStreamer(provider)

    events = await _collect(streamer.stream("Which capitals?", _retrieval(PARIS, BERLIN)))

    assert [event.type for event in events] == [StreamEventType.TOKEN] * 4 + [
        StreamEventType.CITATIONS,
        StreamEventType.DONE,
    ]
    assert "".join(event.text for event in events[:4]) == "[1] Paris [2] Berlin"
    assert [citation.chunk_ids for citation in events[4].citations] == [
        (PARIS.chunk.id,),
        (BERLIN.chunk.id,),
    ]
    assert "[1] Paris is the capital of France." in provider.prompts[0]
    assert provider.closed


@pytest.mark.anyio
async def test_empty_retrieval_answers_insufficient_context_without_generation():
    provider = ScriptedGenerationProvider(["should not be used"])
    streamer = AnswerStreamer(provider)

    events = await _collect(streamer.stream("Anything?", RetrievalResult()))

    assert [event.type for event in events] == [StreamEventType.INSUFFICIENT_CONTEXT]
    assert events[0].code == "insufficient_context"
    assert provider.prompts == []


@pytest.mark.anyio
async def test_provider_failure_ends_with_error_event():
    provider = ScriptedGenerationProvider(["a", " b", " c"], fail_after=2)
    streamer = AnswerStreamer(provider)

    events = await _collect(streamer.stream("Q?", _retrieval(PARIS)))

    assert [event.type for event in events] == [
        StreamEventType.TOKEN,
        StreamEventType.TOKEN,
        StreamEventType.ERROR,
    ]
    assert events[-1].code == "generation_failed"
    assert provider.closed


@pytest.mark.anyio
async def test_cancel_between_tokens_stops_generation():
    provider = ScriptedGenerationProvider([f" word{index}" for index in range(20)], delay=0.01)
    streamer = AnswerStreamer(provider)
    cancel = asyncio.Event()
    events = []

    async for event in streamer.stream("Q?", _retrieval(PARIS), cancel_event=cancel):
        events.append(event)
        if len(events) == 3:
            cancel.set()

    assert [event.type for event in events] == [StreamEventType.TOKEN] * 3 + [StreamEventType.CANCELLED]
    assert provider.produced == 3
    assert provider.closed


@pytest.mark.anyio
async def test_cancel_while_waiting_for_provider():
    provider = ScriptedGenerationProvider(["first", " second", " third"], delay=0.2)
    streamer = AnswerStreamer(provider, grace_seconds=1.0)
    cancel = asyncio.Event()
    loop = asyncio.get_running_loop()
    events = []

    async for event in streamer.stream("Q?", _retrieval(PARIS), cancel_event=cancel):
        events.append(event)
        if event.type is StreamEventType.TOKEN:
            loop.call_later(0.05, cancel.set)

    assert [event.type for event in events] == [StreamEventType.TOKEN, StreamEventType.CANCELLED]
    assert provider.produced == 1
    assert provider.closed


@pytest.mark.anyio
async def test_closing_the_stream_closes_the_provider():
    provider = ScriptedGenerationProvider(["one", " two", " three"])
    stream = AnswerStreamer(provider).stream("Q?", _retrieval(PARIS))

    first = await stream.__anext__()
    await stream.aclose()

    assert first.type is StreamEventType.TOKEN
    assert provider.closed
    assert provider.produced == 1


@pytest.mark.anyio
async def test_echo_provider_answer_cites_first_passage():
    streamer = AnswerStreamer(EchoGenerationProvider(max_words=3))

    events = await _collect(streamer.stream("Q?", _retrieval(PARIS, BERLIN)))

    tokens = [event for event in events if event.type is StreamEventType.TOKEN]
    assert "".join(event.text for event in tokens) == "[1] Paris is the"
    citations = events[-2].citations
    assert [citation.chunk_ids for citation in citations] == [(PARIS.chunk.id,)]
