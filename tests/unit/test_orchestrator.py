"""Tests for answer orchestration: states, streaming, citations, failures."""
import asyncio

import pytest

from docent.errors import (
    GenerationServiceError,
    RetrievalUnavailable,
    ServiceErrorKind,
)
from docent.rag.chunker import TokenCounter
from docent.rag.models import Chunk, RetrievedChunk
from docent.rag.orchestrator import (
    CODE_REVIEW_PROMPT,
    NO_CHANGE_MARKER,
    NO_CONTEXT,
    AnswerOrchestrator,
    CollectingSink,
    ContextBuilder,
    QueryState,
    strip_code_fences,
    trim_history,
)

HAPPY_PATH = [
    QueryState.PENDING,
    QueryState.RETRIEVING,
    QueryState.CONTEXT_ASSEMBLED,
    QueryState.GENERATING,
    QueryState.COMPLETED,
]


@pytest.fixture
def orchestrator(retriever, chat_backend):
    return AnswerOrchestrator(retriever, chat_backend, initial_wait=0, max_wait=0, max_attempts=3)


def _retrieved(rank, text, path="/docs/a.md", labels=("page 1",)):
    chunk = Chunk(
        id=f"chunk-{rank}",
        document_key="doc",
        text=text,
        start=0,
        end=len(text),
        index=rank - 1,
        labels=labels,
    )
    return RetrievedChunk(chunk=chunk, score=1.0 - rank / 100, rank=rank, source_path=path)


@pytest.mark.asyncio
async def test_answer_streams_and_cites_context(
    orchestrator, pipeline, chat_backend, make_document, make_text
):
    await pipeline.ingest(make_document(make_text(3)))
    sink = CollectingSink()

    answer = await orchestrator.answer("Which build step mentions tool1?", sink=sink, min_score=0.0)

    assert answer.state is QueryState.COMPLETED
    assert sink.states == HAPPY_PATH
    assert sink.deltas == ["The answer ", "is 42."]
    assert answer.text == "The answer is 42."
    assert sink.answer is answer
    assert answer.citations
    assert [s["chunk_id"] for s in answer.sources] == answer.citations

    system, user = chat_backend.requests[0][0], chat_backend.requests[0][-1]
    assert user == {"role": "user", "content": "Which build step mentions tool1?"}
    assert "[Source 1: " in system["content"]


@pytest.mark.asyncio
async def test_no_context_is_a_valid_state(orchestrator, chat_backend):
    sink = CollectingSink()

    answer = await orchestrator.answer("Anything at all?", sink=sink)

    assert answer.state is QueryState.COMPLETED
    assert answer.citations == []
    assert NO_CONTEXT in chat_backend.requests[0][0]["content"]


@pytest.mark.asyncio
async def test_embedding_outage_fails_with_retrieval_unavailable(
    orchestrator, pipeline, index, embedding_backend, chat_backend, make_document
):
    await pipeline.ingest(make_document("Indexed content about releases."))
    ids_before = index.ids()
    embedding_backend.down = True
    sink = CollectingSink()

    answer = await orchestrator.answer("releases?", sink=sink)

    assert answer.state is QueryState.FAILED
    assert isinstance(answer.error, RetrievalUnavailable)
    assert answer.error.cause.kind is ServiceErrorKind.TRANSIENT
    assert sink.states == [QueryState.PENDING, QueryState.RETRIEVING, QueryState.FAILED]
    assert chat_backend.requests == []
    assert index.ids() == ids_before


@pytest.mark.asyncio
async def test_transient_generation_failure_before_output_is_retried(orchestrator, chat_backend):
    chat_backend.failures = [GenerationServiceError("busy", kind=ServiceErrorKind.TRANSIENT)]

    answer = await orchestrator.answer("question")

    assert answer.state is QueryState.COMPLETED
    assert len(chat_backend.requests) == 2


@pytest.mark.asyncio
async def test_permanent_generation_failure_is_terminal(orchestrator, chat_backend):
    chat_backend.failures = [GenerationServiceError("bad request", kind=ServiceErrorKind.PERMANENT)]
    sink = CollectingSink()

    answer = await orchestrator.answer("question", sink=sink)

    assert answer.state is QueryState.FAILED
    assert answer.error.kind is ServiceErrorKind.PERMANENT
    assert len(chat_backend.requests) == 1
    assert sink.answer is None


@pytest.mark.asyncio
async def test_failure_after_output_began_is_not_retried(orchestrator, chat_backend):
    chat_backend.deltas = ["partial ", "answer"]
    chat_backend.fail_after = 1

    answer = await orchestrator.answer("question")

    assert answer.state is QueryState.FAILED
    assert answer.text == "partial "
    assert len(chat_backend.requests) == 1


@pytest.mark.asyncio
async def test_cancel_during_generation_closes_stream(orchestrator, chat_backend):
    chat_backend.hold = asyncio.Event()
    sink = CollectingSink()

    handle = orchestrator.submit("question", sink=sink)
    while not sink.deltas:
        await asyncio.sleep(0)
    assert handle.state is QueryState.GENERATING

    assert handle.cancel()
    answer = await handle.result()

    assert answer.state is QueryState.CANCELLED
    assert sink.cancelled
    assert sink.states[-1] is QueryState.CANCELLED
    assert chat_backend.closed == 1
    assert answer.text == "The answer "


@pytest.mark.asyncio
async def test_cancel_during_retrieval(orchestrator, embedding_backend, pipeline, make_document):
    await pipeline.ingest(make_document("Indexed content."))
    embedding_backend.delay = 1.0
    sink = CollectingSink()

    handle = orchestrator.submit("question", sink=sink)
    await asyncio.sleep(0.01)
    handle.cancel()
    answer = await handle.result()

    assert answer.state is QueryState.CANCELLED
    assert QueryState.GENERATING not in sink.states


@pytest.mark.asyncio
async def test_submitted_query_completes(orchestrator):
    handle = orchestrator.submit("question")

    answer = await handle.result()

    assert answer.completed
    assert handle.done()


def test_context_builder_drops_lowest_ranked_first():
    counter = TokenCounter()
    results = [_retrieved(rank, f"chunk {rank} " + "word " * 60) for rank in range(1, 6)]
    builder = ContextBuilder(max_context_tokens=400, min_partial_tokens=1000)

    prompt = builder.build("what?", results)

    assert prompt.truncated
    assert 0 < len(prompt.included) < 5
    assert [r.rank for r in prompt.included] == list(range(1, len(prompt.included) + 1))
    assert prompt.context_tokens <= 400 - counter.count("what?")
    assert prompt.messages[-1]["content"] == "what?"


def test_context_builder_truncates_partial_chunk():
    results = [_retrieved(1, "alpha " * 50), _retrieved(2, "beta " * 200)]
    builder = ContextBuilder(max_context_tokens=250, min_partial_tokens=10)

    prompt = builder.build("q", results)

    assert [r.rank for r in prompt.included] == [1, 2]
    assert prompt.truncated
    system = prompt.messages[0]["content"]
    assert "beta ..." in system
    assert system.count("beta") < 200


def test_context_builder_always_keeps_query_verbatim():
    long_query = "why " * 500
    builder = ContextBuilder(max_context_tokens=100)

    prompt = builder.build(long_query, [_retrieved(1, "some context")])

    assert prompt.included == []
    assert prompt.messages[-1]["content"] == long_query


def test_source_headers_include_location():
    builder = ContextBuilder(max_context_tokens=1000)

    prompt = builder.build("q", [_retrieved(1, "text", path="/docs/manual.pdf", labels=("page 3",))])

    assert "[Source 1: /docs/manual.pdf | page 3]" in prompt.messages[0]["content"]


def test_trim_history_keeps_newest_turns():
    history = [
        {"role": "user", "content": "a" * 50},
        {"role": "assistant", "content": "b" * 50},
        {"role": "system", "content": "ignored"},
        {"role": "user", "content": "c" * 50},
    ]

    trimmed = trim_history(history, max_chars=120)

    assert [m["content"][0] for m in trimmed] == ["b", "c"]
    assert trim_history(None, 100) == []


def test_history_is_placed_between_system_and_query():
    builder = ContextBuilder(max_context_tokens=1000, history_max_chars=1000)
    history = [{"role": "user", "content": "earlier"}, {"role": "assistant", "content": "reply"}]

    prompt = builder.build("now", [], history)

    assert [m["role"] for m in prompt.messages] == ["system", "user", "assistant", "user"]


@pytest.mark.asyncio
async def test_generation_rate_limit_is_retried(orchestrator, chat_backend):
    chat_backend.failures = [
        GenerationServiceError("rate", kind=ServiceErrorKind.RATE_LIMITED),
        GenerationServiceError("rate", kind=ServiceErrorKind.RATE_LIMITED),
    ]

    answer = await orchestrator.answer("question")

    assert answer.completed
    assert len(chat_backend.requests) == 3


@pytest.mark.asyncio
async def test_code_is_sent_and_suggested_patch_returned(orchestrator, chat_backend):
    chat_backend.replies = [["Guard it ", "with a lock."], ["```python\n", "count += 1\n", "```"]]
    sink = CollectingSink()

    answer = await orchestrator.answer("Is this thread safe?", sink=sink, code="count = count + 1")

    assert answer.completed
    assert answer.text == "Guard it with a lock."
    assert sink.text == answer.text
    assert answer.code_patch == "count += 1"
    assert chat_backend.requests[0][0]["content"].endswith("Relevant code:\ncount = count + 1")
    review = chat_backend.requests[1]
    assert review[0] == {"role": "system", "content": CODE_REVIEW_PROMPT}
    assert "count = count + 1" in review[1]["content"]


@pytest.mark.asyncio
async def test_code_review_without_changes(orchestrator, chat_backend):
    chat_backend.replies = [["Looks fine."], [NO_CHANGE_MARKER]]

    answer = await orchestrator.answer("Any bugs?", code="def f():\n    return 1\n")

    assert answer.completed
    assert answer.code_patch is None


@pytest.mark.asyncio
async def test_failed_code_review_keeps_answer(orchestrator, chat_backend):
    chat_backend.replies = [
        ["Here is why."],
        GenerationServiceError("bad request", kind=ServiceErrorKind.PERMANENT),
    ]

    answer = await orchestrator.answer("Why?", code="x = 1")

    assert answer.completed
    assert answer.text == "Here is why."
    assert answer.code_patch is None
    assert len(chat_backend.requests) == 2


@pytest.mark.asyncio
async def test_no_code_means_single_generation_call(orchestrator, chat_backend):
    answer = await orchestrator.answer("question", code="   ")

    assert answer.code_patch is None
    assert len(chat_backend.requests) == 1


def test_code_counts_against_context_budget():
    results = [_retrieved(1, "context " * 200)]
    builder = ContextBuilder(max_context_tokens=1000, min_partial_tokens=32)
    code = "x " * 900

    with_code = builder.build("q", results, code=code)
    without_code = builder.build("q", results)

    assert with_code.included == []
    assert with_code.truncated
    assert code.strip() in with_code.messages[0]["content"]
    assert [r.rank for r in without_code.included] == [1]


def test_strip_code_fences():
    assert strip_code_fences("```python\nprint(1)\n```") == "print(1)"
    assert strip_code_fences("```\na\nb\n```\n") == "a\nb"
    assert strip_code_fences("```") == ""
    assert strip_code_fences("`x = 1`") == "x = 1"
    assert strip_code_fences("  plain  ") == "plain"


@pytest.mark.asyncio
async def test_long_stream_is_assembled_in_order(orchestrator, chat_backend):
    chat_backend.deltas = [f"{i} " for i in range(5_000)]
    sink = CollectingSink()

    answer = await orchestrator.answer("count", sink=sink)

    assert answer.text == "".join(f"{i} " for i in range(5_000))
    assert len(sink.deltas) == 5_000
