"""Answer orchestration: retrieve context, assemble a prompt, stream the answer.

A query moves through PENDING -> RETRIEVING -> CONTEXT_ASSEMBLED ->
GENERATING and ends in COMPLETED, FAILED or CANCELLED. Every transition and
every streamed delta is reported to an AnswerSink. Failures are terminal:
retrieval is never restarted after generation fails.
"""
import asyncio
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator, Dict, List, Optional, Protocol

import structlog

from docent import config
from docent.errors import (
    DocentError,
    EmbeddingServiceError,
    GenerationServiceError,
    RetrievalUnavailable,
)
from docent.rag.chunker import TokenCounter
from docent.rag.embedder import build_retrying
from docent.rag.models import RetrievedChunk
from docent.rag.retriever import Retriever

logger = structlog.get_logger()

SYSTEM_PROMPT = """You are a documentation assistant for a software project.
Answer the user's question using the project documents below. Each document
excerpt starts with a [Source n: ...] header.

Guidelines:
- Base your answer on the excerpts; say so when they don't cover the question
- Mention the source numbers you relied on
- Be concise and use markdown formatting where it helps

{context}"""

NO_CONTEXT = (
    "No relevant information was found in the project documents for this question. "
    "Tell the user that, and answer from general knowledge only if you are confident."
)

CODE_SECTION = "Relevant code:\n{code}"

NO_CHANGE_MARKER = "NO CODE CHANGES NEEDED"

CODE_REVIEW_PROMPT = f"""You are a senior code assistant.
Decide from the user's question whether the given code needs to change.

Rules:
1) If no change is needed, output exactly: {NO_CHANGE_MARKER}
2) Otherwise output the complete modified code that can replace the original
   file, with no explanation, headings or extra text
3) Do not wrap the output in code fences"""

FENCE_LINE = re.compile(r"^```[^\n]*\n?")


class QueryState(str, Enum):
    PENDING = "pending"
    RETRIEVING = "retrieving"
    CONTEXT_ASSEMBLED = "context_assembled"
    GENERATING = "generating"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (QueryState.COMPLETED, QueryState.FAILED, QueryState.CANCELLED)


@dataclass
class Answer:
    """Result of one query: text, cited chunk ids and final state."""

    query: str
    text: str = ""
    citations: List[str] = field(default_factory=list)
    sources: List[dict] = field(default_factory=list)
    state: QueryState = QueryState.PENDING
    error: Optional[DocentError] = None
    context_truncated: bool = False
    code_patch: Optional[str] = None

    @property
    def completed(self) -> bool:
        return self.state is QueryState.COMPLETED

    @property
    def status(self) -> str:
        return self.state.value

    @property
    def error_kind(self) -> Optional[str]:
        if self.error is None:
            return None
        return type(self.error).__name__

    @property
    def error_message(self) -> Optional[str]:
        return str(self.error) if self.error is not None else None


class AnswerSink(Protocol):
    """Receiver of query progress, typically a UI."""

    def on_state(self, state: QueryState) -> None:
        ...

    def on_delta(self, text: str) -> None:
        ...

    def on_complete(self, answer: Answer) -> None:
        ...

    def on_cancelled(self) -> None:
        ...


class NullSink:
    def on_state(self, state: QueryState) -> None:
        pass

    def on_delta(self, text: str) -> None:
        pass

    def on_complete(self, answer: Answer) -> None:
        pass

    def on_cancelled(self) -> None:
        pass


class CollectingSink:
    """Sink that records everything it is told."""

    def __init__(self):
        self.states: List[QueryState] = []
        self.deltas: List[str] = []
        self.answer: Optional[Answer] = None
        self.cancelled = False

    def on_state(self, state: QueryState) -> None:
        self.states.append(state)

    def on_delta(self, text: str) -> None:
        self.deltas.append(text)

    def on_complete(self, answer: Answer) -> None:
        self.answer = answer

    def on_cancelled(self) -> None:
        self.cancelled = True

    @property
    def text(self) -> str:
        return "".join(self.deltas)


class GenerationBackend(Protocol):
    """Anything that streams a chat completion as text deltas."""

    def stream_chat(
        self, messages: List[Dict[str, str]], max_tokens: int = None
    ) -> AsyncIterator[str]:
        ...


@dataclass
class PromptContext:
    """Assembled prompt and the chunks that made it into the context."""

    messages: List[Dict[str, str]]
    included: List[RetrievedChunk]
    truncated: bool = False
    context_tokens: int = 0


def trim_history(
    history: Optional[List[Dict[str, str]]], max_chars: int
) -> List[Dict[str, str]]:
    """Keep the newest user/assistant turns whose content fits in ``max_chars``."""
    if not history:
        return []

    kept: List[Dict[str, str]] = []
    used = 0
    for message in reversed(history):
        if message.get("role") not in ("user", "assistant"):
            continue
        content = message.get("content") or ""
        if used + len(content) > max_chars:
            break
        kept.append({"role": message["role"], "content": content})
        used += len(content)

    kept.reverse()
    return kept


def strip_code_fences(text: str) -> str:
    """Remove a surrounding ``` fence (with optional language tag) or backtick pair."""
    stripped = text.strip()
    if stripped.startswith("```"):
        if "\n" not in stripped:
            return ""
        body = FENCE_LINE.sub("", stripped, count=1)
        end = body.rfind("```")
        if end >= 0:
            body = body[:end]
        return body.strip()
    if len(stripped) >= 2 and stripped.startswith("`") and stripped.endswith("`"):
        return stripped[1:-1]
    return stripped


class ContextBuilder:
    """Lays out retrieved chunks within a token budget."""

    def __init__(
        self,
        max_context_tokens: int = None,
        history_max_chars: int = None,
        min_partial_tokens: int = 32,
        counter: Optional[TokenCounter] = None,
    ):
        self.max_context_tokens = max_context_tokens or config.MAX_CONTEXT_TOKENS
        self.history_max_chars = (
            history_max_chars if history_max_chars is not None else config.HISTORY_MAX_CHARS
        )
        self.min_partial_tokens = min_partial_tokens
        self.counter = counter or TokenCounter()

    def build(
        self,
        query: str,
        results: List[RetrievedChunk],
        history: Optional[List[Dict[str, str]]] = None,
        code: Optional[str] = None,
    ) -> PromptContext:
        """Assemble chat messages for a query.

        Chunks are added in rank order; once one no longer fits it is
        truncated if enough budget remains, and everything ranked below it is
        dropped. The query and any code are always sent verbatim.

        Args:
            query: User query text
            results: Retrieved chunks in rank order
            history: Optional earlier turns (role/content dicts)
            code: Optional code the question is about, sent verbatim after
                the document excerpts

        Returns:
            PromptContext with messages and included chunks
        """
        code_section = CODE_SECTION.format(code=code) if code and code.strip() else ""
        budget = (
            self.max_context_tokens
            - self.counter.count(SYSTEM_PROMPT.format(context=""))
            - self.counter.count(query)
            - self.counter.count(code_section)
        )

        blocks: List[str] = []
        included: List[RetrievedChunk] = []
        truncated = False
        used = 0

        for result in results:
            header = f"[Source {len(included) + 1}: {result.source}]"
            body = result.chunk.text.strip()
            header_tokens = self.counter.count(header)
            body_tokens = self.counter.count(body)
            remaining = budget - used

            if header_tokens + body_tokens <= remaining:
                blocks.append(f"{header}\n{body}")
                included.append(result)
                used += header_tokens + body_tokens
                continue

            if remaining - header_tokens >= self.min_partial_tokens:
                partial = self.counter.truncate(body, remaining - header_tokens)
                blocks.append(f"{header}\n{partial} ...")
                included.append(result)
                used += header_tokens + self.counter.count(partial)
            truncated = True
            break

        context = "\n\n".join(blocks) if blocks else NO_CONTEXT
        system = SYSTEM_PROMPT.format(context=context)
        if code_section:
            system = f"{system}\n\n{code_section}"
        messages = [{"role": "system", "content": system}]
        messages.extend(trim_history(history, self.history_max_chars))
        messages.append({"role": "user", "content": query})

        if truncated:
            logger.info(
                "context_truncated",
                retrieved=len(results),
                included=len(included),
                budget=budget,
            )

        return PromptContext(
            messages=messages,
            included=included,
            truncated=truncated,
            context_tokens=used,
        )


class QueryHandle:
    """A running query that can be awaited or cancelled."""

    def __init__(self, task: "asyncio.Task", answer: Answer):
        self._task = task
        self._answer = answer

    @property
    def state(self) -> QueryState:
        return self._answer.state

    def cancel(self) -> bool:
        """Abort the query at whatever state it is in."""
        return self._task.cancel()

    def done(self) -> bool:
        return self._task.done()

    async def result(self) -> Answer:
        """Wait for the query; a cancelled query returns its CANCELLED answer."""
        try:
            return await self._task
        except asyncio.CancelledError:
            if not self._task.cancelled():
                raise
            return self._answer


class AnswerOrchestrator:
    """Runs queries end to end against a retriever and a generation backend."""

    def __init__(
        self,
        retriever: Retriever,
        generator: GenerationBackend,
        context_builder: Optional[ContextBuilder] = None,
        max_answer_tokens: int = None,
        max_attempts: int = None,
        initial_wait: float = None,
        max_wait: float = None,
    ):
        """Initialize the orchestrator.

        Args:
            retriever: Retriever for query context
            generator: Streaming chat backend
            context_builder: Prompt assembly (default: configured ContextBuilder)
            max_answer_tokens: Generation cap (default from config)
            max_attempts: Attempt cap for generation before output starts
            initial_wait: First backoff delay in seconds
            max_wait: Backoff ceiling in seconds
        """
        self.retriever = retriever
        self.generator = generator
        self.context_builder = context_builder or ContextBuilder()
        self.max_answer_tokens = max_answer_tokens or config.MAX_ANSWER_TOKENS
        self.max_attempts = max_attempts or config.RETRY_MAX_ATTEMPTS
        self.initial_wait = initial_wait if initial_wait is not None else config.RETRY_INITIAL_WAIT
        self.max_wait = max_wait if max_wait is not None else config.RETRY_MAX_WAIT

    async def answer(
        self,
        query: str,
        sink: Optional[AnswerSink] = None,
        history: Optional[List[Dict[str, str]]] = None,
        k: Optional[int] = None,
        min_score: Optional[float] = None,
        code: Optional[str] = None,
    ) -> Answer:
        """Answer a query, reporting progress to ``sink``.

        When ``code`` is given it is added to the prompt, and after the answer
        a second call decides whether the code should change; a suggested
        replacement ends up in ``Answer.code_patch``.

        Returns:
            Answer in COMPLETED or FAILED state

        Raises:
            asyncio.CancelledError: If the calling task is cancelled (the
                sink is notified first)
        """
        answer = Answer(query=query)
        return await self._run(answer, sink or NullSink(), history, k, min_score, code)

    def submit(
        self,
        query: str,
        sink: Optional[AnswerSink] = None,
        history: Optional[List[Dict[str, str]]] = None,
        k: Optional[int] = None,
        min_score: Optional[float] = None,
        code: Optional[str] = None,
    ) -> QueryHandle:
        """Start a query in the background; must be called from a running loop."""
        answer = Answer(query=query)
        task = asyncio.create_task(
            self._run(answer, sink or NullSink(), history, k, min_score, code)
        )
        return QueryHandle(task, answer)

    async def _run(
        self,
        answer: Answer,
        sink: AnswerSink,
        history: Optional[List[Dict[str, str]]],
        k: Optional[int],
        min_score: Optional[float],
        code: Optional[str] = None,
    ) -> Answer:
        self._transition(answer, sink, QueryState.PENDING)

        try:
            self._transition(answer, sink, QueryState.RETRIEVING)
            try:
                results = await self.retriever.retrieve(answer.query, k=k, min_score=min_score)
            except EmbeddingServiceError as e:
                raise RetrievalUnavailable(e) from e

            prompt = self.context_builder.build(answer.query, results, history, code)
            answer.citations = [r.chunk_id for r in prompt.included]
            answer.sources = [r.to_source_dict() for r in prompt.included]
            answer.context_truncated = prompt.truncated
            self._transition(answer, sink, QueryState.CONTEXT_ASSEMBLED)

            self._transition(answer, sink, QueryState.GENERATING)
            await self._generate(prompt.messages, answer, sink)
            if code and code.strip():
                answer.code_patch = await self._review_code(answer.query, code)

        except asyncio.CancelledError:
            self._transition(answer, sink, QueryState.CANCELLED)
            sink.on_cancelled()
            raise

        except (RetrievalUnavailable, GenerationServiceError) as e:
            answer.error = e
            logger.error(
                "query_failed",
                error=str(e),
                error_type=type(e).__name__,
                partial_length=len(answer.text),
            )
            self._transition(answer, sink, QueryState.FAILED)
            return answer

        self._transition(answer, sink, QueryState.COMPLETED)
        sink.on_complete(answer)

        logger.info(
            "query_completed",
            answer_length=len(answer.text),
            citations=len(answer.citations),
            code_patch=answer.code_patch is not None,
        )

        return answer

    async def _generate(
        self, messages: List[Dict[str, str]], answer: Answer, sink: AnswerSink
    ) -> None:
        parts: List[str] = []

        # Once output reached the caller a retry would duplicate it
        retrying = build_retrying(
            self.max_attempts,
            self.initial_wait,
            self.max_wait,
            "generation_retry",
            allow=lambda: not parts,
        )

        async for attempt in retrying:
            with attempt:
                stream = self.generator.stream_chat(messages, max_tokens=self.max_answer_tokens)
                try:
                    async for delta in stream:
                        parts.append(delta)
                        sink.on_delta(delta)
                finally:
                    answer.text = "".join(parts)
                    aclose = getattr(stream, "aclose", None)
                    if aclose is not None:
                        await aclose()

    async def _review_code(self, query: str, code: str) -> Optional[str]:
        """Ask whether ``code`` should change; returns the replacement or None.

        A failed review leaves the answer intact and is only logged.
        """
        messages = [
            {"role": "system", "content": CODE_REVIEW_PROMPT},
            {
                "role": "user",
                "content": f"Question:\n{query}\n\nCode to review:\n{code}",
            },
        ]
        retrying = build_retrying(
            self.max_attempts, self.initial_wait, self.max_wait, "code_review_retry"
        )

        try:
            async for attempt in retrying:
                with attempt:
                    parts: List[str] = []
                    stream = self.generator.stream_chat(
                        messages, max_tokens=self.max_answer_tokens
                    )
                    try:
                        async for delta in stream:
                            parts.append(delta)
                    finally:
                        aclose = getattr(stream, "aclose", None)
                        if aclose is not None:
                            await aclose()
        except GenerationServiceError as e:
            logger.warning("code_review_failed", error=str(e), kind=e.kind.value)
            return None

        patch = strip_code_fences("".join(parts))
        if not patch or NO_CHANGE_MARKER in patch:
            logger.info("code_review_no_change")
            return None
        logger.info("code_review_suggested_patch", patch_length=len(patch))
        return patch

    @staticmethod
    def _transition(answer: Answer, sink: AnswerSink, state: QueryState) -> None:
        answer.state = state
        logger.debug("query_state_changed", state=state.value)
        sink.on_state(state)
