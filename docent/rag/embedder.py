"""Embedding generation with batching, retries and per-item outcomes.

Texts are packed into requests bounded by item count and total characters.
Transient and rate-limited failures are retried with exponential backoff; a
permanent failure of a multi-item request is bisected so only the rejected
items fail.
"""
from dataclasses import dataclass
from typing import Callable, List, Optional, Protocol, Sequence

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from docent import config
from docent.errors import EmbeddingServiceError, ServiceError, ServiceErrorKind
from docent.rag.chunker import TokenCounter

logger = structlog.get_logger()


class EmbeddingBackend(Protocol):
    """Anything that embeds a batch of texts in one call."""

    async def embed_texts(self, texts: List[str]) -> List[List[float]]:
        ...


@dataclass(frozen=True)
class EmbeddingOutcome:
    """Result for one input text of a batch."""

    index: int
    vector: Optional[List[float]] = None
    error: Optional[EmbeddingServiceError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, ServiceError) and error.retryable


class _BackoffWait:
    """Exponential backoff with jitter that honours Retry-After hints."""

    def __init__(self, initial: float, maximum: float):
        self.maximum = maximum
        self._exponential = wait_exponential(multiplier=initial, max=maximum) + wait_random(
            0, initial
        )

    def __call__(self, retry_state: RetryCallState) -> float:
        wait = min(self._exponential(retry_state), self.maximum)
        error = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(error, ServiceError) and error.retry_after:
            wait = max(wait, min(error.retry_after, self.maximum))
        return wait


def build_retrying(
    max_attempts: int,
    initial_wait: float,
    max_wait: float,
    event: str,
    allow: Optional[Callable[[], bool]] = None,
) -> AsyncRetrying:
    """Retry policy for model service calls: retryable errors only, re-raise last.

    Args:
        max_attempts: Attempt cap, including the first call
        initial_wait: First backoff delay in seconds
        max_wait: Backoff ceiling in seconds
        event: Log event emitted before each retry
        allow: Optional predicate; when it returns False no further retry is made
    """

    def _should_retry(error: BaseException) -> bool:
        return _is_retryable(error) and (allow is None or allow())

    def _log_retry(retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            event,
            attempt=retry_state.attempt_number,
            error=str(error),
            kind=getattr(getattr(error, "kind", None), "value", None),
        )

    return AsyncRetrying(
        stop=stop_after_attempt(max_attempts),
        wait=_BackoffWait(initial_wait, max_wait),
        retry=retry_if_exception(_should_retry),
        before_sleep=_log_retry,
        reraise=True,
    )


class Embedder:
    """Maps texts to fixed-dimension vectors through an embedding backend."""

    def __init__(
        self,
        backend: EmbeddingBackend,
        batch_size: int = None,
        max_request_chars: int = None,
        max_input_tokens: int = None,
        max_attempts: int = None,
        initial_wait: float = None,
        max_wait: float = None,
        counter: Optional[TokenCounter] = None,
    ):
        """Initialize the embedder.

        Args:
            backend: Embedding service client
            batch_size: Maximum texts per request (default from config)
            max_request_chars: Maximum total characters per request (default from config)
            max_input_tokens: Texts above this token estimate are rejected
                without a call (default from config)
            max_attempts: Attempt cap for retryable failures (default from config)
            initial_wait: First backoff delay in seconds (default from config)
            max_wait: Backoff ceiling in seconds (default from config)
            counter: Token estimator
        """
        self.backend = backend
        self.batch_size = batch_size or config.EMBED_BATCH_SIZE
        self.max_request_chars = max_request_chars or config.EMBED_MAX_REQUEST_CHARS
        self.max_input_tokens = max_input_tokens or config.EMBED_MAX_INPUT_TOKENS
        self.max_attempts = max_attempts or config.RETRY_MAX_ATTEMPTS
        self.initial_wait = initial_wait if initial_wait is not None else config.RETRY_INITIAL_WAIT
        self.max_wait = max_wait if max_wait is not None else config.RETRY_MAX_WAIT
        self.counter = counter or TokenCounter()

        self.dimension: Optional[int] = None
        self.calls = 0

    async def embed(self, text: str) -> List[float]:
        """Embed a single text.

        Raises:
            EmbeddingServiceError: If the text could not be embedded
        """
        outcome = (await self.embed_batch([text]))[0]
        if outcome.error is not None:
            raise outcome.error
        return outcome.vector

    async def embed_batch(self, texts: Sequence[str]) -> List[EmbeddingOutcome]:
        """Embed many texts, reporting an outcome per input.

        Args:
            texts: Texts to embed

        Returns:
            One EmbeddingOutcome per text, in input order
        """
        outcomes: List[Optional[EmbeddingOutcome]] = [None] * len(texts)
        pending: List[int] = []

        for i, text in enumerate(texts):
            if not text or not text.strip():
                outcomes[i] = self._rejected(i, "empty input text")
            elif self.counter.count(text) > self.max_input_tokens:
                outcomes[i] = self._rejected(
                    i, f"input exceeds {self.max_input_tokens} tokens"
                )
            else:
                pending.append(i)

        for group in self._pack(pending, texts):
            for outcome in await self._embed_group(group, texts):
                outcomes[outcome.index] = outcome

        failed = sum(1 for o in outcomes if o is not None and not o.ok)
        logger.info(
            "embeddings_generated",
            requested=len(texts),
            failed=failed,
            calls=self.calls,
        )

        return outcomes

    def _pack(self, indices: List[int], texts: Sequence[str]) -> List[List[int]]:
        """Group indices into requests bounded by count and characters."""
        groups: List[List[int]] = []
        current: List[int] = []
        current_chars = 0

        for i in indices:
            size = len(texts[i])
            if current and (
                len(current) >= self.batch_size
                or current_chars + size > self.max_request_chars
            ):
                groups.append(current)
                current, current_chars = [], 0
            current.append(i)
            current_chars += size

        if current:
            groups.append(current)
        return groups

    async def _embed_group(
        self, group: List[int], texts: Sequence[str]
    ) -> List[EmbeddingOutcome]:
        try:
            vectors = await self._call([texts[i] for i in group])
        except EmbeddingServiceError as e:
            if e.kind is ServiceErrorKind.PERMANENT and len(group) > 1:
                # Isolate the rejected items
                middle = len(group) // 2
                logger.info("embedding_batch_bisected", size=len(group), error=str(e))
                return await self._embed_group(group[:middle], texts) + await self._embed_group(
                    group[middle:], texts
                )
            logger.error(
                "embedding_group_failed",
                size=len(group),
                kind=e.kind.value,
                error=str(e),
            )
            return [EmbeddingOutcome(index=i, error=e) for i in group]

        return [self._checked(i, vector) for i, vector in zip(group, vectors)]

    async def _call(self, texts: List[str]) -> List[List[float]]:
        retrying = build_retrying(
            self.max_attempts, self.initial_wait, self.max_wait, "embedding_retry"
        )
        async for attempt in retrying:
            with attempt:
                self.calls += 1
                return await self.backend.embed_texts(texts)

    def _checked(self, index: int, vector: List[float]) -> EmbeddingOutcome:
        if not vector:
            return self._rejected(index, "empty vector returned")
        if self.dimension is None:
            self.dimension = len(vector)
        elif len(vector) != self.dimension:
            return self._rejected(
                index, f"vector dimension {len(vector)} differs from {self.dimension}"
            )
        return EmbeddingOutcome(index=index, vector=list(vector))

    @staticmethod
    def _rejected(index: int, reason: str) -> EmbeddingOutcome:
        return EmbeddingOutcome(
            index=index,
            error=EmbeddingServiceError(reason, kind=ServiceErrorKind.PERMANENT),
        )
