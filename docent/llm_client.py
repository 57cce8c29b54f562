"""OpenAI-compatible model clients (embeddings and chat) with error mapping."""
import json
from typing import AsyncIterator, Dict, List, Optional

import httpx
import structlog
from pydantic import BaseModel, ValidationError

from docent import config
from docent.errors import (
    EmbeddingServiceError,
    GenerationServiceError,
    ServiceErrorKind,
)

logger = structlog.get_logger()

DONE_MARKER = "[DONE]"


class EmbeddingItem(BaseModel):
    index: int
    embedding: List[float]


class EmbeddingResponse(BaseModel):
    data: List[EmbeddingItem]
    model: Optional[str] = None


class ChatDelta(BaseModel):
    content: Optional[str] = None


class ChatChoice(BaseModel):
    index: int = 0
    delta: ChatDelta = ChatDelta()
    finish_reason: Optional[str] = None


class ChatChunk(BaseModel):
    choices: List[ChatChoice] = []


def classify_status(status_code: int) -> ServiceErrorKind:
    """Map an HTTP status code to a service error kind."""
    if status_code == 429:
        return ServiceErrorKind.RATE_LIMITED
    if status_code in (408, 409) or status_code >= 500:
        return ServiceErrorKind.TRANSIENT
    return ServiceErrorKind.PERMANENT


def _retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("retry-after")
    if value is None:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


async def _raise_for_status(
    response: httpx.Response, error_cls: type, service: str
) -> None:
    """Raise a typed service error for a non-2xx response."""
    if response.is_success:
        return

    await response.aread()
    kind = classify_status(response.status_code)
    detail = response.text[:300]

    logger.error(
        f"{service}_http_error",
        status_code=response.status_code,
        kind=kind.value,
        detail=detail,
    )

    raise error_cls(
        f"{service} request failed with HTTP {response.status_code}: {detail}",
        kind=kind,
        status_code=response.status_code,
        retry_after=_retry_after(response),
    )


class _BaseClient:
    """Shared connection settings for the OpenAI-compatible endpoints."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        model: str,
        timeout: float = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.model = model
        self.timeout = timeout if timeout is not None else config.REQUEST_TIMEOUT
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout,
            transport=self._transport,
            headers=self._headers(),
        )


class EmbeddingClient(_BaseClient):
    """Async client for a batch embeddings endpoint."""

    def __init__(
        self,
        base_url: str = None,
        api_key: str = None,
        model: str = None,
        timeout: float = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(
            base_url=base_url or config.EMBEDDING_BASE_URL,
            api_key=api_key if api_key is not None else config.EMBEDDING_API_KEY,
            model=model or config.EMBEDDING_MODEL,
            timeout=timeout,
            transport=transport,
        )

    async def embed_texts(self, texts: List[str]) -> List[List[float]]:
        """Embed a batch of texts in one request.

        Args:
            texts: Texts to embed

        Returns:
            One vector per input text, in input order

        Raises:
            EmbeddingServiceError: On HTTP, transport or payload errors
        """
        if not texts:
            return []

        payload = {"model": self.model, "input": texts}

        try:
            async with self._client() as client:
                logger.debug(
                    "embedding_request",
                    model=self.model,
                    batch_size=len(texts),
                )
                response = await client.post(f"{self.base_url}/embeddings", json=payload)
                await _raise_for_status(response, EmbeddingServiceError, "embedding")
                data = response.json()
        except httpx.TransportError as e:
            logger.error("embedding_connection_error", error=str(e), base_url=self.base_url)
            raise EmbeddingServiceError(
                f"Embedding service unreachable: {e}", kind=ServiceErrorKind.TRANSIENT
            ) from e

        try:
            parsed = EmbeddingResponse.model_validate(data)
        except ValidationError as e:
            raise EmbeddingServiceError(
                f"Malformed embedding response: {e}", kind=ServiceErrorKind.PERMANENT
            ) from e

        if len(parsed.data) != len(texts):
            raise EmbeddingServiceError(
                f"Embedding response has {len(parsed.data)} items for {len(texts)} inputs",
                kind=ServiceErrorKind.TRANSIENT,
            )

        vectors = [item.embedding for item in sorted(parsed.data, key=lambda i: i.index)]

        logger.debug(
            "embedding_response",
            model=self.model,
            batch_size=len(vectors),
            dimension=len(vectors[0]) if vectors else 0,
        )

        return vectors


class ChatClient(_BaseClient):
    """Async client for streaming chat completions."""

    def __init__(
        self,
        base_url: str = None,
        api_key: str = None,
        model: str = None,
        timeout: float = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        temperature: Optional[float] = None,
    ):
        super().__init__(
            base_url=base_url or config.CHAT_BASE_URL,
            api_key=api_key if api_key is not None else config.CHAT_API_KEY,
            model=model or config.CHAT_MODEL,
            timeout=timeout,
            transport=transport,
        )
        self.temperature = temperature

    async def stream_chat(
        self, messages: List[Dict[str, str]], max_tokens: int = None
    ) -> AsyncIterator[str]:
        """Stream a chat completion as text deltas.

        The HTTP response is closed when the generator is closed or cancelled,
        so abandoning the stream aborts the request.

        Args:
            messages: List of message dicts with 'role' and 'content'
            max_tokens: Maximum tokens to generate (default from config)

        Yields:
            Non-empty text deltas in arrival order

        Raises:
            GenerationServiceError: On HTTP or transport errors, malformed
                events, or a stream that ends without the terminal marker
        """
        payload = {
            "model": self.model,
            "messages": messages,
            "stream": True,
            "max_tokens": max_tokens or config.MAX_ANSWER_TOKENS,
        }
        if self.temperature is not None:
            payload["temperature"] = self.temperature

        logger.info(
            "chat_stream_request",
            model=self.model,
            message_count=len(messages),
        )

        finished = False
        try:
            async with self._client() as client:
                async with client.stream(
                    "POST", f"{self.base_url}/chat/completions", json=payload
                ) as response:
                    await _raise_for_status(response, GenerationServiceError, "chat")

                    async for line in response.aiter_lines():
                        delta, done = self._parse_event(line)
                        if done:
                            finished = True
                            break
                        if delta:
                            yield delta
        except httpx.TransportError as e:
            logger.error("chat_connection_error", error=str(e), base_url=self.base_url)
            raise GenerationServiceError(
                f"Chat service unreachable: {e}", kind=ServiceErrorKind.TRANSIENT
            ) from e

        if not finished:
            raise GenerationServiceError(
                "Chat stream ended without a terminal marker",
                kind=ServiceErrorKind.TRANSIENT,
            )

        logger.info("chat_stream_completed", model=self.model)

    @staticmethod
    def _parse_event(line: str):
        """Parse one server-sent-event line into (delta, done)."""
        line = line.strip()
        if not line or line.startswith(":") or not line.startswith("data:"):
            return None, False

        data = line[len("data:"):].strip()
        if data == DONE_MARKER:
            return None, True

        try:
            chunk = ChatChunk.model_validate(json.loads(data))
        except (json.JSONDecodeError, ValidationError) as e:
            raise GenerationServiceError(
                f"Malformed chat stream event: {e}", kind=ServiceErrorKind.PERMANENT
            ) from e

        if not chunk.choices:
            return None, False
        return chunk.choices[0].delta.content, False

    async def chat(self, messages: List[Dict[str, str]], max_tokens: int = None) -> str:
        """Run a chat completion and return the full text."""
        parts = []
        async for delta in self.stream_chat(messages, max_tokens=max_tokens):
            parts.append(delta)
        return "".join(parts)
