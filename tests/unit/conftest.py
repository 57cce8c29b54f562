"""Shared fixtures: fake model backends and temporary stores."""
import asyncio
import re
import zlib
from typing import Callable, Dict, List, Optional

import pytest

from docent.errors import (
    EmbeddingServiceError,
    GenerationServiceError,
    ServiceErrorKind,
)
from docent.rag.chunker import TextChunker
from docent.rag.doc_store import DocumentStore
from docent.rag.embedder import Embedder
from docent.rag.ingest import IngestPipeline
from docent.rag.models import Document
from docent.rag.retriever import Retriever
from docent.rag.store import VectorIndex

DIMENSION = 32
WORD = re.compile(r"\w+")


def bag_of_words(text: str, dimension: int = DIMENSION) -> List[float]:
    """Deterministic embedding: word counts hashed into ``dimension`` buckets."""
    vector = [0.0] * dimension
    for word in WORD.findall(text.lower()):
        vector[zlib.crc32(word.encode("utf-8")) % dimension] += 1.0
    if not any(vector):
        vector[0] = 1.0
    return vector


class FakeEmbeddingBackend:
    """Embedding backend with call recording and failure injection."""

    def __init__(self, dimension: int = DIMENSION):
        self.dimension = dimension
        self.batches: List[List[str]] = []
        self.failures: List[EmbeddingServiceError] = []
        self.reject: Optional[Callable[[str], bool]] = None
        self.down = False
        self.delay = 0.0

    @property
    def calls(self) -> int:
        return len(self.batches)

    @property
    def embedded_texts(self) -> List[str]:
        return [text for batch in self.batches for text in batch]

    async def embed_texts(self, texts: List[str]) -> List[List[float]]:
        self.batches.append(list(texts))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.down:
            raise EmbeddingServiceError("service down", kind=ServiceErrorKind.TRANSIENT)
        if self.failures:
            raise self.failures.pop(0)
        if self.reject is not None and any(self.reject(t) for t in texts):
            raise EmbeddingServiceError("input rejected", kind=ServiceErrorKind.PERMANENT)
        return [bag_of_words(t, self.dimension) for t in texts]


class FakeChatBackend:
    """Streaming chat backend replaying scripted deltas."""

    def __init__(self, deltas: Optional[List[str]] = None):
        self.deltas = deltas if deltas is not None else ["The answer ", "is 42."]
        self.requests: List[List[Dict[str, str]]] = []
        self.failures: List[GenerationServiceError] = []
        self.fail_after: Optional[int] = None
        self.hold: Optional[asyncio.Event] = None
        # Per-request replies (delta lists or an exception to raise), used before ``deltas``
        self.replies: List = []
        self.closed = 0

    async def stream_chat(self, messages, max_tokens=None):
        self.requests.append(messages)
        try:
            if self.failures:
                raise self.failures.pop(0)
            deltas = self.replies.pop(0) if self.replies else self.deltas
            if isinstance(deltas, Exception):
                raise deltas
            for i, delta in enumerate(deltas):
                if self.fail_after is not None and i == self.fail_after:
                    raise GenerationServiceError("stream broke", kind=ServiceErrorKind.TRANSIENT)
                yield delta
                if self.hold is not None:
                    await self.hold.wait()
        finally:
            self.closed += 1


@pytest.fixture
def embedding_backend():
    return FakeEmbeddingBackend()


@pytest.fixture
def embedder(embedding_backend):
    return Embedder(embedding_backend, max_attempts=3, initial_wait=0, max_wait=0)


@pytest.fixture
def index(tmp_path):
    return VectorIndex(index_dir=tmp_path / "index", ann_enabled=False)


@pytest.fixture
def doc_store(tmp_path):
    store = DocumentStore(tmp_path / "documents.sqlite")
    store.init_schema()
    return store


@pytest.fixture
def chunker():
    return TextChunker(max_tokens=40, overlap_tokens=8, boundary_tolerance=0.25)


@pytest.fixture
def pipeline(index, doc_store, embedder, chunker):
    return IngestPipeline(index, doc_store, embedder, chunker=chunker, workers=4)


@pytest.fixture
def retriever(index, doc_store, embedder):
    return Retriever(index, doc_store, embedder, top_k=5, min_score=0.0)


@pytest.fixture
def make_document(tmp_path):
    def _make(text: str, name: str = "guide.md", fmt: str = "markdown") -> Document:
        return Document(source_path=str(tmp_path / name), text=text, format=fmt)

    return _make


def paragraphs(count: int, topic: str = "build") -> str:
    """Text of ``count`` distinct paragraphs, each one sentence-rich."""
    return "\n\n".join(
        f"Paragraph {i} explains the {topic} step number {i}. "
        f"It mentions tool{i} and option{i} in detail. "
        f"Remember to verify result{i} before continuing."
        for i in range(count)
    )


@pytest.fixture
def chat_backend():
    return FakeChatBackend()


@pytest.fixture
def make_text():
    return paragraphs
