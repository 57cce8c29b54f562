"""Core value types shared by the RAG pipeline.

Documents and chunks are immutable. A chunk refers to its document through
``document_key`` only; the document store owns both and resolves ids.
"""
import hashlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import numpy as np


def _sha256(*parts: str) -> str:
    digest = hashlib.sha256()
    for part in parts:
        digest.update(part.encode("utf-8"))
        digest.update(b"\x1f")
    return digest.hexdigest()


def content_digest(text: str) -> str:
    """Hex digest of a document's extracted text."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def document_key_for(source_path: str) -> str:
    """Stable key naming every version of the document at ``source_path``."""
    return _sha256("source", str(Path(source_path).expanduser().resolve(strict=False)))[:32]


def chunk_id_for(document_key: str, text: str, ordinal: int = 0) -> str:
    """Deterministic chunk id from its document and text.

    Offsets are not part of the id: an edit earlier in the document leaves
    the ids of later chunks intact. ``ordinal`` counts earlier chunks of the same
    document with identical text.
    """
    return _sha256(document_key, content_digest(text), str(ordinal))[:32]


@dataclass(frozen=True)
class Section:
    """Structural metadata: a labelled character range of the document text."""

    start: int
    end: int
    label: str
    kind: str = "section"  # page, slide, heading, section

    def overlaps(self, start: int, end: int) -> bool:
        return self.start < end and start < self.end

    def to_dict(self) -> Dict[str, Any]:
        return {"start": self.start, "end": self.end, "label": self.label, "kind": self.kind}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Section":
        return cls(
            start=int(data["start"]),
            end=int(data["end"]),
            label=str(data["label"]),
            kind=str(data.get("kind", "section")),
        )


@dataclass(frozen=True)
class Document:
    """A loaded source file: extracted text plus structural metadata."""

    source_path: str
    text: str
    format: str
    sections: Tuple[Section, ...] = ()
    content_digest: str = ""
    id: str = ""

    def __post_init__(self):
        digest = self.content_digest or content_digest(self.text)
        object.__setattr__(self, "content_digest", digest)
        if not self.id:
            object.__setattr__(self, "id", _sha256(self.source_path, digest)[:32])

    @property
    def key(self) -> str:
        return document_key_for(self.source_path)

    @property
    def name(self) -> str:
        return Path(self.source_path).name

    def labels_for(self, start: int, end: int) -> Tuple[str, ...]:
        """Labels of page/slide sections overlapping a character range.

        Headings are used only when the document has no page-like sections.
        """
        paged = [s for s in self.sections if s.kind in ("page", "slide")]
        pool = paged or self.sections
        return tuple(s.label for s in pool if s.overlaps(start, max(end, start + 1)))


@dataclass(frozen=True)
class Chunk:
    """A retrievable slice of a document."""

    id: str
    document_key: str
    text: str
    start: int
    end: int
    index: int
    labels: Tuple[str, ...] = ()
    overlap_prev: int = 0

    @property
    def location(self) -> str:
        if not self.labels:
            return ""
        if len(self.labels) == 1:
            return self.labels[0]
        return f"{self.labels[0]} - {self.labels[-1]}"


@dataclass(frozen=True)
class EmbeddingRecord:
    """A chunk vector with its cached norm."""

    chunk_id: str
    vector: np.ndarray = field(repr=False)
    norm: float

    @classmethod
    def build(cls, chunk_id: str, vector) -> "EmbeddingRecord":
        array = np.array(vector, dtype=np.float32).reshape(-1)
        array.setflags(write=False)
        return cls(chunk_id=chunk_id, vector=array, norm=float(np.linalg.norm(array)))


@dataclass(frozen=True)
class SearchHit:
    """One entry of a retrieval result, ordered by rank (1-based)."""

    chunk_id: str
    score: float
    rank: int


@dataclass(frozen=True)
class RetrievedChunk:
    """A search hit joined with its chunk and source document path."""

    chunk: Chunk
    score: float
    rank: int
    source_path: str = ""

    @property
    def chunk_id(self) -> str:
        return self.chunk.id

    @property
    def source(self) -> str:
        """Formatted source string for display and prompt headers."""
        location = self.chunk.location
        if location and self.source_path:
            return f"{self.source_path} | {location}"
        return self.source_path or location

    def to_source_dict(self) -> Dict[str, Any]:
        return {
            "chunk_id": self.chunk.id,
            "path": self.source_path,
            "labels": list(self.chunk.labels),
            "score": round(self.score, 4),
            "rank": self.rank,
        }


@dataclass
class IngestResult:
    """Outcome of ingesting one document."""

    document_key: str
    document_id: str = ""
    chunks_added: Tuple[str, ...] = ()
    chunks_removed: Tuple[str, ...] = ()
    chunks_unchanged: int = 0
    failed: Dict[str, str] = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return not self.failed and self.error is None
