"""Text chunking with overlap for the RAG pipeline.

Chunks are sized by a token estimate rather than byte length. A chunk ends
at the latest section (page/slide/heading) or paragraph break past its
overlap, else at a sentence end inside the tolerance window before the hard
limit, else at the limit. Adjacent chunks share a fixed number of tokens.
"""
import bisect
import re
from typing import Dict, List, Optional, Tuple

import structlog

from docent import config
from docent.rag.models import Chunk, Document, chunk_id_for

logger = structlog.get_logger()

# Boundary strengths, strongest first
SECTION_BREAK = 3
PARAGRAPH_BREAK = 2
SENTENCE_BREAK = 1


class TokenCounter:
    """Dependency-free token estimate: words and punctuation marks."""

    TOKEN_PATTERN = re.compile(r"\w+|[^\w\s]")

    def spans(self, text: str) -> List[Tuple[int, int]]:
        """Character spans of each estimated token."""
        return [match.span() for match in self.TOKEN_PATTERN.finditer(text)]

    def count(self, text: str) -> int:
        if not text:
            return 0
        return sum(1 for _ in self.TOKEN_PATTERN.finditer(text))

    def truncate(self, text: str, n_tokens: int) -> str:
        """Return the leading ``n_tokens`` tokens of ``text`` verbatim."""
        if n_tokens <= 0:
            return ""
        for i, match in enumerate(self.TOKEN_PATTERN.finditer(text), 1):
            if i == n_tokens:
                return text[: match.end()]
        return text


class TextChunker:
    """Token-bounded chunker with boundary preference and overlap."""

    SENTENCE_END = re.compile(r"[.!?。！？]")
    PARAGRAPH_GAP = re.compile(r"\n[ \t\r\f\v]*\n")

    def __init__(
        self,
        max_tokens: int = None,
        overlap_tokens: int = None,
        boundary_tolerance: float = None,
        counter: Optional[TokenCounter] = None,
    ):
        """Initialize the text chunker.

        Args:
            max_tokens: Target upper bound of tokens per chunk (default from config)
            overlap_tokens: Tokens shared by adjacent chunks (default from config)
            boundary_tolerance: Fraction of max_tokens searched backwards from the
                hard limit for a natural boundary (default from config)
            counter: Token estimator
        """
        self.max_tokens = max_tokens if max_tokens is not None else config.CHUNK_MAX_TOKENS
        self.overlap_tokens = (
            overlap_tokens if overlap_tokens is not None else config.CHUNK_OVERLAP_TOKENS
        )
        self.boundary_tolerance = (
            boundary_tolerance
            if boundary_tolerance is not None
            else config.CHUNK_BOUNDARY_TOLERANCE
        )
        self.counter = counter or TokenCounter()

        if self.max_tokens <= 0:
            raise ValueError(f"max_tokens must be positive, got {self.max_tokens}")
        if not 0 <= self.overlap_tokens < self.max_tokens:
            raise ValueError(
                f"Overlap ({self.overlap_tokens}) must be non-negative and less than "
                f"max_tokens ({self.max_tokens})"
            )
        if not 0.0 <= self.boundary_tolerance < 1.0:
            raise ValueError(
                f"boundary_tolerance must be in [0, 1), got {self.boundary_tolerance}"
            )

        logger.debug(
            "chunker_initialized",
            max_tokens=self.max_tokens,
            overlap_tokens=self.overlap_tokens,
            boundary_tolerance=self.boundary_tolerance,
        )

    def chunk(self, document: Document) -> List[Chunk]:
        """Split a document into overlapping chunks.

        Args:
            document: Document to chunk

        Returns:
            Ordered list of Chunk objects (empty for blank text)
        """
        text = document.text
        if not text or not text.strip():
            return []

        spans = self.counter.spans(text)
        token_count = len(spans)

        seen: Dict[str, int] = {}

        # Handle text shorter than one chunk
        if token_count <= self.max_tokens:
            return [self._make_chunk(document, 0, len(text), 0, 0, seen)]

        breaks = self._boundary_strengths(text, spans, document)
        window = max(1, int(self.max_tokens * self.boundary_tolerance))

        chunks: List[Chunk] = []
        start_tok = 0
        prev_end = 0

        while True:
            limit = start_tok + self.max_tokens
            if limit >= token_count:
                end_tok = token_count
            else:
                # The chunk must extend past the overlap so the next one advances
                first = start_tok + self.overlap_tokens + 1
                end_tok = self._pick_boundary(breaks, first, max(first, limit - window), limit)

            start_char = 0 if start_tok == 0 else spans[start_tok][0]
            end_char = len(text) if end_tok == token_count else spans[end_tok - 1][1]
            overlap = max(0, prev_end - start_char) if chunks else 0

            chunks.append(
                self._make_chunk(document, start_char, end_char, len(chunks), overlap, seen)
            )

            if end_tok == token_count:
                break

            start_tok = end_tok - self.overlap_tokens
            prev_end = end_char

        logger.info(
            "text_chunked",
            document_key=document.key,
            token_count=token_count,
            chunk_count=len(chunks),
        )

        return chunks

    def _make_chunk(
        self,
        document: Document,
        start: int,
        end: int,
        index: int,
        overlap: int,
        seen: Dict[str, int],
    ) -> Chunk:
        text = document.text[start:end]
        ordinal = seen.get(text, 0)
        seen[text] = ordinal + 1
        return Chunk(
            id=chunk_id_for(document.key, text, ordinal),
            document_key=document.key,
            text=text,
            start=start,
            end=end,
            index=index,
            labels=document.labels_for(start, end),
            overlap_prev=overlap,
        )

    def _boundary_strengths(
        self, text: str, spans: List[Tuple[int, int]], document: Document
    ) -> Dict[int, int]:
        """Map token index b (split before token b) to boundary strength."""
        breaks: Dict[int, int] = {}

        for b in range(1, len(spans)):
            gap = text[spans[b - 1][1] : spans[b][0]]
            if self.PARAGRAPH_GAP.search(gap):
                breaks[b] = PARAGRAPH_BREAK
            elif gap and self.SENTENCE_END.fullmatch(text[spans[b - 1][0] : spans[b - 1][1]]):
                breaks[b] = SENTENCE_BREAK

        starts = [span[0] for span in spans]
        for section in document.sections:
            b = bisect.bisect_left(starts, section.start)
            if 0 < b < len(spans):
                breaks[b] = SECTION_BREAK

        return breaks

    @staticmethod
    def _pick_boundary(breaks: Dict[int, int], first: int, lowest: int, limit: int) -> int:
        """Choose where a chunk ends.

        Section and paragraph breaks are taken anywhere in [first, limit], the
        latest section break winning over any paragraph break. Sentence ends
        are only considered in the tolerance window [lowest, limit]. Failing
        both, the chunk ends at the hard limit.
        """
        paragraph = None
        sentence = None
        for b in range(limit, first - 1, -1):
            strength = breaks.get(b, 0)
            if strength == SECTION_BREAK:
                return b
            if strength == PARAGRAPH_BREAK and paragraph is None:
                paragraph = b
            elif strength == SENTENCE_BREAK and sentence is None and b >= lowest:
                sentence = b
        if paragraph is not None:
            return paragraph
        if sentence is not None:
            return sentence
        return limit

    def get_chunk_stats(self, chunks: List[Chunk]) -> dict:
        """Get statistics about a set of chunks.

        Args:
            chunks: List of Chunk objects

        Returns:
            Dictionary with chunk statistics
        """
        if not chunks:
            return {
                "chunk_count": 0,
                "total_tokens": 0,
                "avg_chunk_tokens": 0,
                "min_chunk_tokens": 0,
                "max_chunk_tokens": 0,
            }

        sizes = [self.counter.count(c.text) for c in chunks]

        return {
            "chunk_count": len(chunks),
            "total_tokens": sum(sizes),
            "avg_chunk_tokens": sum(sizes) // len(chunks),
            "min_chunk_tokens": min(sizes),
            "max_chunk_tokens": max(sizes),
            "overlap_tokens": self.overlap_tokens,
        }


# Convenience function
def chunk_document(
    document: Document, max_tokens: int = None, overlap_tokens: int = None
) -> List[Chunk]:
    """Chunk a document with the given (or configured) parameters."""
    return TextChunker(max_tokens=max_tokens, overlap_tokens=overlap_tokens).chunk(document)
