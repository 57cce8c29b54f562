"""Retriever for semantic search over indexed documents.

Handles:
- Query embedding generation
- Vector index search
- Chunk lookup from the document store
- Minimum-score filtering
"""
from typing import List, Optional

import structlog

from docent import config
from docent.rag.doc_store import DocumentStore
from docent.rag.embedder import Embedder
from docent.rag.models import RetrievedChunk
from docent.rag.store import VectorIndex

logger = structlog.get_logger()


class Retriever:
    """Semantic retriever for the RAG pipeline."""

    def __init__(
        self,
        index: VectorIndex,
        store: DocumentStore,
        embedder: Embedder,
        top_k: int = None,
        min_score: float = None,
    ):
        """Initialize the retriever.

        Args:
            index: Vector index to search
            store: Document store resolving chunk ids
            embedder: Embedder for query text
            top_k: Number of results to retrieve (default from config)
            min_score: Minimum cosine similarity to keep a result (default from config)
        """
        self.index = index
        self.store = store
        self.embedder = embedder
        self.top_k = top_k or config.RETRIEVAL_TOP_K
        self.min_score = min_score if min_score is not None else config.RETRIEVAL_MIN_SCORE

        logger.info("retriever_initialized", top_k=self.top_k, min_score=self.min_score)

    async def retrieve(
        self,
        query_text: str,
        k: Optional[int] = None,
        min_score: Optional[float] = None,
    ) -> List[RetrievedChunk]:
        """Retrieve the chunks most relevant to a query.

        Args:
            query_text: User query text
            k: Number of results to search for (overrides default)
            min_score: Drop results scoring below this (overrides default)

        Returns:
            RetrievedChunk list in rank order; may be empty

        Raises:
            EmbeddingServiceError: If the query cannot be embedded
        """
        if not query_text or not query_text.strip():
            logger.warning("empty_query_provided")
            return []

        k = k or self.top_k
        min_score = self.min_score if min_score is None else min_score

        logger.info("retrieval_started", query_length=len(query_text), top_k=k)

        if len(self.index) == 0:
            logger.warning("empty_index_no_results")
            return []

        query_vector = await self.embedder.embed(query_text)
        hits = [hit for hit in self.index.search(query_vector, k) if hit.score >= min_score]

        chunks = self.store.get_chunks(hit.chunk_id for hit in hits)
        sources = {}
        results: List[RetrievedChunk] = []

        for hit in hits:
            chunk = chunks.get(hit.chunk_id)
            if chunk is None:
                logger.warning("chunk_not_found_for_hit", chunk_id=hit.chunk_id)
                continue
            if chunk.document_key not in sources:
                document = self.store.get_document(chunk.document_key)
                sources[chunk.document_key] = document["source_path"] if document else ""
            results.append(
                RetrievedChunk(
                    chunk=chunk,
                    score=hit.score,
                    rank=len(results) + 1,
                    source_path=sources[chunk.document_key],
                )
            )

        logger.info(
            "retrieval_completed",
            results_found=len(results),
            top_score=results[0].score if results else None,
        )

        return results
