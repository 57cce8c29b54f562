"""Wiring of the RAG components for scripts and embedding applications."""
from pathlib import Path
from typing import Optional

import structlog

from docent import config
from docent.llm_client import ChatClient, EmbeddingClient
from docent.rag.doc_store import DocumentStore
from docent.rag.embedder import Embedder
from docent.rag.ingest import IngestPipeline
from docent.rag.orchestrator import AnswerOrchestrator
from docent.rag.retriever import Retriever
from docent.rag.store import VectorIndex

logger = structlog.get_logger()


class Assistant:
    """Index, document store, pipeline and orchestrator sharing one data directory."""

    def __init__(
        self,
        data_dir: Optional[Path] = None,
        embedding_client: Optional[EmbeddingClient] = None,
        chat_client: Optional[ChatClient] = None,
    ):
        data_dir = Path(data_dir) if data_dir is not None else config.DATA_DIR

        self.index = VectorIndex.open(data_dir / "index")
        self.store = DocumentStore(data_dir / "documents.sqlite")
        self.embedder = Embedder(embedding_client or EmbeddingClient())
        self.pipeline = IngestPipeline(self.index, self.store, self.embedder)
        self.retriever = Retriever(self.index, self.store, self.embedder)
        self.orchestrator = AnswerOrchestrator(self.retriever, chat_client or ChatClient())

        logger.info(
            "assistant_initialized",
            data_dir=str(data_dir),
            vector_count=len(self.index),
        )

    def close(self) -> None:
        self.index.close()

    def __enter__(self) -> "Assistant":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
