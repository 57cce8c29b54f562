"""Ingest pipeline for indexing documents.

Orchestrates:
- File discovery (by content sniffing)
- Loading and chunking
- Diffing against the committed chunks of the same document
- Embedding only the chunks that are new
- Committing chunk rows, vectors and document bookkeeping

Re-ingesting an unchanged document makes no embedding calls and does not
touch the index. Each commit runs without awaiting, so concurrent searches
see either the old or the new chunk set of a document and never a chunk id
whose row or vector is missing.
"""
import asyncio
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog

from docent import config
from docent.errors import DimensionMismatch, DocentError
from docent.rag.chunker import TextChunker
from docent.rag.doc_store import DocumentStore
from docent.rag.embedder import Embedder
from docent.rag.loader import DocumentLoader
from docent.rag.models import Chunk, Document, IngestResult, document_key_for
from docent.rag.store import VectorIndex

logger = structlog.get_logger()


class IngestPipeline:
    """Pipeline for ingesting documents into the RAG system."""

    def __init__(
        self,
        index: VectorIndex,
        store: DocumentStore,
        embedder: Embedder,
        chunker: Optional[TextChunker] = None,
        loader: Optional[DocumentLoader] = None,
        workers: int = None,
    ):
        """Initialize the ingest pipeline.

        Args:
            index: Vector index receiving chunk embeddings
            store: Document/chunk row storage
            embedder: Embedder used for new chunks
            chunker: Text chunker (default: configured TextChunker)
            loader: Document loader (default: DocumentLoader)
            workers: Maximum concurrent ingestions (default from config)
        """
        self.index = index
        self.store = store
        self.embedder = embedder
        self.chunker = chunker or TextChunker()
        self.loader = loader or DocumentLoader()
        self.workers = workers or config.INGEST_WORKERS

        self._key_locks: Dict[str, asyncio.Lock] = {}
        self._key_users: Dict[str, int] = {}
        self._semaphore = asyncio.Semaphore(self.workers)

        self.store.init_schema()
        self.stats = self._empty_stats()

        logger.info(
            "ingest_pipeline_initialized",
            workers=self.workers,
            max_tokens=self.chunker.max_tokens,
            overlap_tokens=self.chunker.overlap_tokens,
        )

    @staticmethod
    def _empty_stats() -> Dict[str, Any]:
        return {
            "files_processed": 0,
            "files_failed": 0,
            "files_unchanged": 0,
            "files_pruned": 0,
            "chunks_added": 0,
            "chunks_removed": 0,
            "chunks_failed": 0,
            "errors": [],
        }

    @asynccontextmanager
    async def _document_lock(self, document_key: str):
        """Hold the per-document lock; it is dropped once nobody holds or awaits it."""
        lock = self._key_locks.get(document_key)
        if lock is None:
            lock = self._key_locks[document_key] = asyncio.Lock()
        self._key_users[document_key] = self._key_users.get(document_key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._key_users[document_key] -= 1
            if not self._key_users[document_key]:
                del self._key_users[document_key]
                del self._key_locks[document_key]

    async def ingest(self, document: Document) -> IngestResult:
        """Bring the index up to date with one document.

        Args:
            document: Loaded document

        Returns:
            IngestResult describing added, removed, unchanged and failed chunks

        Raises:
            DimensionMismatch: If the embedder's vectors don't fit the index
        """
        async with self._document_lock(document.key):
            async with self._semaphore:
                return await self._ingest_locked(document)

    async def _ingest_locked(self, document: Document) -> IngestResult:
        chunks = self.chunker.chunk(document)
        new_ids = {c.id for c in chunks}
        committed = self.index.document_chunk_ids(document.key)

        to_embed = [c for c in chunks if c.id not in committed or c.id not in self.index]
        embed_ids = {c.id for c in to_embed}
        kept = [c for c in chunks if c.id not in embed_ids]
        removed = committed - new_ids

        if not to_embed and not removed:
            stored = self.store.get_document(document.key)
            if stored is None or stored["id"] != document.id:
                self.store.save_document(document)
                self.store.update_chunk_positions(chunks)
            logger.info(
                "document_unchanged",
                document_key=document.key,
                path=document.source_path,
                chunk_count=len(chunks),
            )
            return IngestResult(
                document_key=document.key,
                document_id=document.id,
                chunks_unchanged=len(chunks),
            )

        outcomes = await self.embedder.embed_batch([c.text for c in to_embed])

        embedded: List[Chunk] = []
        vectors = []
        failed: Dict[str, str] = {}
        for chunk, outcome in zip(to_embed, outcomes):
            if outcome.ok:
                embedded.append(chunk)
                vectors.append(outcome.vector)
            else:
                failed[chunk.id] = str(outcome.error)

        # Commit: no awaits from here on
        self.store.insert_chunks(embedded)
        try:
            self.index.upsert_many(zip([c.id for c in embedded], vectors))
        except DimensionMismatch:
            self.store.delete_chunks([c.id for c in embedded if c.id not in committed])
            logger.error(
                "ingest_dimension_mismatch",
                document_key=document.key,
                index_dimension=self.index.dimension,
            )
            raise

        self.store.save_document(document)
        self.store.update_chunk_positions(kept + embedded)
        self.index.set_document_chunks(
            document.key, [c.id for c in kept] + [c.id for c in embedded]
        )
        self.index.delete_many(removed)
        self.store.delete_chunks(removed)

        if failed:
            logger.warning(
                "chunks_failed_to_embed",
                document_key=document.key,
                failed=len(failed),
            )

        logger.info(
            "document_ingested",
            document_key=document.key,
            path=document.source_path,
            chunks_added=len(embedded),
            chunks_removed=len(removed),
            chunks_unchanged=len(kept),
            chunks_failed=len(failed),
        )

        return IngestResult(
            document_key=document.key,
            document_id=document.id,
            chunks_added=tuple(c.id for c in embedded),
            chunks_removed=tuple(sorted(removed)),
            chunks_unchanged=len(kept),
            failed=failed,
        )

    async def ingest_file(self, file_path: Path) -> IngestResult:
        """Load and ingest a single file.

        Raises:
            FileNotFoundError: If the file doesn't exist
            UnsupportedFormat: If the content is not a supported format
            ParseError: If extraction fails
        """
        logger.info("ingesting_file", path=str(file_path))
        document = self.loader.load(Path(file_path))
        return await self.ingest(document)

    async def remove_source(self, file_path: Path) -> IngestResult:
        """Drop every chunk of the document at ``file_path``."""
        key = document_key_for(str(file_path))
        async with self._document_lock(key):
            removed = self.index.remove_document(key)
            self.store.delete_document(key)

        logger.info("source_removed", path=str(file_path), chunks_removed=len(removed))
        return IngestResult(document_key=key, chunks_removed=tuple(sorted(removed)))

    def discover_files(self, root: Path) -> List[Path]:
        """Find supported files under ``root``, skipping hidden entries.

        Raises:
            FileNotFoundError: If the directory doesn't exist
        """
        if not root.exists():
            raise FileNotFoundError(f"Documents directory not found: {root}")

        files = [
            path
            for path in sorted(root.rglob("*"))
            if path.is_file()
            and not any(part.startswith(".") for part in path.relative_to(root).parts)
            and self.loader.supported(path)
        ]

        logger.info("documents_discovered", count=len(files), root=str(root))
        return files

    async def ingest_directory(
        self, root: Path = None, rebuild: bool = False, progress_callback=None
    ) -> Dict[str, Any]:
        """Ingest every supported file under a directory.

        Documents previously ingested from under ``root`` whose files no longer
        exist are removed.

        Args:
            root: Directory to scan (default from config)
            rebuild: If True, clear the index and document store first
            progress_callback: Optional callback function(current, total, file_path)

        Returns:
            Dictionary with ingestion statistics
        """
        root = Path(root) if root is not None else config.DOCUMENTS_DIR
        logger.info("starting_ingest_directory", root=str(root), rebuild=rebuild)

        self.stats = self._empty_stats()

        if rebuild:
            for document in self.store.list_documents():
                self.index.remove_document(document["key"])
                self.store.delete_document(document["key"])
            for key in self.index.documents():
                self.index.remove_document(key)
            logger.info("index_and_database_cleared")

        files = self.discover_files(root)
        total = len(files)
        done = 0

        async def _run(path: Path) -> None:
            nonlocal done
            try:
                result = await self.ingest_file(path)
            except (DocentError, OSError) as e:
                self.stats["files_failed"] += 1
                self.stats["errors"].append({"file": str(path), "error": str(e)})
                logger.error("file_ingest_failed", path=str(path), error=str(e))
            else:
                self._record(result)
            done += 1
            if progress_callback:
                progress_callback(done, total, path)

        await asyncio.gather(*(_run(path) for path in files))

        self.stats["files_pruned"] = await self._prune_missing(root, files)

        if self.index.index_dir is not None:
            self.index.save()

        logger.info(
            "ingest_directory_complete",
            **{k: v for k, v in self.stats.items() if k != "errors"},
        )

        return self.stats

    def _record(self, result: IngestResult) -> None:
        if result.chunks_added or result.chunks_removed or result.failed:
            self.stats["files_processed"] += 1
        else:
            self.stats["files_unchanged"] += 1
        self.stats["chunks_added"] += len(result.chunks_added)
        self.stats["chunks_removed"] += len(result.chunks_removed)
        self.stats["chunks_failed"] += len(result.failed)

    async def _prune_missing(self, root: Path, present: List[Path]) -> int:
        """Remove documents under ``root`` that were not found on disk."""
        root = root.resolve()
        present_keys = {document_key_for(str(p)) for p in present}
        pruned = 0

        for document in self.store.list_documents():
            source = Path(document["source_path"]).resolve()
            if document["key"] in present_keys or root not in source.parents:
                continue
            if source.exists() and self.loader.supported(source):
                continue
            await self.remove_source(source)
            pruned += 1

        if pruned:
            logger.info("documents_pruned", count=pruned, root=str(root))
        return pruned
