"""File watcher for automatic document re-ingestion.

Monitors the documents directory and keeps the index in sync: created or
modified files are re-ingested after a debounce period, deleted files are
removed. Unchanged chunks are not re-embedded, so saving a file without
edits costs nothing.
"""
import asyncio
import threading
from concurrent.futures import Future
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, Optional

import structlog
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from docent import config
from docent.errors import DocentError
from docent.rag.ingest import IngestPipeline

logger = structlog.get_logger()

INGEST = "ingest"
REMOVE = "remove"


class DocumentFileHandler(FileSystemEventHandler):
    """Collects file system events and applies them in debounced batches."""

    def __init__(
        self,
        pipeline: IngestPipeline,
        debounce_seconds: float = None,
        loop: Optional[asyncio.AbstractEventLoop] = None,
        documents_dir: Optional[Path] = None,
    ):
        """Initialize the file handler.

        Args:
            pipeline: Pipeline used to ingest and remove documents
            debounce_seconds: Quiet period before pending changes are applied
            loop: Event loop the pipeline runs on (watchdog calls from its own thread)
            documents_dir: Watched root; hidden entries below it are ignored
        """
        super().__init__()
        self.pipeline = pipeline
        self.debounce_seconds = (
            debounce_seconds if debounce_seconds is not None else config.WATCH_DEBOUNCE_SECONDS
        )
        self.loop = loop
        self.documents_dir = Path(documents_dir) if documents_dir is not None else None

        # Guards _pending, _last_change_time and _future (watchdog thread vs. loop)
        self._lock = threading.Lock()
        self._pending: Dict[Path, str] = {}
        self._last_change_time: Optional[datetime] = None
        self._future: Optional[Future] = None
        self._shutdown = False

        logger.info("document_file_handler_initialized", debounce_seconds=self.debounce_seconds)

    def _relevant(self, path: str) -> bool:
        """False for hidden files or files inside hidden directories of the root."""
        target = Path(path)
        parts = (target.name,)
        if self.documents_dir is not None:
            for root, candidate in (
                (self.documents_dir, target),
                (self.documents_dir.resolve(), target.resolve()),
            ):
                try:
                    parts = candidate.relative_to(root).parts
                    break
                except ValueError:
                    continue
        return not any(part.startswith(".") for part in parts)

    def on_created(self, event: FileSystemEvent):
        if not event.is_directory and self._relevant(event.src_path):
            logger.info("file_created", path=event.src_path)
            self.schedule(Path(event.src_path), INGEST)

    def on_modified(self, event: FileSystemEvent):
        if not event.is_directory and self._relevant(event.src_path):
            logger.info("file_modified", path=event.src_path)
            self.schedule(Path(event.src_path), INGEST)

    def on_deleted(self, event: FileSystemEvent):
        if not event.is_directory and self._relevant(event.src_path):
            logger.info("file_deleted", path=event.src_path)
            self.schedule(Path(event.src_path), REMOVE)

    def on_moved(self, event: FileSystemEvent):
        if event.is_directory:
            return
        logger.info("file_moved", src=event.src_path, dest=event.dest_path)
        if self._relevant(event.src_path):
            self.schedule(Path(event.src_path), REMOVE)
        if self._relevant(event.dest_path):
            self.schedule(Path(event.dest_path), INGEST)

    def schedule(self, file_path: Path, action: str) -> None:
        """Queue a change; the latest action for a path wins."""
        with self._lock:
            self._pending[file_path] = action
            self._last_change_time = datetime.now()

            if self.loop is not None and self._future is None and not self._shutdown:
                self._future = asyncio.run_coroutine_threadsafe(
                    self._debounced_process(), self.loop
                )

    async def _debounced_process(self) -> None:
        try:
            while not self._shutdown:
                await asyncio.sleep(self.debounce_seconds)

                # More changes arrived during the wait
                with self._lock:
                    last_change = self._last_change_time
                if last_change and datetime.now() - last_change < timedelta(
                    seconds=self.debounce_seconds
                ):
                    continue

                await self.process_pending()

                # Changes queued while processing get another round
                with self._lock:
                    if not self._pending:
                        self._future = None
                        return
        except asyncio.CancelledError:
            with self._lock:
                self._future = None
            raise

        with self._lock:
            self._future = None

    async def process_pending(self) -> int:
        """Apply all queued changes and save the index.

        Returns:
            Number of files processed
        """
        with self._lock:
            changes = dict(self._pending)
            self._pending.clear()
            self._last_change_time = None

        if not changes:
            return 0

        logger.info("reindexing_files", count=len(changes))

        for file_path, action in sorted(changes.items()):
            try:
                if action == REMOVE or not file_path.exists():
                    await self.pipeline.remove_source(file_path)
                elif self.pipeline.loader.supported(file_path):
                    result = await self.pipeline.ingest_file(file_path)
                    logger.info(
                        "file_reindexed",
                        path=str(file_path),
                        chunks_added=len(result.chunks_added),
                        chunks_removed=len(result.chunks_removed),
                    )
                else:
                    logger.debug("file_not_supported", path=str(file_path))
            except (DocentError, OSError) as e:
                logger.error(
                    "reindex_failed",
                    path=str(file_path),
                    error=str(e),
                    error_type=type(e).__name__,
                )

        if self.pipeline.index.index_dir is not None:
            self.pipeline.index.save()

        logger.info("reindex_batch_completed", count=len(changes))
        return len(changes)

    def shutdown(self) -> None:
        """Stop processing and cancel a pending batch."""
        with self._lock:
            self._shutdown = True
            future = self._future
        if future is not None and not future.done():
            future.cancel()


class DocumentWatcher:
    """Watcher for the documents directory."""

    def __init__(
        self,
        pipeline: IngestPipeline,
        documents_dir: Optional[Path] = None,
        debounce_seconds: float = None,
    ):
        self.pipeline = pipeline
        self.documents_dir = Path(documents_dir) if documents_dir else config.DOCUMENTS_DIR
        self.debounce_seconds = debounce_seconds

        self.event_handler: Optional[DocumentFileHandler] = None
        self.observer: Optional[Observer] = None
        self._started = False

    async def start(self) -> None:
        """Start watching for file changes (call from the pipeline's event loop)."""
        if self._started:
            logger.warning("watcher_already_started")
            return

        self.event_handler = DocumentFileHandler(
            pipeline=self.pipeline,
            debounce_seconds=self.debounce_seconds,
            loop=asyncio.get_running_loop(),
            documents_dir=self.documents_dir,
        )

        self.observer = Observer()
        self.observer.schedule(self.event_handler, str(self.documents_dir), recursive=True)
        self.observer.start()
        self._started = True

        logger.info("document_watcher_started", documents_dir=str(self.documents_dir))

    def stop(self) -> None:
        """Stop watching for file changes."""
        if not self._started:
            return

        if self.observer:
            self.observer.stop()
            self.observer.join(timeout=5.0)

        if self.event_handler:
            self.event_handler.shutdown()

        self._started = False
        logger.info("document_watcher_stopped")

    def is_alive(self) -> bool:
        return self._started and self.observer is not None and self.observer.is_alive()
