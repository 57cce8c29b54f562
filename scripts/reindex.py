#!/usr/bin/env python
"""Index project documents for the RAG pipeline.

Usage:
    python scripts/reindex.py              # Incremental reindex
    python scripts/reindex.py --rebuild    # Full rebuild from scratch
    python scripts/reindex.py --verbose    # Show detailed progress
    python scripts/reindex.py --watch      # Keep the index in sync with file changes
"""
import argparse
import asyncio
import sys
from datetime import datetime
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

import structlog

from docent import config
from docent.assistant import Assistant
from docent.errors import DocentError
from docent.logging_setup import configure_logging
from docent.rag.watcher import DocumentWatcher

logger = structlog.get_logger()


class ProgressReporter:
    """Simple progress reporter for CLI."""

    def __init__(self, verbose: bool = False):
        self.verbose = verbose
        self.start_time = None

    def start(self, message: str):
        self.start_time = datetime.now()
        print(f"\n{'=' * 60}")
        print(f"  {message}")
        print(f"{'=' * 60}\n")

    def update(self, current: int, total: int, file_path: Path):
        percentage = (current / total) * 100 if total > 0 else 0
        bar_length = 40
        filled = int(bar_length * current / total) if total > 0 else 0
        bar = "█" * filled + "░" * (bar_length - filled)

        print(
            f"\r  [{bar}] {percentage:5.1f}% ({current}/{total}) {file_path.name[:30]:<30}",
            end="",
            flush=True,
        )

        if self.verbose:
            print()

    def finish(self, stats: dict, index_dir: Path):
        print("\n")
        elapsed_seconds = (datetime.now() - self.start_time).total_seconds()

        print(f"{'=' * 60}")
        print("  Indexing Complete!")
        print(f"{'=' * 60}\n")
        print(f"  Files updated:    {stats['files_processed']}")
        print(f"  Files unchanged:  {stats['files_unchanged']}")
        print(f"  Files removed:    {stats['files_pruned']}")
        print(f"  Files failed:     {stats['files_failed']}")
        print(f"  Chunks added:     {stats['chunks_added']}")
        print(f"  Chunks removed:   {stats['chunks_removed']}")
        print(f"  Chunks failed:    {stats['chunks_failed']}")
        print(f"  Time elapsed:     {elapsed_seconds:.1f}s")

        if stats["chunks_added"] > 0 and elapsed_seconds > 0:
            print(f"  Indexing rate:    {stats['chunks_added'] / elapsed_seconds:.1f} chunks/sec")

        print(f"\n{'=' * 60}\n")

        for error in stats["errors"]:
            print(f"  ! {error['file']}: {error['error']}")

        if stats["chunks_failed"]:
            print("  Some chunks could not be embedded; run again to retry them.\n")

        print(f"Index ready at: {index_dir}\n")


async def watch(assistant: Assistant, documents_dir: Path = None):
    """Re-index changed files until interrupted."""
    watcher = DocumentWatcher(assistant.pipeline, documents_dir)
    await watcher.start()
    print(f"Watching {watcher.documents_dir} for changes (Ctrl+C to stop)...\n")
    try:
        while watcher.is_alive():
            await asyncio.sleep(1)
    finally:
        watcher.stop()


async def main():
    """Main entry point for reindex script."""
    parser = argparse.ArgumentParser(
        description="Index project documents for the RAG pipeline",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python scripts/reindex.py              # Incremental reindex
  python scripts/reindex.py --rebuild    # Full rebuild from scratch
  python scripts/reindex.py --verbose    # Show detailed progress
  python scripts/reindex.py --watch      # Keep the index in sync with file changes
        """,
    )
    parser.add_argument(
        "--rebuild",
        action="store_true",
        help="Rebuild index from scratch (clears existing data)",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Show verbose progress output",
    )
    parser.add_argument(
        "--documents-dir",
        type=Path,
        default=None,
        help=f"Documents directory (default: {config.DOCUMENTS_DIR})",
    )
    parser.add_argument(
        "--watch",
        action="store_true",
        help="After indexing, watch the documents directory and re-index changes",
    )
    args = parser.parse_args()

    configure_logging("DEBUG" if args.verbose else None)
    progress = ProgressReporter(verbose=args.verbose)

    print("\nConfiguration:")
    print(f"   Documents directory: {args.documents_dir or config.DOCUMENTS_DIR}")
    print(f"   Embedding model:     {config.EMBEDDING_MODEL}")
    print(f"   Chunk size:          {config.CHUNK_MAX_TOKENS} tokens")
    print(f"   Chunk overlap:       {config.CHUNK_OVERLAP_TOKENS} tokens")

    if args.rebuild:
        print("\nRebuild mode: existing index and database will be cleared!")
        print("   Press Ctrl+C within 3 seconds to cancel...")
        await asyncio.sleep(3)

    progress.start("Rebuilding Documents" if args.rebuild else "Indexing Documents")

    try:
        with Assistant() as assistant:
            stats = await assistant.pipeline.ingest_directory(
                args.documents_dir,
                rebuild=args.rebuild,
                progress_callback=progress.update,
            )
            progress.finish(stats, assistant.index.index_dir)

            if args.watch:
                await watch(assistant, args.documents_dir)

    except FileNotFoundError as e:
        print(f"\nError: {e}\n")
        sys.exit(1)

    except DocentError as e:
        print(f"\nError: {e}\n")
        logger.error("reindex_script_failed", error=str(e), error_type=type(e).__name__)
        sys.exit(1)

    if stats["files_failed"] > 0:
        sys.exit(1)


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\n\nIndexing cancelled by user.\n")
        sys.exit(1)
