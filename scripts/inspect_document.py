#!/usr/bin/env python
"""Load and chunk one document, exporting the result as markdown.

Usage:
    python scripts/inspect_document.py docs/guide.pdf
    python scripts/inspect_document.py docs/deck.pptx --out-dir /tmp/inspect
"""
import argparse
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from docent.errors import DocentError
from docent.logging_setup import configure_logging
from docent.rag.chunker import TextChunker
from docent.rag.export import export_chunks_markdown, export_sections_markdown
from docent.rag.loader import DocumentLoader


def main():
    parser = argparse.ArgumentParser(description="Inspect how a document is parsed and chunked")
    parser.add_argument("path", type=Path, help="Document to inspect")
    parser.add_argument(
        "--out-dir",
        type=Path,
        default=Path("."),
        help="Directory for the exported markdown files (default: current directory)",
    )
    parser.add_argument("--max-tokens", type=int, default=None, help="Chunk size in tokens")
    parser.add_argument("--overlap", type=int, default=None, help="Chunk overlap in tokens")
    args = parser.parse_args()

    configure_logging("WARNING")

    try:
        document = DocumentLoader().load(args.path)
    except (DocentError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    chunker = TextChunker(max_tokens=args.max_tokens, overlap_tokens=args.overlap)
    chunks = chunker.chunk(document)
    stats = chunker.get_chunk_stats(chunks)

    sections_path = export_sections_markdown(
        document, args.out_dir / f"{args.path.stem}.sections.md"
    )
    chunks_path = export_chunks_markdown(
        document, chunks, args.out_dir / f"{args.path.stem}.chunks.md"
    )

    print(f"Format:     {document.format}")
    print(f"Characters: {len(document.text)}")
    print(f"Sections:   {len(document.sections)}")
    print(f"Chunks:     {stats['chunk_count']} (avg {stats['avg_chunk_tokens']} tokens)")
    print(f"Written:    {sections_path}")
    print(f"            {chunks_path}")


if __name__ == "__main__":
    main()
