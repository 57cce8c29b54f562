"""Markdown export of loaded documents and their chunks, for inspection."""
import re
from pathlib import Path
from typing import List

import structlog

from docent.rag.models import Chunk, Document

logger = structlog.get_logger()

_MARKDOWN_SPECIAL = re.compile(r"([\\`*_{}\[\]<>()#+\-.!|])")


def escape_markdown(text: str) -> str:
    """Backslash-escape characters with meaning in markdown."""
    return _MARKDOWN_SPECIAL.sub(r"\\\1", text)


def _write(path: Path, content: str) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path


def export_sections_markdown(document: Document, path: Path) -> Path:
    """Write a document's text section by section (pages, slides, headings).

    Documents without sections are written as a single block.
    """
    lines = [
        f"# {escape_markdown(document.name)}",
        "",
        f"- Format: {document.format}",
        f"- Characters: {len(document.text)}",
        f"- Sections: {len(document.sections)}",
        "",
    ]

    if document.sections:
        for section in document.sections:
            lines.append(f"## {escape_markdown(section.label)}")
            lines.append("")
            lines.append(escape_markdown(document.text[section.start : section.end].strip()))
            lines.append("")
    else:
        lines.append(escape_markdown(document.text.strip()))
        lines.append("")

    written = _write(path, "\n".join(lines))
    logger.info("sections_exported", path=str(written), sections=len(document.sections))
    return written


def export_chunks_markdown(document: Document, chunks: List[Chunk], path: Path) -> Path:
    """Write every chunk with its id, offsets and labels."""
    lines = [
        f"# Chunks of {escape_markdown(document.name)}",
        "",
        f"- Document key: `{document.key}`",
        f"- Chunks: {len(chunks)}",
        "",
    ]

    for chunk in chunks:
        location = f" ({escape_markdown(chunk.location)})" if chunk.location else ""
        lines.append(f"## Chunk {chunk.index + 1}{location}")
        lines.append("")
        lines.append(f"- Id: `{chunk.id}`")
        lines.append(f"- Characters: {chunk.start}-{chunk.end}")
        lines.append(f"- Overlap with previous: {chunk.overlap_prev} characters")
        lines.append("")
        lines.append(escape_markdown(chunk.text.strip()))
        lines.append("")

    written = _write(path, "\n".join(lines))
    logger.info("chunks_exported", path=str(written), chunks=len(chunks))
    return written
