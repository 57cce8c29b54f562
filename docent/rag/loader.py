"""Document loader for extracting text and structure from source files.

Handles:
- Format detection by content sniffing (magic bytes, ZIP layout, text decoding)
- PDF page-by-page extraction (reading order, page sections)
- Word documents (paragraphs, heading sections)
- PowerPoint decks (slide sections)
- Markdown (YAML frontmatter, heading hierarchy) and plain text

The file extension is only a hint; a mislabelled file is parsed by what its
bytes actually contain.
"""
import io
import re
import zipfile
from pathlib import Path
from typing import List, Optional, Tuple
from xml.etree import ElementTree

import chardet
import structlog
import yaml
from docx import Document as DocxDocument
from PyPDF2 import PdfReader

from docent.errors import ParseError, UnsupportedFormat
from docent.rag.models import Document, Section

logger = structlog.get_logger()

PDF = "pdf"
DOCX = "docx"
PPTX = "pptx"
MARKDOWN = "markdown"
TEXT = "text"

SUPPORTED_FORMATS = (PDF, DOCX, PPTX, MARKDOWN, TEXT)

MARKDOWN_HINTS = {".md", ".markdown", ".mdown", "md", "markdown"}

EXTENSION_FORMATS = {".pdf": PDF, ".docx": DOCX, ".pptx": PPTX}

PDF_MAGIC = b"%PDF-"
ZIP_MAGIC = b"PK\x03\x04"
OLE_MAGIC = b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1"

DRAWINGML_NS = "{http://schemas.openxmlformats.org/drawingml/2006/main}"
SLIDE_PATTERN = re.compile(r"^ppt/slides/slide(\d+)\.xml$")


def sniff_format(data: bytes, hint: Optional[str] = None) -> str:
    """Detect a document format from its leading bytes.

    Args:
        data: Raw file content
        hint: Optional format hint (file extension or format name)

    Returns:
        One of SUPPORTED_FORMATS

    Raises:
        UnsupportedFormat: If the content matches no supported format
    """
    head = data[:8]

    if data.lstrip(b"\r\n\t ").startswith(PDF_MAGIC):
        return PDF

    if head.startswith(ZIP_MAGIC):
        try:
            with zipfile.ZipFile(io.BytesIO(data)) as archive:
                names = set(archive.namelist())
        except zipfile.BadZipFile as e:
            raise UnsupportedFormat(f"Corrupt ZIP container: {e}") from e
        if "word/document.xml" in names:
            return DOCX
        if any(SLIDE_PATTERN.match(name) for name in names):
            return PPTX
        raise UnsupportedFormat("ZIP archive is not a Word or PowerPoint document")

    if head.startswith(OLE_MAGIC):
        raise UnsupportedFormat("Legacy binary Office formats (.doc/.ppt) are not supported")

    # Anything else must decode as text
    text, _ = _decode_text(data)

    if (hint or "").lower() in MARKDOWN_HINTS or text.startswith("---\n"):
        return MARKDOWN
    return TEXT


def _decode_text(data: bytes) -> Tuple[str, str]:
    """Decode bytes as text, rejecting binary content.

    Returns:
        Tuple of (text, encoding)
    """
    if data.startswith(b"\xef\xbb\xbf"):
        return data[3:].decode("utf-8", errors="replace"), "utf-8-sig"
    if data.startswith((b"\xff\xfe", b"\xfe\xff")):
        return data.decode("utf-16", errors="replace"), "utf-16"

    sample = data[:8192]
    if b"\x00" in sample:
        raise UnsupportedFormat("Binary content (NUL bytes) is not a supported text format")

    try:
        text = data.decode("utf-8")
        encoding = "utf-8"
    except UnicodeDecodeError:
        detected = chardet.detect(sample)
        encoding = detected.get("encoding")
        if not encoding or (detected.get("confidence") or 0.0) < 0.5:
            raise UnsupportedFormat("Content is neither a known document format nor text")
        text = data.decode(encoding, errors="replace")

    if text:
        control = sum(1 for ch in text[:8192] if ord(ch) < 32 and ch not in "\n\r\t\f")
        if control / min(len(text), 8192) > 0.1:
            raise UnsupportedFormat("Content has too many control characters to be text")

    return text, encoding


class DocumentLoader:
    """Loads source files into Document values. Holds no state between calls."""

    # Regex for YAML frontmatter (must be at start of file)
    FRONTMATTER_PATTERN = re.compile(r"^---\s*\n(.*?)\n---\s*\n", re.DOTALL)

    # Regex for markdown headings
    HEADING_PATTERN = re.compile(r"^(#{1,6})\s+(.+?)\s*#*\s*$", re.MULTILINE)

    def supported(self, file_path: Path) -> bool:
        """Check whether a file sniffs as a supported format."""
        try:
            with open(file_path, "rb") as f:
                head = f.read(8192)
            if head.startswith(ZIP_MAGIC):
                head = Path(file_path).read_bytes()
            sniff_format(head, Path(file_path).suffix)
            return True
        except (OSError, UnsupportedFormat):
            return False

    def load(self, file_path: Path, format_hint: Optional[str] = None) -> Document:
        """Load a document from disk.

        Args:
            file_path: Path to the source file
            format_hint: Optional hint; defaults to the file extension

        Returns:
            Document with extracted text and sections

        Raises:
            FileNotFoundError: If the file doesn't exist
            UnsupportedFormat: If the content is not a supported format
            ParseError: If extraction fails
        """
        file_path = Path(file_path)
        if not file_path.exists():
            raise FileNotFoundError(f"Document not found: {file_path}")

        data = file_path.read_bytes()
        return self.load_bytes(data, str(file_path), format_hint or file_path.suffix)

    def load_bytes(
        self,
        data: bytes,
        source_path: str,
        format_hint: Optional[str] = None,
    ) -> Document:
        """Load a document from raw bytes supplied by the caller.

        Args:
            data: Raw file content
            source_path: Path the bytes came from (used for identity)
            format_hint: Optional hint such as ".md"

        Returns:
            Document with extracted text and sections
        """
        fmt = sniff_format(data, format_hint)

        extractors = {
            PDF: self._extract_pdf,
            DOCX: self._extract_docx,
            PPTX: self._extract_pptx,
            MARKDOWN: self._extract_markdown,
            TEXT: self._extract_text,
        }

        text, sections = extractors[fmt](data)

        expected = EXTENSION_FORMATS.get((format_hint or "").lower())
        if expected and expected != fmt:
            logger.warning(
                "document_format_mismatch",
                path=source_path,
                hint=format_hint,
                detected=fmt,
            )

        document = Document(
            source_path=source_path,
            text=text,
            format=fmt,
            sections=tuple(sections),
        )

        logger.info(
            "document_loaded",
            path=source_path,
            format=fmt,
            content_length=len(text),
            section_count=len(sections),
        )

        return document

    def _extract_pdf(self, data: bytes) -> Tuple[str, List[Section]]:
        """Extract PDF text page by page, recording page boundaries."""
        try:
            reader = PdfReader(io.BytesIO(data))
            if reader.is_encrypted:
                # Many PDFs are encrypted with an empty user password
                reader.decrypt("")
            pages = list(reader.pages)
        except Exception as e:
            raise ParseError(f"Failed to read PDF: {e}") from e

        parts: List[str] = []
        sections: List[Section] = []
        position = 0

        for page_number, page in enumerate(pages, 1):
            try:
                page_text = page.extract_text() or ""
            except Exception as e:
                logger.warning("pdf_page_extraction_failed", page=page_number, error=str(e))
                page_text = ""

            page_text = page_text.strip()
            if not page_text:
                continue

            if parts:
                position += 2  # blank line between pages
            sections.append(
                Section(
                    start=position,
                    end=position + len(page_text),
                    label=f"page {page_number}",
                    kind="page",
                )
            )
            parts.append(page_text)
            position += len(page_text)

        return "\n\n".join(parts), sections

    def _extract_docx(self, data: bytes) -> Tuple[str, List[Section]]:
        """Extract Word paragraphs; heading-styled paragraphs become sections."""
        try:
            doc = DocxDocument(io.BytesIO(data))
        except Exception as e:
            raise ParseError(f"Failed to read Word document: {e}") from e

        parts: List[str] = []
        headings: List[Tuple[int, int, str]] = []
        position = 0

        for paragraph in doc.paragraphs:
            text = paragraph.text.strip()
            if not text:
                continue
            if parts:
                position += 2
            style_name = paragraph.style.name if paragraph.style is not None else ""
            level = _heading_level(style_name)
            if level:
                headings.append((level, position, text))
            parts.append(text)
            position += len(text)

        text = "\n\n".join(parts)
        return text, self._heading_sections(headings, len(text))

    def _extract_pptx(self, data: bytes) -> Tuple[str, List[Section]]:
        """Extract slide text directly from the package XML, in slide order."""
        try:
            with zipfile.ZipFile(io.BytesIO(data)) as archive:
                slide_names = {}
                for name in archive.namelist():
                    match = SLIDE_PATTERN.match(name)
                    if match:
                        slide_names[int(match.group(1))] = name

                slides = []
                for number in sorted(slide_names):
                    root = ElementTree.fromstring(archive.read(slide_names[number]))
                    slides.append((number, self._slide_text(root)))
        except (zipfile.BadZipFile, ElementTree.ParseError, KeyError) as e:
            raise ParseError(f"Failed to read PowerPoint deck: {e}") from e

        parts: List[str] = []
        sections: List[Section] = []
        position = 0

        for number, slide_text in slides:
            if not slide_text:
                continue
            if parts:
                position += 2
            sections.append(
                Section(
                    start=position,
                    end=position + len(slide_text),
                    label=f"slide {number}",
                    kind="slide",
                )
            )
            parts.append(slide_text)
            position += len(slide_text)

        return "\n\n".join(parts), sections

    @staticmethod
    def _slide_text(root: ElementTree.Element) -> str:
        lines = []
        for paragraph in root.iter(f"{DRAWINGML_NS}p"):
            runs = [node.text or "" for node in paragraph.iter(f"{DRAWINGML_NS}t")]
            line = "".join(runs).strip()
            if line:
                lines.append(line)
        return "\n".join(lines)

    def _extract_markdown(self, data: bytes) -> Tuple[str, List[Section]]:
        """Strip YAML frontmatter and record the heading hierarchy."""
        content, _ = _decode_text(data)
        frontmatter, text = self._parse_frontmatter(content)

        if frontmatter:
            logger.debug("markdown_frontmatter_found", keys=sorted(frontmatter))

        headings = [
            (len(match.group(1)), match.start(), match.group(2).strip())
            for match in self.HEADING_PATTERN.finditer(text)
        ]
        return text, self._heading_sections(headings, len(text))

    def _extract_text(self, data: bytes) -> Tuple[str, List[Section]]:
        text, encoding = _decode_text(data)
        logger.debug("text_decoded", encoding=encoding, length=len(text))
        return text, []

    def _parse_frontmatter(self, content: str) -> Tuple[dict, str]:
        """Extract YAML frontmatter from markdown content.

        Returns:
            Tuple of (frontmatter_dict, content_without_frontmatter)
        """
        match = self.FRONTMATTER_PATTERN.match(content)
        if not match:
            return {}, content

        try:
            frontmatter = yaml.safe_load(match.group(1))
        except yaml.YAMLError as e:
            logger.warning("frontmatter_parse_error", error=str(e))
            return {}, content

        if not isinstance(frontmatter, dict):
            return {}, content

        return frontmatter, content[match.end():]

    @staticmethod
    def _heading_sections(
        headings: List[Tuple[int, int, str]], text_length: int
    ) -> List[Section]:
        """Turn (level, position, text) headings into breadcrumb sections.

        Each section runs from its heading to the next heading; its label is
        the heading trail leading to it, like "# Main > ## Sub".
        """
        sections = []
        stack: List[Tuple[int, str]] = []

        for i, (level, position, title) in enumerate(headings):
            while stack and stack[-1][0] >= level:
                stack.pop()
            stack.append((level, title))

            end = headings[i + 1][1] if i + 1 < len(headings) else text_length
            label = " > ".join(f"{'#' * lvl} {name}" for lvl, name in stack)
            sections.append(Section(start=position, end=end, label=label, kind="heading"))

        return sections


def _heading_level(style_name: str) -> int:
    """Heading level of a Word paragraph style, or 0 for body text."""
    if style_name == "Title":
        return 1
    match = re.match(r"Heading\s+(\d)", style_name or "")
    return int(match.group(1)) if match else 0
