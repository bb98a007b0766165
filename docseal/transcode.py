"""Input normalization: PDF pass-through, Word/image → baseline PDF.

Word documents go through Docling for a simplified HTML rendition, which is
tokenized into styled ``ContentElement`` paragraphs and laid out on A4 pages
with reportlab's standard Helvetica faces.
"""

from __future__ import annotations

import html
import io
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from reportlab.lib.utils import ImageReader
from reportlab.pdfbase.pdfmetrics import stringWidth
from reportlab.pdfgen import canvas

from .exceptions import TranscodeError, UnsupportedFormat
from .models import ContentElement, SourceFile, TranscodeResult
from .utils import (
    A4_HEIGHT,
    A4_WIDTH,
    BODY_FONT_SIZE,
    HEADING_FONT_SIZE,
    IMAGE_EXTENSIONS,
    PAGE_MARGIN,
    PDF_EXTENSIONS,
    WORD_EXTENSIONS,
)

log = logging.getLogger(__name__)

CONTENT_WIDTH = A4_WIDTH - 2 * PAGE_MARGIN
BODY_LINE_HEIGHT = BODY_FONT_SIZE * 1.4
EMPTY_DOCUMENT_TEXT = "Empty document"

FONT_REGULAR = "Helvetica"
FONT_BOLD = "Helvetica-Bold"
FONT_ITALIC = "Helvetica-Oblique"

WidthFn = Callable[[str, str, float], float]


# ---------------------------------------------------------------------------
# Markup tokenizer
# ---------------------------------------------------------------------------

_TOKEN_RE = re.compile(r"<[^<>]+>|[^<]+|<")
_TAG_RE = re.compile(r"^<\s*(/)?\s*([A-Za-z][A-Za-z0-9]*)[^>]*?(/)?\s*>$")

_HEADING_TAGS = {"h1", "h2", "h3", "h4", "h5", "h6"}
_BOLD_TAGS = {"b", "strong"}
_ITALIC_TAGS = {"i", "em"}
_BLOCK_TAGS = {"p", "div", "li", "tr", "td", "th", "br", "table", "ul", "ol"}
_SKIP_TAGS = {"head", "style", "script", "title"}


@dataclass(frozen=True)
class MarkupToken:
    kind: str  # "open" | "close" | "void" | "text"
    value: str


def tokenize_markup(markup: str) -> list[MarkupToken]:
    """Split markup into tag and text tokens.

    Anything that does not look like a well-formed tag is kept as text.
    """
    tokens: list[MarkupToken] = []
    for raw in _TOKEN_RE.findall(markup or ""):
        if not raw.startswith("<") or raw == "<":
            tokens.append(MarkupToken("text", raw))
            continue
        if raw.startswith("<!") or raw.startswith("<?"):
            continue  # comments, doctype, processing instructions
        m = _TAG_RE.match(raw)
        if not m:
            tokens.append(MarkupToken("text", raw))
            continue
        closing, name, self_closing = m.group(1), m.group(2).lower(), m.group(3)
        if closing:
            tokens.append(MarkupToken("close", name))
        elif self_closing or name == "br":
            tokens.append(MarkupToken("void", name))
        else:
            tokens.append(MarkupToken("open", name))
    return tokens


@dataclass
class _StyleState:
    """Style flags of the run currently being collected."""

    bold_depth: int = 0
    italic_depth: int = 0
    heading_depth: int = 0
    skip_depth: int = 0
    words: list[str] = field(default_factory=list)
    all_bold: bool = True
    all_italic: bool = True
    any_heading: bool = False

    def enter(self, name: str) -> None:
        if name in _BOLD_TAGS:
            self.bold_depth += 1
        elif name in _ITALIC_TAGS:
            self.italic_depth += 1
        elif name in _HEADING_TAGS:
            self.heading_depth += 1
        elif name in _SKIP_TAGS:
            self.skip_depth += 1

    def leave(self, name: str) -> None:
        # Unmatched closing tags leave the flags untouched.
        if name in _BOLD_TAGS:
            self.bold_depth = max(0, self.bold_depth - 1)
        elif name in _ITALIC_TAGS:
            self.italic_depth = max(0, self.italic_depth - 1)
        elif name in _HEADING_TAGS:
            self.heading_depth = max(0, self.heading_depth - 1)
        elif name in _SKIP_TAGS:
            self.skip_depth = max(0, self.skip_depth - 1)

    def add_text(self, text: str) -> None:
        if self.skip_depth:
            return
        words = html.unescape(text).split()
        if not words:
            return
        self.words.extend(words)
        self.all_bold = self.all_bold and self.bold_depth > 0
        self.all_italic = self.all_italic and self.italic_depth > 0
        self.any_heading = self.any_heading or self.heading_depth > 0

    def flush(self) -> Optional[ContentElement]:
        if not self.words:
            return None
        element = ContentElement(
            text=" ".join(self.words),
            bold=self.all_bold,
            italic=self.all_italic,
            heading=self.any_heading,
        )
        self.words = []
        self.all_bold = True
        self.all_italic = True
        self.any_heading = False
        return element


def markup_to_content(markup: str) -> list[ContentElement]:
    """Convert simplified HTML into styled paragraphs.

    Never raises and never returns an empty list.
    """
    state = _StyleState()
    content: list[ContentElement] = []

    def _flush() -> None:
        element = state.flush()
        if element is not None:
            content.append(element)

    for token in tokenize_markup(markup):
        if token.kind == "text":
            state.add_text(token.value)
        elif token.kind == "void":
            if token.value in _BLOCK_TAGS:
                _flush()
        elif token.kind == "open":
            if token.value in _HEADING_TAGS or token.value in _BLOCK_TAGS:
                _flush()
            state.enter(token.value)
        else:
            if token.value in _HEADING_TAGS or token.value in _BLOCK_TAGS:
                _flush()
            state.leave(token.value)
    _flush()

    return content or [ContentElement(text=EMPTY_DOCUMENT_TEXT)]


# ---------------------------------------------------------------------------
# Word wrapping and page layout
# ---------------------------------------------------------------------------


def helvetica_width(text: str, font_name: str, font_size: float) -> float:
    return stringWidth(text, font_name, font_size)


def winansi_safe(text: str) -> str:
    """Replace characters the standard Type1 fonts cannot encode."""
    return text.encode("cp1252", errors="replace").decode("cp1252")


def wrap_text(text: str, measure: Callable[[str], float], max_width: float) -> list[str]:
    """Greedy word wrap. A single word wider than *max_width* gets its own line."""
    words = text.split()
    if not words:
        return [""]

    lines: list[str] = []
    current = ""
    for word in words:
        candidate = f"{current} {word}" if current else word
        if current and measure(candidate) > max_width:
            lines.append(current)
            current = word
        else:
            current = candidate
    if current:
        lines.append(current)
    return lines


@dataclass(frozen=True)
class PlacedLine:
    text: str
    font_name: str
    font_size: float
    x: float
    y: float
    heading: bool = False


def font_for(element: ContentElement) -> str:
    if element.bold:
        return FONT_BOLD
    if element.italic:
        return FONT_ITALIC
    return FONT_REGULAR


def line_metrics(element: ContentElement) -> tuple[float, float, float]:
    """Return (font_size, line_height, trailing_spacing) for *element*."""
    if element.heading:
        line_height = HEADING_FONT_SIZE * 1.6
        return HEADING_FONT_SIZE, line_height, line_height * 0.4
    return BODY_FONT_SIZE, BODY_LINE_HEIGHT, BODY_LINE_HEIGHT * 0.3


def layout_content(
    elements: list[ContentElement],
    width_fn: WidthFn = helvetica_width,
    *,
    page_width: float = A4_WIDTH,
    page_height: float = A4_HEIGHT,
    margin: float = PAGE_MARGIN,
) -> list[list[PlacedLine]]:
    """Place wrapped lines on pages; returns one list of lines per page."""
    content_width = page_width - 2 * margin
    top = page_height - margin
    pages: list[list[PlacedLine]] = [[]]
    y = top

    for element in elements:
        font_name = font_for(element)
        font_size, line_height, spacing = line_metrics(element)
        text = winansi_safe(element.text)

        def _measure(candidate: str) -> float:
            return width_fn(candidate, font_name, font_size)

        for line in wrap_text(text, _measure, content_width):
            if y - margin < line_height:
                pages.append([])
                y = top
            pages[-1].append(
                PlacedLine(line, font_name, font_size, margin, y, element.heading)
            )
            y -= line_height
        y -= spacing

    return pages


def render_pdf(pages: list[list[PlacedLine]]) -> bytes:
    """Draw laid-out pages into a deterministic PDF."""
    buf = io.BytesIO()
    pdf = canvas.Canvas(buf, pagesize=(A4_WIDTH, A4_HEIGHT), invariant=1, pageCompression=1)
    for lines in pages:
        for line in lines:
            pdf.setFont(line.font_name, line.font_size)
            if line.heading:
                pdf.setFillColorRGB(0.0, 0.0, 0.0)
            else:
                pdf.setFillColorRGB(0.1, 0.1, 0.1)
            pdf.drawString(line.x, line.y, line.text)
        pdf.showPage()
    pdf.save()
    return buf.getvalue()


# ---------------------------------------------------------------------------
# Word documents via Docling
# ---------------------------------------------------------------------------

_docx_converter = None


def _get_docx_converter() -> Any:
    global _docx_converter
    if _docx_converter is None:
        from docling.datamodel.base_models import InputFormat
        from docling.document_converter import DocumentConverter

        log.info("Initializing Docling DOCX converter ...")
        _docx_converter = DocumentConverter(allowed_formats=[InputFormat.DOCX])
    return _docx_converter


def docx_to_html(data: bytes, name: str = "document.docx") -> str:
    """Return Docling's HTML export of a Word document."""
    from docling.datamodel.base_models import DocumentStream

    stream_name = f"{name.rsplit('.', 1)[0] or 'document'}.docx"
    try:
        result = _get_docx_converter().convert(
            DocumentStream(name=stream_name, stream=io.BytesIO(data))
        )
        return result.document.export_to_html()
    except Exception as exc:
        raise TranscodeError(f"Could not read Word document {name}: {exc}") from exc


def word_to_pdf(source: SourceFile) -> TranscodeResult:
    log.info("transcode: converting %s to PDF", source.extension.upper())
    markup = docx_to_html(source.data, source.name)
    content = markup_to_content(markup)
    text = "\n".join(element.text for element in content)
    log.info("transcode: extracted %s characters in %s blocks", len(text), len(content))

    pages = layout_content(content)
    pdf_bytes = render_pdf(pages)
    log.info(
        "transcode: generated PDF with %s pages, size=%.0fKB",
        len(pages),
        len(pdf_bytes) / 1024,
    )
    return TranscodeResult(pdf_bytes=pdf_bytes, text=text)


# ---------------------------------------------------------------------------
# Images
# ---------------------------------------------------------------------------


def image_to_pdf(source: SourceFile) -> TranscodeResult:
    """Place a (shrunk) image on a single A4 page inside the margins."""
    from .compress import compress_image

    shrunk = compress_image(source)
    try:
        reader = ImageReader(io.BytesIO(shrunk.data))
        img_w, img_h = reader.getSize()
    except Exception as exc:
        raise TranscodeError(f"Could not read image {source.name}: {exc}") from exc

    max_w = A4_WIDTH - 2 * PAGE_MARGIN
    max_h = A4_HEIGHT - 2 * PAGE_MARGIN
    scale = min(max_w / img_w, max_h / img_h)
    draw_w, draw_h = img_w * scale, img_h * scale
    x = PAGE_MARGIN + (max_w - draw_w) / 2
    y = A4_HEIGHT - PAGE_MARGIN - draw_h

    buf = io.BytesIO()
    pdf = canvas.Canvas(buf, pagesize=(A4_WIDTH, A4_HEIGHT), invariant=1, pageCompression=1)
    pdf.drawImage(reader, x, y, width=draw_w, height=draw_h)
    pdf.showPage()
    pdf.save()
    return TranscodeResult(pdf_bytes=buf.getvalue())


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def transcode(source: SourceFile) -> TranscodeResult:
    """Normalize *source* into a baseline PDF.

    Raises:
        UnsupportedFormat: for extensions outside the fixed input set.
        TranscodeError: when a supported container cannot be read.
    """
    ext = source.extension
    log.info("transcode: processing %s (%.0fKB)", source.name, source.size / 1024)

    if ext in PDF_EXTENSIONS:
        log.info("transcode: %s is already PDF, returning as-is", source.name)
        return TranscodeResult(pdf_bytes=source.data)
    if ext in WORD_EXTENSIONS:
        return word_to_pdf(source)
    if ext in IMAGE_EXTENSIONS:
        return image_to_pdf(source)
    raise UnsupportedFormat(ext)
