"""Size reduction for PDFs and images.

PDF compression is an ordered list of ``bytes -> bytes`` layers composed by
:func:`apply_strategies`. A layer that raises or grows the data is skipped and the
previous output carries on, so the worst case is the untouched input.
"""

from __future__ import annotations

import io
import logging
from pathlib import Path
from typing import Callable, Sequence

from .models import SourceFile
from .utils import (
    A4_HEIGHT,
    A4_WIDTH,
    IMAGE_MAX_DIMENSION,
    IMAGE_TARGET_BYTES,
    PDF_TARGET_BYTES,
)

log = logging.getLogger(__name__)

Strategy = Callable[[bytes], bytes]

OVERSIZE_FACTOR = 1.2
RASTER_DPI = 110
RASTER_JPEG_QUALITY = 60
IMAGE_QUALITY_STEPS = (85, 75, 65, 55, 45, 35)


def _kb(size: int) -> str:
    return f"{size / 1024:.0f}KB"


# ---------------------------------------------------------------------------
# PDF layers
# ---------------------------------------------------------------------------


def normalize_page_size(data: bytes) -> bytes:
    """Uniformly scale pages larger than 1.2x A4 down to fit A4."""
    from pypdf import PdfReader, PdfWriter

    writer = PdfWriter(clone_from=PdfReader(io.BytesIO(data)))
    scaled = 0
    for i, page in enumerate(writer.pages):
        width = float(page.mediabox.width)
        height = float(page.mediabox.height)
        if width <= A4_WIDTH * OVERSIZE_FACTOR and height <= A4_HEIGHT * OVERSIZE_FACTOR:
            continue
        scale = min(1.0, A4_WIDTH / width, A4_HEIGHT / height)
        if scale < 1.0:
            log.debug("compress: page %s scaled to %.0f%%", i + 1, scale * 100)
            page.scale_by(scale)
            scaled += 1

    if not scaled:
        return data
    buf = io.BytesIO()
    writer.write(buf)
    return buf.getvalue()


def rewrite_compact(data: bytes) -> bytes:
    """Re-serialize with compressed content streams and no redundant objects."""
    from pypdf import PdfReader, PdfWriter

    writer = PdfWriter(clone_from=PdfReader(io.BytesIO(data)))
    for page in writer.pages:
        page.compress_content_streams(level=9)
    writer.compress_identical_objects()
    buf = io.BytesIO()
    writer.write(buf)
    return buf.getvalue()


def rasterize_pages(
    data: bytes,
    *,
    dpi: int = RASTER_DPI,
    quality: int = RASTER_JPEG_QUALITY,
) -> bytes:
    """Rebuild the document from one lossy JPEG per page."""
    import fitz  # PyMuPDF

    src = fitz.open(stream=data, filetype="pdf")
    out = fitz.open()
    try:
        for page in src:
            pix = page.get_pixmap(dpi=dpi)
            jpeg = pix.tobytes(output="jpeg", jpg_quality=quality)
            new_page = out.new_page(width=page.rect.width, height=page.rect.height)
            new_page.insert_image(new_page.rect, stream=jpeg)
        return out.tobytes(garbage=4, deflate=True)
    finally:
        out.close()
        src.close()


STRUCTURAL_STRATEGIES: tuple[Strategy, ...] = (normalize_page_size, rewrite_compact)


def apply_strategies(data: bytes, strategies: Sequence[Strategy]) -> bytes:
    """Run *strategies* in order; a layer that fails or grows the data is skipped."""
    current = data
    for strategy in strategies:
        name = getattr(strategy, "__name__", repr(strategy))
        try:
            out = strategy(current)
        except Exception as exc:
            log.warning("compress: %s failed, keeping previous output: %s", name, exc)
            continue
        if len(out) > len(current):
            log.debug("compress: %s grew output to %s, discarded", name, _kb(len(out)))
            continue
        current = out
        log.debug("compress: %s -> %s", name, _kb(len(current)))
    return current


def compress_pdf(
    pdf_bytes: bytes,
    *,
    target_bytes: int = PDF_TARGET_BYTES,
    deep: bool = False,
) -> bytes:
    """Shrink *pdf_bytes* toward *target_bytes*.

    Never raises and never returns something larger than the input.
    """
    initial = len(pdf_bytes)
    if initial <= target_bytes:
        log.info("compress: %s is within %s target", _kb(initial), _kb(target_bytes))
        return pdf_bytes

    log.info(
        "compress: PDF is %s, exceeds %s target. Attempting compression...",
        _kb(initial),
        _kb(target_bytes),
    )
    result = apply_strategies(pdf_bytes, STRUCTURAL_STRATEGIES)

    if deep and len(result) > target_bytes:
        rasterized = apply_strategies(result, (rasterize_pages,))
        if len(rasterized) < len(result):
            result = rasterized
        else:
            log.info("compress: rasterization did not help, keeping structural output")

    if len(result) > initial:
        log.warning("compress: no reduction achieved, returning original")
        return pdf_bytes

    log.info(
        "compress: %s -> %s (%.1f%% reduction)",
        _kb(initial),
        _kb(len(result)),
        (1 - len(result) / initial) * 100,
    )
    return result


# ---------------------------------------------------------------------------
# Images
# ---------------------------------------------------------------------------


def compress_image(
    source: SourceFile,
    *,
    max_bytes: int = IMAGE_TARGET_BYTES,
    max_dimension: int = IMAGE_MAX_DIMENSION,
) -> SourceFile:
    """Downscale and re-encode an image as JPEG until it fits *max_bytes*.

    Returns *source* unchanged when it is already small enough or cannot be
    decoded.
    """
    if source.size <= max_bytes:
        log.info("compress: image is %s, within %s target", _kb(source.size), _kb(max_bytes))
        return source

    from PIL import Image, ImageOps

    log.info("compress: image is %s, exceeds %s target", _kb(source.size), _kb(max_bytes))
    try:
        with Image.open(io.BytesIO(source.data)) as opened:
            image = ImageOps.exif_transpose(opened).convert("RGB")
    except Exception as exc:
        log.warning("compress: could not decode %s, keeping original: %s", source.name, exc)
        return source

    image.thumbnail((max_dimension, max_dimension))
    encoded = b""
    for quality in IMAGE_QUALITY_STEPS:
        buf = io.BytesIO()
        image.save(buf, format="JPEG", quality=quality, optimize=True)
        encoded = buf.getvalue()
        if len(encoded) <= max_bytes:
            break

    if len(encoded) >= source.size:
        return source
    log.info("compress: image %s -> %s", _kb(source.size), _kb(len(encoded)))
    return SourceFile(name=f"{Path(source.name).stem}.jpg", data=encoded)
