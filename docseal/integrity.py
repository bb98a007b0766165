"""Content fingerprinting and verification-marker stamping.

The published fingerprint is the SHA-256 of the compressed document *before*
stamping. The stamp encodes ``<base>/verify/<fingerprint>`` as a QR code in
the bottom-right corner of the first page and records the fingerprint in the
document information dictionary, so a stamped copy can be traced back to
its record.
"""

from __future__ import annotations

import hashlib
import io
import logging
from typing import Optional

from reportlab.graphics import renderPDF
from reportlab.graphics.barcode.qr import QrCodeWidget
from reportlab.graphics.shapes import Drawing
from reportlab.pdfgen import canvas

from .utils import DEFAULT_VERIFY_BASE_URL

log = logging.getLogger(__name__)

FINGERPRINT_INFO_KEY = "/DocSealFingerprint"
MARKER_SIZE = 36.0
MARKER_INSET = 4.0
CAPTION_FONT_SIZE = 6.0


def fingerprint(data: bytes) -> str:
    """Hex SHA-256 digest of *data*."""
    return hashlib.sha256(data).hexdigest()


def verification_url(digest: str, base_url: str = DEFAULT_VERIFY_BASE_URL) -> str:
    return f"{base_url.rstrip('/')}/verify/{digest}"


def _marker_overlay(
    url: str,
    digest: str,
    bottom: float,
    right: float,
    top: float,
) -> bytes:
    """One-page PDF holding only the QR marker and its caption."""
    buf = io.BytesIO()
    overlay = canvas.Canvas(buf, pagesize=(right, top), invariant=1)

    widget = QrCodeWidget(url)
    x1, y1, x2, y2 = widget.getBounds()
    drawing = Drawing(
        MARKER_SIZE,
        MARKER_SIZE,
        transform=[MARKER_SIZE / (x2 - x1), 0, 0, MARKER_SIZE / (y2 - y1), 0, 0],
    )
    drawing.add(widget)

    x = right - MARKER_INSET - MARKER_SIZE
    y = bottom + MARKER_INSET / 2
    renderPDF.draw(drawing, overlay, x, y)

    overlay.setFont("Helvetica", CAPTION_FONT_SIZE)
    overlay.setFillColorRGB(0.3, 0.3, 0.3)
    overlay.drawRightString(x - 2, y + 2, f"Verify: {digest[:12]}")

    overlay.showPage()
    overlay.save()
    return buf.getvalue()


def stamp(
    pdf_bytes: bytes,
    digest: str,
    *,
    base_url: str = DEFAULT_VERIFY_BASE_URL,
) -> bytes:
    """Return a copy of *pdf_bytes* carrying the verification marker for *digest*."""
    from pypdf import PdfReader, PdfWriter

    writer = PdfWriter(clone_from=PdfReader(io.BytesIO(pdf_bytes)))
    if not writer.pages:
        raise ValueError("cannot stamp a PDF without pages")

    page = writer.pages[0]
    box = page.mediabox
    url = verification_url(digest, base_url)
    overlay_bytes = _marker_overlay(
        url,
        digest,
        float(box.bottom),
        float(box.right),
        float(box.top),
    )
    page.merge_page(PdfReader(io.BytesIO(overlay_bytes)).pages[0])
    writer.add_metadata({FINGERPRINT_INFO_KEY: digest})

    buf = io.BytesIO()
    writer.write(buf)
    stamped = buf.getvalue()
    log.info("stamp: marker for %s embedded (%s bytes)", digest[:12], len(stamped))
    return stamped


def read_embedded_fingerprint(pdf_bytes: bytes) -> Optional[str]:
    """Fingerprint recorded by :func:`stamp`, or ``None`` for unstamped files."""
    from pypdf import PdfReader

    info = PdfReader(io.BytesIO(pdf_bytes)).metadata
    if not info:
        return None
    value = info.get(FINGERPRINT_INFO_KEY)
    return str(value) if value else None
