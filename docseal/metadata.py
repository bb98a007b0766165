"""Bilingual (English/Filipino) metadata extraction.

Digital PDFs are read with pdfplumber; scanned pages and images go through
Tesseract. Field extraction is plain regex over the recovered text. Results
are advisory only, and a failure here never stops the pipeline.
"""

from __future__ import annotations

import io
import logging
import re
from typing import Any, Optional

from .models import DocMetadata, DocType, Language, SourceFile
from .utils import IMAGE_EXTENSIONS, WORD_EXTENSIONS

log = logging.getLogger(__name__)

# Pages with less embedded text than this are treated as scanned.
OCR_TEXT_THRESHOLD = 50
OCR_DPI = 300

DEFAULT_OCR_LANG = "eng"
FILIPINO_OCR_LANG = "fil"


# ---------------------------------------------------------------------------
# Language cues
# ---------------------------------------------------------------------------

_FILIPINO_PATTERNS = [
    re.compile(
        r"PAARALAN|GURO|PETSA|ORAS|BAITANG|ASIGNATURA|MARKAHAN|LUNES|MARTES"
        r"|MIYERKULES|HUWEBES|BIYERNES"
    ),
    re.compile(r"NILALAMAN|PAMANTAYAN|KASANAYAN|KURIKULUM|LAYUNIN|GAWAIN"),
    re.compile(r"EDUKASYON\s*SA\s*PAGPAPAKATAO|ARALING\s*PANLIPUNAN|PILIPINAS"),
]

_ENGLISH_PATTERNS = [
    re.compile(
        r"SCHOOL|TEACHER|DATE|TIME|GRADE|SUBJECT|MARK|MONDAY|TUESDAY|WEDNESDAY"
        r"|THURSDAY|FRIDAY"
    ),
    re.compile(r"CONTENT|STANDARDS|COMPETENCIES|ACTIVITIES|ASSESSMENT|RESOURCES"),
    re.compile(r"LEARNING\s*OBJECTIVES|PERFORMANCE|QUARTER|WEEK"),
]


def language_scores(text: str) -> tuple[int, int]:
    """Return (filipino_hits, english_hits) for *text*."""
    upper = (text or "").upper()
    filipino = sum(len(p.findall(upper)) for p in _FILIPINO_PATTERNS)
    english = sum(len(p.findall(upper)) for p in _ENGLISH_PATTERNS)
    return filipino, english


def detect_language(text: str) -> Language:
    filipino, english = language_scores(text)
    if filipino > english:
        return Language.FILIPINO
    if english > filipino:
        return Language.ENGLISH
    return Language.UNKNOWN


# ---------------------------------------------------------------------------
# Field patterns
# ---------------------------------------------------------------------------

_DOC_TYPE_PATTERNS: list[tuple[DocType, re.Pattern[str]]] = [
    (
        DocType.DLL,
        re.compile(
            r"DAILY\s*LESSON\s*(?:LOG|PLAN)|\bD\.?L\.?L\b\.?|DETALYADONG\s*PLANO"
            r"|ARAW-ARAW\s*LEKSYON"
        ),
    ),
    (DocType.ISP, re.compile(r"INSTRUCTIONAL\s*SUPERVISORY\s*PLAN|\bI\.?S\.?P\b\.?")),
    (DocType.ISR, re.compile(r"INSTRUCTIONAL\s*SUPERVISORY\s*REPORT|\bI\.?S\.?R\b\.?")),
]

# Order is a priority list: the first matching subject wins.
SUBJECT_PATTERNS: list[tuple[str, re.Pattern[str]]] = [
    ("English", re.compile(r"ENGLISH|WIKA")),
    ("Filipino", re.compile(r"FILIPINO|TAGALOG|WIKANG\s*PILIPINO")),
    ("Mathematics", re.compile(r"MATHEMATICS|MATH|MATEMATIKA")),
    ("Science", re.compile(r"SCIENCE|AGHAM")),
    ("AP", re.compile(r"ARALING\s*PANLIPUNAN|\bA\.?P\b\.?|SOCIAL\s*STUDIES")),
    (
        "GMRC",
        re.compile(r"EDUKASYON\s*SA\s*PAGPAPAKATAO|\bE\.?S\.?P\b\.?|GMRC|VALUES|MORAL"),
    ),
    ("MAPEH", re.compile(r"MAPEH|ARTS|MUSIC|PHYSICAL|HEALTH|\bPE\b")),
    ("EPP", re.compile(r"\bE\.?P\.?P\b\.?|EDUKASYON.*PRODUKTIBO|VOCATIONAL")),
    ("TLE", re.compile(r"\bT\.?L\.?E\b\.?|TECHNOLOGY.*LIVELIHOOD")),
]

_GRADE_LABEL = r"\b(?:GRADE|GR(?![A-Z])\.?|BAITANG|ANTAS)(?:\s*(?:LEVEL|LEBEL|ANTAS)\b)?\s*[:#]?\s*"
_GRADE_NUMBER_RE = re.compile(_GRADE_LABEL + r"(1[0-2]|[1-9])\b")
_GRADE_WORD_RE = re.compile(_GRADE_LABEL + r"(?!(?:LEVEL|LEBEL|ANTAS)\b)([A-Z]+)")
_WEEK_RE = re.compile(r"(?:WEEK|LINGGO)\s*#?\s*(\d+)")
_SCHOOL_YEAR_RE = re.compile(r"S\.?Y\.?\s*(\d{4}\s*[-–]\s*\d{4})", re.IGNORECASE)
_BARE_YEAR_RE = re.compile(r"(\d{4}\s*[-–]\s*\d{4})")
_SCHOOL_RE = re.compile(r"(?:SCHOOL|PAARALAN)(?!\s*YEAR)\s*:?[ \t]*([^\n]+)", re.IGNORECASE)
_TEACHER_RE = re.compile(r"(?:TEACHER|GURO|EDUCATOR)\s*:?[ \t]*([^\n]+)", re.IGNORECASE)


def default_metadata() -> DocMetadata:
    """The fully unknown record returned when nothing can be read."""
    return DocMetadata()


def detect_doc_type(upper: str) -> DocType:
    for doc_type, pattern in _DOC_TYPE_PATTERNS:
        if pattern.search(upper):
            return doc_type
    return DocType.UNKNOWN


def detect_subject(upper: str) -> Optional[str]:
    for name, pattern in SUBJECT_PATTERNS:
        if pattern.search(upper):
            return name
    return None


def _label_value(pattern: re.Pattern[str], text: str) -> Optional[str]:
    m = pattern.search(text)
    if not m:
        return None
    value = m.group(1).strip()
    return value or None


def parse_metadata(text: str) -> DocMetadata:
    """Pattern-based field extraction. Confidence and language are left at defaults."""
    text = text or ""
    upper = text.upper()

    grade = _GRADE_NUMBER_RE.search(upper) or _GRADE_WORD_RE.search(upper)
    week = _WEEK_RE.search(upper)
    school_year = _SCHOOL_YEAR_RE.search(text) or _BARE_YEAR_RE.search(text)

    return DocMetadata(
        doc_type=detect_doc_type(upper),
        week_number=int(week.group(1)) if week else None,
        school_year=re.sub(r"\s", "", school_year.group(1)).replace("–", "-")
        if school_year
        else None,
        subject=detect_subject(upper),
        grade_level=grade.group(1) if grade else None,
        school=_label_value(_SCHOOL_RE, text),
        teacher=_label_value(_TEACHER_RE, text),
        raw_text=text,
    )


# ---------------------------------------------------------------------------
# OCR
# ---------------------------------------------------------------------------


def _recognize(image: Any, lang: str) -> tuple[str, float]:
    """Run Tesseract once; return (text, mean word confidence 0-100)."""
    import pytesseract

    data = pytesseract.image_to_data(image, lang=lang, output_type=pytesseract.Output.DICT)
    lines: dict[tuple[int, int, int], list[str]] = {}
    confidences: list[float] = []
    for i, word in enumerate(data.get("text", [])):
        word = (word or "").strip()
        if not word:
            continue
        key = (data["block_num"][i], data["par_num"][i], data["line_num"][i])
        lines.setdefault(key, []).append(word)
        try:
            conf = float(data["conf"][i])
        except (TypeError, ValueError):
            continue
        if conf >= 0:
            confidences.append(conf)

    text = "\n".join(" ".join(words) for _, words in sorted(lines.items()))
    confidence = round(sum(confidences) / len(confidences), 2) if confidences else 0.0
    return text, confidence


def ocr_metadata(image: Any) -> DocMetadata:
    """Two-pass recognition: default language first, Filipino model if cues dominate."""
    eng_text, eng_conf = _recognize(image, DEFAULT_OCR_LANG)
    language = detect_language(eng_text)
    log.info("ocr: detected language %s", language.value)

    text, confidence = eng_text, eng_conf
    if language is Language.FILIPINO:
        try:
            text, confidence = _recognize(image, FILIPINO_OCR_LANG)
        except Exception as exc:
            log.warning("ocr: Filipino model unavailable (%s); keeping English pass", exc)

    metadata = parse_metadata(text)
    metadata.confidence = confidence
    metadata.language = language
    return metadata


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def _pdf_metadata(data: bytes) -> DocMetadata:
    import pdfplumber

    with pdfplumber.open(io.BytesIO(data)) as pdf:
        if not pdf.pages:
            return default_metadata()
        page = pdf.pages[0]
        text = (page.extract_text(x_tolerance=2, y_tolerance=2) or "").strip()
        if len(text) < OCR_TEXT_THRESHOLD:
            log.info("ocr: first page has %s chars of text, falling back to OCR", len(text))
            return ocr_metadata(page.to_image(resolution=OCR_DPI).original)

    metadata = parse_metadata(text)
    metadata.confidence = 100.0
    metadata.language = detect_language(text)
    return metadata


def _text_metadata(text: str) -> DocMetadata:
    metadata = parse_metadata(text)
    metadata.confidence = 100.0
    metadata.language = detect_language(text)
    return metadata


def extract_metadata(source: SourceFile, text: Optional[str] = None) -> DocMetadata:
    """Recover advisory metadata from *source*.

    *text* is the plain text the transcoder already produced (Word inputs).
    Never raises; unreadable inputs yield :func:`default_metadata`.
    """
    ext = source.extension
    try:
        if ext == "pdf":
            return _pdf_metadata(source.data)
        if ext in IMAGE_EXTENSIONS:
            from PIL import Image

            with Image.open(io.BytesIO(source.data)) as image:
                image.load()
                return ocr_metadata(image)
        if ext in WORD_EXTENSIONS and text:
            return _text_metadata(text)
    except Exception as exc:
        log.error("ocr: metadata extraction failed for %s: %s", source.name, exc)
        return default_metadata()

    log.warning("ocr: no extraction route for %s (.%s)", source.name, ext)
    return default_metadata()
