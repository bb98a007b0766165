from __future__ import annotations

import io
import sys
import types

import pytest
from pypdf import PdfReader

from conftest import make_pdf, make_png
from docseal.exceptions import TranscodeError, UnsupportedFormat
from docseal.models import ContentElement, SourceFile
from docseal.transcode import (
    EMPTY_DOCUMENT_TEXT,
    docx_to_html,
    font_for,
    layout_content,
    line_metrics,
    markup_to_content,
    tokenize_markup,
    transcode,
    wrap_text,
)

LESSON_HTML = (
    "<!DOCTYPE html><html><head><title>ignored</title><style>p {color: red}</style></head>"
    "<body><h1>Daily Lesson Log</h1>"
    "<p><b>Grade 4</b> Araling Panlipunan</p>"
    "<p><i>Week 3 &amp; 4</i></p>"
    "<ul><li>Objective one</li><li>Objective two</li></ul>"
    "</body></html>"
)


def _fixed_width(text: str, font_name: str, font_size: float) -> float:
    return len(text) * font_size * 0.5


# ---------------------------------------------------------------------------
# Tokenizer and content model
# ---------------------------------------------------------------------------


def test_tokenizer_classifies_tags():
    tokens = tokenize_markup('<p class="x">Hi<br/></p><!-- note -->')

    assert [(t.kind, t.value) for t in tokens] == [
        ("open", "p"),
        ("text", "Hi"),
        ("void", "br"),
        ("close", "p"),
    ]


def test_tokenizer_keeps_stray_angle_brackets_as_text():
    tokens = tokenize_markup("a < b")

    assert all(t.kind == "text" for t in tokens)
    assert "".join(t.value for t in tokens) == "a < b"


def test_markup_to_content_styles_and_blocks():
    content = markup_to_content(LESSON_HTML)

    assert content == [
        ContentElement("Daily Lesson Log", heading=True),
        ContentElement("Grade 4 Araling Panlipunan"),
        ContentElement("Week 3 & 4", italic=True),
        ContentElement("Objective one"),
        ContentElement("Objective two"),
    ]


def test_fully_bold_paragraph_is_bold():
    assert markup_to_content("<p><strong>All bold here</strong></p>") == [
        ContentElement("All bold here", bold=True)
    ]


def test_heading_is_flushed_before_its_flag_clears():
    content = markup_to_content("<h2>Layunin</h2>Body text after heading")

    assert content == [
        ContentElement("Layunin", heading=True),
        ContentElement("Body text after heading"),
    ]


def test_unmatched_closing_tags_are_ignored():
    content = markup_to_content("</b></b><p>plain</p><p><b>bold</b></p>")

    assert content == [ContentElement("plain"), ContentElement("bold", bold=True)]


def test_empty_markup_yields_placeholder():
    assert markup_to_content("") == [ContentElement(EMPTY_DOCUMENT_TEXT)]
    assert markup_to_content("<p>   </p><script>var x = 1;</script>") == [
        ContentElement(EMPTY_DOCUMENT_TEXT)
    ]


# ---------------------------------------------------------------------------
# Wrapping and layout
# ---------------------------------------------------------------------------


def test_wrap_text_greedy():
    assert wrap_text("aaa bbb ccc", len, 7) == ["aaa bbb", "ccc"]


def test_wrap_text_never_splits_a_word():
    assert wrap_text("supercalifragilistic a", len, 5) == ["supercalifragilistic", "a"]


def test_wrap_text_empty():
    assert wrap_text("   ", len, 10) == [""]


def test_layout_paginates_within_margins():
    elements = [ContentElement(f"Paragraph {i} " + "word " * 40) for i in range(60)]
    elements.insert(0, ContentElement("Title", heading=True, bold=True))

    pages = layout_content(elements, _fixed_width, page_width=595.28, page_height=841.89, margin=40)

    assert len(pages) > 1
    for lines in pages:
        assert lines[0].y == pytest.approx(841.89 - 40)
        assert all(line.y >= 40 for line in lines)
        assert all(_fixed_width(line.text, line.font_name, line.font_size) <= 515.28 for line in lines)
    assert pages[0][0].font_name == "Helvetica-Bold"
    assert pages[0][0].font_size == 13.0


def test_page_count_matches_manual_wrapping():
    elements = []
    for section in range(3):
        elements.append(ContentElement(f"Section {section} objectives", heading=True))
        elements.append(ContentElement("Learners identify key ideas. " * 12, bold=True))
        elements.extend(ContentElement(f"Activity {i} " + "lesson " * 55) for i in range(20))

    width = 595.28 - 2 * 40
    usable = 841.89 - 2 * 40
    expected_pages, used = 1, 0.0
    for element in elements:
        font_size, line_height, spacing = line_metrics(element)
        lines = wrap_text(
            element.text,
            lambda s: _fixed_width(s, font_for(element), font_size),
            width,
        )
        for _ in lines:
            if usable - used < line_height:
                expected_pages += 1
                used = 0.0
            used += line_height
        used += spacing

    pages = layout_content(elements, _fixed_width, page_width=595.28, page_height=841.89, margin=40)

    assert expected_pages >= 3
    assert len(pages) == expected_pages
    heading_lines = [line for lines in pages for line in lines if line.heading]
    assert len(heading_lines) == 3


def test_layout_keeps_paragraph_order():
    elements = [ContentElement(f"P{i}") for i in range(5)]

    lines = layout_content(elements, _fixed_width)[0]

    assert [line.text for line in lines] == ["P0", "P1", "P2", "P3", "P4"]
    assert lines[0].y > lines[1].y


# ---------------------------------------------------------------------------
# transcode()
# ---------------------------------------------------------------------------


def test_pdf_passes_through_unchanged(lesson_pdf):
    result = transcode(SourceFile("plan.PDF", lesson_pdf))

    assert result.pdf_bytes == lesson_pdf
    assert result.text is None


def test_unsupported_extension_is_rejected():
    with pytest.raises(UnsupportedFormat) as excinfo:
        transcode(SourceFile("notes.txt", b"hello"))

    assert excinfo.value.extension == "txt"
    assert ".txt" in str(excinfo.value)
    assert isinstance(excinfo.value, ValueError)


def test_word_document_is_laid_out(monkeypatch):
    monkeypatch.setattr(sys.modules["docseal.transcode"], "docx_to_html", lambda data, name: LESSON_HTML)

    result = transcode(SourceFile("plan.docx", b"PK\x03\x04fake"))

    assert result.pdf_bytes.startswith(b"%PDF")
    assert result.text.splitlines()[0] == "Daily Lesson Log"
    reader = PdfReader(io.BytesIO(result.pdf_bytes))
    assert "Araling Panlipunan" in reader.pages[0].extract_text()


def test_word_transcoding_is_deterministic(monkeypatch):
    monkeypatch.setattr(sys.modules["docseal.transcode"], "docx_to_html", lambda data, name: LESSON_HTML)
    source = SourceFile("plan.doc", b"legacy")

    assert transcode(source).pdf_bytes == transcode(source).pdf_bytes


def test_unreadable_word_document_raises_transcode_error(monkeypatch):
    def _convert(stream):
        raise RuntimeError("not a zip file")

    monkeypatch.setattr(
        sys.modules["docseal.transcode"],
        "_get_docx_converter",
        lambda: types.SimpleNamespace(convert=_convert),
    )

    with pytest.raises(TranscodeError):
        docx_to_html(b"garbage", "broken.docx")


def test_image_becomes_single_page_pdf():
    result = transcode(SourceFile("scan.png", make_png((300, 200))))

    reader = PdfReader(io.BytesIO(result.pdf_bytes))
    assert len(reader.pages) == 1
    assert float(reader.pages[0].mediabox.width) == pytest.approx(595.28, abs=0.01)


def test_unreadable_image_raises_transcode_error():
    with pytest.raises(TranscodeError):
        transcode(SourceFile("scan.jpg", b"not an image"))


def test_text_pdf_fixture_is_valid():
    assert PdfReader(io.BytesIO(make_pdf())).pages
