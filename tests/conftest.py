"""Shared fixtures for the docseal test suite.

Documents are generated on the fly with reportlab and Pillow. The remote
store and the reachability probe are in-memory fakes.
"""

from __future__ import annotations

import asyncio
import hashlib
import io
import logging
import os
import sys
from datetime import date
from pathlib import Path
from typing import Any, Optional

import pytest
from PIL import Image
from reportlab.pdfgen import canvas

from docseal.connectivity import Connectivity
from docseal.exceptions import RemoteConflictError
from docseal.models import QueueItem, UploadOptions
from docseal.store import KeyValueStore

# ---------------------------------------------------------------------------
# Configure verbose logging for test debugging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.DEBUG,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    stream=sys.stderr,
    force=True,
)
log = logging.getLogger("conftest")

LESSON_LOG_LINES = (
    "DAILY LESSON LOG",
    "School: Rizal Elementary School",
    "Teacher: Maria Santos",
    "Grade 10 Mathematics",
    "Week 5   S.Y. 2025-2026",
    "Learning objectives and activities for the week.",
)


def make_pdf(
    lines: tuple[str, ...] = LESSON_LOG_LINES,
    *,
    pagesize: tuple[float, float] = (595.28, 841.89),
    pages: int = 1,
) -> bytes:
    buf = io.BytesIO()
    pdf = canvas.Canvas(buf, pagesize=pagesize, invariant=1)
    for _ in range(pages):
        y = pagesize[1] - 60
        for line in lines:
            pdf.drawString(40, y, line)
            y -= 14
        pdf.showPage()
    pdf.save()
    return buf.getvalue()


def make_png(size: tuple[int, int] = (64, 48), *, noise: bool = False) -> bytes:
    if noise:
        image = Image.frombytes("RGB", size, os.urandom(size[0] * size[1] * 3))
    else:
        image = Image.new("RGB", size, (200, 30, 30))
    buf = io.BytesIO()
    image.save(buf, format="PNG")
    return buf.getvalue()


class FakeRemoteStore:
    """In-memory remote store with scriptable failures.

    ``fail(op, exc, times)`` makes the next *times* calls of *op* raise *exc*.
    Uploads to an existing path raise :class:`RemoteConflictError`, like a
    bucket with upsert disabled.
    """

    def __init__(self) -> None:
        self.records: list[dict[str, Any]] = []
        self.blobs: dict[str, bytes] = {}
        self.existing: dict[str, dict[str, Any]] = {}
        self.deadlines: dict[str, date] = {}
        self.calls: list[str] = []
        self.gate: Optional[asyncio.Event] = None
        self._failures: dict[str, list[Exception]] = {}

    def fail(self, op: str, exc: Exception, times: int = 1) -> None:
        self._failures.setdefault(op, []).extend([exc] * times)

    def _enter(self, op: str) -> None:
        self.calls.append(op)
        pending = self._failures.get(op)
        if pending:
            raise pending.pop(0)

    async def insert_record(self, fields: dict[str, Any]) -> None:
        self._enter("insert_record")
        self.records.append(dict(fields))

    async def upload_blob(self, path: str, data: bytes, content_type: str) -> None:
        if self.gate is not None:
            await self.gate.wait()
        self._enter("upload_blob")
        if path in self.blobs:
            raise RemoteConflictError(f"{path} already exists", status_code=409)
        self.blobs[path] = data

    async def query_by_fingerprint(self, fingerprint: str) -> Optional[dict[str, Any]]:
        self._enter("query_by_fingerprint")
        if fingerprint in self.existing:
            return self.existing[fingerprint]
        for record in self.records:
            if record.get("file_hash") == fingerprint:
                return record
        return None

    async def query_deadline(self, selector: dict[str, Any]) -> Optional[date]:
        self._enter("query_deadline")
        key = str(selector.get("calendar_id") or selector.get("week_number"))
        return self.deadlines.get(key)


class ScriptedConnectivity(Connectivity):
    """Answers ``check()`` from a script, then with *default*."""

    def __init__(self, *answers: bool, default: bool = True, offline: bool = False) -> None:
        super().__init__(None, offline=offline)
        self.answers = list(answers)
        self.default = default
        self.checks = 0
        self.hold: Optional[asyncio.Event] = None

    async def check(self) -> bool:
        self.checks += 1
        if self.hold is not None:
            await self.hold.wait()
        if self.offline:
            return False
        if self.answers:
            return self.answers.pop(0)
        return self.default


@pytest.fixture
def tmp_output(tmp_path: Path) -> Path:
    """Return a temporary output directory for a single test."""
    return tmp_path / "output"


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "state" / "docseal.db"


@pytest.fixture
def kv_store(db_path: Path):
    store = KeyValueStore(db_path)
    yield store
    store.close()


@pytest.fixture
def remote() -> FakeRemoteStore:
    return FakeRemoteStore()


@pytest.fixture
def lesson_pdf() -> bytes:
    return make_pdf()


@pytest.fixture
def make_item():
    """Factory for queue items with distinct fingerprints."""

    def _make(n: int = 1, *, timestamp: Optional[int] = None, user_id: str = "teacher-1") -> QueueItem:
        pdf = make_pdf((f"Lesson plan {n}",))
        ts = timestamp if timestamp is not None else 1_700_000_000_000 + n
        return QueueItem(
            file_name=f"plan-{n}.pdf",
            file_path=f"{user_id}/{ts}_plan-{n}.pdf",
            file_hash=hashlib.sha256(pdf).hexdigest(),
            file_size=len(pdf),
            pdf_bytes=pdf,
            options=UploadOptions(user_id=user_id, week_number=3),
            timestamp=ts,
        )

    return _make
