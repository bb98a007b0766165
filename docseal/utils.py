"""Cross-cutting helpers: constants, run state and manifest I/O."""

from __future__ import annotations

import json
import re
import time
from pathlib import Path
from typing import Any

from .models import PipelineResult

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

A4_WIDTH = 595.28
A4_HEIGHT = 841.89
PAGE_MARGIN = 40.0

BODY_FONT_SIZE = 10.0
HEADING_FONT_SIZE = 13.0

PDF_TARGET_BYTES = 1024 * 1024
IMAGE_TARGET_BYTES = 1024 * 1024
IMAGE_MAX_DIMENSION = 1920

PDF_EXTENSIONS = frozenset({"pdf"})
WORD_EXTENSIONS = frozenset({"docx", "doc"})
IMAGE_EXTENSIONS = frozenset({"png", "jpg", "jpeg"})
SUPPORTED_EXTENSIONS = PDF_EXTENSIONS | WORD_EXTENSIONS | IMAGE_EXTENSIONS

QUEUE_PREFIX = "sync_queue_"
CACHE_PREFIX_DOCS = "cached_docs_"
CACHE_PREFIX_HISTORY = "cached_history_"

PROBE_TIMEOUT_S = 5.0
DRAIN_INTERVAL_S = 30.0
ONLINE_SETTLE_DELAY_S = 3.0
INITIAL_DRAIN_DELAY_S = 5.0

DEFAULT_SCHOOL_YEAR = "2025-2026"
DEFAULT_VERIFY_BASE_URL = "https://localhost"
STORAGE_BUCKET = "submissions"

# Day-of-week guess used only when no deadline can be resolved.
WEEKDAY_COMPLIANCE_FALLBACK = True

STATE_FILE_NAME = "pipeline_state.json"
MANIFEST_FILE_NAME = "archive_manifest.json"
QUEUE_DB_NAME = "docseal.db"


# ---------------------------------------------------------------------------
# Small helpers
# ---------------------------------------------------------------------------


def now_ms() -> int:
    return int(time.time() * 1000)


_UNSAFE_NAME_RE = re.compile(r"[^A-Za-z0-9._-]+")


def safe_file_name(name: str) -> str:
    """Collapse characters that are awkward in storage object paths."""
    cleaned = _UNSAFE_NAME_RE.sub("_", name).strip("._")
    return cleaned or "document"


def ensure_output_dirs(output_dir: Path) -> tuple[Path, Path]:
    """Create and return (pdf_dir, state_dir) under *output_dir*."""
    pdf_dir = output_dir / "sealed"
    state_dir = output_dir / "state"
    pdf_dir.mkdir(parents=True, exist_ok=True)
    state_dir.mkdir(parents=True, exist_ok=True)
    return pdf_dir, state_dir


# ---------------------------------------------------------------------------
# Run state (skip unchanged, already delivered inputs)
# ---------------------------------------------------------------------------

DELIVERED_STATUSES = frozenset({"uploaded", "duplicate", "queued"})


def _state_path(output_dir: Path) -> Path:
    return output_dir / STATE_FILE_NAME


def file_fingerprint(path: Path) -> dict[str, int]:
    """Return a cheap fingerprint for local change detection."""
    stat = path.stat()
    return {
        "size": stat.st_size,
        "mtime_ns": stat.st_mtime_ns,
    }


def is_unchanged_file(path: Path, previous: dict[str, Any] | None) -> bool:
    """Check whether *path* matches a previous delivered state entry."""
    if not previous or previous.get("status") not in DELIVERED_STATUSES:
        return False
    current = file_fingerprint(path)
    return (
        previous.get("size") == current["size"]
        and previous.get("mtime_ns") == current["mtime_ns"]
    )


def load_pipeline_state(output_dir: Path) -> dict[str, Any]:
    """Load persistent run state from ``pipeline_state.json``."""
    path = _state_path(output_dir)
    if not path.exists():
        return {"files": {}}
    try:
        with open(path, "r", encoding="utf-8") as fh:
            state = json.load(fh)
    except (json.JSONDecodeError, OSError, ValueError):
        return {"files": {}}

    if not isinstance(state, dict):
        return {"files": {}}

    files = state.get("files")
    if not isinstance(files, dict):
        state["files"] = {}
    return state


def save_pipeline_state(output_dir: Path, state: dict[str, Any]) -> Path:
    """Persist run state and return the state file path."""
    output_dir.mkdir(parents=True, exist_ok=True)
    path = _state_path(output_dir)
    with open(path, "w", encoding="utf-8") as fh:
        json.dump(state, fh, indent=2, ensure_ascii=False, default=str)
    return path


# ---------------------------------------------------------------------------
# Manifest I/O
# ---------------------------------------------------------------------------


def save_manifest(
    output_dir: Path,
    results: list[PipelineResult],
    *,
    merge_existing: bool = True,
) -> Path:
    """Write archive_manifest.json keyed by fingerprint and return its path."""
    manifest_path = output_dir / MANIFEST_FILE_NAME
    manifest_by_key: dict[str, dict[str, Any]] = {}

    if merge_existing and manifest_path.exists():
        try:
            with open(manifest_path, "r", encoding="utf-8") as fh:
                existing = json.load(fh)
            if isinstance(existing, list):
                for item in existing:
                    if not isinstance(item, dict):
                        continue
                    key = str(item.get("fingerprint") or item.get("file_name") or "")
                    if key:
                        manifest_by_key[key] = item
        except (json.JSONDecodeError, OSError, ValueError):
            manifest_by_key = {}

    for result in results:
        key = result.fingerprint or result.file_name
        entry: dict[str, Any] = {
            "file_name": result.file_name,
            "file_path": result.file_path,
            "status": result.status,
            "fingerprint": result.fingerprint,
            "stamped_hash": result.stamped_hash,
            "verify_url": result.verify_url,
            "original_size": result.original_size,
            "final_size": result.final_size,
            "elapsed_s": result.elapsed_s,
            "error": result.error,
        }
        if result.metadata is not None:
            metadata = result.metadata.to_dict()
            metadata.pop("raw_text", None)
            entry["metadata"] = metadata
        elif key in manifest_by_key and "metadata" in manifest_by_key[key]:
            entry["metadata"] = manifest_by_key[key]["metadata"]
        manifest_by_key[key] = entry

    manifest = sorted(
        manifest_by_key.values(),
        key=lambda item: (str(item.get("file_name", "")), str(item.get("fingerprint", ""))),
    )
    output_dir.mkdir(parents=True, exist_ok=True)
    with open(manifest_path, "w", encoding="utf-8") as fh:
        json.dump(manifest, fh, indent=2, ensure_ascii=False, default=str)
    return manifest_path
