"""Durable key/value store backed by SQLite, plus the local lookup caches.

Keys follow a prefix scheme: ``sync_queue_*`` entries belong to the sync
queue and must only be touched through :class:`docseal.sync.SyncQueue`;
``cached_docs_*`` and ``cached_history_*`` hold cached lookups.
"""

from __future__ import annotations

import json
import sqlite3
import threading
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Optional

from .utils import CACHE_PREFIX_DOCS, CACHE_PREFIX_HISTORY, now_ms

_SCHEMA = """\
CREATE TABLE IF NOT EXISTS kv (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""


class KeyValueStore:
    """JSON values under string keys in a WAL-mode SQLite file.

    Several processes may open the same file; SQLite serializes their writes.
    Within a process, calls may come from worker threads.
    """

    def __init__(self, db_path: str | Path = ".docseal/docseal.db") -> None:
        path = Path(db_path)
        path.parent.mkdir(parents=True, exist_ok=True)

        self.db_path = str(path)
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(
            self.db_path,
            isolation_level=None,
            timeout=5,
            check_same_thread=False,
        )
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(_SCHEMA)

    # -- raw access ------------------------------------------------------------

    def get_raw(self, key: str) -> Optional[str]:
        with self._lock:
            row = self._conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
        return row[0] if row else None

    def set_raw(self, key: str, value: str) -> None:
        with self._lock:
            self._conn.execute(
                "INSERT INTO kv (key, value, updated_at) VALUES (?, ?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value, "
                "updated_at = excluded.updated_at",
                (key, value, datetime.now(UTC).isoformat()),
            )

    # -- JSON access -----------------------------------------------------------

    def get(self, key: str) -> Any:
        """Decoded value, or ``None`` when missing or unreadable."""
        raw = self.get_raw(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, ValueError):
            return None

    def set(self, key: str, value: Any) -> None:
        self.set_raw(key, json.dumps(value, ensure_ascii=False, default=str))

    def delete(self, key: str) -> None:
        with self._lock:
            self._conn.execute("DELETE FROM kv WHERE key = ?", (key,))

    def keys(self, prefix: str = "") -> list[str]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT key FROM kv WHERE substr(key, 1, ?) = ? ORDER BY key",
                (len(prefix), prefix),
            ).fetchall()
        return [r[0] for r in rows]

    def close(self) -> None:
        with self._lock:
            self._conn.close()


# ---------------------------------------------------------------------------
# Cached lookups
# ---------------------------------------------------------------------------


def cache_verified_doc(store: KeyValueStore, fingerprint: str, record: dict[str, Any]) -> None:
    """Remember a verified record for offline verification."""
    store.set(f"{CACHE_PREFIX_DOCS}{fingerprint}", {"record": record, "timestamp": now_ms()})


def lookup_offline_doc(store: KeyValueStore, fingerprint: str) -> Optional[dict[str, Any]]:
    """Cached ``{"record", "timestamp"}`` entry; staleness is the caller's call."""
    entry = store.get(f"{CACHE_PREFIX_DOCS}{fingerprint}")
    return entry if isinstance(entry, dict) else None


def cache_dashboard_data(store: KeyValueStore, user_id: str, data: Any) -> None:
    store.set(f"{CACHE_PREFIX_HISTORY}{user_id}", {"data": data, "timestamp": now_ms()})


def get_cached_dashboard_data(store: KeyValueStore, user_id: str) -> Optional[dict[str, Any]]:
    entry = store.get(f"{CACHE_PREFIX_HISTORY}{user_id}")
    return entry if isinstance(entry, dict) else None
