"""Look up archived documents by fingerprint, online first and cache second."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

from .exceptions import RemoteNetworkError
from .integrity import fingerprint, read_embedded_fingerprint
from .remote import RemoteStore
from .store import KeyValueStore, cache_verified_doc, lookup_offline_doc

log = logging.getLogger(__name__)


@dataclass
class VerificationResult:
    fingerprint: str
    found: bool = False
    record: Optional[dict[str, Any]] = None
    # "remote", "cache" or "" when nothing was found
    source: str = ""
    cached_at: Optional[int] = None
    # None when the file was not checked or no stamped hash was recorded
    intact: Optional[bool] = None


async def verify_fingerprint(
    remote: RemoteStore,
    store: KeyValueStore,
    digest: str,
) -> VerificationResult:
    """Resolve *digest* against the remote store.

    Hits are cached. When the remote store cannot be reached, the last cached
    record is returned with ``source="cache"``; other remote errors propagate.
    """
    result = VerificationResult(fingerprint=digest)
    try:
        record = await remote.query_by_fingerprint(digest)
    except RemoteNetworkError as exc:
        log.warning("verify: remote unreachable (%s), trying local cache", exc)
        entry = lookup_offline_doc(store, digest)
        if entry is None:
            return result
        result.found = True
        result.record = entry.get("record")
        result.source = "cache"
        result.cached_at = entry.get("timestamp")
        return result

    if record:
        cache_verified_doc(store, digest, record)
        result.found = True
        result.record = record
        result.source = "remote"
    return result


async def verify_file(
    remote: RemoteStore,
    store: KeyValueStore,
    pdf_bytes: bytes,
) -> VerificationResult:
    """Verify a sealed PDF through the fingerprint embedded at stamping."""
    digest = read_embedded_fingerprint(pdf_bytes)
    if not digest:
        raise ValueError("PDF carries no embedded fingerprint")

    result = await verify_fingerprint(remote, store, digest)
    stamped_hash = (result.record or {}).get("stamped_hash")
    if stamped_hash:
        result.intact = fingerprint(pdf_bytes) == stamped_hash
    return result
