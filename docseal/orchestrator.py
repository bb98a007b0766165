"""Pipeline orchestration: transcode → metadata → compress → hash → stamp → upload.

Each phase emits a :class:`PipelineEvent` when it starts and when it ends.
A run always finishes in ``done`` (uploaded, duplicate or queued) or in
``error`` for input the pipeline cannot handle. Remote failures never end a
run; the prepared artifact goes to the sync queue instead.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Optional

from .compress import compress_pdf
from .exceptions import RemoteError
from .integrity import fingerprint, stamp, verification_url
from .metadata import default_metadata, extract_metadata
from .models import (
    DocMetadata,
    Phase,
    PipelineEvent,
    PipelineResult,
    QueueItem,
    SourceFile,
    UploadOptions,
)
from .remote import RemoteStore, deliver
from .sync import SyncQueue, SyncScheduler
from .transcode import transcode
from .utils import DEFAULT_VERIFY_BASE_URL, PDF_TARGET_BYTES, now_ms, safe_file_name

log = logging.getLogger(__name__)

EventCallback = Callable[[PipelineEvent], None]

# (start, end) progress per phase
_PROGRESS = {
    Phase.TRANSCODING: (0, 15),
    Phase.EXTRACTING_METADATA: (15, 30),
    Phase.COMPRESSING: (30, 50),
    Phase.HASHING: (50, 60),
    Phase.STAMPING: (60, 70),
    Phase.UPLOADING: (70, 95),
}


def storage_path(user_id: str, file_name: str, timestamp: int) -> str:
    return f"{user_id}/{timestamp}_{safe_file_name(file_name)}"


class DocumentPipeline:
    """Runs one document through every phase and hands off the result."""

    def __init__(
        self,
        remote: RemoteStore,
        queue: SyncQueue,
        *,
        scheduler: Optional[SyncScheduler] = None,
        verify_base_url: str = DEFAULT_VERIFY_BASE_URL,
        target_bytes: int = PDF_TARGET_BYTES,
        deep_compression: bool = False,
    ) -> None:
        self.remote = remote
        self.queue = queue
        self.scheduler = scheduler
        self.verify_base_url = verify_base_url
        self.target_bytes = target_bytes
        self.deep_compression = deep_compression

    async def run(
        self,
        source: SourceFile,
        options: UploadOptions,
        on_event: Optional[EventCallback] = None,
    ) -> PipelineResult:
        """Process *source*. Never raises for document or remote problems."""
        t0 = time.perf_counter()
        result = PipelineResult(file_name=f"{source.stem}.pdf", original_size=source.size)
        phase = Phase.TRANSCODING

        def emit(event: PipelineEvent) -> None:
            if on_event is not None:
                on_event(event)

        def begin(current: Phase, message: str) -> None:
            emit(PipelineEvent(current, _PROGRESS[current][0], message))

        def end(current: Phase, message: str, metadata: Optional[DocMetadata] = None) -> None:
            emit(PipelineEvent(current, _PROGRESS[current][1], message, metadata=metadata))

        try:
            begin(phase, f"Converting {source.name}")
            transcoded = await asyncio.to_thread(transcode, source)
            end(phase, f"Baseline PDF ready ({len(transcoded.pdf_bytes)} bytes)")

            phase = Phase.EXTRACTING_METADATA
            begin(phase, "Reading document details")
            metadata = await self._extract_metadata(source, transcoded.text)
            result.metadata = metadata
            end(phase, f"Detected {metadata.doc_type.value}", metadata=metadata)

            phase = Phase.COMPRESSING
            begin(phase, "Compressing")
            compressed = await asyncio.to_thread(
                compress_pdf,
                transcoded.pdf_bytes,
                target_bytes=self.target_bytes,
                deep=self.deep_compression,
            )
            end(phase, f"Compressed to {len(compressed)} bytes")

            phase = Phase.HASHING
            begin(phase, "Computing fingerprint")
            digest = fingerprint(compressed)
            result.fingerprint = digest
            result.verify_url = verification_url(digest, self.verify_base_url)
            end(phase, f"Fingerprint {digest[:12]}")

            phase = Phase.STAMPING
            begin(phase, "Embedding verification marker")
            stamped = await asyncio.to_thread(
                stamp, compressed, digest, base_url=self.verify_base_url
            )
            result.pdf_bytes = stamped
            result.final_size = len(stamped)
            result.stamped_hash = fingerprint(stamped)
            end(phase, "Marker embedded")

            phase = Phase.UPLOADING
            begin(phase, "Uploading")
            timestamp = now_ms()
            result.file_path = storage_path(options.user_id, result.file_name, timestamp)
            item = QueueItem(
                file_name=result.file_name,
                file_path=result.file_path,
                file_hash=digest,
                file_size=len(stamped),
                pdf_bytes=stamped,
                options=options.with_metadata(metadata),
                timestamp=timestamp,
                stamped_hash=result.stamped_hash,
            )
            result.status = await self._upload_or_enqueue(item)
            end(phase, _UPLOAD_MESSAGES[result.status])
        except Exception as exc:
            log.error("pipeline: %s failed during %s: %s", source.name, phase.value, exc)
            result.status = "error"
            result.error = str(exc)
            result.elapsed_s = round(time.perf_counter() - t0, 2)
            emit(PipelineEvent(Phase.ERROR, 100, str(exc), error=str(exc), result=result))
            return result

        result.elapsed_s = round(time.perf_counter() - t0, 2)
        log.info(
            "pipeline: %s -> %s (%s) in %.2fs",
            source.name,
            result.status,
            result.fingerprint[:12],
            result.elapsed_s,
        )
        emit(PipelineEvent(Phase.DONE, 100, _UPLOAD_MESSAGES[result.status], result=result))
        return result

    async def _extract_metadata(self, source: SourceFile, text: Optional[str]) -> DocMetadata:
        try:
            return await asyncio.to_thread(extract_metadata, source, text)
        except Exception as exc:
            log.warning("pipeline: metadata extraction failed: %s", exc)
            return default_metadata()

    async def _upload_or_enqueue(self, item: QueueItem) -> str:
        if self.queue.connectivity.offline:
            log.info("pipeline: offline, queueing %s", item.file_name)
            await self.queue.enqueue(item)
            return "queued"

        try:
            existing = await self.remote.query_by_fingerprint(item.file_hash)
            if existing:
                log.warning("pipeline: %s already archived", item.file_name)
                return "duplicate"
            await deliver(self.remote, item)
            return "uploaded"
        except RemoteError as exc:
            log.warning("pipeline: direct upload failed (%s), queueing %s", exc, item.file_name)

        await self.queue.enqueue(item)
        if self.scheduler is not None:
            self.scheduler.request_drain()
        return "queued"


_UPLOAD_MESSAGES = {
    "uploaded": "Uploaded and archived",
    "duplicate": "An identical document is already archived",
    "queued": "Saved offline; it will sync when the connection returns",
}
