"""CLI entrypoint for the document integrity pipeline.

Usage:
    python -m docseal submit ./lesson-plans --user-id <USER_ID>
    python -m docseal submit plan.docx --user-id <USER_ID> --week 12 --offline
    python -m docseal submit ./lesson-plans --user-id <USER_ID> --force-reprocess
    python -m docseal drain
    python -m docseal drain --force
    python -m docseal status
    python -m docseal watch --duration 600
    python -m docseal verify <FINGERPRINT>
    python -m docseal verify --file output/sealed/<FINGERPRINT12>_plan.pdf

Remote settings default to the ``DOCSEAL_*`` environment variables.
"""

from __future__ import annotations

import argparse
import asyncio
from datetime import datetime, timezone
import logging
from logging.handlers import RotatingFileHandler
import os
import time
from pathlib import Path
from typing import Any

log = logging.getLogger(__name__)

HISTORY_LIMIT = 50


def _setup_logging(
    *,
    verbose: bool,
    detailed_logging: bool,
    output_dir: Path,
    log_file: Path | None,
) -> None:
    root_logger = logging.getLogger()
    root_logger.handlers.clear()

    root_level = logging.DEBUG if verbose else logging.INFO
    root_logger.setLevel(root_level)

    console_fmt = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
    detailed_fmt = (
        "%(asctime)s | %(levelname)-8s | %(name)s | "
        "%(threadName)s | %(filename)s:%(lineno)d | %(message)s"
    )
    formatter = logging.Formatter(
        detailed_fmt if detailed_logging else console_fmt,
        "%Y-%m-%d %H:%M:%S",
    )

    console_handler = logging.StreamHandler()
    console_handler.setLevel(root_level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    resolved_log_file = log_file
    if resolved_log_file is None and detailed_logging:
        resolved_log_file = output_dir / "docseal.log"

    if resolved_log_file is not None:
        resolved_log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            resolved_log_file,
            maxBytes=20 * 1024 * 1024,
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(detailed_fmt, "%Y-%m-%d %H:%M:%S"))
        root_logger.addHandler(file_handler)

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("pdfminer").setLevel(logging.WARNING)
    logging.getLogger("docling").setLevel(logging.WARNING)
    logging.getLogger("PIL").setLevel(logging.WARNING)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="Seal documents with a verifiable fingerprint and archive them"
    )
    parser.add_argument(
        "--output-dir",
        type=Path,
        default=Path("output"),
        help="Output directory for sealed PDFs, manifest and run state (default: output/)",
    )
    parser.add_argument(
        "--state-dir",
        type=Path,
        default=os.environ.get("DOCSEAL_STATE_DIR") or None,
        help="Directory holding the offline queue database (default: <output-dir>/state)",
    )
    parser.add_argument(
        "--remote-url",
        default=os.environ.get("DOCSEAL_REMOTE_URL", ""),
        help="Base URL of the remote store (env: DOCSEAL_REMOTE_URL)",
    )
    parser.add_argument(
        "--api-key",
        default=os.environ.get("DOCSEAL_API_KEY", ""),
        help="API key for the remote store (env: DOCSEAL_API_KEY)",
    )
    parser.add_argument(
        "--bucket",
        default=os.environ.get("DOCSEAL_BUCKET", "submissions"),
        help="Object storage bucket (env: DOCSEAL_BUCKET, default: submissions)",
    )
    parser.add_argument(
        "--verify-base-url",
        default=os.environ.get("DOCSEAL_VERIFY_BASE_URL", "https://localhost"),
        help="Base URL encoded in the verification marker (env: DOCSEAL_VERIFY_BASE_URL)",
    )
    parser.add_argument(
        "--probe-url",
        default=os.environ.get("DOCSEAL_PROBE_URL") or None,
        help="URL probed with HEAD before syncing (env: DOCSEAL_PROBE_URL)",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "--detailed-logging",
        action="store_true",
        help="Enable detailed logging (thread, file/line, rotating log file)",
    )
    parser.add_argument(
        "--log-file",
        type=Path,
        default=None,
        help="Optional log file path (default: <output-dir>/docseal.log in detailed mode)",
    )

    commands = parser.add_subparsers(dest="command", required=True)

    submit = commands.add_parser("submit", help="Seal and archive documents")
    submit.add_argument(
        "paths",
        nargs="+",
        type=Path,
        help="Documents or directories (.pdf, .docx, .doc, .png, .jpg, .jpeg)",
    )
    submit.add_argument(
        "--user-id",
        default=os.environ.get("DOCSEAL_USER_ID", ""),
        help="Submitting user (env: DOCSEAL_USER_ID)",
    )
    submit.add_argument("--doc-type", choices=["DLL", "ISP", "ISR"], default=None)
    submit.add_argument("--week", type=int, default=None, help="Week number")
    submit.add_argument("--school-year", default=None, help="e.g. 2025-2026")
    submit.add_argument("--subject", default=None)
    submit.add_argument("--calendar-id", default=None, help="Academic calendar entry")
    submit.add_argument("--teaching-load-id", default=None)
    submit.add_argument(
        "--offline",
        action="store_true",
        help="Do not contact the remote store; queue every sealed document",
    )
    submit.add_argument(
        "--deep-compression",
        action="store_true",
        help="Allow rasterizing pages when structural compression is not enough",
    )
    submit.add_argument(
        "--force-reprocess",
        action="store_true",
        help="Process every document even if unchanged in saved run state",
    )

    drain = commands.add_parser("drain", help="Deliver queued documents now")
    drain.add_argument(
        "--force",
        action="store_true",
        help="Skip connectivity checks and run even if another drain is active",
    )

    status = commands.add_parser("status", help="Show queued documents and recent submissions")
    status.add_argument(
        "--user-id",
        default=os.environ.get("DOCSEAL_USER_ID", ""),
        help="Also list cached recent submissions of this user",
    )

    watch = commands.add_parser("watch", help="Keep syncing the queue in the background")
    watch.add_argument(
        "--duration",
        type=float,
        default=None,
        help="Stop after this many seconds (default: run until interrupted)",
    )
    watch.add_argument(
        "--interval",
        type=float,
        default=30.0,
        help="Seconds between periodic drains (default: 30)",
    )

    verify = commands.add_parser("verify", help="Look up an archived document")
    target = verify.add_mutually_exclusive_group(required=True)
    target.add_argument("fingerprint", nargs="?", help="SHA-256 fingerprint")
    target.add_argument("--file", type=Path, help="Sealed PDF to check")

    args = parser.parse_args(argv)
    args.state_dir = Path(args.state_dir) if args.state_dir else args.output_dir / "state"
    if args.command == "submit" and not args.user_id:
        parser.error("submit requires --user-id or DOCSEAL_USER_ID")
    if args.command != "status" and not args.remote_url:
        parser.error(f"{args.command} requires --remote-url or DOCSEAL_REMOTE_URL")

    return args


def discover_inputs(paths: list[Path]) -> list[Path]:
    """Expand directories recursively into supported documents, sorted by name."""
    from .utils import SUPPORTED_EXTENSIONS

    found: list[Path] = []
    for path in paths:
        if path.is_dir():
            found.extend(
                p for p in sorted(path.rglob("*"))
                if p.is_file() and p.suffix.lower().lstrip(".") in SUPPORTED_EXTENSIONS
            )
        elif path.exists():
            found.append(path)
        else:
            log.warning("Input not found: %s", path)
    return found


def _build_remote(args: argparse.Namespace):
    from .remote import RestRemoteStore

    return RestRemoteStore(args.remote_url, args.api_key, bucket=args.bucket)


def _log_event(event) -> None:
    log.debug("[%3d%%] %s: %s", event.progress, event.phase.value, event.message)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


async def _submit(args: argparse.Namespace, store, remote) -> int:
    from tqdm import tqdm

    from .connectivity import Connectivity
    from .models import SourceFile, UploadOptions
    from .orchestrator import DocumentPipeline
    from .store import cache_dashboard_data, get_cached_dashboard_data
    from .sync import SyncQueue
    from .utils import (
        ensure_output_dirs,
        file_fingerprint,
        is_unchanged_file,
        load_pipeline_state,
        save_manifest,
        save_pipeline_state,
    )

    overall_t0 = time.perf_counter()
    sealed_dir, _ = ensure_output_dirs(args.output_dir)

    inputs = discover_inputs(args.paths)
    log.info("Total documents discovered: %s", len(inputs))
    if not inputs:
        log.warning("No documents found. Exiting.")
        return 0

    # --- Resume check: skip unchanged, already delivered inputs ---
    state = load_pipeline_state(args.output_dir)
    state_files: dict[str, dict[str, Any]] = state.setdefault("files", {})
    to_process: list[Path] = []
    skipped_unchanged = 0
    for path in inputs:
        previous = state_files.get(str(path.resolve()))
        if not args.force_reprocess and is_unchanged_file(path, previous):
            skipped_unchanged += 1
            continue
        to_process.append(path)

    log.info(
        "Resume check: %s unchanged skipped, %s queued for processing",
        skipped_unchanged,
        len(to_process),
    )

    connectivity = Connectivity(args.probe_url, offline=args.offline)
    queue = SyncQueue(store, remote, connectivity)
    pipeline = DocumentPipeline(
        remote,
        queue,
        verify_base_url=args.verify_base_url,
        deep_compression=args.deep_compression,
    )
    options = UploadOptions(
        user_id=args.user_id,
        doc_type=args.doc_type,
        week_number=args.week,
        school_year=args.school_year,
        subject=args.subject,
        calendar_id=args.calendar_id,
        teaching_load_id=args.teaching_load_id,
    )

    results = []
    processed_at = datetime.now(timezone.utc).isoformat()
    for path in tqdm(to_process, desc="Sealing"):
        source = SourceFile.from_path(path)
        result = await pipeline.run(source, options, on_event=_log_event)
        results.append(result)
        sealed_path = None
        if result.pdf_bytes:
            # same stem from different inputs must not overwrite
            sealed_path = sealed_dir / f"{result.fingerprint[:12]}_{result.file_name}"
            sealed_path.write_bytes(result.pdf_bytes)

        entry: dict[str, Any] = {
            "file_name": result.file_name,
            "sealed_path": str(sealed_path) if sealed_path else None,
            "status": result.status,
            "fingerprint": result.fingerprint,
            "processed_at": processed_at,
            **file_fingerprint(path),
        }
        if result.status == "error" and result.error:
            entry["error"] = result.error[:500]
        state_files[str(path.resolve())] = entry

    queued = [r for r in results if r.status == "queued"]
    if queued and not args.offline:
        drained = await queue.drain()
        log.info("Follow-up sync delivered %s of %s queued document(s)", drained.success, len(queued))

    manifest_path = save_manifest(args.output_dir, results)
    state_path = save_pipeline_state(args.output_dir, state)

    previous_history = get_cached_dashboard_data(store, args.user_id)
    history = list((previous_history or {}).get("data") or [])
    history.extend(
        {
            "file_name": r.file_name,
            "status": r.status,
            "fingerprint": r.fingerprint,
            "processed_at": processed_at,
        }
        for r in results
    )
    cache_dashboard_data(store, args.user_id, history[-HISTORY_LIMIT:])

    by_status: dict[str, int] = {}
    for r in results:
        by_status[r.status] = by_status.get(r.status, 0) + 1
    failed = [r for r in results if r.status == "error"]

    log.info("=" * 60)
    log.info("SUBMISSION COMPLETE")
    log.info("  Documents discovered: %s", len(inputs))
    log.info("  Processed now:        %s", len(results))
    log.info("  Skipped unchanged:    %s", skipped_unchanged)
    log.info("  Uploaded:             %s", by_status.get("uploaded", 0))
    log.info("  Duplicates:           %s", by_status.get("duplicate", 0))
    log.info("  Queued offline:       %s", by_status.get("queued", 0))
    log.info("  Failed:               %s", len(failed))
    log.info("  Sealed dir:           %s", sealed_dir)
    log.info("  Manifest:             %s", manifest_path)
    log.info("  State:                %s", state_path)
    log.info("  Total runtime:        %.1fs", time.perf_counter() - overall_t0)
    if failed:
        log.warning("Failed files:")
        for r in failed:
            log.warning("  - %s: %s", r.file_name, (r.error or "unknown")[:200])
    return 1 if failed else 0


async def _drain(args: argparse.Namespace, store, remote) -> int:
    from .connectivity import Connectivity
    from .sync import SyncQueue

    queue = SyncQueue(store, remote, Connectivity(args.probe_url))
    result = await queue.drain(force=args.force)
    remaining = await queue.size()
    log.info(
        "Drain: %s synced, %s failed, %s duplicates, %s ghosts, %s still queued",
        result.success,
        result.failed,
        result.duplicates,
        result.ghosts,
        remaining,
    )
    return 1 if result.failed else 0


def _status(args: argparse.Namespace, store) -> int:
    from .store import get_cached_dashboard_data
    from .sync import load_queue_item, queue_keys

    keys = queue_keys(store)
    log.info("Queued documents: %s", len(keys))
    for key in keys:
        item = load_queue_item(store, key)
        if item is None:
            log.warning("  - %s: unreadable entry", key)
            continue
        queued_at = datetime.fromtimestamp(item.timestamp / 1000, tz=timezone.utc)
        log.info(
            "  - %s (%s bytes, %s) queued %s",
            item.file_name,
            item.file_size,
            item.file_hash[:12],
            queued_at.isoformat(timespec="seconds"),
        )

    user_id = args.user_id
    cached = get_cached_dashboard_data(store, user_id) if user_id else None
    if cached:
        log.info("Recent submissions for %s:", user_id)
        for entry in cached.get("data") or []:
            log.info("  - %s: %s", entry.get("file_name"), entry.get("status"))
    return 0


async def _watch(args: argparse.Namespace, store, remote) -> int:
    from .connectivity import Connectivity
    from .sync import SyncQueue, SyncScheduler

    queue = SyncQueue(
        store,
        remote,
        Connectivity(args.probe_url),
        on_count_changed=lambda n: log.info("Queued documents: %s", n),
    )
    scheduler = SyncScheduler(queue, interval=args.interval)
    log.info("Watching queue (%s pending), interval %.0fs", await queue.size(), args.interval)
    scheduler.start()
    try:
        if args.duration is not None:
            await asyncio.sleep(args.duration)
        else:
            await asyncio.Event().wait()
    finally:
        await scheduler.stop()
    return 0


async def _verify(args: argparse.Namespace, store, remote) -> int:
    from .verification import verify_file, verify_fingerprint

    if args.file is not None:
        try:
            result = await verify_file(remote, store, args.file.read_bytes())
        except ValueError as exc:
            log.error("Cannot verify %s: %s", args.file, exc)
            return 1
    else:
        result = await verify_fingerprint(remote, store, args.fingerprint)

    if not result.found:
        log.warning("No archived document matches %s", result.fingerprint)
        return 1

    record = result.record or {}
    log.info("Verified %s (from %s)", result.fingerprint, result.source)
    for field in ("file_name", "user_id", "doc_type", "week_number", "school_year", "compliance_status"):
        log.info("  %-18s %s", field + ":", record.get(field))
    if result.intact is False:
        log.error("File content does not match the archived copy")
        return 1
    return 0


async def _run(args: argparse.Namespace) -> int:
    from .store import KeyValueStore
    from .utils import QUEUE_DB_NAME

    store = KeyValueStore(args.state_dir / QUEUE_DB_NAME)
    try:
        if args.command == "status":
            return _status(args, store)

        remote = _build_remote(args)
        try:
            if args.command == "submit":
                return await _submit(args, store, remote)
            if args.command == "drain":
                return await _drain(args, store, remote)
            if args.command == "watch":
                return await _watch(args, store, remote)
            return await _verify(args, store, remote)
        finally:
            aclose = getattr(remote, "aclose", None)
            if aclose is not None:
                await aclose()
    finally:
        store.close()


def main(argv: list[str] | None = None) -> int:
    """Run one CLI command and return its exit code."""
    args = parse_args(argv)
    _setup_logging(
        verbose=args.verbose,
        detailed_logging=args.detailed_logging,
        output_dir=args.output_dir,
        log_file=args.log_file,
    )
    log.debug(
        "Logging setup: verbose=%s detailed=%s log_file=%s",
        args.verbose,
        args.detailed_logging,
        args.log_file,
    )

    try:
        return asyncio.run(_run(args))
    except KeyboardInterrupt:
        log.info("Interrupted")
        return 130
