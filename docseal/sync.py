"""Offline sync queue and the triggers that drain it.

Pending uploads live in the durable key/value store under
``sync_queue_<timestamp>_<hash8>``. An item is deleted only after the remote
store accepted both the blob and the record, or already holds a record with
the same fingerprint.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Optional

from .connectivity import Connectivity
from .models import DrainResult, QueueItem
from .remote import RemoteStore, deliver
from .store import KeyValueStore
from .utils import (
    DRAIN_INTERVAL_S,
    INITIAL_DRAIN_DELAY_S,
    ONLINE_SETTLE_DELAY_S,
    QUEUE_PREFIX,
)

log = logging.getLogger(__name__)


def queue_key(item: QueueItem) -> str:
    return f"{QUEUE_PREFIX}{item.timestamp}_{item.file_hash[:8]}"


def _key_order(key: str) -> tuple[int, str]:
    """Sort by the numeric timestamp embedded in the key, then by key."""
    stamp = key[len(QUEUE_PREFIX):].split("_", 1)[0]
    try:
        return int(stamp), key
    except ValueError:
        return 0, key


def queue_keys(store: KeyValueStore) -> list[str]:
    """Queue keys, oldest first."""
    return sorted(store.keys(QUEUE_PREFIX), key=_key_order)


def load_queue_item(store: KeyValueStore, key: str) -> Optional[QueueItem]:
    """Decode one queued item; ``None`` for missing or corrupt entries."""
    data = store.get(key)
    if not isinstance(data, dict):
        return None
    try:
        return QueueItem.from_json_dict(data)
    except (KeyError, TypeError, ValueError):
        return None


class SyncQueue:
    """Durable FIFO of upload requests with connectivity-gated draining."""

    def __init__(
        self,
        store: KeyValueStore,
        remote: RemoteStore,
        connectivity: Connectivity,
        *,
        on_count_changed: Optional[Callable[[int], None]] = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.store = store
        self.remote = remote
        self.connectivity = connectivity
        self.on_count_changed = on_count_changed
        self.pending_count = 0
        self._clock = clock
        self._draining = False

    @property
    def draining(self) -> bool:
        return self._draining

    # -- store access ----------------------------------------------------------

    async def _keys(self) -> list[str]:
        return await asyncio.to_thread(queue_keys, self.store)

    async def _load(self, key: str) -> Optional[QueueItem]:
        return await asyncio.to_thread(load_queue_item, self.store, key)

    async def _delete(self, key: str) -> None:
        await asyncio.to_thread(self.store.delete, key)
        await self._update_pending_count()

    async def _update_pending_count(self) -> None:
        self.pending_count = await self.size()
        if self.on_count_changed is not None:
            self.on_count_changed(self.pending_count)

    # -- public contract -------------------------------------------------------

    async def enqueue(self, item: QueueItem) -> str:
        key = queue_key(item)
        await asyncio.to_thread(self.store.set, key, item.to_json_dict())
        log.info("queue: enqueued %s as %s", item.file_name, key)
        await self._update_pending_count()
        return key

    async def size(self) -> int:
        return len(await asyncio.to_thread(self.store.keys, QUEUE_PREFIX))

    async def items(self) -> list[QueueItem]:
        """Readable items, oldest first."""
        loaded = []
        for key in await self._keys():
            item = await self._load(key)
            if item is not None:
                loaded.append(item)
        return sorted(loaded, key=lambda it: it.timestamp)

    async def drain(self, force: bool = False) -> DrainResult:
        """Deliver queued items oldest first.

        Without *force*, an offline check or another running drain makes this
        a no-op, and connectivity is re-checked before each item.
        """
        result = DrainResult()
        if self._draining and not force:
            log.info("queue: drain skipped, already syncing")
            return result

        # claimed before the first await; a forced drain leaves an existing claim alone
        claimed = not self._draining
        self._draining = True
        try:
            if not force and not await self.connectivity.check():
                log.debug("queue: drain skipped, offline")
                return result

            keys = await self._keys()
            if not keys:
                return result

            log.info("queue: found %s item(s) to sync", len(keys))
            for key in keys:
                if not force and not await self.connectivity.check():
                    log.info("queue: connection lost during sync, pausing")
                    break
                await self._drain_one(key, result)
        finally:
            if claimed:
                self._draining = False

        log.info(
            "queue: drain done success=%s failed=%s duplicates=%s ghosts=%s",
            result.success,
            result.failed,
            result.duplicates,
            result.ghosts,
        )
        return result

    async def _drain_one(self, key: str, result: DrainResult) -> None:
        item = await self._load(key)
        if item is None:
            log.warning("queue: found ghost key %s, removing", key)
            await self._delete(key)
            result.ghosts += 1
            return

        try:
            existing = await self.remote.query_by_fingerprint(item.file_hash)
            if existing:
                log.warning("queue: skipping duplicate file %s", item.file_name)
                await self._delete(key)
                result.duplicates += 1
                return

            await deliver(self.remote, item, now=self._clock())
        except Exception as exc:
            log.error("queue: failed to sync %s: %s", item.file_name, exc)
            result.failed += 1
            return

        await self._delete(key)
        result.success += 1
        log.info("queue: synced %s", item.file_name)


class SyncScheduler:
    """Turns outside events into drains.

    Triggers: a periodic timer, the network coming back (after a settle
    delay), the app becoming visible or focused, startup, and explicit
    requests after a fresh enqueue.
    """

    def __init__(
        self,
        queue: SyncQueue,
        *,
        interval: float = DRAIN_INTERVAL_S,
        settle_delay: float = ONLINE_SETTLE_DELAY_S,
        initial_delay: float = INITIAL_DRAIN_DELAY_S,
    ) -> None:
        self.queue = queue
        self.interval = interval
        self.settle_delay = settle_delay
        self.initial_delay = initial_delay
        self._tasks: set[asyncio.Task[Any]] = set()
        self._timer: Optional[asyncio.Task[None]] = None

    def _spawn(self, coro: Any) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _delayed_drain(self, delay: float) -> DrainResult:
        if delay > 0:
            await asyncio.sleep(delay)
        return await self.queue.drain()

    async def _tick_loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            if self.queue.connectivity.offline:
                continue
            try:
                await self.queue.drain()
            except Exception:
                log.exception("scheduler: periodic drain crashed")

    def start(self) -> None:
        if self._timer is not None:
            return
        if not self.queue.connectivity.offline:
            self._spawn(self._delayed_drain(self.initial_delay))
        self._timer = asyncio.create_task(self._tick_loop())

    async def stop(self) -> None:
        pending = list(self._tasks)
        if self._timer is not None:
            pending.append(self._timer)
            self._timer = None
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

    def request_drain(self) -> asyncio.Task[Any]:
        """Drain right away, e.g. after a failed direct upload was queued."""
        return self._spawn(self.queue.drain())

    def notify_online(self) -> asyncio.Task[Any]:
        log.info("scheduler: network online event")
        self.queue.connectivity.set_offline(False)
        return self._spawn(self._delayed_drain(self.settle_delay))

    def notify_offline(self) -> None:
        self.queue.connectivity.set_offline(True)

    def notify_visible(self) -> Optional[asyncio.Task[Any]]:
        if self.queue.connectivity.offline:
            return None
        return self._spawn(self.queue.drain())

    notify_focus = notify_visible

    async def wait_idle(self) -> None:
        """Wait for all spawned drains (not the timer) to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
