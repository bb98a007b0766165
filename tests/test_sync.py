from __future__ import annotations

import asyncio

import pytest

from conftest import ScriptedConnectivity
from docseal.exceptions import RemoteLogicalError, RemoteNetworkError
from docseal.store import KeyValueStore
from docseal.sync import SyncQueue, SyncScheduler, load_queue_item, queue_keys


async def _wait_for(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


# ---------------------------------------------------------------------------
# Enqueue and persistence
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_enqueue_stores_item_under_prefixed_key(kv_store, remote, make_item):
    queue = SyncQueue(kv_store, remote, ScriptedConnectivity())
    item = make_item(1)

    key = await queue.enqueue(item)

    assert key == f"sync_queue_{item.timestamp}_{item.file_hash[:8]}"
    assert await queue.size() == 1
    assert await queue.items() == [item]
    assert remote.calls == []


@pytest.mark.asyncio
async def test_queue_survives_reopening_the_store(db_path, remote, make_item):
    first = KeyValueStore(db_path)
    await SyncQueue(first, remote, ScriptedConnectivity()).enqueue(make_item(1))
    first.close()

    reopened = KeyValueStore(db_path)
    try:
        queue = SyncQueue(reopened, remote, ScriptedConnectivity())
        assert await queue.size() == 1
        result = await queue.drain()
    finally:
        reopened.close()

    assert result.success == 1
    assert len(remote.records) == 1


@pytest.mark.asyncio
async def test_count_listener_sees_every_change(kv_store, remote, make_item):
    counts: list[int] = []
    queue = SyncQueue(kv_store, remote, ScriptedConnectivity(), on_count_changed=counts.append)

    await queue.enqueue(make_item(1))
    await queue.enqueue(make_item(2))
    await queue.drain()

    assert counts == [1, 2, 1, 0]
    assert queue.pending_count == 0


# ---------------------------------------------------------------------------
# Drain outcomes
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_drain_delivers_blob_and_record_then_deletes(kv_store, remote, make_item):
    queue = SyncQueue(kv_store, remote, ScriptedConnectivity())
    item = make_item(1)
    await queue.enqueue(item)

    result = await queue.drain()

    assert (result.success, result.failed, result.duplicates) == (1, 0, 0)
    assert await queue.size() == 0
    assert remote.blobs[item.file_path] == item.pdf_bytes
    record = remote.records[0]
    assert record["file_hash"] == item.file_hash
    assert record["file_path"] == item.file_path
    assert record["user_id"] == "teacher-1"
    assert record["school_year"] == "2025-2026"
    assert record["compliance_status"] in {"compliant", "late", "non-compliant"}


@pytest.mark.asyncio
async def test_drain_skips_and_deletes_duplicates(kv_store, remote, make_item):
    queue = SyncQueue(kv_store, remote, ScriptedConnectivity())
    item = make_item(1)
    remote.existing[item.file_hash] = {"id": "already-there"}
    await queue.enqueue(item)

    result = await queue.drain()

    assert result.duplicates == 1
    assert result.success == 0
    assert await queue.size() == 0
    assert "upload_blob" not in remote.calls
    assert remote.records == []


@pytest.mark.asyncio
async def test_drain_of_empty_queue_does_nothing(kv_store, remote):
    queue = SyncQueue(kv_store, remote, ScriptedConnectivity())

    result = await queue.drain()

    assert (result.success, result.failed, result.duplicates, result.ghosts) == (0, 0, 0, 0)
    assert remote.calls == []


@pytest.mark.asyncio
async def test_drain_processes_oldest_first(kv_store, remote, make_item):
    queue = SyncQueue(kv_store, remote, ScriptedConnectivity())
    for n, ts in ((1, 3_000), (2, 1_000), (3, 2_000)):
        await queue.enqueue(make_item(n, timestamp=ts))

    await queue.drain()

    assert [r["file_name"] for r in remote.records] == ["plan-2.pdf", "plan-3.pdf", "plan-1.pdf"]


@pytest.mark.asyncio
async def test_timestamp_order_is_numeric_not_lexicographic(kv_store, remote, make_item):
    queue = SyncQueue(kv_store, remote, ScriptedConnectivity())
    await queue.enqueue(make_item(1, timestamp=10_000))
    await queue.enqueue(make_item(2, timestamp=9_000))

    assert [i.file_name for i in await queue.items()] == ["plan-2.pdf", "plan-1.pdf"]
    assert queue_keys(kv_store)[0].startswith("sync_queue_9000_")


@pytest.mark.asyncio
async def test_failed_item_stays_and_drain_continues(kv_store, remote, make_item):
    queue = SyncQueue(kv_store, remote, ScriptedConnectivity())
    first, second = make_item(1, timestamp=1), make_item(2, timestamp=2)
    await queue.enqueue(first)
    await queue.enqueue(second)
    remote.fail("insert_record", RemoteLogicalError("rejected", status_code=400))

    result = await queue.drain()

    assert result.failed == 1
    assert result.success == 1
    assert [i.file_hash for i in await queue.items()] == [first.file_hash]


@pytest.mark.asyncio
async def test_retry_after_partial_upload_accepts_existing_blob(kv_store, remote, make_item):
    queue = SyncQueue(kv_store, remote, ScriptedConnectivity())
    item = make_item(1)
    await queue.enqueue(item)
    remote.fail("insert_record", RemoteNetworkError("connection reset"))

    first = await queue.drain()
    assert first.failed == 1
    assert item.file_path in remote.blobs

    second = await queue.drain()

    assert second.success == 1
    assert await queue.size() == 0
    assert [r["file_hash"] for r in remote.records] == [item.file_hash]


@pytest.mark.asyncio
async def test_network_error_on_lookup_keeps_item(kv_store, remote, make_item):
    queue = SyncQueue(kv_store, remote, ScriptedConnectivity())
    await queue.enqueue(make_item(1))
    remote.fail("query_by_fingerprint", RemoteNetworkError("timeout"))

    result = await queue.drain()

    assert result.failed == 1
    assert await queue.size() == 1


@pytest.mark.asyncio
async def test_unreadable_entry_is_removed_as_ghost(kv_store, remote, make_item):
    queue = SyncQueue(kv_store, remote, ScriptedConnectivity())
    kv_store.set_raw("sync_queue_5_deadbeef", "{not json")
    kv_store.set("sync_queue_6_cafebabe", {"file_name": "half.pdf"})
    await queue.enqueue(make_item(1, timestamp=7))

    result = await queue.drain()

    assert result.ghosts == 2
    assert result.success == 1
    assert kv_store.keys("sync_queue_") == []
    assert load_queue_item(kv_store, "sync_queue_5_deadbeef") is None


@pytest.mark.asyncio
async def test_drain_is_noop_while_offline(kv_store, remote, make_item):
    queue = SyncQueue(kv_store, remote, ScriptedConnectivity(offline=True))
    await queue.enqueue(make_item(1))

    result = await queue.drain()

    assert result.success == 0
    assert remote.calls == []
    assert await queue.size() == 1


@pytest.mark.asyncio
async def test_forced_drain_ignores_connectivity(kv_store, remote, make_item):
    connectivity = ScriptedConnectivity(offline=True)
    queue = SyncQueue(kv_store, remote, connectivity)
    await queue.enqueue(make_item(1))

    result = await queue.drain(force=True)

    assert result.success == 1
    assert connectivity.checks == 0


@pytest.mark.asyncio
async def test_connection_lost_mid_drain_stops_remaining_items(kv_store, remote, make_item):
    # initial check, item 1 check, then the link drops before item 2
    queue = SyncQueue(kv_store, remote, ScriptedConnectivity(True, True, False))
    await queue.enqueue(make_item(1, timestamp=1))
    await queue.enqueue(make_item(2, timestamp=2))

    result = await queue.drain()

    assert result.success == 1
    assert result.failed == 0
    assert [i.file_name for i in await queue.items()] == ["plan-2.pdf"]


@pytest.mark.asyncio
async def test_concurrent_drain_is_rejected(kv_store, remote, make_item):
    queue = SyncQueue(kv_store, remote, ScriptedConnectivity())
    await queue.enqueue(make_item(1))
    remote.gate = asyncio.Event()

    running = asyncio.create_task(queue.drain())
    await _wait_for(lambda: queue.draining)

    second = await queue.drain()
    assert (second.success, second.failed, second.duplicates) == (0, 0, 0)

    remote.gate.set()
    first = await running

    assert first.success == 1
    assert len(remote.records) == 1
    assert not queue.draining


@pytest.mark.asyncio
async def test_drains_started_together_deliver_once(kv_store, remote, make_item):
    queue = SyncQueue(kv_store, remote, ScriptedConnectivity())
    await queue.enqueue(make_item(1))

    first, second = await asyncio.gather(queue.drain(), queue.drain())

    assert first.success + second.success == 1
    assert len(remote.records) == 1
    assert remote.calls.count("upload_blob") == 1
    assert await queue.size() == 0
    assert not queue.draining


@pytest.mark.asyncio
async def test_forced_drain_keeps_running_drain_claim(kv_store, remote, make_item):
    connectivity = ScriptedConnectivity()
    queue = SyncQueue(kv_store, remote, connectivity)
    await queue.enqueue(make_item(1))
    connectivity.hold = asyncio.Event()

    running = asyncio.create_task(queue.drain())
    await _wait_for(lambda: connectivity.checks == 1)
    assert queue.draining

    forced = await queue.drain(force=True)
    assert forced.success == 1
    assert queue.draining

    connectivity.hold.set()
    first = await running
    assert first.success == 0
    assert not queue.draining
    assert len(remote.records) == 1


# ---------------------------------------------------------------------------
# Scheduler triggers
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_online_event_clears_flag_and_drains(kv_store, remote, make_item):
    connectivity = ScriptedConnectivity(offline=True)
    queue = SyncQueue(kv_store, remote, connectivity)
    scheduler = SyncScheduler(queue, settle_delay=0)
    await queue.enqueue(make_item(1))

    result = await scheduler.notify_online()

    assert connectivity.offline is False
    assert result.success == 1
    await scheduler.stop()


@pytest.mark.asyncio
async def test_visibility_event_ignored_while_offline(kv_store, remote, make_item):
    queue = SyncQueue(kv_store, remote, ScriptedConnectivity())
    scheduler = SyncScheduler(queue)
    scheduler.notify_offline()
    await queue.enqueue(make_item(1))

    assert scheduler.notify_visible() is None
    assert scheduler.notify_focus() is None
    assert await queue.size() == 1


@pytest.mark.asyncio
async def test_request_drain_delivers_fresh_item(kv_store, remote, make_item):
    queue = SyncQueue(kv_store, remote, ScriptedConnectivity())
    scheduler = SyncScheduler(queue)
    await queue.enqueue(make_item(1))

    scheduler.request_drain()
    await scheduler.wait_idle()

    assert await queue.size() == 0
    await scheduler.stop()


@pytest.mark.asyncio
async def test_start_runs_initial_drain(kv_store, remote, make_item):
    queue = SyncQueue(kv_store, remote, ScriptedConnectivity())
    scheduler = SyncScheduler(queue, interval=3600, initial_delay=0)
    await queue.enqueue(make_item(1))

    scheduler.start()
    await scheduler.wait_idle()
    await scheduler.stop()

    assert len(remote.records) == 1


@pytest.mark.asyncio
async def test_periodic_timer_drains(kv_store, remote, make_item):
    queue = SyncQueue(kv_store, remote, ScriptedConnectivity())
    scheduler = SyncScheduler(queue, interval=0.02, initial_delay=3600)
    await queue.enqueue(make_item(1))

    scheduler.start()
    try:
        await _wait_for(lambda: len(remote.records) == 1)
    finally:
        await scheduler.stop()

    assert await queue.size() == 0
