import asyncio
from datetime import timedelta

import pytest

from filevault.models.base import utcnow
from filevault.services.expiry_sweeper import ExpirySweeper

PAYLOAD = b"sweep me"


@pytest.fixture
def sweeper(vault):
    return ExpirySweeper(vault.controller, interval=0.05, tombstone_retention=24 * 3600, orphan_grace=15 * 60)


async def test_expired_records_are_retired(vault, sweeper, expire):
    stale = await vault.upload("alice", PAYLOAD, "stale.txt", "text/plain", "public")
    fresh = await vault.upload("alice", PAYLOAD, "fresh.txt", "text/plain", "public")
    stale_ref = (await vault.store.get(stale.file.id)).storage_ref
    await expire(stale.file.id)

    report = await sweeper.sweep_once()

    assert report.expired == 1
    assert report.failures == []
    assert await vault.store.get(stale.file.id) is None
    assert not await vault.storage.exists(stale_ref)
    assert await vault.store.get(fresh.file.id) is not None


async def test_sweep_waits_for_in_flight_download(vault, sweeper, expire):
    uploaded = await vault.upload("alice", PAYLOAD, "stale.txt", "text/plain")
    record = await vault.store.get(uploaded.file.id)
    await expire(record.id)

    vault.controller.readers.enter(record.id)
    sweep = asyncio.create_task(sweeper.sweep_once())
    await asyncio.sleep(0.2)
    assert await vault.storage.exists(record.storage_ref)

    vault.controller.readers.leave(record.id)
    report = await sweep
    assert report.expired == 1
    assert not await vault.storage.exists(record.storage_ref)


async def test_unfinished_purge_is_completed(vault, sweeper):
    uploaded = await vault.upload("alice", PAYLOAD, "once.txt", "text/plain", "public", max_downloads=1)
    record = await vault.store.get(uploaded.file.id)
    # Exhaust without going through the controller, as if the process died mid-purge.
    await vault.store.try_consume(record.id, utcnow())

    report = await sweeper.sweep_once()

    assert report.purged == 1
    assert not await vault.storage.exists(record.storage_ref)
    assert (await vault.store.get(record.id)).retired_at is not None


async def test_old_tombstones_are_dropped(vault, sweeper):
    uploaded = await vault.upload("alice", PAYLOAD, "once.txt", "text/plain", "public", max_downloads=1)
    await vault.attempt_download(uploaded.file.id, "bob")
    await vault.controller.wait_for_pending()

    report = await sweeper.sweep_once()
    assert report.tombstones == 0
    assert await vault.store.get(uploaded.file.id) is not None

    report = await sweeper.sweep_once(now=utcnow() + timedelta(days=2))
    assert report.tombstones == 1
    assert await vault.store.get(uploaded.file.id) is None


async def test_orphans_removed_after_grace(vault, sweeper):
    kept = await vault.upload("alice", PAYLOAD, "kept.txt", "text/plain")
    kept_ref = (await vault.store.get(kept.file.id)).storage_ref
    orphan_ref = await vault.storage.save(b"left behind by a crashed upload")

    report = await sweeper.sweep_once()
    assert report.orphans == 0
    assert await vault.storage.exists(orphan_ref)

    report = await sweeper.sweep_once(now=utcnow() + timedelta(hours=1))
    assert report.orphans == 1
    assert not await vault.storage.exists(orphan_ref)
    assert await vault.storage.exists(kept_ref)


async def test_run_forever_keeps_sweeping(vault, sweeper, expire):
    uploaded = await vault.upload("alice", PAYLOAD, "stale.txt", "text/plain")
    await expire(uploaded.file.id)

    task = asyncio.create_task(sweeper.run_forever())
    try:
        for _ in range(100):
            if await vault.store.get(uploaded.file.id) is None:
                break
            await asyncio.sleep(0.05)
        assert await vault.store.get(uploaded.file.id) is None
    finally:
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
