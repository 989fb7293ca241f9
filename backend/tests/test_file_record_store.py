"""Record store against a real (SQLite) database."""
import asyncio
import uuid
from datetime import timedelta

import pytest

from filevault.errors import ValidationError
from filevault.models.base import utcnow
from filevault.models.file_record import FileRecord, RecordStatus
from filevault.services.file_record_store import FileRecordStore


def new_record(owner="alice", visibility="private", max_downloads=None, ttl=timedelta(days=1), **extra):
    return FileRecord(
        id=uuid.uuid4(),
        owner_id=owner,
        original_name="report.pdf",
        mime_type="application/pdf",
        size_bytes=10,
        storage_ref=f"{uuid.uuid4().hex}.enc",
        cipher_meta={"alg": "AES-256-GCM", "nonce": "AAAAAAAAAAAAAAAA", "keyId": "test"},
        visibility=visibility,
        max_downloads=max_downloads,
        expires_at=utcnow() + ttl,
        **extra,
    )


@pytest.fixture
def store(session_factory):
    return FileRecordStore(session_factory, timeout=10)


async def test_create_and_get_with_shares(store):
    record = await store.create(new_record(visibility="shared"), [("bob", "view"), ("carol", "download")])

    loaded = await store.get(record.id)
    assert loaded.owner_id == "alice"
    assert loaded.status == RecordStatus.AVAILABLE.value
    assert loaded.download_count == 0
    assert sorted((e.grantee_id, e.permission) for e in loaded.share_entries) == [
        ("bob", "view"), ("carol", "download"),
    ]


async def test_missing_record_is_none(store):
    assert await store.get(uuid.uuid4()) is None


async def test_try_consume_stops_at_limit(store):
    record = await store.create(new_record(max_downloads=2))
    now = utcnow()

    first = await store.try_consume(record.id, now)
    second = await store.try_consume(record.id, now)
    third = await store.try_consume(record.id, now)

    assert (first.download_count, first.exhausted) == (1, False)
    assert (second.download_count, second.exhausted) == (2, True)
    assert third is None
    loaded = await store.get(record.id)
    assert loaded.download_count == 2
    assert loaded.status == RecordStatus.EXHAUSTED.value


async def test_try_consume_unlimited(store):
    record = await store.create(new_record(max_downloads=None))
    for expected in range(1, 6):
        result = await store.try_consume(record.id, utcnow())
        assert result.download_count == expected
        assert not result.exhausted


async def test_try_consume_refuses_expired(store):
    record = await store.create(new_record(ttl=timedelta(seconds=30)))
    assert await store.try_consume(record.id, utcnow() + timedelta(minutes=1)) is None
    assert (await store.get(record.id)).download_count == 0


async def test_concurrent_consumes_never_overshoot(store):
    record = await store.create(new_record(max_downloads=3))
    now = utcnow()

    results = await asyncio.gather(*[store.try_consume(record.id, now) for _ in range(8)])

    granted = [r for r in results if r is not None]
    assert len(granted) == 3
    assert sorted(r.download_count for r in granted) == [1, 2, 3]
    assert sum(r.exhausted for r in granted) == 1


async def test_link_lookup_by_hash(store):
    record = await store.create(new_record(visibility="link-limited", link_token_hash="a" * 64))
    assert (await store.get_by_link_hash("a" * 64)).id == record.id
    assert await store.get_by_link_hash("b" * 64) is None


async def test_listings_hide_link_limited_and_private(store):
    await store.create(new_record(owner="alice", visibility="public"))
    await store.create(new_record(owner="alice", visibility="link-limited", link_token_hash="c" * 64))
    await store.create(new_record(owner="alice", visibility="private"))
    await store.create(new_record(owner="alice", visibility="shared"), [("bob", "view")])
    now = utcnow()

    public, total = await store.page_public(now, 10, 0)
    assert [r.visibility for r in public] == ["public"]
    assert total == 1

    shared, shared_total = await store.page_shared_with("bob", now, 10, 0)
    assert [r.visibility for r in shared] == ["shared"]
    assert shared_total == 1

    owned, owned_total = await store.page_owned("alice", 10, 0)
    assert owned_total == 4
    assert {r.visibility for r in owned} == {"public", "link-limited", "private", "shared"}


async def test_listings_skip_expired(store):
    await store.create(new_record(visibility="public", ttl=timedelta(seconds=30)))
    public, total = await store.page_public(utcnow() + timedelta(minutes=5), 10, 0)
    assert public == []
    assert total == 0


async def test_replace_shares(store):
    record = await store.create(new_record(visibility="shared"), [("bob", "view"), ("carol", "view")])

    updated = await store.replace_shares(record.id, [("carol", "download"), ("dave", "view")])

    assert {(e.grantee_id, e.permission) for e in updated.share_entries} == {
        ("carol", "download"), ("dave", "view"),
    }


async def test_duplicate_share_rejected(store):
    record = await store.create(new_record(visibility="shared"), [("bob", "view")])
    with pytest.raises(ValidationError):
        await store.add_share(record.id, "bob", "download")
    assert await store.remove_share(record.id, "bob")
    assert not await store.remove_share(record.id, "bob")


async def test_update_fields_rejects_counters(store):
    record = await store.create(new_record())
    with pytest.raises(ValueError):
        await store.update_fields(record.id, download_count=0)
    updated = await store.update_fields(record.id, description="quarterly numbers")
    assert updated.description == "quarterly numbers"


async def test_delete_returns_ref_once(store):
    record = await store.create(new_record(visibility="shared"), [("bob", "view")])

    assert await store.delete(record.id) == record.storage_ref
    assert await store.delete(record.id) is None
    assert await store.get(record.id) is None
    shared, _ = await store.page_shared_with("bob", utcnow(), 10, 0)
    assert shared == []


async def test_conditional_delete_keeps_live_records(store):
    record = await store.create(new_record(ttl=timedelta(hours=1)))
    assert await store.delete(record.id, expired_before=utcnow()) is None
    assert await store.get(record.id) is not None


async def test_sweeper_queries(store):
    now = utcnow()
    expired = await store.create(new_record(ttl=timedelta(seconds=1)))
    exhausted = await store.create(new_record(max_downloads=1))
    await store.try_consume(exhausted.id, now)

    assert await store.expired_ids(now + timedelta(seconds=5)) == [expired.id]
    assert await store.exhausted_pending_ids() == [exhausted.id]
    assert await store.tombstone_ids(now + timedelta(days=1)) == []

    await store.mark_retired(exhausted.id, now)
    assert await store.exhausted_pending_ids() == []
    assert await store.tombstone_ids(now + timedelta(seconds=1)) == [exhausted.id]
    assert await store.storage_refs() == {expired.storage_ref, exhausted.storage_ref}
