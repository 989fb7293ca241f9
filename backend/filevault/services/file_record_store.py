"""Durable metadata for uploaded files.

The store is the single source of truth for ownership, visibility, shares,
counters and expiry. Each public method runs in its own session, bounded by a
timeout; database failures surface as ``StorageUnavailable``.

The download counter is only ever advanced by ``try_consume``, a single
conditional UPDATE, so concurrent requests cannot both pass a
``count < max`` check before either writes.
"""
import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Iterable, Optional, Sequence, Set, Tuple, TypeVar

from sqlalchemy import and_, case, delete, desc, func, or_, select, update
from sqlalchemy import exc as sa_exc
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from filevault.errors import StorageUnavailable, ValidationError
from filevault.models.base import utcnow
from filevault.models.file_record import FileRecord, RecordStatus, ShareEntry, Visibility

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class ConsumeResult:
    download_count: int
    max_downloads: Optional[int]
    exhausted: bool


class FileRecordStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession], timeout: float = 30.0):
        self.session_factory = session_factory
        self.timeout = timeout

    async def _run(self, op: Callable[[AsyncSession], Awaitable[T]], *, write: bool = False) -> T:
        async def _call() -> T:
            async with self.session_factory() as session:
                if write:
                    async with session.begin():
                        return await op(session)
                return await op(session)

        try:
            return await asyncio.wait_for(_call(), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise StorageUnavailable(f"Record store timed out after {self.timeout}s") from e
        except sa_exc.IntegrityError as e:
            raise ValidationError("Conflicting record state") from e
        except sa_exc.SQLAlchemyError as e:
            logger.error(f"Record store error: {e}")
            raise StorageUnavailable("Record store unavailable") from e

    @staticmethod
    async def _load(session: AsyncSession, record_id: uuid.UUID) -> Optional[FileRecord]:
        result = await session.execute(
            select(FileRecord)
            .where(FileRecord.id == record_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    # ── Creation & lookup ────────────────────────────────────────

    async def create(
        self, record: FileRecord, shares: Iterable[Tuple[str, str]] = (),
    ) -> FileRecord:
        """Persist a new record and its initial share entries."""
        shares = list(shares)

        async def _op(session: AsyncSession) -> FileRecord:
            session.add(record)
            await session.flush()
            for grantee_id, permission in shares:
                session.add(ShareEntry(file_id=record.id, grantee_id=grantee_id, permission=permission))
            await session.flush()
            return await self._load(session, record.id)

        return await self._run(_op, write=True)

    async def get(self, record_id: uuid.UUID) -> Optional[FileRecord]:
        return await self._run(lambda session: self._load(session, record_id))

    async def get_by_link_hash(self, token_hash: str) -> Optional[FileRecord]:
        async def _op(session: AsyncSession) -> Optional[FileRecord]:
            result = await session.execute(
                select(FileRecord).where(FileRecord.link_token_hash == token_hash)
            )
            return result.scalar_one_or_none()

        return await self._run(_op)

    # ── Listings (never include link-limited records of others) ──

    async def page_owned(self, owner_id: str, limit: int, offset: int) -> Tuple[Sequence[FileRecord], int]:
        async def _op(session: AsyncSession):
            where = FileRecord.owner_id == owner_id
            result = await session.execute(
                select(FileRecord).where(where)
                .order_by(desc(FileRecord.created_at)).limit(limit).offset(offset)
            )
            total = await session.scalar(select(func.count()).select_from(FileRecord).where(where))
            return result.scalars().all(), total or 0

        return await self._run(_op)

    async def page_shared_with(
        self, grantee_id: str, now: datetime, limit: int, offset: int,
    ) -> Tuple[Sequence[FileRecord], int]:
        async def _op(session: AsyncSession):
            where = and_(
                FileRecord.id.in_(select(ShareEntry.file_id).where(ShareEntry.grantee_id == grantee_id)),
                FileRecord.visibility == Visibility.SHARED.value,
                FileRecord.owner_id != grantee_id,
                FileRecord.status == RecordStatus.AVAILABLE.value,
                FileRecord.expires_at >= now,
            )
            result = await session.execute(
                select(FileRecord).where(where)
                .order_by(desc(FileRecord.created_at)).limit(limit).offset(offset)
            )
            total = await session.scalar(select(func.count()).select_from(FileRecord).where(where))
            return result.scalars().all(), total or 0

        return await self._run(_op)

    async def page_public(self, now: datetime, limit: int, offset: int) -> Tuple[Sequence[FileRecord], int]:
        async def _op(session: AsyncSession):
            where = and_(
                FileRecord.visibility == Visibility.PUBLIC.value,
                FileRecord.status == RecordStatus.AVAILABLE.value,
                FileRecord.expires_at >= now,
            )
            result = await session.execute(
                select(FileRecord).where(where)
                .order_by(desc(FileRecord.created_at)).limit(limit).offset(offset)
            )
            total = await session.scalar(select(func.count()).select_from(FileRecord).where(where))
            return result.scalars().all(), total or 0

        return await self._run(_op)

    # ── Consumption ──────────────────────────────────────────────

    async def try_consume(self, record_id: uuid.UUID, now: datetime) -> Optional[ConsumeResult]:
        """Atomically take one download from the record's budget.

        Returns None when the record is gone, expired, exhausted, or already
        at its limit. The same statement flips the status to ``exhausted``
        when this attempt used up the last download.
        """
        reaches_limit = and_(
            FileRecord.max_downloads.is_not(None),
            FileRecord.download_count + 1 >= FileRecord.max_downloads,
        )
        stmt = (
            update(FileRecord)
            .where(
                FileRecord.id == record_id,
                FileRecord.status == RecordStatus.AVAILABLE.value,
                FileRecord.expires_at >= now,
                or_(
                    FileRecord.max_downloads.is_(None),
                    FileRecord.download_count < FileRecord.max_downloads,
                ),
            )
            .values(
                download_count=FileRecord.download_count + 1,
                last_downloaded_at=now,
                status=case(
                    (reaches_limit, RecordStatus.EXHAUSTED.value),
                    else_=RecordStatus.AVAILABLE.value,
                ),
            )
            .returning(FileRecord.download_count, FileRecord.max_downloads, FileRecord.status)
            .execution_options(synchronize_session=False)
        )

        async def _op(session: AsyncSession) -> Optional[ConsumeResult]:
            row = (await session.execute(stmt)).first()
            if row is None:
                return None
            count, max_downloads, status = row
            return ConsumeResult(
                download_count=count,
                max_downloads=max_downloads,
                exhausted=status == RecordStatus.EXHAUSTED.value,
            )

        return await self._run(_op, write=True)

    async def release(self, record_id: uuid.UUID, expected_count: int) -> bool:
        """Give back a download whose content was never delivered.

        Only applies while the counter still reads ``expected_count`` and the
        ciphertext has not been purged; a later consume keeps its place.
        """
        stmt = (
            update(FileRecord)
            .where(
                FileRecord.id == record_id,
                FileRecord.download_count == expected_count,
                FileRecord.retired_at.is_(None),
            )
            .values(
                download_count=FileRecord.download_count - 1,
                status=RecordStatus.AVAILABLE.value,
            )
            .execution_options(synchronize_session=False)
        )

        async def _op(session: AsyncSession) -> bool:
            return (await session.execute(stmt)).rowcount > 0

        return await self._run(_op, write=True)

    # ── Owner mutations ──────────────────────────────────────────

    async def update_fields(self, record_id: uuid.UUID, **values) -> Optional[FileRecord]:
        """Update owner-editable columns (visibility, description, link hashes)."""
        allowed = {"visibility", "description", "link_token_hash", "secret_digest"}
        unknown = set(values) - allowed
        if unknown:
            raise ValueError(f"Fields not updatable: {sorted(unknown)}")

        async def _op(session: AsyncSession) -> Optional[FileRecord]:
            if values:
                await session.execute(
                    update(FileRecord).where(FileRecord.id == record_id).values(**values)
                    .execution_options(synchronize_session=False)
                )
            return await self._load(session, record_id)

        return await self._run(_op, write=True)

    async def replace_shares(
        self, record_id: uuid.UUID, entries: Iterable[Tuple[str, str]],
    ) -> Optional[FileRecord]:
        """Replace the share list, keeping grant times for grantees that stay."""
        entries = list(entries)

        async def _op(session: AsyncSession) -> Optional[FileRecord]:
            record = await self._load(session, record_id)
            if record is None:
                return None
            existing = {e.grantee_id: e for e in record.share_entries}
            wanted = dict(entries)
            for grantee_id, entry in existing.items():
                if grantee_id not in wanted:
                    await session.delete(entry)
            for grantee_id, permission in entries:
                entry = existing.get(grantee_id)
                if entry is None:
                    session.add(ShareEntry(file_id=record_id, grantee_id=grantee_id, permission=permission))
                elif entry.permission != permission:
                    entry.permission = permission
            await session.flush()
            session.expire(record)
            return await self._load(session, record_id)

        return await self._run(_op, write=True)

    async def add_share(self, record_id: uuid.UUID, grantee_id: str, permission: str) -> ShareEntry:
        async def _op(session: AsyncSession) -> ShareEntry:
            existing = await session.scalar(
                select(ShareEntry).where(ShareEntry.file_id == record_id, ShareEntry.grantee_id == grantee_id)
            )
            if existing is not None:
                raise ValidationError("File already shared with this user")
            entry = ShareEntry(file_id=record_id, grantee_id=grantee_id, permission=permission)
            session.add(entry)
            await session.flush()
            return entry

        return await self._run(_op, write=True)

    async def remove_share(self, record_id: uuid.UUID, grantee_id: str) -> bool:
        async def _op(session: AsyncSession) -> bool:
            result = await session.execute(
                delete(ShareEntry)
                .where(ShareEntry.file_id == record_id, ShareEntry.grantee_id == grantee_id)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount > 0

        return await self._run(_op, write=True)

    # ── Retirement ───────────────────────────────────────────────

    async def delete(self, record_id: uuid.UUID, *, expired_before: Optional[datetime] = None) -> Optional[str]:
        """Delete a record and its shares. Returns the storage ref if a row was removed.

        With ``expired_before`` the delete only applies while the record is
        still past that deadline, so a concurrent change cannot resurrect it.
        """
        conditions = [FileRecord.id == record_id]
        if expired_before is not None:
            conditions.append(FileRecord.expires_at < expired_before)

        async def _op(session: AsyncSession) -> Optional[str]:
            storage_ref = (await session.execute(
                delete(FileRecord).where(*conditions)
                .returning(FileRecord.storage_ref)
                .execution_options(synchronize_session=False)
            )).scalar_one_or_none()
            if storage_ref is not None:
                # Postgres cascades; SQLite without the FK pragma does not.
                await session.execute(
                    delete(ShareEntry).where(ShareEntry.file_id == record_id)
                    .execution_options(synchronize_session=False)
                )
            return storage_ref

        return await self._run(_op, write=True)

    async def mark_retired(self, record_id: uuid.UUID, now: Optional[datetime] = None) -> None:
        """Record that an exhausted record's ciphertext has been removed."""
        async def _op(session: AsyncSession) -> None:
            await session.execute(
                update(FileRecord)
                .where(FileRecord.id == record_id, FileRecord.status == RecordStatus.EXHAUSTED.value)
                .values(retired_at=now or utcnow())
                .execution_options(synchronize_session=False)
            )

        await self._run(_op, write=True)

    async def expired_ids(self, now: datetime, limit: int = 500) -> list[uuid.UUID]:
        async def _op(session: AsyncSession):
            result = await session.execute(
                select(FileRecord.id).where(FileRecord.expires_at < now)
                .order_by(FileRecord.expires_at).limit(limit)
            )
            return list(result.scalars().all())

        return await self._run(_op)

    async def exhausted_pending_ids(self, limit: int = 500) -> list[uuid.UUID]:
        """Exhausted records whose ciphertext removal never completed."""
        async def _op(session: AsyncSession):
            result = await session.execute(
                select(FileRecord.id).where(
                    FileRecord.status == RecordStatus.EXHAUSTED.value,
                    FileRecord.retired_at.is_(None),
                ).limit(limit)
            )
            return list(result.scalars().all())

        return await self._run(_op)

    async def tombstone_ids(self, retired_before: datetime, limit: int = 500) -> list[uuid.UUID]:
        async def _op(session: AsyncSession):
            result = await session.execute(
                select(FileRecord.id).where(
                    FileRecord.status == RecordStatus.EXHAUSTED.value,
                    FileRecord.retired_at.is_not(None),
                    FileRecord.retired_at < retired_before,
                ).limit(limit)
            )
            return list(result.scalars().all())

        return await self._run(_op)

    async def storage_refs(self) -> Set[str]:
        async def _op(session: AsyncSession) -> Set[str]:
            result = await session.execute(select(FileRecord.storage_ref))
            return set(result.scalars().all())

        return await self._run(_op)
