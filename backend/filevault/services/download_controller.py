"""Download lifecycle: policy check, atomic consume, fetch, decrypt, retire.

Per record: available -> consuming -> (available | exhausted) -> deleted.

The counter is advanced in the database by a conditional update, which is
what bounds successes under concurrent requests. Ciphertext deletion is
deferred until every in-process reader of the record has finished, so an
attempt that exhausts the budget never pulls the blob out from under another
attempt that consumed a download just before it.
"""
import asyncio
import enum
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional, Set, Tuple

from filevault.errors import (
    AccessDenied,
    CorruptedContent,
    Exhausted,
    Expired,
    FileVaultError,
    NotFound,
    StorageUnavailable,
)
from filevault.models.base import ensure_utc, utcnow
from filevault.models.file_record import FileRecord, RecordStatus
from filevault.services.access_policy import Operation, can_access, matches_digest
from filevault.services.cipher_engine import CipherEngine, CipherMeta
from filevault.services.file_record_store import ConsumeResult, FileRecordStore
from filevault.services.file_storage import FileStorageService
from filevault.services.link_issuer import SecureLinkIssuer

logger = logging.getLogger(__name__)


class DownloadState(str, enum.Enum):
    AVAILABLE = "available"
    CONSUMING = "consuming"
    EXHAUSTED = "exhausted"
    DELETED = "deleted"


@dataclass(frozen=True)
class DownloadResult:
    content: bytes
    original_name: str
    mime_type: str
    size_bytes: int
    download_count: int
    max_downloads: Optional[int]
    exhausted: bool


class ReaderRegistry:
    """Counts in-flight attempts per record and lets deleters wait for zero."""

    def __init__(self):
        self._counts: Dict[uuid.UUID, int] = {}
        self._idle: Dict[uuid.UUID, asyncio.Event] = {}

    def enter(self, record_id: uuid.UUID) -> None:
        self._counts[record_id] = self._counts.get(record_id, 0) + 1
        if record_id not in self._idle:
            self._idle[record_id] = asyncio.Event()

    def leave(self, record_id: uuid.UUID) -> None:
        remaining = self._counts.get(record_id, 0) - 1
        if remaining > 0:
            self._counts[record_id] = remaining
            return
        self._counts.pop(record_id, None)
        event = self._idle.pop(record_id, None)
        if event is not None:
            event.set()

    def active(self, record_id: uuid.UUID) -> int:
        return self._counts.get(record_id, 0)

    async def wait_idle(self, record_id: uuid.UUID, timeout: float) -> bool:
        event = self._idle.get(record_id)
        if event is None:
            return True
        try:
            await asyncio.wait_for(event.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False


class DownloadLifecycleController:
    def __init__(
        self,
        store: FileRecordStore,
        storage: FileStorageService,
        cipher: CipherEngine,
        link_issuer: SecureLinkIssuer,
        drain_timeout: float = 30.0,
    ):
        self.store = store
        self.storage = storage
        self.cipher = cipher
        self.link_issuer = link_issuer
        self.drain_timeout = drain_timeout
        self.readers = ReaderRegistry()
        self._pending: Set[asyncio.Task] = set()

    def state(self, record: Optional[FileRecord]) -> DownloadState:
        if record is None:
            return DownloadState.DELETED
        if record.status == RecordStatus.EXHAUSTED.value:
            return DownloadState.EXHAUSTED
        if self.readers.active(record.id):
            return DownloadState.CONSUMING
        return DownloadState.AVAILABLE

    async def resolve(self, handle: str | uuid.UUID) -> Tuple[Optional[FileRecord], Optional[str]]:
        """Look a handle up as a record id first, then as a link token."""
        if isinstance(handle, uuid.UUID):
            return await self.store.get(handle), None
        try:
            record_id = uuid.UUID(handle)
        except (ValueError, TypeError, AttributeError):
            if not handle:
                return None, None
            return await self.store.get_by_link_hash(self.link_issuer.hash_token(handle)), handle
        return await self.store.get(record_id), None

    async def attempt_download(
        self,
        handle: str | uuid.UUID,
        requester_id: Optional[str],
        secret: Optional[str] = None,
        *,
        now: Optional[datetime] = None,
    ) -> DownloadResult:
        record, token = await self.resolve(handle)
        if record is None:
            raise NotFound("File not found")

        now = now or utcnow()
        if now > ensure_utc(record.expires_at):
            raise Expired("This file has expired")

        if not can_access(record, requester_id, Operation.DOWNLOAD, link_token=token, secret=secret):
            raise AccessDenied("Access denied")

        if record.status == RecordStatus.EXHAUSTED.value:
            raise Exhausted("Download limit reached")

        key = None
        if record.requires_secret:
            if not matches_digest(secret, record.secret_digest):
                raise AccessDenied("A valid decryption secret is required")
            key = self.link_issuer.key_from_secret(secret)

        consumed = None
        spent = False
        self.readers.enter(record.id)
        try:
            consumed = await self.store.try_consume(record.id, now)
            if consumed is None:
                raise await self._rejection(record.id, now)

            try:
                ciphertext = await self.storage.read(record.storage_ref)
                plaintext = await self.cipher.decrypt_async(
                    ciphertext,
                    CipherMeta.from_dict(record.cipher_meta),
                    associated_data=record.id.bytes,
                    key=key,
                )
            except CorruptedContent as e:
                # The attempt stays consumed.
                spent = True
                logger.warning(f"Integrity failure on file {record.id} (attempt {consumed.download_count}): {e}")
                raise CorruptedContent("File content failed integrity check") from e
            except FileVaultError:
                await self._refund(record.id, consumed)
                raise
            spent = True
        finally:
            self.readers.leave(record.id)
            if spent and consumed.exhausted:
                self._schedule_purge(record.id, record.storage_ref)

        logger.info(
            f"File {record.id} downloaded ({consumed.download_count}/"
            f"{consumed.max_downloads if consumed.max_downloads is not None else 'unlimited'})"
        )
        return DownloadResult(
            content=plaintext,
            original_name=record.original_name,
            mime_type=record.mime_type,
            size_bytes=record.size_bytes,
            download_count=consumed.download_count,
            max_downloads=consumed.max_downloads,
            exhausted=consumed.exhausted,
        )

    async def _refund(self, record_id: uuid.UUID, consumed: ConsumeResult) -> None:
        """Undo a consume when the content could not be fetched or decrypted."""
        try:
            refunded = await self.store.release(record_id, consumed.download_count)
        except FileVaultError as e:
            logger.error(f"Could not refund download on file {record_id}: {e}")
            return
        if not refunded:
            logger.warning(f"Download on file {record_id} not refunded; counter moved on")

    async def _rejection(self, record_id: uuid.UUID, now: datetime) -> FileVaultError:
        """Explain why the conditional consume matched no row."""
        current = await self.store.get(record_id)
        if current is None:
            return NotFound("File not found")
        if now > ensure_utc(current.expires_at):
            return Expired("This file has expired")
        return Exhausted("Download limit reached")

    # ── Retirement ───────────────────────────────────────────────

    def _schedule_purge(self, record_id: uuid.UUID, storage_ref: str) -> None:
        task = asyncio.create_task(self.purge_exhausted(record_id, storage_ref))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def purge_exhausted(self, record_id: uuid.UUID, storage_ref: str) -> bool:
        """Remove an exhausted record's ciphertext once its readers have drained.

        The row stays behind as a tombstone so late requests get ``Exhausted``
        rather than ``NotFound``; the sweeper purges it later.
        """
        if not await self.readers.wait_idle(record_id, self.drain_timeout):
            logger.warning(f"Readers of file {record_id} did not drain; leaving purge to the sweeper")
            return False
        try:
            await self.storage.delete(storage_ref)
            await self.store.mark_retired(record_id)
        except FileVaultError as e:
            logger.error(f"Could not purge exhausted file {record_id}: {e}")
            return False
        logger.info(f"File {record_id} exhausted; ciphertext removed")
        return True

    async def retire(self, record_id: uuid.UUID, *, expired_before: Optional[datetime] = None) -> bool:
        """Delete a record, then its ciphertext. Idempotent.

        Returns False when there was no (matching) record. A blob that cannot
        be removed now is left for the sweeper's orphan pass.
        """
        storage_ref = await self.store.delete(record_id, expired_before=expired_before)
        if storage_ref is None:
            return False
        if not await self.readers.wait_idle(record_id, self.drain_timeout):
            logger.warning(f"Readers of file {record_id} did not drain; blob left for orphan cleanup")
            return True
        try:
            await self.storage.delete(storage_ref)
        except StorageUnavailable as e:
            logger.error(f"Record {record_id} deleted but blob removal failed: {e}")
        return True

    async def wait_for_pending(self) -> None:
        """Wait for scheduled purges (shutdown and tests)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
