"""Background expiry sweeper.

Runs as an asyncio task within the FastAPI process, like a polling worker:
every SWEEP_INTERVAL_SECONDS it retires expired records, finishes purges of
exhausted records that never completed, drops old tombstones, and removes
ciphertext blobs that no record points to.

The sweeper only narrows availability. Expired records are deleted with a
conditional delete (still expired at delete time), and in-flight downloads
are allowed to finish before their blob is removed.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from filevault.errors import FileVaultError
from filevault.models.base import utcnow
from filevault.services.download_controller import DownloadLifecycleController

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    expired: int = 0
    purged: int = 0
    tombstones: int = 0
    orphans: int = 0
    failures: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.expired + self.purged + self.tombstones + self.orphans


class ExpirySweeper:
    def __init__(
        self,
        controller: DownloadLifecycleController,
        interval: float = 60.0,
        tombstone_retention: float = 24 * 3600,
        orphan_grace: float = 15 * 60,
    ):
        self.controller = controller
        self.store = controller.store
        self.storage = controller.storage
        self.interval = interval
        self.tombstone_retention = timedelta(seconds=tombstone_retention)
        self.orphan_grace = timedelta(seconds=orphan_grace)

    async def sweep_once(self, now: Optional[datetime] = None) -> SweepReport:
        now = now or utcnow()
        report = SweepReport()

        for record_id in await self.store.expired_ids(now):
            try:
                if await self.controller.retire(record_id, expired_before=now):
                    report.expired += 1
            except FileVaultError as e:
                report.failures.append(f"expire {record_id}: {e}")

        for record_id in await self.store.exhausted_pending_ids():
            record = await self.store.get(record_id)
            if record is None:
                continue
            if await self.controller.purge_exhausted(record.id, record.storage_ref):
                report.purged += 1
            else:
                report.failures.append(f"purge {record_id}")

        for record_id in await self.store.tombstone_ids(now - self.tombstone_retention):
            try:
                if await self.controller.retire(record_id):
                    report.tombstones += 1
            except FileVaultError as e:
                report.failures.append(f"tombstone {record_id}: {e}")

        report.orphans = await self._remove_orphans(now, report)

        if report.total or report.failures:
            logger.info(
                f"Sweep: {report.expired} expired, {report.purged} purged, "
                f"{report.tombstones} tombstones, {report.orphans} orphans, "
                f"{len(report.failures)} failure(s)"
            )
        return report

    async def _remove_orphans(self, now: datetime, report: SweepReport) -> int:
        """Delete blobs with no record once they are older than the grace window.

        The grace window covers uploads whose blob is written but whose record
        is not yet committed.
        """
        blobs = await self.storage.list_blobs()
        if not blobs:
            return 0
        known = await self.store.storage_refs()
        cutoff = now - self.orphan_grace
        removed = 0
        for storage_ref, modified_at in blobs.items():
            if storage_ref in known or modified_at > cutoff:
                continue
            try:
                if await self.storage.delete(storage_ref):
                    removed += 1
            except FileVaultError as e:
                report.failures.append(f"orphan {storage_ref}: {e}")
        return removed

    async def run_forever(self) -> None:
        """Main sweeper loop. Errors are logged and the loop keeps going."""
        logger.info(f"Expiry sweeper started (interval={self.interval}s)")
        while True:
            try:
                await self.sweep_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Sweeper loop error: {e}")
            await asyncio.sleep(self.interval)
