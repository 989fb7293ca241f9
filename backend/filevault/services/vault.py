"""FileVault - the operations collaborators call.

Wires the cipher engine, blob storage, record store, link issuer and
download controller together, validates input, enforces ownership for
owner-only operations and hands share notices to the notifier.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import timedelta
from pathlib import PurePosixPath, PureWindowsPath
from typing import Iterable, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from filevault.config import Settings
from filevault.errors import AccessDenied, Expired, FileVaultError, NotFound, ValidationError
from filevault.models.base import ensure_utc, utcnow
from filevault.models.file_record import FileRecord, Permission, RecordStatus, Visibility
from filevault.schemas.common import DeleteResponse
from filevault.schemas.file import (
    FileListResponse,
    FileSummary,
    LinkIssue,
    Pagination,
    PublicFileListResponse,
    SharingResult,
    UploadResult,
)
from filevault.services.access_policy import Operation, can_access
from filevault.services.cipher_engine import CipherEngine, KeyProvider, settings_key_provider
from filevault.services.download_controller import DownloadLifecycleController, DownloadResult
from filevault.services.file_record_store import FileRecordStore
from filevault.services.file_storage import FileStorageService
from filevault.services.link_issuer import SecureLinkIssuer
from filevault.services.notifications import LoggingNotifier, Notifier, ShareNotice, deliver

logger = logging.getLogger(__name__)

MAX_NAME_LENGTH = 500


def _parse_visibility(value) -> Visibility:
    try:
        return Visibility(value.value if isinstance(value, Visibility) else value)
    except ValueError as e:
        raise ValidationError(f"Unknown visibility '{value}'") from e


def _parse_permission(value) -> str:
    try:
        return Permission(value.value if isinstance(value, Permission) else value).value
    except ValueError as e:
        raise ValidationError(f"Unknown permission '{value}'") from e


def _share_pairs(owner_id: str, share_list) -> list[Tuple[str, str]]:
    """Normalize (grantee, permission) pairs or ShareEntryIn objects."""
    pairs: list[Tuple[str, str]] = []
    seen = set()
    for item in share_list or ():
        if isinstance(item, (tuple, list)):
            grantee_id, permission = item
        else:
            grantee_id, permission = item.grantee_id, item.permission
        grantee_id = (grantee_id or "").strip()
        if not grantee_id:
            raise ValidationError("Share entries need a grantee id")
        if grantee_id == owner_id:
            raise ValidationError("Cannot share a file with its owner")
        if grantee_id in seen:
            raise ValidationError(f"Grantee '{grantee_id}' listed twice")
        seen.add(grantee_id)
        pairs.append((grantee_id, _parse_permission(permission)))
    return pairs


def _clean_name(name: str) -> str:
    # Browsers may send full client paths; keep only the final component.
    cleaned = PureWindowsPath(PurePosixPath(name or "").name).name.strip()
    if not cleaned or cleaned in (".", ".."):
        raise ValidationError("A file name is required")
    if len(cleaned) > MAX_NAME_LENGTH:
        raise ValidationError(f"File name longer than {MAX_NAME_LENGTH} characters")
    return cleaned


@dataclass
class FileVault:
    settings: Settings
    store: FileRecordStore
    storage: FileStorageService
    cipher: CipherEngine
    link_issuer: SecureLinkIssuer
    controller: DownloadLifecycleController
    notifier: Notifier

    @classmethod
    def build(
        cls,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        key_provider: Optional[KeyProvider] = None,
        notifier: Optional[Notifier] = None,
    ) -> "FileVault":
        store = FileRecordStore(session_factory, timeout=settings.STORAGE_TIMEOUT_SECONDS)
        storage = FileStorageService.from_settings(settings)
        cipher = CipherEngine(
            key_provider or settings_key_provider(settings),
            timeout=settings.CRYPTO_TIMEOUT_SECONDS,
        )
        link_issuer = SecureLinkIssuer(settings.PUBLIC_BASE_URL)
        controller = DownloadLifecycleController(
            store, storage, cipher, link_issuer, drain_timeout=settings.STORAGE_TIMEOUT_SECONDS,
        )
        return cls(
            settings=settings,
            store=store,
            storage=storage,
            cipher=cipher,
            link_issuer=link_issuer,
            controller=controller,
            notifier=notifier or LoggingNotifier(),
        )

    # ── Helpers ──────────────────────────────────────────────────

    def _summary(self, record: FileRecord, requester_id: Optional[str] = None) -> FileSummary:
        return FileSummary.from_record(
            record,
            state=self.controller.state(record).value,
            include_shares=requester_id is not None and requester_id == record.owner_id,
        )

    async def _owned(self, owner_id: str, record_id: uuid.UUID) -> FileRecord:
        record = await self.store.get(record_id)
        if record is None:
            raise NotFound("File not found")
        if record.owner_id != owner_id:
            raise AccessDenied("Only the owner can change this file")
        return record

    def _ttl(self, ttl) -> timedelta:
        if ttl is None:
            return timedelta(seconds=self.settings.DEFAULT_TTL_SECONDS)
        if not isinstance(ttl, timedelta):
            ttl = timedelta(seconds=ttl)
        if ttl <= timedelta(0) or ttl > timedelta(seconds=self.settings.MAX_TTL_SECONDS):
            raise ValidationError(f"TTL must be between 1 and {self.settings.MAX_TTL_SECONDS} seconds")
        return ttl

    def _max_downloads(self, visibility: Visibility, max_downloads: Optional[int]) -> Optional[int]:
        if max_downloads is None:
            if visibility is Visibility.LINK_LIMITED:
                return self.settings.LINK_DEFAULT_MAX_DOWNLOADS
            return self.settings.DEFAULT_MAX_DOWNLOADS
        if max_downloads < 1:
            raise ValidationError("maxDownloads must be at least 1")
        return max_downloads

    def _link_issue(self, record_id: uuid.UUID, token: str) -> LinkIssue:
        return LinkIssue(id=record_id, link=self.link_issuer.link_url(token), link_token=token)

    async def _notify_all(self, notices: Iterable[ShareNotice]) -> list[str]:
        notified = []
        for notice in notices:
            if await deliver(self.notifier, notice):
                notified.append(notice.recipient)
        return notified

    # ── Upload ───────────────────────────────────────────────────

    async def upload(
        self,
        owner_id: str,
        content: bytes,
        name: str,
        mime_type: Optional[str],
        visibility: Visibility | str = Visibility.PRIVATE,
        share_list=None,
        max_downloads: Optional[int] = None,
        ttl=None,
        *,
        description: str = "",
        require_secret: Optional[bool] = None,
        recipients: Optional[Iterable[str]] = None,
    ) -> UploadResult:
        """Encrypt and store a file. Any failure before the record commits aborts the upload."""
        if not owner_id:
            raise ValidationError("An owner is required")
        if content is None:
            raise ValidationError("No file uploaded")
        if len(content) > self.settings.MAX_UPLOAD_BYTES:
            raise ValidationError(f"File exceeds the {self.settings.MAX_UPLOAD_BYTES} byte limit")
        name = _clean_name(name)
        visibility = _parse_visibility(visibility)
        shares = _share_pairs(owner_id, share_list)
        max_downloads = self._max_downloads(visibility, max_downloads)
        expires_at = utcnow() + self._ttl(ttl)
        recipients = [r.strip() for r in (recipients or ()) if r and r.strip()]

        link_limited = visibility is Visibility.LINK_LIMITED
        if require_secret is None:
            require_secret = link_limited and self.settings.LINK_REQUIRE_SECRET
        if require_secret and not link_limited:
            raise ValidationError("A decryption secret is only used for link-limited files")

        record_id = uuid.uuid4()
        issued = self.link_issuer.issue() if link_limited else None
        secret = self.link_issuer.new_secret() if require_secret else None

        ciphertext, meta = await self.cipher.encrypt_async(
            content, associated_data=record_id.bytes, key=secret.key if secret else None,
        )
        storage_ref = await self.storage.save(ciphertext)

        record = FileRecord(
            id=record_id,
            owner_id=owner_id,
            original_name=name,
            mime_type=mime_type or "application/octet-stream",
            size_bytes=len(content),
            description=description or "",
            storage_ref=storage_ref,
            cipher_meta=meta.to_dict(),
            visibility=visibility.value,
            link_token_hash=issued.token_hash if issued else None,
            secret_digest=secret.digest if secret else None,
            status=RecordStatus.AVAILABLE.value,
            download_count=0,
            max_downloads=max_downloads,
            expires_at=expires_at,
        )
        try:
            record = await self.store.create(record, shares)
        except FileVaultError:
            try:
                await self.storage.delete(storage_ref)
            except FileVaultError as cleanup_err:
                logger.error(f"Could not remove blob {storage_ref} after failed upload: {cleanup_err}")
            raise

        logger.info(f"Uploaded file {record.id} ({record.size_bytes} bytes, visibility={record.visibility})")

        link = self.link_issuer.link_url(issued.token) if issued else None
        notices = []
        if visibility is Visibility.SHARED:
            notices += [
                ShareNotice(
                    recipient=grantee_id, file_name=name, shared_by=owner_id, link=None,
                    decryption_secret=None, expires_at=expires_at, max_downloads=max_downloads,
                    permission=permission,
                )
                for grantee_id, permission in shares
            ]
        if link_limited:
            notices += [
                ShareNotice(
                    recipient=recipient, file_name=name, shared_by=owner_id, link=link,
                    decryption_secret=secret.secret if secret else None,
                    expires_at=expires_at, max_downloads=max_downloads,
                )
                for recipient in recipients
            ]
        notified = await self._notify_all(notices)

        return UploadResult(
            file=self._summary(record, owner_id),
            link=link,
            link_token=issued.token if issued else None,
            decryption_secret=secret.secret if secret else None,
            notified=notified,
        )

    # ── Retrieval ────────────────────────────────────────────────

    async def attempt_download(
        self, handle: str | uuid.UUID, requester_id: Optional[str], secret: Optional[str] = None,
    ) -> DownloadResult:
        return await self.controller.attempt_download(handle, requester_id, secret)

    async def get_summary(
        self, handle: str | uuid.UUID, requester_id: Optional[str], *, secret: Optional[str] = None,
    ) -> FileSummary:
        """File details for anyone allowed to view it (link holders included)."""
        record, token = await self.controller.resolve(handle)
        if record is None:
            raise NotFound("File not found")
        if utcnow() > ensure_utc(record.expires_at):
            raise Expired("This file has expired")
        if not can_access(record, requester_id, Operation.VIEW, link_token=token, secret=secret):
            raise AccessDenied("Access denied")
        return self._summary(record, requester_id)

    async def can_access(
        self,
        handle: str | uuid.UUID,
        requester_id: Optional[str],
        op: Operation | str = Operation.VIEW,
        *,
        secret: Optional[str] = None,
    ) -> bool:
        """UI probe: same rule as enforcement, but answers False instead of raising."""
        record, token = await self.controller.resolve(handle)
        if record is None or utcnow() > ensure_utc(record.expires_at):
            return False
        return can_access(record, requester_id, op, link_token=token, secret=secret)

    async def list_files(self, requester_id: str, limit: int = 20, offset: int = 0) -> FileListResponse:
        """Files the requester owns plus files shared with them."""
        if limit < 1 or offset < 0:
            raise ValidationError("Invalid pagination")
        owned, owned_total = await self.store.page_owned(requester_id, limit, offset)
        shared, shared_total = await self.store.page_shared_with(requester_id, utcnow(), limit, offset)
        total = owned_total + shared_total
        return FileListResponse(
            files=[self._summary(r, requester_id) for r in owned],
            shared_files=[self._summary(r, requester_id) for r in shared],
            pagination=Pagination(
                limit=limit, offset=offset, total_files=total,
                has_more=offset + limit < max(owned_total, shared_total),
            ),
        )

    async def list_public(self, limit: int = 20, offset: int = 0) -> PublicFileListResponse:
        if limit < 1 or offset < 0:
            raise ValidationError("Invalid pagination")
        files, total = await self.store.page_public(utcnow(), limit, offset)
        return PublicFileListResponse(
            files=[self._summary(r) for r in files],
            pagination=Pagination(limit=limit, offset=offset, total_files=total, has_more=offset + limit < total),
        )

    # ── Owner operations ─────────────────────────────────────────

    async def update_sharing(
        self,
        owner_id: str,
        record_id: uuid.UUID,
        *,
        share_list=None,
        visibility: Visibility | str | None = None,
        description: Optional[str] = None,
    ) -> SharingResult:
        record = await self._owned(owner_id, record_id)
        values = {}
        link = None

        if visibility is not None:
            visibility = _parse_visibility(visibility)
            was_link = record.visibility == Visibility.LINK_LIMITED.value
            if record.requires_secret and visibility is not Visibility.LINK_LIMITED:
                raise ValidationError("Files encrypted with a link secret must stay link-limited")
            if visibility is Visibility.LINK_LIMITED and not was_link:
                issued = self.link_issuer.issue()
                values["link_token_hash"] = issued.token_hash
                link = self._link_issue(record.id, issued.token)
            elif visibility is not Visibility.LINK_LIMITED and was_link:
                values["link_token_hash"] = None
            values["visibility"] = visibility.value
        if description is not None:
            values["description"] = description

        notified: list[str] = []
        if share_list is not None:
            pairs = _share_pairs(owner_id, share_list)
            before = {e.grantee_id for e in record.share_entries}
            record = await self.store.replace_shares(record.id, pairs)
            if record is None:
                raise NotFound("File not found")
            notified = await self._notify_all(
                ShareNotice(
                    recipient=grantee_id, file_name=record.original_name, shared_by=owner_id, link=None,
                    decryption_secret=None, expires_at=ensure_utc(record.expires_at),
                    max_downloads=record.max_downloads, permission=permission,
                )
                for grantee_id, permission in pairs if grantee_id not in before
            )

        if values:
            record = await self.store.update_fields(record.id, **values)
            if record is None:
                raise NotFound("File not found")
        logger.info(f"Sharing updated for file {record.id} (visibility={record.visibility})")
        return SharingResult(file=self._summary(record, owner_id), link=link, notified=notified)

    async def share_with(
        self, owner_id: str, record_id: uuid.UUID, grantee_id: str, permission: Permission | str = Permission.VIEW,
    ) -> SharingResult:
        """Grant one user access. A private file becomes shared."""
        record = await self._owned(owner_id, record_id)
        ((grantee_id, permission),) = _share_pairs(owner_id, [(grantee_id, permission)])
        await self.store.add_share(record.id, grantee_id, permission)
        if record.visibility == Visibility.PRIVATE.value:
            record = await self.store.update_fields(record.id, visibility=Visibility.SHARED.value)
        else:
            record = await self.store.get(record.id)
        if record is None:
            raise NotFound("File not found")
        notified = await self._notify_all([
            ShareNotice(
                recipient=grantee_id, file_name=record.original_name, shared_by=owner_id, link=None,
                decryption_secret=None, expires_at=ensure_utc(record.expires_at),
                max_downloads=record.max_downloads, permission=permission,
            )
        ])
        logger.info(f"File {record.id} shared ({permission})")
        return SharingResult(file=self._summary(record, owner_id), notified=notified)

    async def revoke_share(self, owner_id: str, record_id: uuid.UUID, grantee_id: str) -> FileSummary:
        record = await self._owned(owner_id, record_id)
        if not await self.store.remove_share(record.id, grantee_id):
            raise NotFound("Share not found")
        record = await self.store.get(record.id)
        if record is None:
            raise NotFound("File not found")
        return self._summary(record, owner_id)

    async def reissue_link(self, owner_id: str, record_id: uuid.UUID) -> LinkIssue:
        """Mint a new link token; the previous one stops working immediately."""
        record = await self._owned(owner_id, record_id)
        if record.visibility != Visibility.LINK_LIMITED.value:
            raise ValidationError("Only link-limited files have share links")
        issued = self.link_issuer.issue()
        if await self.store.update_fields(record.id, link_token_hash=issued.token_hash) is None:
            raise NotFound("File not found")
        logger.info(f"Link reissued for file {record.id}")
        return self._link_issue(record.id, issued.token)

    async def delete_record(self, owner_id: str, record_id: uuid.UUID) -> DeleteResponse:
        """Delete a file and its ciphertext. Deleting a missing file is acknowledged too."""
        record = await self.store.get(record_id)
        if record is not None:
            if record.owner_id != owner_id:
                raise AccessDenied("You can only delete your own files")
            if await self.controller.retire(record.id):
                logger.info(f"File {record.id} deleted by owner")
        return DeleteResponse(deleted=True, id=str(record_id))
