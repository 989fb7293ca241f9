"""File request/response schemas.

Nothing here carries storage refs, cipher metadata or link/secret hashes.
"""
import uuid
from datetime import datetime
from typing import Optional

from filevault.models.file_record import FileRecord, Permission, Visibility
from filevault.models.base import ensure_utc
from filevault.schemas.base import CamelModel, CamelORMModel


class ShareEntryIn(CamelModel):
    grantee_id: str
    permission: Permission = Permission.VIEW


class ShareEntryOut(CamelORMModel):
    grantee_id: str
    permission: str
    granted_at: datetime


class FileSummary(CamelORMModel):
    id: uuid.UUID
    owner_id: str
    original_name: str
    mime_type: str
    size_bytes: int
    description: str = ""
    visibility: str
    status: str
    state: str
    download_count: int
    max_downloads: Optional[int] = None
    requires_secret: bool = False
    expires_at: datetime
    created_at: datetime
    last_downloaded_at: Optional[datetime] = None
    share_entries: list[ShareEntryOut] = []

    @classmethod
    def from_record(cls, record: FileRecord, *, state: str, include_shares: bool = False) -> "FileSummary":
        return cls(
            id=record.id,
            owner_id=record.owner_id,
            original_name=record.original_name,
            mime_type=record.mime_type,
            size_bytes=record.size_bytes,
            description=record.description or "",
            visibility=record.visibility,
            status=record.status,
            state=state,
            download_count=record.download_count,
            max_downloads=record.max_downloads,
            requires_secret=record.requires_secret,
            expires_at=ensure_utc(record.expires_at),
            created_at=ensure_utc(record.created_at),
            last_downloaded_at=ensure_utc(record.last_downloaded_at),
            share_entries=(
                [ShareEntryOut.model_validate(e) for e in record.share_entries] if include_shares else []
            ),
        )


class UploadResult(CamelORMModel):
    file: FileSummary
    link: Optional[str] = None
    link_token: Optional[str] = None
    # Only returned once, at upload time; never stored
    decryption_secret: Optional[str] = None
    notified: list[str] = []


class LinkIssue(CamelORMModel):
    id: uuid.UUID
    link: str
    link_token: str


class SharingResult(CamelORMModel):
    file: FileSummary
    # Set when this update moved the file into link-limited visibility
    link: Optional[LinkIssue] = None
    notified: list[str] = []


class UpdateSharingRequest(CamelModel):
    visibility: Optional[Visibility] = None
    share_list: Optional[list[ShareEntryIn]] = None
    description: Optional[str] = None


class ShareRequest(CamelModel):
    grantee_id: str
    permission: Permission = Permission.VIEW


class Pagination(CamelORMModel):
    limit: int
    offset: int
    total_files: int
    has_more: bool


class FileListResponse(CamelORMModel):
    files: list[FileSummary]
    shared_files: list[FileSummary]
    pagination: Pagination


class PublicFileListResponse(CamelORMModel):
    files: list[FileSummary]
    pagination: Pagination


class AccessProbeResponse(CamelORMModel):
    id: uuid.UUID
    op: str
    allowed: bool
