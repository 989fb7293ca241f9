"""FileRecord model - metadata for one encrypted upload (ciphertext lives in blob storage)."""
import enum
import uuid
from datetime import datetime

from sqlalchemy import JSON, BigInteger, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from filevault.models.base import Base, TimestampMixin, utcnow


class Visibility(str, enum.Enum):
    PRIVATE = "private"
    PUBLIC = "public"
    SHARED = "shared"
    LINK_LIMITED = "link-limited"


class Permission(str, enum.Enum):
    VIEW = "view"
    DOWNLOAD = "download"


class RecordStatus(str, enum.Enum):
    AVAILABLE = "available"
    EXHAUSTED = "exhausted"


class FileRecord(Base, TimestampMixin):
    __tablename__ = "files"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    owner_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)

    # Descriptive metadata (immutable except description)
    original_name: Mapped[str] = mapped_column(String(500), nullable=False)
    mime_type: Mapped[str] = mapped_column(String(255), nullable=False, default="application/octet-stream")
    size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")

    # Never leaves the service layer
    storage_ref: Mapped[str] = mapped_column(String(1000), nullable=False, unique=True)
    cipher_meta: Mapped[dict] = mapped_column(JSON, nullable=False)

    visibility: Mapped[str] = mapped_column(String(20), nullable=False, default=Visibility.PRIVATE.value, index=True)
    # sha256 of the issued link token / out-of-band secret; raw values are never stored
    link_token_hash: Mapped[str | None] = mapped_column(String(64), nullable=True, unique=True)
    secret_digest: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # Consumption state, mutated only by the download controller
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=RecordStatus.AVAILABLE.value, index=True)
    download_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_downloads: Mapped[int | None] = mapped_column(Integer, nullable=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    last_downloaded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    retired_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    share_entries: Mapped[list["ShareEntry"]] = relationship(
        back_populates="file",
        cascade="all, delete-orphan",
        passive_deletes=True,
        lazy="selectin",
        order_by="ShareEntry.granted_at",
    )

    @property
    def requires_secret(self) -> bool:
        return self.secret_digest is not None


class ShareEntry(Base):
    __tablename__ = "file_shares"
    __table_args__ = (UniqueConstraint("file_id", "grantee_id", name="uq_file_shares_file_grantee"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    file_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("files.id", ondelete="CASCADE"), nullable=False, index=True
    )
    grantee_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    permission: Mapped[str] = mapped_column(String(20), nullable=False, default=Permission.VIEW.value)
    granted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    file: Mapped["FileRecord"] = relationship(back_populates="share_entries")
