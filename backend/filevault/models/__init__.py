"""Import all models so SQLAlchemy metadata knows about them."""
from filevault.models.base import Base
from filevault.models.file_record import FileRecord, Permission, RecordStatus, ShareEntry, Visibility

__all__ = [
    "Base",
    "FileRecord", "ShareEntry",
    "Permission", "RecordStatus", "Visibility",
]
