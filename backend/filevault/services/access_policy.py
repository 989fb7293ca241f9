"""Access policy: who may view or download a file record.

Pure functions with no I/O. The same check backs the UI probe
("can I see this?") and the enforcement path in the download controller.
Download budgets are not considered here; the controller enforces them.
"""
import enum
import hashlib
import hmac
from typing import Optional

from filevault.models.file_record import FileRecord, Permission, Visibility


class Operation(str, enum.Enum):
    VIEW = "view"
    DOWNLOAD = "download"


# download implies view
_RANK = {Permission.VIEW.value: 1, Permission.DOWNLOAD.value: 2}


def digest(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def matches_digest(presented: Optional[str], stored: Optional[str]) -> bool:
    if not presented or not stored:
        return False
    return hmac.compare_digest(digest(presented), stored)


def permission_allows(permission: str, op: str) -> bool:
    granted = _RANK.get(permission)
    wanted = _RANK.get(op)
    if granted is None or wanted is None:
        return False
    return granted >= wanted


def can_access(
    record: FileRecord,
    requester_id: Optional[str],
    op: Operation | str,
    *,
    link_token: Optional[str] = None,
    secret: Optional[str] = None,
) -> bool:
    op = op.value if isinstance(op, Operation) else op
    if op not in _RANK:
        return False

    if requester_id and requester_id == record.owner_id:
        return True

    visibility = record.visibility
    if visibility == Visibility.PUBLIC.value:
        return True

    if visibility == Visibility.SHARED.value:
        if not requester_id:
            return False
        for entry in record.share_entries:
            if entry.grantee_id == requester_id:
                return permission_allows(entry.permission, op)
        return False

    if visibility == Visibility.LINK_LIMITED.value:
        if not matches_digest(link_token, record.link_token_hash):
            return False
        if record.secret_digest is not None and not matches_digest(secret, record.secret_digest):
            return False
        return True

    return False
