"""Notification hand-off for shares.

Delivery (email templates, SMTP/SendGrid) belongs to a collaborator; this
module defines what gets handed over and ships a logging implementation.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ShareNotice:
    recipient: str
    file_name: str
    shared_by: str
    link: Optional[str]
    decryption_secret: Optional[str]
    expires_at: datetime
    max_downloads: Optional[int]
    permission: Optional[str] = None


class Notifier(Protocol):
    async def notify(self, notice: ShareNotice) -> None:
        ...


class LoggingNotifier:
    """Records notices in the log. Never logs the link or the secret."""

    async def notify(self, notice: ShareNotice) -> None:
        logger.info(
            "Share notice for %s: '%s' from %s (link=%s, secret=%s, expires=%s, max_downloads=%s)",
            notice.recipient,
            notice.file_name,
            notice.shared_by,
            "yes" if notice.link else "no",
            "yes" if notice.decryption_secret else "no",
            notice.expires_at.isoformat(),
            notice.max_downloads,
        )


async def deliver(notifier: Notifier, notice: ShareNotice) -> bool:
    """Hand a notice to the notifier. Failures are logged, never raised."""
    try:
        await notifier.notify(notice)
        return True
    except Exception as e:
        logger.error(f"Failed to notify {notice.recipient} about '{notice.file_name}': {e}")
        return False
