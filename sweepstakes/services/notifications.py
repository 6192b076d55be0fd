"""
Notification collaborator.

The core only emits events; delivery (email templates, SMTP, providers) lives
outside of it. Failures are logged and never reach the accrual or draw caller.
"""
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from sweepstakes.config import settings


logger = logging.getLogger(__name__)


class Notifier:
    """Interface of the notification collaborator. Every method is fire-and-forget."""

    async def entry_confirmed(self, email: str, promo_title: str, entry_id: int, entry_count: int) -> None:
        raise NotImplementedError

    async def winner_selected(self, email: str, promo_title: str, prize_description: Optional[str],
                              entry_id: int) -> None:
        raise NotImplementedError

    async def admin_alert(self, subject: str, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        raise NotImplementedError


class LoggingNotifier(Notifier):
    """Writes events to the log. Used when no delivery backend is configured."""

    def __init__(self, admin_email: Optional[str] = None):
        self.admin_email = admin_email if admin_email is not None else settings.ADMIN_NOTIFICATION_EMAIL

    async def entry_confirmed(self, email, promo_title, entry_id, entry_count):
        logger.info(f"Entry confirmation for {email}: promo '{promo_title}', entry {entry_id}, {entry_count} entries")

    async def winner_selected(self, email, promo_title, prize_description, entry_id):
        logger.info(f"Winner notification for {email}: promo '{promo_title}', prize '{prize_description}', "
                    f"entry {entry_id}")

    async def admin_alert(self, subject, message, details=None):
        logger.info(f"Admin alert to {self.admin_email or '<unset>'}: {subject} - {message} {details or {}}")


async def notify_safely(description: str, send: Callable[[], Awaitable[None]]) -> bool:
    """
    Runs a notification and swallows its failure after logging it.

    Returns:
        bool: True when the notification was handed off
    """
    try:
        await send()
        return True
    except Exception:
        logger.exception(f"Failed to send {description}")
        return False
