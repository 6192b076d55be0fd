import logging
from typing import Optional

from fastapi import Request

from sweepstakes.config import settings
from sweepstakes.errors import WebhookSignatureError
from sweepstakes.services.ingestion import verify_webhook_signature
from sweepstakes.services.notifications import Notifier, LoggingNotifier


logger = logging.getLogger(__name__)


def get_notifier(request: Request) -> Notifier:
    notifier = getattr(request.app.state, "notifier", None)
    return notifier or LoggingNotifier()


async def require_webhook_signature(request: Request) -> bytes:
    """
    Verifies the HMAC of a webhook delivery before anything else reads it.

    Returns:
        bytes: The raw request body
    """
    raw_body = await request.body()
    if settings.WEBHOOK_SIGNATURE_BYPASS:
        logger.warning(f"Webhook signature check bypassed for {request.url.path}")
        return raw_body

    try:
        verify_webhook_signature(raw_body, request.headers.get(settings.WEBHOOK_HMAC_HEADER), settings.WEBHOOK_SECRET)
    except WebhookSignatureError as e:
        logger.error(f"Rejected webhook delivery to {request.url.path}: {e}")
        raise
    return raw_body


def is_trusted_proxy(host: Optional[str]) -> bool:
    return "*" in settings.TRUSTED_PROXIES or (host is not None and host in settings.TRUSTED_PROXIES)


def client_ip(request: Request) -> str:
    """
    Address of the requester. Forwarding headers are only honored when the
    direct peer is a trusted proxy; anyone else could set them freely.
    """
    peer = request.client.host if request.client else None
    if is_trusted_proxy(peer):
        forwarded_for = request.headers.get("X-Forwarded-For")
        if forwarded_for and forwarded_for.split(",")[0].strip():
            return forwarded_for.split(",")[0].strip()
        real_ip = request.headers.get("X-Real-IP")
        if real_ip and real_ip.strip():
            return real_ip.strip()
    return peer or "unknown"
