from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Any, Dict
import json
import logging

from sweepstakes.config import settings
from sweepstakes.database.db import get_session
from sweepstakes.errors import ValidationError
from sweepstakes.services.ingestion import PurchaseEvent, WebhookIngestor
from sweepstakes.services.notifications import Notifier
from sweepstakes.webapp.dependencies import get_notifier, require_webhook_signature


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


def parse_order_body(raw_body: bytes) -> Dict[str, Any]:
    try:
        return json.loads(raw_body or b"null")
    except (ValueError, UnicodeDecodeError) as e:
        raise ValidationError("Invalid order data received") from e


@router.post("/orders/create")
async def order_created(
    request: Request,
    raw_body: bytes = Depends(require_webhook_signature),
    session: AsyncSession = Depends(get_session),
    notifier: Notifier = Depends(get_notifier),
):
    event = PurchaseEvent.from_order_payload(parse_order_body(raw_body))
    report = await WebhookIngestor(session, notifier).ingest_order_created(
        request.headers.get(settings.WEBHOOK_SHOP_HEADER), event
    )
    return {"success": True, "message": "Order processed successfully", **report.to_dict()}


@router.post("/orders/updated")
async def order_updated(
    request: Request,
    raw_body: bytes = Depends(require_webhook_signature),
    session: AsyncSession = Depends(get_session),
    notifier: Notifier = Depends(get_notifier),
):
    event = PurchaseEvent.from_order_payload(parse_order_body(raw_body))
    updated = await WebhookIngestor(session, notifier).ingest_order_updated(
        request.headers.get(settings.WEBHOOK_SHOP_HEADER), event
    )
    return {
        "success": True,
        "message": "Order update processed successfully",
        "orderId": event.order_id,
        "entriesUpdated": updated,
    }
