"""
Payment provider webhook.

The body is consumed raw: the signature covers the exact bytes, so this path
is exempt from the request-guard middleware's body rewriting.
"""
import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from core.database import get_db
from core.exceptions import WebhookSignatureError
from core.rate_limit import limit_by_ip
from services.payment_events import process_payment_event
from services.payment_gateway import verify_webhook

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks"])

WEBHOOK_PATH = "/api/v1/webhooks/payment"


@router.post("/payment", dependencies=[Depends(limit_by_ip("payment-webhook"))])
async def payment_webhook(request: Request, db: Session = Depends(get_db)):
    """
    Verifies the signature and processes the event idempotently.

    Answers 200 only after the transition is committed; any failure before
    that surfaces as an error status so the provider retries.
    """
    payload = await request.body()
    try:
        event = verify_webhook(payload, request.headers.get("stripe-signature"))
    except WebhookSignatureError:
        logger.warning(
            "Rejected payment webhook",
            extra={"extra_fields": {"event": "webhook_rejected", "ip": request.client.host if request.client else None}},
        )
        raise

    result = process_payment_event(db, event=event)
    return {"success": True, "data": {"received": True, **result}}
