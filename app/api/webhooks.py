"""
Payment gateway webhook.
Always acknowledges with 200 so the gateway does not retry forever; failures are
recorded in payment_events and reconciliation_conflicts instead.
"""
import json
import logging
from typing import Optional

from fastapi import APIRouter, Request, Header, Depends
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from app.api.deps import get_gateway
from app.db.session import get_db
from app.services import webhook_reconciler
from app.services.errors import ValidationError

logger = logging.getLogger(__name__)

router = APIRouter()

_ACK = {"received": True}


@router.post("/payment")
async def payment_webhook(
    request: Request,
    db: Session = Depends(get_db),
    gateway=Depends(get_gateway),
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
):
    """
    Accepts Stripe events ({type, data: {object}}), the flat {type, data: {id}}
    shape, or ?type=payment&data.id=<charge id> query parameters.
    """
    body = await request.body()

    try:
        await run_in_threadpool(gateway.verify_webhook, body, stripe_signature)
    except ValidationError as e:
        logger.warning(f"[WEBHOOK] Rejected delivery: {e}")
        return _ACK

    payload = {}
    if body:
        try:
            payload = json.loads(body)
        except ValueError:
            logger.warning("[WEBHOOK] Body is not valid JSON, falling back to query parameters")
            payload = {}
    if not isinstance(payload, dict):
        payload = {}

    params = request.query_params
    event_type = payload.get("type") or params.get("type") or params.get("topic")
    charge_id = webhook_reconciler.extract_charge_id(event_type, payload) or params.get("data.id") or params.get("id")

    logger.info(f"[WEBHOOK] Received {event_type} for charge {charge_id}")
    # Gateway re-fetch and DB writes block; keep them off the event loop
    await run_in_threadpool(
        webhook_reconciler.handle_notification, db, gateway, event_type, charge_id, payload or dict(params)
    )
    return _ACK
