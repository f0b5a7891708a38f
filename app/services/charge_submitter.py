"""
Charge submitter: the synchronous "process now" path.

The gateway is called with an idempotency key built from (user, session,
attempt). The attempt counter only moves after a definitive decline, so a
retry after a timeout reuses the key and the gateway deduplicates it.

A timeout or 5xx is never reported as a decline: the intent goes to
in_review and the webhook reconciler settles it.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Dict, Any

from sqlalchemy.orm import Session

from app.models.payment_intent import PaymentIntent, IntentStatus
from app.services import payment_intents, transitions
from app.services.errors import GatewayDeclined, GatewayUndetermined, NotFoundError
from app.services.gateway import GatewayCharge, map_confirmation_status, map_gateway_status

logger = logging.getLogger(__name__)

PENDING_CONFIRMATION = "Payment pending confirmation"


@dataclass
class ChargeResult:
    status: IntentStatus
    charge_id: Optional[str]
    message: Optional[str]
    intent: PaymentIntent


def idempotency_key(user_id: str, session_id: str, attempt: int) -> str:
    return f"{user_id}-{session_id}-{attempt}"


def _result(intent: PaymentIntent, message: Optional[str] = None) -> ChargeResult:
    status = IntentStatus(intent.status)
    if message is None:
        if status is IntentStatus.APPROVED:
            message = "Payment approved"
        elif status is IntentStatus.DECLINED:
            message = f"Payment declined: {intent.status_detail or 'N/A'}"
        else:
            message = PENDING_CONFIRMATION
    return ChargeResult(status=status, charge_id=intent.charge_id, message=message, intent=intent)


def submit(
    db: Session,
    gateway,
    user_id: str,
    session_id: str,
    instrument_token: str,
    billing_meta: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> ChargeResult:
    now = now or datetime.utcnow()
    billing_meta = billing_meta or {}

    intent = payment_intents.find_by_session_id(db, session_id, user_id=user_id)
    if intent is None:
        raise NotFoundError("Payment session not found")

    status = IntentStatus(intent.status)
    if status is IntentStatus.APPROVED:
        return _result(intent, "Payment already approved")
    if status is IntentStatus.DECLINED:
        intent = payment_intents.open_retry_attempt(db, intent, now=now)
    elif intent.charge_id:
        # A charge already exists for this attempt; ask the gateway instead of charging again
        return refresh(db, gateway, intent, now=now)

    key = idempotency_key(user_id, session_id, intent.attempt)
    logger.info(f"[CHARGE] Submitting session {session_id} attempt {intent.attempt} for {intent.final_price_cents}")
    try:
        charge = gateway.submit_charge(
            amount_cents=intent.final_price_cents,
            currency=intent.currency,
            instrument_token=instrument_token,
            metadata=payment_intents.gateway_metadata(intent),
            idempotency_key=key,
            description=f"Subscription {intent.plan_id}",
            receipt_email=billing_meta.get("email"),
        )
    except GatewayUndetermined as exc:
        logger.warning(f"[CHARGE] Outcome undetermined for session {session_id}: {exc}")
        outcome = transitions.apply_status(db, intent, IntentStatus.IN_REVIEW, f"gateway_undetermined: {exc}", now=now)
        return _result(outcome.intent)
    except GatewayDeclined as exc:
        if exc.charge_id and not payment_intents.attach_charge_id(db, intent, exc.charge_id):
            db.commit()
            return ChargeResult(IntentStatus.IN_REVIEW, exc.charge_id, PENDING_CONFIRMATION, intent)
        outcome = transitions.apply_status(db, intent, IntentStatus.DECLINED, exc.status_detail, now=now)
        return _result(outcome.intent)

    return apply_charge(db, intent, charge, now=now, status=map_confirmation_status(charge.status))


def apply_charge(
    db: Session,
    intent: PaymentIntent,
    charge: GatewayCharge,
    now: Optional[datetime] = None,
    status: Optional[IntentStatus] = None,
) -> ChargeResult:
    """Attach the gateway's charge to the intent and run the shared transition."""
    if not payment_intents.attach_charge_id(db, intent, charge.id):
        # Conflict recorded; the webhook reconciler owns this charge now
        db.commit()
        return ChargeResult(IntentStatus.IN_REVIEW, charge.id, PENDING_CONFIRMATION, intent)
    transitions.flag_amount_mismatch(db, intent, charge)
    status = status or map_gateway_status(charge.status)
    outcome = transitions.apply_status(db, intent, status, charge.status_detail, now=now)
    return _result(outcome.intent)


def refresh(db: Session, gateway, intent: PaymentIntent, now: Optional[datetime] = None) -> ChargeResult:
    """Re-read an attached charge from the gateway and apply whatever it says now."""
    try:
        charge = gateway.retrieve_charge(intent.charge_id)
    except GatewayUndetermined as exc:
        logger.warning(f"[CHARGE] Could not refresh charge {intent.charge_id}: {exc}")
        return _result(intent)
    return apply_charge(db, intent, charge, now=now)
