"""
Webhook reconciler.

Treats gateway notifications as an at-least-once, unordered message source.
Only the charge id is taken from a delivery; status, amount and metadata come
from re-fetching the charge at the gateway. The local intent is resolved by
charge id, then by the open attempt of the charge's checkout session (taken
from the metadata, or looked up at the gateway for hosted checkout), then by
the newest open intent for (user, plan) when no session is known, and is
otherwise rebuilt from the charge's metadata.

handle_notification never raises: every delivery is stored in payment_events
and failures are logged and recorded for manual reconciliation.
"""
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import ValidationError as SchemaValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.audit import record_conflict
from app.models.payment_event import PaymentEvent
from app.models.payment_intent import PaymentIntent
from app.models.plan import Plan, DEFAULT_DURATION_MONTHS
from app.models.reconciliation_conflict import ConflictKind
from app.models.user import User
from app.schemas.payment import ChargeMetadata
from app.services import payment_intents, transitions
from app.services.errors import ValidationError
from app.services.gateway import GatewayCharge, map_gateway_status

logger = logging.getLogger(__name__)


class IncompleteMetadata(ValidationError):
    """The gateway charge does not carry enough metadata to rebuild an intent."""


def is_payment_event(event_type: Optional[str]) -> bool:
    if not event_type:
        return False
    return (
        event_type == "payment"
        or event_type.startswith("payment_intent.")
        or event_type.startswith("charge.")
        or event_type == "checkout.session.completed"
    )


def extract_charge_id(event_type: Optional[str], payload: Optional[Dict[str, Any]]) -> Optional[str]:
    """
    Charge id from a delivery body. Accepts the flat {type, data: {id}} shape
    and Stripe's {type, data: {object: {...}}} event shape.
    """
    data = (payload or {}).get("data") or {}
    if not isinstance(data, dict):
        return None
    obj = data.get("object")
    if isinstance(obj, dict):
        if obj.get("object") == "payment_intent" or (event_type or "").startswith("payment_intent."):
            return obj.get("id")
        # charge.* and checkout.session.* objects point at their PaymentIntent
        return obj.get("payment_intent") or None
    charge_id = data.get("id")
    return str(charge_id) if charge_id is not None else None


def parse_metadata(charge: GatewayCharge) -> ChargeMetadata:
    try:
        return ChargeMetadata.model_validate(charge.metadata or {})
    except SchemaValidationError as exc:
        raise IncompleteMetadata(f"Charge {charge.id} metadata invalid: {exc.errors()}")


def reconcile_charge(db: Session, gateway, charge_id: str, now: Optional[datetime] = None) -> transitions.TransitionOutcome:
    """
    Bring the local state for one charge in line with the gateway. Raises on
    gateway errors and on metadata that cannot identify an intent.
    """
    now = now or datetime.utcnow()
    charge = gateway.retrieve_charge(charge_id)

    intent = payment_intents.find_by_charge_id(db, charge.id)
    if intent is None:
        metadata = parse_metadata(charge)
        # Hosted checkout charges only learn their session id from the gateway
        session_id = metadata.session_id or gateway.find_session_id(charge.id)
        intent = _find_open_intent(db, metadata, session_id)
        if intent is not None:
            logger.info(f"[WEBHOOK] Charge {charge.id} matched open intent {intent.id} (session {intent.session_id})")
            if not payment_intents.attach_charge_id(db, intent, charge.id):
                intent = payment_intents.find_by_charge_id(db, charge.id)
        if intent is None:
            intent = _rebuild_intent(db, charge, metadata, session_id or charge.id, now)

    transitions.flag_amount_mismatch(db, intent, charge)
    return transitions.apply_status(db, intent, map_gateway_status(charge.status), charge.status_detail, now=now)


def _find_open_intent(db: Session, metadata: ChargeMetadata, session_id: Optional[str]) -> Optional[PaymentIntent]:
    """The latest attempt of the charge's own session; (user, plan) only when the session is unknown."""
    if session_id:
        intent = payment_intents.find_by_session_id(db, session_id, user_id=metadata.user_id)
        if intent is None or intent.charge_id is not None or intent.status not in payment_intents.OPEN_STATUSES:
            return None
        return intent
    return payment_intents.find_open_intent(db, metadata.user_id, metadata.plan_id.value)


def _rebuild_intent(db: Session, charge: GatewayCharge, metadata: ChargeMetadata, session_id: str, now: datetime) -> PaymentIntent:
    """Create the intent the synchronous path never got to write (e.g. the tab closed mid-charge)."""
    if db.query(User.id).filter(User.id == metadata.user_id).first() is None:
        raise IncompleteMetadata(f"Charge {charge.id} references unknown user {metadata.user_id}")

    plan = db.query(Plan).filter(Plan.id == metadata.plan_id.value).first()
    base_price_cents = metadata.base_price_cents
    if base_price_cents is None and plan is not None:
        base_price_cents = plan.price_cents
    if base_price_cents is None:
        raise IncompleteMetadata(f"Charge {charge.id} has no base price and plan {metadata.plan_id.value} is unknown")
    duration = plan.duration_months if plan is not None else DEFAULT_DURATION_MONTHS[metadata.plan_id]

    latest = payment_intents.find_by_session_id(db, session_id)
    attempt = latest.attempt + 1 if latest else 1

    try:
        with db.begin_nested():
            intent = payment_intents.create_intent(
                db,
                user_id=metadata.user_id,
                plan_id=metadata.plan_id,
                base_price_cents=base_price_cents,
                discount_percent=metadata.discount,
                coupon_code=metadata.coupon_code,
                session_id=session_id,
                duration_months=duration,
                now=now,
                expires_at=metadata.expires_at,
                attempt=attempt,
                currency=charge.currency,
            )
            intent.charge_id = charge.id
            db.flush()
    except IntegrityError:
        # A concurrent delivery rebuilt it first
        intent = payment_intents.find_by_charge_id(db, charge.id)
        if intent is None:
            raise
        return intent

    logger.warning(f"[WEBHOOK] Rebuilt intent {intent.id} for charge {charge.id} from gateway metadata")
    return intent


def handle_notification(
    db: Session,
    gateway,
    event_type: Optional[str],
    charge_id: Optional[str],
    payload: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> Optional[PaymentEvent]:
    """Store the delivery, reconcile it if it is a payment event, and swallow every failure."""
    now = now or datetime.utcnow()
    event = None
    try:
        event = PaymentEvent(
            event_type=event_type or "unknown",
            charge_id=charge_id,
            payload=payload,
            processed=False,
            received_at=now,
        )
        db.add(event)
        db.commit()
    except Exception:
        logger.exception(f"[WEBHOOK] Could not store delivery {event_type} for charge {charge_id}")
        db.rollback()
        event = None

    if not is_payment_event(event_type):
        logger.info(f"[WEBHOOK] Ignoring non-payment event {event_type}")
        _mark(db, event, processed=True)
        return event

    if not charge_id:
        _fail(db, event, ConflictKind.INCOMPLETE_METADATA, f"Payment event {event_type} without a charge id", None)
        return event

    try:
        outcome = reconcile_charge(db, gateway, charge_id, now=now)
        logger.info(f"[WEBHOOK] Charge {charge_id} reconciled: {outcome.intent.status} (changed={outcome.changed})")
        _mark(db, event, processed=True)
    except IncompleteMetadata as exc:
        db.rollback()
        _fail(db, event, ConflictKind.INCOMPLETE_METADATA, str(exc), charge_id)
    except Exception as exc:
        db.rollback()
        logger.exception(f"[WEBHOOK] Error reconciling charge {charge_id}")
        _fail(db, event, ConflictKind.PROCESSING_ERROR, f"{type(exc).__name__}: {exc}", charge_id)
    return event


def replay_event(db: Session, gateway, event: PaymentEvent) -> bool:
    """Re-run reconciliation for a stored delivery. Returns True on success."""
    if not is_payment_event(event.event_type):
        _mark(db, event, processed=True)
        return True
    if not event.charge_id:
        return False
    try:
        reconcile_charge(db, gateway, event.charge_id)
    except Exception as exc:
        db.rollback()
        logger.error(f"[RECONCILE] Replay of event {event.id} failed: {exc}")
        _mark(db, event, processed=False, error=f"{type(exc).__name__}: {exc}")
        return False
    _mark(db, event, processed=True)
    return True


def _mark(db: Session, event: Optional[PaymentEvent], processed: bool, error: Optional[str] = None):
    if event is None:
        return
    try:
        event.processed = processed
        event.error = error
        event.processed_at = datetime.utcnow() if processed else None
        db.commit()
    except Exception:
        logger.exception(f"[WEBHOOK] Could not update delivery {event.id}")
        db.rollback()


def _fail(db: Session, event: Optional[PaymentEvent], kind: ConflictKind, detail: str, charge_id: Optional[str]):
    try:
        record_conflict(db, kind, detail, charge_id=charge_id, commit=True)
    except Exception:
        logger.exception("[WEBHOOK] Could not record reconciliation conflict")
        db.rollback()
    _mark(db, event, processed=False, error=detail)
