"""
Shared status transition used by both the charge submitter and the webhook reconciler.

The status CAS and the activation it unlocks commit together: if activation
fails the approval is rolled back too, and the next delivery retries both.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from app.core.audit import record_conflict
from app.models.payment_intent import PaymentIntent, IntentStatus, TERMINAL_STATUSES
from app.models.reconciliation_conflict import ConflictKind
from app.models.subscription import Subscription
from app.services import payment_intents, subscriptions

logger = logging.getLogger(__name__)


@dataclass
class TransitionOutcome:
    intent: PaymentIntent
    changed: bool
    subscription: Optional[Subscription] = None

    @property
    def status(self) -> IntentStatus:
        return IntentStatus(self.intent.status)


def apply_status(
    db: Session,
    intent: PaymentIntent,
    new_status: IntentStatus,
    status_detail: Optional[str] = None,
    now: Optional[datetime] = None,
) -> TransitionOutcome:
    """Write new_status if the stored status allows it; activate on the first move into approved. Commits."""
    now = now or datetime.utcnow()
    new_status = IntentStatus(new_status)
    previous = intent.status
    try:
        changed = payment_intents.update_status(db, intent, new_status, status_detail, now=now)
        subscription = None
        if changed and new_status is IntentStatus.APPROVED:
            subscription = subscriptions.activate(db, intent, now=now)
        elif new_status is IntentStatus.APPROVED:
            logger.debug(f"[ACTIVATION] Intent {intent.id} already {intent.status}; approval is a no-op")

        stored = IntentStatus(intent.status)
        if not changed and new_status in TERMINAL_STATUSES and stored in TERMINAL_STATUSES and stored is not new_status:
            record_conflict(
                db,
                ConflictKind.TERMINAL_STATUS_CHANGE,
                f"Gateway reports {new_status.value} for intent {intent.id} already {intent.status}",
                session_id=intent.session_id,
                charge_id=intent.charge_id,
            )
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(intent)
    if changed:
        logger.info(f"[CHARGE] Intent {intent.id} {previous} -> {intent.status} ({status_detail})")
    return TransitionOutcome(intent=intent, changed=changed, subscription=subscription)


def flag_amount_mismatch(db: Session, intent: PaymentIntent, charge) -> bool:
    """
    Record a conflict when the gateway charged a different amount than the
    intent's snapshot. The status is still applied. Returns True on mismatch.
    """
    if charge.amount_cents is None or charge.amount_cents == intent.final_price_cents:
        return False
    record_conflict(
        db,
        ConflictKind.AMOUNT_MISMATCH,
        f"Gateway amount {charge.amount_cents} differs from intent {intent.id} final price {intent.final_price_cents}",
        session_id=intent.session_id,
        charge_id=charge.id,
    )
    return True
