"""
Payment intent store.

An intent is the durable snapshot of what the user agreed to pay. The price,
discount and subscription expiry are computed once, when the intent is
created, and never recomputed afterwards.

Status and charge-id writes are conditional UPDATEs so the synchronous submit
path and the webhook path can race on the same row, across processes, without
an in-process lock.
"""
import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.audit import record_conflict
from app.core.config import settings
from app.models.payment_intent import PaymentIntent, IntentStatus
from app.models.reconciliation_conflict import ConflictKind
from app.services.errors import ValidationError
from app.services.pricing import parse_plan_id
from app.utils.money import add_months, apply_discount

logger = logging.getLogger(__name__)

# Which stored statuses may move to a given target. approved and declined are terminal.
ALLOWED_SOURCES = {
    IntentStatus.PENDING: (IntentStatus.PENDING,),
    IntentStatus.IN_REVIEW: (IntentStatus.PENDING, IntentStatus.IN_REVIEW),
    IntentStatus.APPROVED: (IntentStatus.PENDING, IntentStatus.IN_REVIEW),
    IntentStatus.DECLINED: (IntentStatus.PENDING, IntentStatus.IN_REVIEW),
}

OPEN_STATUSES = (IntentStatus.PENDING.value, IntentStatus.IN_REVIEW.value)


def compute_expiry(duration_months: int, now: datetime) -> datetime:
    return add_months(now, duration_months)


def create_intent(
    db: Session,
    user_id: str,
    plan_id,
    base_price_cents: int,
    discount_percent: Decimal,
    coupon_code: Optional[str],
    session_id: str,
    duration_months: int,
    now: Optional[datetime] = None,
    expires_at: Optional[datetime] = None,
    attempt: int = 1,
    currency: Optional[str] = None,
) -> PaymentIntent:
    """
    Persist a pending intent and return it. Does not commit.

    expires_at is only passed when reconstructing an intent from gateway
    metadata; otherwise it is now + plan duration.
    """
    now = now or datetime.utcnow()
    plan_key = parse_plan_id(plan_id)
    discount_percent = Decimal(discount_percent or 0)
    if not (Decimal(0) <= discount_percent <= Decimal(100)):
        raise ValidationError("Discount must be between 0 and 100")
    if base_price_cents is None or base_price_cents < 0:
        raise ValidationError("Invalid base price")
    if not session_id:
        raise ValidationError("Missing gateway session id")

    intent = PaymentIntent(
        session_id=session_id,
        attempt=attempt,
        user_id=user_id,
        plan_id=plan_key.value,
        base_price_cents=base_price_cents,
        discount_percent=discount_percent,
        coupon_code=coupon_code if discount_percent > 0 else None,
        final_price_cents=apply_discount(base_price_cents, discount_percent),
        currency=currency or settings.PAYMENT_CURRENCY,
        status=IntentStatus.PENDING.value,
        expires_at=expires_at or compute_expiry(duration_months, now),
        created_at=now,
        updated_at=now,
    )
    db.add(intent)
    db.flush()
    logger.info(f"[QUOTE] Created intent {intent.id} session={session_id} plan={plan_key.value} final={intent.final_price_cents}")
    return intent


def find_by_session_id(db: Session, session_id: str, user_id: Optional[str] = None) -> Optional[PaymentIntent]:
    """Latest attempt for a session."""
    query = db.query(PaymentIntent).filter(PaymentIntent.session_id == session_id)
    if user_id is not None:
        query = query.filter(PaymentIntent.user_id == user_id)
    return query.order_by(PaymentIntent.attempt.desc()).first()


def find_by_charge_id(db: Session, charge_id: str) -> Optional[PaymentIntent]:
    return db.query(PaymentIntent).filter(PaymentIntent.charge_id == charge_id).first()


def find_open_intent(db: Session, user_id: str, plan_id: str) -> Optional[PaymentIntent]:
    """Most recent pending/in_review intent for (user, plan) that has no charge attached yet."""
    return db.query(PaymentIntent).filter(
        PaymentIntent.user_id == user_id,
        PaymentIntent.plan_id == plan_id,
        PaymentIntent.status.in_(OPEN_STATUSES),
        PaymentIntent.charge_id.is_(None),
    ).order_by(PaymentIntent.created_at.desc(), PaymentIntent.attempt.desc()).first()


def attach_charge_id(db: Session, intent: PaymentIntent, charge_id: str) -> bool:
    """
    First writer wins. Attaching the id that is already there is fine; a
    different id is a conflict that gets recorded, never overwritten.
    Does not commit.
    """
    try:
        with db.begin_nested():
            updated = db.query(PaymentIntent).filter(
                PaymentIntent.id == intent.id,
                PaymentIntent.charge_id.is_(None),
            ).update(
                {"charge_id": charge_id, "updated_at": datetime.utcnow()},
                synchronize_session=False,
            )
    except IntegrityError:
        # Charge id already attached to another intent
        owner = find_by_charge_id(db, charge_id)
        record_conflict(
            db,
            ConflictKind.CHARGE_ID_MISMATCH,
            f"Charge {charge_id} is already attached to intent {owner.id if owner else '?'}; not attaching to {intent.id}",
            session_id=intent.session_id,
            charge_id=charge_id,
        )
        return False

    db.refresh(intent)
    if updated:
        logger.info(f"[CHARGE] Attached charge {charge_id} to intent {intent.id}")
        return True
    if intent.charge_id == charge_id:
        return True

    record_conflict(
        db,
        ConflictKind.CHARGE_ID_MISMATCH,
        f"Intent {intent.id} already has charge {intent.charge_id}; refusing to attach {charge_id}",
        session_id=intent.session_id,
        charge_id=charge_id,
    )
    return False


def update_status(
    db: Session,
    intent: PaymentIntent,
    new_status: IntentStatus,
    status_detail: Optional[str] = None,
    now: Optional[datetime] = None,
) -> bool:
    """
    Compare-and-swap status write. Returns True when this call performed the
    transition, False when the stored status did not allow it (e.g. the intent
    was already approved). Does not commit.
    """
    new_status = IntentStatus(new_status)
    sources = [s.value for s in ALLOWED_SOURCES[new_status]]
    values = {"status": new_status.value, "updated_at": now or datetime.utcnow()}
    if status_detail is not None:
        values["status_detail"] = status_detail

    updated = db.query(PaymentIntent).filter(
        PaymentIntent.id == intent.id,
        PaymentIntent.status.in_(sources),
    ).update(values, synchronize_session=False)
    db.refresh(intent)
    return updated == 1


def open_retry_attempt(db: Session, intent: PaymentIntent, now: Optional[datetime] = None) -> PaymentIntent:
    """
    A declined charge is terminal for its intent. Retrying the same session
    opens a new attempt carrying the original quote snapshot unchanged.
    Commits.
    """
    attempt = PaymentIntent(
        session_id=intent.session_id,
        attempt=intent.attempt + 1,
        user_id=intent.user_id,
        plan_id=intent.plan_id,
        base_price_cents=intent.base_price_cents,
        discount_percent=intent.discount_percent,
        coupon_code=intent.coupon_code,
        final_price_cents=intent.final_price_cents,
        currency=intent.currency,
        status=IntentStatus.PENDING.value,
        expires_at=intent.expires_at,
        created_at=now or datetime.utcnow(),
        updated_at=now or datetime.utcnow(),
    )
    try:
        db.add(attempt)
        db.commit()
    except IntegrityError:
        # Another request opened the same attempt first
        db.rollback()
        return find_by_session_id(db, intent.session_id)
    logger.info(f"[CHARGE] Opened attempt {attempt.attempt} for session {intent.session_id}")
    return attempt


def gateway_metadata(intent: PaymentIntent) -> dict:
    """Metadata sent with a charge so the webhook can rebuild the intent if it never saw it."""
    return {
        "user_id": intent.user_id,
        "plan_id": intent.plan_id,
        "coupon_code": intent.coupon_code,
        "discount": intent.discount_percent,
        "expires_at": intent.expires_at.isoformat(),
        "session_id": intent.session_id,
        "base_price_cents": intent.base_price_cents,
    }
