"""
Coupon usage ledger.
Append-only; at most one row per (coupon code, charge id).
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.core.audit import record_conflict
from app.core.config import settings
from app.db.session import dialect_insert
from app.models.coupon import Coupon
from app.models.coupon_usage import CouponUsage
from app.models.payment_intent import PaymentIntent, IntentStatus
from app.models.reconciliation_conflict import ConflictKind
from app.utils.money import cents_to_decimal

logger = logging.getLogger(__name__)

_OPEN_STATUSES = (IntentStatus.PENDING.value, IntentStatus.IN_REVIEW.value)


@dataclass
class CouponStats:
    total_uses: int = 0
    total_uses_approved: int = 0
    unique_users: int = 0
    unique_users_approved: int = 0
    total_discount_cents: int = 0
    total_discount_approved_cents: int = 0

    def as_response(self) -> dict:
        return {
            "totalUses": self.total_uses,
            "totalUsesApproved": self.total_uses_approved,
            "uniqueUsers": self.unique_users,
            "uniqueUsersApproved": self.unique_users_approved,
            "totalDiscount": cents_to_decimal(self.total_discount_cents),
            "totalDiscountApproved": cents_to_decimal(self.total_discount_approved_cents),
        }


def record_quote_hint(db: Session, intent: PaymentIntent) -> Optional[CouponUsage]:
    """Soft association at quote time, keyed by session id. Finalized by record_usage on approval."""
    if not intent.coupon_code or intent.discount_cents <= 0:
        return None
    existing = db.query(CouponUsage).filter(
        CouponUsage.coupon_code == intent.coupon_code,
        CouponUsage.session_id == intent.session_id,
    ).first()
    if existing:
        return existing
    hint = CouponUsage(
        coupon_code=intent.coupon_code,
        user_id=intent.user_id,
        plan_id=intent.plan_id,
        original_price_cents=intent.base_price_cents,
        final_price_cents=intent.final_price_cents,
        discount_cents=intent.discount_cents,
        session_id=intent.session_id,
        charge_id=None,
    )
    db.add(hint)
    db.flush()
    return hint


def record_usage(
    db: Session,
    coupon_code: str,
    user_id: str,
    plan_id: str,
    charge_id: str,
    session_id: Optional[str],
    original_price_cents: int,
    final_price_cents: int,
    now: Optional[datetime] = None,
) -> Tuple[CouponUsage, bool]:
    """
    Record a redemption for an approved charge. Returns (row, created).

    Upgrades the quote-time hint for the session when there is one, otherwise
    inserts; a second call for the same (code, charge) is a no-op.
    Does not commit.
    """
    existing = db.query(CouponUsage).filter(
        CouponUsage.coupon_code == coupon_code,
        CouponUsage.charge_id == charge_id,
    ).first()
    if existing:
        logger.debug(f"[COUPON] Usage of {coupon_code} for charge {charge_id} already recorded")
        return existing, False

    if session_id:
        hint = db.query(CouponUsage).filter(
            CouponUsage.coupon_code == coupon_code,
            CouponUsage.session_id == session_id,
            CouponUsage.charge_id.is_(None),
        ).order_by(CouponUsage.used_at.asc()).first()
        if hint:
            updated = db.query(CouponUsage).filter(
                CouponUsage.id == hint.id,
                CouponUsage.charge_id.is_(None),
            ).update({"charge_id": charge_id}, synchronize_session=False)
            if updated:
                db.expire(hint)
                logger.info(f"[COUPON] Linked quote-time usage of {coupon_code} (session {session_id}) to charge {charge_id}")
                return hint, True

    usage_id = str(uuid.uuid4())
    stmt = dialect_insert(db, CouponUsage).values(
        id=usage_id,
        coupon_code=coupon_code,
        user_id=user_id,
        plan_id=plan_id,
        original_price_cents=original_price_cents,
        final_price_cents=final_price_cents,
        discount_cents=original_price_cents - final_price_cents,
        session_id=session_id,
        charge_id=charge_id,
        used_at=now or datetime.utcnow(),
    ).on_conflict_do_nothing(index_elements=["coupon_code", "charge_id"])
    result = db.execute(stmt)
    if result.rowcount == 0:
        logger.debug(f"[COUPON] Concurrent usage of {coupon_code} for charge {charge_id} already recorded")
        return db.query(CouponUsage).filter(
            CouponUsage.coupon_code == coupon_code,
            CouponUsage.charge_id == charge_id,
        ).one(), False

    logger.info(f"[COUPON] Recorded usage of {coupon_code} for charge {charge_id}")
    return db.query(CouponUsage).filter(CouponUsage.id == usage_id).one(), True


def count_approved_uses(
    db: Session,
    coupon_code: str,
    user_id: Optional[str] = None,
    exclude_charge_id: Optional[str] = None,
) -> int:
    query = db.query(func.count(CouponUsage.id)).join(
        PaymentIntent, PaymentIntent.charge_id == CouponUsage.charge_id
    ).filter(
        CouponUsage.coupon_code == coupon_code,
        PaymentIntent.status == IntentStatus.APPROVED.value,
    )
    if user_id:
        query = query.filter(CouponUsage.user_id == user_id)
    if exclude_charge_id:
        query = query.filter(CouponUsage.charge_id != exclude_charge_id)
    return query.scalar() or 0


def count_open_reservations(
    db: Session,
    coupon_code: str,
    user_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> int:
    """Quote-time rows whose checkout is still pending or in review, within the reservation window."""
    now = now or datetime.utcnow()
    since = now - timedelta(hours=settings.COUPON_RESERVATION_HOURS)
    open_sessions = select(PaymentIntent.session_id).where(PaymentIntent.status.in_(_OPEN_STATUSES))
    query = db.query(func.count(CouponUsage.id)).filter(
        CouponUsage.coupon_code == coupon_code,
        CouponUsage.charge_id.is_(None),
        CouponUsage.used_at >= since,
        CouponUsage.session_id.in_(open_sessions),
    )
    if user_id:
        query = query.filter(CouponUsage.user_id == user_id)
    return query.scalar() or 0


def count_committed_uses(db: Session, coupon_code: str, user_id: Optional[str] = None, now: Optional[datetime] = None) -> int:
    """Uses that count against a cap: approved redemptions plus open checkouts holding the coupon."""
    return count_approved_uses(db, coupon_code, user_id=user_id) + count_open_reservations(
        db, coupon_code, user_id=user_id, now=now
    )


def flag_over_redemption(db: Session, intent: PaymentIntent) -> bool:
    """
    Re-check the coupon's caps for an intent that was just approved, before
    its usage is recorded. Concurrent checkouts can all pass the quote-time
    check; the charge is already taken, so the excess is recorded as a
    conflict rather than refused. Returns True when a cap was exceeded.
    """
    coupon = db.query(Coupon).filter(Coupon.code == intent.coupon_code).first()
    if coupon is None:
        return False

    exceeded = []
    if coupon.max_uses:
        used = count_approved_uses(db, coupon.code, exclude_charge_id=intent.charge_id)
        if used >= coupon.max_uses:
            exceeded.append(f"max_uses={coupon.max_uses} (already {used})")
    if coupon.max_uses_per_user:
        used = count_approved_uses(db, coupon.code, user_id=intent.user_id, exclude_charge_id=intent.charge_id)
        if used >= coupon.max_uses_per_user:
            exceeded.append(f"max_uses_per_user={coupon.max_uses_per_user} (already {used})")
    if not exceeded:
        return False

    record_conflict(
        db,
        ConflictKind.COUPON_OVER_REDEEMED,
        f"Coupon {coupon.code} redeemed by charge {intent.charge_id} past {', '.join(exceeded)}",
        session_id=intent.session_id,
        charge_id=intent.charge_id,
    )
    return True


def coupon_stats(db: Session, coupon_code: str) -> CouponStats:
    """
    Scan the ledger for a code and cross-reference each row's charge.
    Rows still keyed only by session id resolve through that session's charge.
    """
    uses = db.query(CouponUsage).filter(CouponUsage.coupon_code == coupon_code).all()

    charge_ids = {u.charge_id for u in uses if u.charge_id}
    session_ids = {u.session_id for u in uses if not u.charge_id and u.session_id}

    status_by_charge = {}
    if charge_ids:
        for charge_id, status in db.query(PaymentIntent.charge_id, PaymentIntent.status).filter(
            PaymentIntent.charge_id.in_(charge_ids)
        ):
            status_by_charge[charge_id] = status

    approved_sessions = set()
    if session_ids:
        for (session_id,) in db.query(PaymentIntent.session_id).filter(
            PaymentIntent.session_id.in_(session_ids),
            PaymentIntent.status == IntentStatus.APPROVED.value,
        ):
            approved_sessions.add(session_id)

    stats = CouponStats()
    users, users_approved = set(), set()
    for use in uses:
        if use.charge_id:
            approved = status_by_charge.get(use.charge_id) == IntentStatus.APPROVED.value
        else:
            approved = use.session_id in approved_sessions

        stats.total_uses += 1
        users.add(use.user_id)
        stats.total_discount_cents += use.discount_cents
        if approved:
            stats.total_uses_approved += 1
            users_approved.add(use.user_id)
            stats.total_discount_approved_cents += use.discount_cents

    stats.unique_users = len(users)
    stats.unique_users_approved = len(users_approved)
    return stats
