"""
Subscription activator.

The only place that creates Subscription rows or writes the user's
plan/expiry fields. Activation is keyed by charge id: a second call for the
same charge finds the existing row (or loses the insert race) and does nothing.
Admin grants and removals are history rows too, keyed by a synthetic MANUAL_
charge id, so the user's plan is always the projection of the latest row.
"""
import logging
import math
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Session

from app.db.session import dialect_insert
from app.models.payment_intent import PaymentIntent, IntentStatus
from app.models.plan import Plan, DEFAULT_DURATION_MONTHS
from app.models.subscription import Subscription, SubscriptionStatus
from app.models.user import User
from app.services import coupon_ledger
from app.services.errors import NotFoundError
from app.services.pricing import parse_plan_id
from app.utils.money import add_months

logger = logging.getLogger(__name__)


def manual_charge_id() -> str:
    return f"MANUAL_{uuid.uuid4().hex}"


def _insert_history_row(db: Session, **values) -> Optional[Subscription]:
    """Insert-or-nothing on charge_id. Returns the new row, or None when the charge already has one."""
    subscription_id = str(uuid.uuid4())
    stmt = dialect_insert(db, Subscription).values(id=subscription_id, **values).on_conflict_do_nothing(
        index_elements=["charge_id"]
    )
    if db.execute(stmt).rowcount == 0:
        return None
    return db.query(Subscription).filter(Subscription.id == subscription_id).one()


def activate(db: Session, intent: PaymentIntent, now: Optional[datetime] = None) -> Optional[Subscription]:
    """
    Create the Subscription for an approved intent and refresh the user's
    effective plan. Returns the new row, or None if this charge was already
    activated. Does not commit; runs inside the transaction that approved the intent.
    """
    now = now or datetime.utcnow()
    if intent.status != IntentStatus.APPROVED.value or not intent.charge_id:
        raise ValueError(f"Intent {intent.id} is not an approved charge")

    if db.query(Subscription.id).filter(Subscription.charge_id == intent.charge_id).first():
        logger.debug(f"[ACTIVATION] Charge {intent.charge_id} already activated; skipping")
        return None

    subscription = _insert_history_row(
        db,
        user_id=intent.user_id,
        plan_id=intent.plan_id,
        status=SubscriptionStatus.ACTIVE.value,
        started_at=now,
        expires_at=intent.expires_at,
        charge_id=intent.charge_id,
        session_id=intent.session_id,
        coupon_code=intent.coupon_code,
        discount_percent=intent.discount_percent,
        manually_granted=False,
        created_at=now,
    )
    if subscription is None:
        logger.debug(f"[ACTIVATION] Charge {intent.charge_id} activated concurrently; skipping")
        return None

    refresh_user_plan(db, intent.user_id, now=now)

    if intent.coupon_code and Decimal(intent.discount_percent) > 0:
        coupon_ledger.flag_over_redemption(db, intent)
        coupon_ledger.record_usage(
            db,
            coupon_code=intent.coupon_code,
            user_id=intent.user_id,
            plan_id=intent.plan_id,
            charge_id=intent.charge_id,
            session_id=intent.session_id,
            original_price_cents=intent.base_price_cents,
            final_price_cents=intent.final_price_cents,
            now=now,
        )

    logger.info(
        f"[ACTIVATION] Subscription {subscription.id} for user {intent.user_id}, "
        f"plan {intent.plan_id}, expires {intent.expires_at.isoformat()}"
    )
    return subscription


def _require_user(db: Session, user_id: str) -> User:
    user = db.query(User).filter(User.id == user_id).first()
    if user is None:
        raise NotFoundError("User not found")
    return user


def grant_manual_access(
    db: Session,
    user_id: str,
    plan_id,
    granted_by: str,
    now: Optional[datetime] = None,
) -> Subscription:
    """
    Admin grant of a plan without a charge. Expiry is now + plan duration,
    like a purchase. Raises ValidationError for an unknown plan id and
    NotFoundError for an unknown user. Commits.
    """
    now = now or datetime.utcnow()
    plan_key = parse_plan_id(plan_id)
    _require_user(db, user_id)
    plan = db.query(Plan).filter(Plan.id == plan_key.value).first()
    duration = plan.duration_months if plan is not None else DEFAULT_DURATION_MONTHS[plan_key]

    try:
        subscription = _insert_history_row(
            db,
            user_id=user_id,
            plan_id=plan_key.value,
            status=SubscriptionStatus.ACTIVE.value,
            started_at=now,
            expires_at=add_months(now, duration),
            charge_id=manual_charge_id(),
            manually_granted=True,
            granted_by=granted_by,
            created_at=now,
        )
        refresh_user_plan(db, user_id, now=now)
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(f"[ACTIVATION] Manual {plan_key.value} access for user {user_id} by {granted_by}, expires {subscription.expires_at.isoformat()}")
    return subscription


def revoke_access(
    db: Session,
    user_id: str,
    revoked_by: str,
    now: Optional[datetime] = None,
) -> Optional[Subscription]:
    """
    Admin removal of the user's current plan, recorded as a revoked history
    row. Returns None when the user has no current plan. Raises NotFoundError
    for an unknown user. Commits.
    """
    now = now or datetime.utcnow()
    _require_user(db, user_id)
    current = latest_subscription(db, user_id)
    if current is None:
        refresh_user_plan(db, user_id, now=now)
        db.commit()
        return None

    try:
        revocation = _insert_history_row(
            db,
            user_id=user_id,
            plan_id=current.plan_id,
            status=SubscriptionStatus.REVOKED.value,
            started_at=now,
            expires_at=now,
            charge_id=manual_charge_id(),
            manually_granted=True,
            granted_by=revoked_by,
            created_at=now,
        )
        refresh_user_plan(db, user_id, now=now)
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(f"[ACTIVATION] Plan {current.plan_id} removed from user {user_id} by {revoked_by}")
    return revocation


def latest_subscription(db: Session, user_id: str) -> Optional[Subscription]:
    """Most recent history row, or None when there is none or it is a removal."""
    latest = db.query(Subscription).filter(
        Subscription.user_id == user_id,
    ).order_by(Subscription.created_at.desc(), Subscription.started_at.desc()).first()
    if latest is None or latest.status != SubscriptionStatus.ACTIVE.value:
        return None
    return latest


def refresh_user_plan(db: Session, user_id: str, now: Optional[datetime] = None) -> Optional[User]:
    """Recompute the user's plan/expiry projection from the most recent subscription."""
    user = db.query(User).filter(User.id == user_id).first()
    if user is None:
        logger.warning(f"[ACTIVATION] User {user_id} not found; plan projection not updated")
        return None
    latest = latest_subscription(db, user_id)
    user.plan = latest.plan_id if latest else None
    user.plan_expires_at = latest.expires_at if latest else None
    user.updated_at = now or datetime.utcnow()
    db.flush()
    return user


def check_expired_plan(db: Session, user: User, now: Optional[datetime] = None) -> dict:
    """
    Re-derive the user's plan and clear it once the latest subscription has
    expired. Commits when the projection changed.
    """
    now = now or datetime.utcnow()
    latest = latest_subscription(db, user.id)

    if latest is None:
        if user.plan is not None:
            user.plan = None
            user.plan_expires_at = None
            db.commit()
        return {"expired": False, "plan": None, "planExpiresAt": None, "daysRemaining": None}

    if latest.expires_at <= now:
        if user.plan is not None or user.plan_expires_at is not None:
            user.plan = None
            user.plan_expires_at = None
            user.updated_at = now
            db.commit()
            logger.info(f"[ACTIVATION] Expired plan cleared for user {user.id}")
        return {"expired": True, "plan": None, "planExpiresAt": None, "daysRemaining": None}

    if user.plan != latest.plan_id or user.plan_expires_at != latest.expires_at:
        user.plan = latest.plan_id
        user.plan_expires_at = latest.expires_at
        user.updated_at = now
        db.commit()

    days_remaining = math.ceil((latest.expires_at - now).total_seconds() / 86400)
    return {
        "expired": False,
        "plan": latest.plan_id,
        "planExpiresAt": latest.expires_at,
        "daysRemaining": days_remaining,
    }
