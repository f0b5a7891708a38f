"""
Quote endpoint orchestration: price the plan, open a gateway session, persist the intent.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from app.core.config import settings
from app.models.payment_intent import PaymentIntent, IntentStatus
from app.models.user import User
from app.services import coupon_ledger, payment_intents, pricing, transitions

logger = logging.getLogger(__name__)

FREE_ACCESS_DETAIL = "free_access"


@dataclass
class CheckoutResult:
    intent: PaymentIntent
    quote: pricing.Quote
    checkout_url: Optional[str] = None
    free_access: bool = False


def free_charge_id(coupon_code: Optional[str], session_id: str) -> str:
    return f"FREE_COUPON_{coupon_code or 'NONE'}_{session_id}"


def open_checkout(
    db: Session,
    gateway,
    user: User,
    plan_id: str,
    coupon_code: Optional[str] = None,
    now: Optional[datetime] = None,
) -> CheckoutResult:
    """
    Raises ValidationError / NotFoundError before anything is persisted, and
    GatewayError if the session could not be opened (nothing persisted either).
    """
    now = now or datetime.utcnow()
    quote = pricing.resolve_quote(db, plan_id, coupon_code, user_id=user.id, now=now)

    if quote.final_price_cents <= 0:
        return _grant_free_access(db, user, quote, now)

    expires_at = payment_intents.compute_expiry(quote.duration_months, now)
    session = gateway.create_session(
        amount_cents=quote.final_price_cents,
        currency=settings.PAYMENT_CURRENCY,
        product_name=quote.plan_name,
        metadata={
            "user_id": user.id,
            "plan_id": quote.plan_id.value,
            "coupon_code": quote.coupon_code,
            "discount": quote.discount_percent,
            "expires_at": expires_at.isoformat(),
            "base_price_cents": quote.base_price_cents,
        },
        idempotency_key=f"session-{user.id}-{uuid.uuid4().hex}",
        customer_email=user.email,
    )

    intent = payment_intents.create_intent(
        db,
        user_id=user.id,
        plan_id=quote.plan_id,
        base_price_cents=quote.base_price_cents,
        discount_percent=quote.discount_percent,
        coupon_code=quote.coupon_code,
        session_id=session.id,
        duration_months=quote.duration_months,
        now=now,
    )
    coupon_ledger.record_quote_hint(db, intent)
    db.commit()
    db.refresh(intent)
    logger.info(f"[QUOTE] Session {session.id} for user {user.id}: {quote.plan_id.value} at {quote.final_price_cents}")
    return CheckoutResult(intent=intent, quote=quote, checkout_url=session.url)


def _grant_free_access(db: Session, user: User, quote: pricing.Quote, now: datetime) -> CheckoutResult:
    """A 100% coupon skips the gateway but goes through the same guarded approval."""
    session_id = f"free_{uuid.uuid4().hex}"
    intent = payment_intents.create_intent(
        db,
        user_id=user.id,
        plan_id=quote.plan_id,
        base_price_cents=quote.base_price_cents,
        discount_percent=quote.discount_percent,
        coupon_code=quote.coupon_code,
        session_id=session_id,
        duration_months=quote.duration_months,
        now=now,
    )
    coupon_ledger.record_quote_hint(db, intent)
    payment_intents.attach_charge_id(db, intent, free_charge_id(quote.coupon_code, session_id))
    outcome = transitions.apply_status(db, intent, IntentStatus.APPROVED, FREE_ACCESS_DETAIL, now=now)
    logger.info(f"[QUOTE] Free access granted to user {user.id} for {quote.plan_id.value} with {quote.coupon_code}")
    return CheckoutResult(intent=outcome.intent, quote=quote, free_access=True)
