"""
Pricing & coupon resolver.

Turns (plan id, optional coupon code, time) into a quote. Pure reads: nothing is
persisted here, the caller decides whether and when to store the quote.
A coupon that does not apply never fails the quote; it resolves to a zero
discount plus a reason the UI can show.
"""
import enum
import logging
import re
from dataclasses import dataclass
from datetime import datetime, time
from decimal import Decimal
from typing import Optional, Tuple

from sqlalchemy.orm import Session

from app.core.config import settings
from app.models.coupon import Coupon
from app.models.plan import Plan, PlanId
from app.services import coupon_ledger
from app.services.errors import NotFoundError, ValidationError
from app.utils.money import apply_discount, cents_to_decimal

logger = logging.getLogger(__name__)

_COUPON_CODE_RE = re.compile(r"^[A-Z0-9_-]{1,64}$")


class CouponRejection(str, enum.Enum):
    NOT_FOUND = "not_found"
    INACTIVE = "inactive"
    NOT_YET_VALID = "not_yet_valid"
    EXPIRED = "expired"
    PLAN_NOT_APPLICABLE = "plan_not_applicable"
    MAX_USES_REACHED = "max_uses_reached"
    MAX_USES_PER_USER_REACHED = "max_uses_per_user_reached"


REJECTION_MESSAGES = {
    CouponRejection.NOT_FOUND: "Coupon not found",
    CouponRejection.INACTIVE: "Coupon is not active",
    CouponRejection.NOT_YET_VALID: "Coupon is not valid yet",
    CouponRejection.EXPIRED: "Coupon has expired",
    CouponRejection.PLAN_NOT_APPLICABLE: "Coupon is not valid for this plan",
    CouponRejection.MAX_USES_REACHED: "Coupon has reached its usage limit",
    CouponRejection.MAX_USES_PER_USER_REACHED: "You have already used this coupon the maximum number of times",
}


@dataclass
class CouponCheck:
    code: str
    coupon: Optional[Coupon] = None
    rejection: Optional[CouponRejection] = None

    @property
    def valid(self) -> bool:
        return self.rejection is None

    @property
    def message(self) -> Optional[str]:
        return REJECTION_MESSAGES[self.rejection] if self.rejection else None


@dataclass
class Quote:
    plan_id: PlanId
    plan_name: str
    duration_months: int
    base_price_cents: int
    discount_percent: Decimal
    final_price_cents: int
    coupon_code: Optional[str] = None  # Only set when the coupon was applied
    coupon_rejection: Optional[CouponRejection] = None

    @property
    def base_price(self) -> Decimal:
        return cents_to_decimal(self.base_price_cents)

    @property
    def final_price(self) -> Decimal:
        return cents_to_decimal(self.final_price_cents)


def parse_plan_id(plan_id) -> PlanId:
    """Plan ids outside the fixed allow-list are validation errors."""
    try:
        return PlanId(plan_id)
    except ValueError:
        raise ValidationError(f"Invalid plan '{plan_id}'. Must be one of: {', '.join(p.value for p in PlanId)}")


def normalize_coupon_code(code: Optional[str]) -> Optional[str]:
    """Canonical upper-case code, or None for a blank input."""
    if code is None:
        return None
    normalized = code.strip().upper()
    if not normalized:
        return None
    if not _COUPON_CODE_RE.match(normalized):
        raise ValidationError("Malformed coupon code")
    return normalized


def coupon_window(coupon: Coupon) -> Tuple[datetime, datetime]:
    """Inclusive window: start of valid_from's UTC day to the last microsecond of valid_until's."""
    start = datetime.combine(coupon.valid_from.date(), time.min)
    end = datetime.combine(coupon.valid_until.date(), time.max)
    return start, end


def check_coupon(
    db: Session,
    code: str,
    plan_id: Optional[PlanId] = None,
    user_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> CouponCheck:
    """
    Evaluate a normalized coupon code. Usage caps count approved charges plus
    checkouts that still hold the coupon from their quote.
    """
    now = now or datetime.utcnow()
    coupon = db.query(Coupon).filter(Coupon.code == code).first()
    if coupon is None:
        return CouponCheck(code=code, rejection=CouponRejection.NOT_FOUND)
    if not coupon.active:
        return CouponCheck(code=code, coupon=coupon, rejection=CouponRejection.INACTIVE)

    start, end = coupon_window(coupon)
    if now < start:
        return CouponCheck(code=code, coupon=coupon, rejection=CouponRejection.NOT_YET_VALID)
    if now > end:
        return CouponCheck(code=code, coupon=coupon, rejection=CouponRejection.EXPIRED)

    if plan_id is not None and coupon.applicable_plans:
        if PlanId(plan_id).value not in coupon.applicable_plans:
            return CouponCheck(code=code, coupon=coupon, rejection=CouponRejection.PLAN_NOT_APPLICABLE)

    if coupon.max_uses:
        if coupon_ledger.count_committed_uses(db, code, now=now) >= coupon.max_uses:
            return CouponCheck(code=code, coupon=coupon, rejection=CouponRejection.MAX_USES_REACHED)
    if coupon.max_uses_per_user and user_id:
        if coupon_ledger.count_committed_uses(db, code, user_id=user_id, now=now) >= coupon.max_uses_per_user:
            return CouponCheck(code=code, coupon=coupon, rejection=CouponRejection.MAX_USES_PER_USER_REACHED)

    return CouponCheck(code=code, coupon=coupon)


def get_plan(db: Session, plan_id: PlanId) -> Plan:
    plan = db.query(Plan).filter(Plan.id == plan_id.value).first()
    if plan is None or not plan.active:
        raise NotFoundError(f"Plan '{plan_id.value}' not found")
    if not (settings.MIN_PLAN_PRICE_CENTS <= plan.price_cents <= settings.MAX_PLAN_PRICE_CENTS):
        raise ValidationError(f"Plan '{plan_id.value}' has an invalid price")
    return plan


def resolve_quote(
    db: Session,
    plan_id,
    coupon_code: Optional[str] = None,
    user_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Quote:
    """
    Price a plan with an optional coupon.

    Raises ValidationError for a bad plan id, malformed coupon code or a plan
    priced outside the configured range; NotFoundError for an unknown plan.
    An inapplicable coupon yields a full-price quote with coupon_rejection set.
    """
    plan_key = parse_plan_id(plan_id)
    code = normalize_coupon_code(coupon_code)
    plan = get_plan(db, plan_key)

    discount_percent = Decimal(0)
    applied_code = None
    rejection = None
    if code:
        check = check_coupon(db, code, plan_id=plan_key, user_id=user_id, now=now)
        if check.valid:
            discount_percent = Decimal(check.coupon.discount)
            applied_code = code
        else:
            rejection = check.rejection
            logger.info(f"[QUOTE] Coupon {code} not applied to {plan_key.value}: {rejection.value}")

    return Quote(
        plan_id=plan_key,
        plan_name=plan.name,
        duration_months=plan.duration_months,
        base_price_cents=plan.price_cents,
        discount_percent=discount_percent,
        final_price_cents=apply_discount(plan.price_cents, discount_percent),
        coupon_code=applied_code,
        coupon_rejection=rejection,
    )
