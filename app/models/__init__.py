from app.models.user import User, UserRole
from app.models.plan import Plan, PlanId
from app.models.coupon import Coupon
from app.models.payment_intent import PaymentIntent, IntentStatus
from app.models.subscription import Subscription
from app.models.coupon_usage import CouponUsage
from app.models.payment_event import PaymentEvent
from app.models.reconciliation_conflict import ReconciliationConflict, ConflictKind

__all__ = [
    "User", "UserRole", "Plan", "PlanId", "Coupon", "PaymentIntent", "IntentStatus",
    "Subscription", "CouponUsage", "PaymentEvent", "ReconciliationConflict", "ConflictKind",
]
