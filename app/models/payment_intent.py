from sqlalchemy import Column, String, DateTime, Integer, ForeignKey, Numeric, Text, UniqueConstraint
import uuid
from datetime import datetime
import enum
from app.db.session import Base


class IntentStatus(str, enum.Enum):
    PENDING = "pending"
    IN_REVIEW = "in_review"  # Gateway pending/in_process/authorized family; not terminal
    APPROVED = "approved"
    DECLINED = "declined"


TERMINAL_STATUSES = (IntentStatus.APPROVED, IntentStatus.DECLINED)


class PaymentIntent(Base):
    """
    One checkout attempt, from quote to terminal charge outcome.
    Never deleted; the quote snapshot (prices, discount, expiry) is written once at creation.
    A declined session may be retried, which opens a new row with attempt + 1.
    """
    __tablename__ = "payment_intents"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    session_id = Column(String(255), nullable=False, index=True)  # Gateway session id
    attempt = Column(Integer, default=1, nullable=False)  # Submission counter used in idempotency keys
    charge_id = Column(String(255), nullable=True, unique=True)  # Set once, first writer wins
    user_id = Column(String(128), ForeignKey("users.id"), nullable=False, index=True)
    plan_id = Column(String(32), nullable=False, index=True)
    base_price_cents = Column(Integer, nullable=False)
    discount_percent = Column(Numeric(5, 2), default=0, nullable=False)
    coupon_code = Column(String(64), nullable=True)
    final_price_cents = Column(Integer, nullable=False)
    currency = Column(String(3), default="brl", nullable=False)
    status = Column(String(16), default=IntentStatus.PENDING.value, nullable=False, index=True)
    status_detail = Column(Text, nullable=True)
    expires_at = Column(DateTime, nullable=False)  # Subscription expiry computed at quote time
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("session_id", "attempt", name="uq_payment_intents_session_attempt"),
    )

    @property
    def discount_cents(self) -> int:
        return self.base_price_cents - self.final_price_cents

    def __repr__(self) -> str:
        return f"PaymentIntent(session={self.session_id}, attempt={self.attempt}, charge={self.charge_id}, status={self.status})"
