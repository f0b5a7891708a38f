from sqlalchemy import Column, String, DateTime, ForeignKey, Numeric, Boolean
import uuid
from datetime import datetime
import enum
from app.db.session import Base


class SubscriptionStatus(str, enum.Enum):
    ACTIVE = "active"
    REVOKED = "revoked"  # Admin removal; ends access without editing earlier rows


class Subscription(Base):
    """Append-only history; one row per approved charge or admin grant/removal, never edited afterwards."""
    __tablename__ = "subscriptions"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(128), ForeignKey("users.id"), nullable=False, index=True)
    plan_id = Column(String(32), nullable=False)
    status = Column(String(16), default=SubscriptionStatus.ACTIVE.value, nullable=False)
    started_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False, index=True)
    charge_id = Column(String(255), nullable=False, unique=True)  # Idempotency key for activation
    session_id = Column(String(255), nullable=True)
    coupon_code = Column(String(64), nullable=True)
    discount_percent = Column(Numeric(5, 2), default=0, nullable=False)
    manually_granted = Column(Boolean, default=False, nullable=False)
    granted_by = Column(String(128), nullable=True)  # Admin user id for manual rows
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
