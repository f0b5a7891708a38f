from sqlalchemy import Column, String, DateTime, Integer, UniqueConstraint
import uuid
from datetime import datetime
from app.db.session import Base


class CouponUsage(Base):
    """
    Append-only coupon redemption ledger.
    A row without charge_id is a quote-time hint keyed by session id; the first
    observer of an approved charge fills in charge_id.
    """
    __tablename__ = "coupon_usages"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    coupon_code = Column(String(64), nullable=False, index=True)
    user_id = Column(String(128), nullable=False, index=True)
    plan_id = Column(String(32), nullable=False)
    original_price_cents = Column(Integer, nullable=False)
    final_price_cents = Column(Integer, nullable=False)
    discount_cents = Column(Integer, nullable=False)
    session_id = Column(String(255), nullable=True, index=True)
    charge_id = Column(String(255), nullable=True, index=True)
    used_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("coupon_code", "charge_id", name="uq_coupon_usages_code_charge"),
    )
