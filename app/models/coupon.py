from sqlalchemy import Column, String, Integer, Boolean, DateTime, Numeric, Text, JSON
from datetime import datetime
from app.db.session import Base


class Coupon(Base):
    __tablename__ = "coupons"

    code = Column(String(64), primary_key=True)  # Canonical upper-case code
    discount = Column(Numeric(5, 2), nullable=False)  # Percentage, 0-100
    description = Column(Text, nullable=True)
    active = Column(Boolean, default=True, nullable=False)
    archived = Column(Boolean, default=False, nullable=False)
    valid_from = Column(DateTime, nullable=False)  # Usable from start of this UTC day
    valid_until = Column(DateTime, nullable=False)  # Usable until end of this UTC day
    applicable_plans = Column(JSON, nullable=True)  # List of plan ids; empty or null means all plans
    max_uses = Column(Integer, nullable=True)
    max_uses_per_user = Column(Integer, nullable=True)
    created_by = Column(String(128), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
