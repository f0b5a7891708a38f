from sqlalchemy import Column, String, Integer, Boolean, DateTime, Text
from datetime import datetime
import enum
from app.db.session import Base


class PlanId(str, enum.Enum):
    MONTHLY = "monthly"
    SEMESTER = "semester"


# Fallback when a plan row is missing while reconstructing an intent from gateway metadata
DEFAULT_DURATION_MONTHS = {
    PlanId.MONTHLY: 1,
    PlanId.SEMESTER: 6,
}


class Plan(Base):
    """Purchasable plan. Prices are authored by administrators elsewhere; this service only reads them."""
    __tablename__ = "plans"

    id = Column(String(32), primary_key=True)  # PlanId value
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    price_cents = Column(Integer, nullable=False)  # Store in cents to avoid floating point issues
    duration_months = Column(Integer, nullable=False)
    active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
