from sqlalchemy import Column, String, DateTime, JSON, Boolean, Text
import uuid
from datetime import datetime
from app.db.session import Base


class PaymentEvent(Base):
    """Raw webhook delivery, kept so failed reconciliations can be inspected and replayed."""
    __tablename__ = "payment_events"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    event_type = Column(String, nullable=False, index=True)
    charge_id = Column(String(255), nullable=True, index=True)
    payload = Column(JSON, nullable=True)
    processed = Column(Boolean, default=False, nullable=False, index=True)
    error = Column(Text, nullable=True)
    received_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    processed_at = Column(DateTime, nullable=True)
