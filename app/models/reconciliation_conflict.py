from sqlalchemy import Column, String, DateTime, Text
import uuid
from datetime import datetime
import enum
from app.db.session import Base


class ConflictKind(str, enum.Enum):
    CHARGE_ID_MISMATCH = "charge_id_mismatch"
    AMOUNT_MISMATCH = "amount_mismatch"
    INCOMPLETE_METADATA = "incomplete_metadata"
    TERMINAL_STATUS_CHANGE = "terminal_status_change"
    PROCESSING_ERROR = "processing_error"
    COUPON_OVER_REDEEMED = "coupon_over_redeemed"


class ReconciliationConflict(Base):
    """Something the engine refused to resolve automatically; needs manual review."""
    __tablename__ = "reconciliation_conflicts"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    kind = Column(String(32), nullable=False, index=True)
    session_id = Column(String(255), nullable=True, index=True)
    charge_id = Column(String(255), nullable=True, index=True)
    detail = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
