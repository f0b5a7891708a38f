from sqlalchemy import Column, String, DateTime
from datetime import datetime
import enum
from app.db.session import Base


class UserRole(str, enum.Enum):
    STUDENT = "student"
    ADMIN_MASTER = "admin_master"


class User(Base):
    __tablename__ = "users"

    id = Column(String(128), primary_key=True)  # Auth provider uid
    email = Column(String, nullable=True, index=True)
    name = Column(String, nullable=True)
    role = Column(String(32), default=UserRole.STUDENT.value, nullable=False)
    # Effective view of the most recent activated subscription; never edited outside app.services.subscriptions
    plan = Column(String(32), nullable=True)
    plan_expires_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
