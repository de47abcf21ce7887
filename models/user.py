from sqlalchemy import Column, Integer, String, Boolean, DateTime
from core.clock import utcnow
from models.base import Base


class User(Base):
    """Owner of sources, destinations and schedules (authentication lives elsewhere)."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String(255), unique=True, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
