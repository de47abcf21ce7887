from sqlalchemy import Column, Integer, String, Text, DateTime
from core.clock import utcnow
from models.base import Base, JSONType


class ErrorLog(Base):
    """Persisted failures of OAuth operations and pipeline runs."""
    __tablename__ = "error_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    error_type = Column(String(100), nullable=False)
    error_message = Column(Text, nullable=False)
    error_code = Column(String(100), nullable=True)
    error_details = Column(JSONType, nullable=True)
    context = Column(JSONType, nullable=True)
    stack_trace = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)
