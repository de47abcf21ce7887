from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Index
from core.clock import utcnow
from models.base import Base


class OAuthState(Base):
    """
    Single-use CSRF token issued with an authorization URL.

    Deleted exactly once when the provider redirects back; rows past
    ``expires_at`` are never accepted and are purged by housekeeping.
    """
    __tablename__ = "oauth_states"

    state = Column(String(64), primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    destination_id = Column(Integer, ForeignKey("destinations.id"), nullable=False)
    provider = Column(String(50), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_oauth_states_expires", "expires_at"),
    )
