from sqlalchemy import Column, Integer, Boolean, DateTime, Time, Enum, ForeignKey, Index
from sqlalchemy.orm import relationship
from core.clock import utcnow
from models.base import Base, Frequency


class Schedule(Base):
    """
    Recurring export job.

    Design:
    - day_of_week uses 0 = Sunday ... 6 = Saturday (WEEKLY only)
    - day_of_month is 1..31, clamped to the month's length (MONTHLY only)
    - soft-deleted through is_active; executions keep referencing it
    """
    __tablename__ = "schedules"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    source_id = Column(Integer, ForeignKey("sources.id"), nullable=False)
    transformation_id = Column(Integer, ForeignKey("transformations.id"), nullable=True)
    destination_id = Column(Integer, ForeignKey("destinations.id"), nullable=False)

    frequency = Column(Enum(Frequency), nullable=False)
    time_of_day = Column(Time, nullable=False)
    day_of_week = Column(Integer, nullable=True)
    day_of_month = Column(Integer, nullable=True)

    is_active = Column(Boolean, default=True, nullable=False)
    last_run = Column(DateTime(timezone=True), nullable=True)
    next_run = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    destination = relationship("Destination", lazy="joined")

    __table_args__ = (
        Index("idx_schedules_next_run", "is_active", "next_run"),
    )
