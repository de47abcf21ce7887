from sqlalchemy import Column, Integer, Enum, DateTime, Float, Text, ForeignKey, Index
from core.clock import utcnow
from models.base import Base, ExecutionStatus, JSONType


class JobExecution(Base):
    """
    One run attempt of a schedule.

    Purpose:
    - Audit trail of every stage transition
    - Lets a monitor observe a run mid-flight
    - Failure reporting (message + structured error payload)

    Only the owning run writes to a row; once status is COMPLETED or FAILED
    the row is never modified again.
    """
    __tablename__ = "job_executions"

    id = Column(Integer, primary_key=True, autoincrement=True)

    schedule_id = Column(Integer, ForeignKey("schedules.id"), nullable=False, index=True)
    source_id = Column(Integer, nullable=True)
    transformation_id = Column(Integer, nullable=True)
    destination_id = Column(Integer, nullable=True)

    status = Column(Enum(ExecutionStatus), default=ExecutionStatus.PENDING, nullable=False, index=True)
    message = Column(Text, nullable=True)
    error_details = Column(JSONType, nullable=True)

    started_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    duration_seconds = Column(Float, nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_job_execution_schedule_started", "schedule_id", "started_at"),
    )
