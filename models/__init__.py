"""
SQLAlchemy ORM models for database tables.

This package defines the database schema using SQLAlchemy ORM models:

Models:
    base: Base declarative class and shared enums (Frequency, ExecutionStatus, CredentialStatus)
    user: Owners of every other entity
    source: Sources, their selected APIs and transformations
    destination: Destination types, destinations and the credential audit log
    oauth_state: Single-use OAuth CSRF states
    schedule: Recurring export schedules
    job_execution: One row per run with its stage-by-stage status
    error_log: Persisted failures

Database Schema:
    JSON columns become JSONB on PostgreSQL. Timestamps are timezone aware.

Usage:
    from models import Schedule, JobExecution, Destination
    from models.base import Frequency, ExecutionStatus

Relationships:
    - Schedule → Source, Transformation, Destination
    - JobExecution → Schedule (many-to-one run history)
    - Destination → DestinationType, CredentialAudit
"""

from models.base import Base, Frequency, ExecutionStatus, CredentialStatus
from models.user import User
from models.source import Source, SourceApi, SourceSelectedApi, Transformation
from models.destination import DestinationType, Destination, CredentialAudit
from models.oauth_state import OAuthState
from models.schedule import Schedule
from models.job_execution import JobExecution
from models.error_log import ErrorLog

__all__ = [
    "Base",
    "Frequency",
    "ExecutionStatus",
    "CredentialStatus",
    "User",
    "Source",
    "SourceApi",
    "SourceSelectedApi",
    "Transformation",
    "DestinationType",
    "Destination",
    "CredentialAudit",
    "OAuthState",
    "Schedule",
    "JobExecution",
    "ErrorLog",
]
