from sqlalchemy import JSON
from sqlalchemy.orm import declarative_base
from sqlalchemy.dialects.postgresql import JSONB
import enum

Base = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


# ============================================================================
# ENUMS
# ============================================================================

class Frequency(str, enum.Enum):
    """Schedule recurrence"""
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"


class ExecutionStatus(str, enum.Enum):
    """JobExecution state machine"""
    PENDING = "PENDING"
    STARTED = "STARTED"
    EXTRACTING = "EXTRACTING"
    VALIDATING = "VALIDATING"
    TRANSFORMING = "TRANSFORMING"
    FORMATTING = "FORMATTING"
    UPLOADING = "UPLOADING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionStatus.COMPLETED, ExecutionStatus.FAILED)


class CredentialStatus(str, enum.Enum):
    """Destination credential lifecycle"""
    UNAUTHORIZED = "UNAUTHORIZED"
    AUTHORIZING = "AUTHORIZING"
    AUTHORIZED = "AUTHORIZED"
    REVOKED = "REVOKED"
