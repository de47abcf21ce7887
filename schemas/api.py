"""
Pydantic schemas for API request/response models
"""

from pydantic import BaseModel, ConfigDict, Field, model_validator
from typing import Optional, List, Generic, TypeVar
from datetime import datetime
from core.clock import utcnow
from models.base import ExecutionStatus, CredentialStatus

T = TypeVar("T")


class APIResponse(BaseModel, Generic[T]):
    request_id: str
    api_latency_ms: int
    data: T


class ErrorResponse(BaseModel):
    """Body of every error response produced from an ETLException"""
    error_type: str
    code: str
    message: str
    reauthorization_required: bool = False
    request_id: Optional[str] = None


# ============================================================================
# Health Check Schemas
# ============================================================================

class ExecutionInfo(BaseModel):
    """Recent job execution for health check"""
    model_config = ConfigDict(from_attributes=True)

    id: int
    schedule_id: int
    status: ExecutionStatus
    message: Optional[str] = None
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration_seconds: Optional[float] = None


class HealthCheckResponse(BaseModel):
    """Health check response model"""
    status: str = Field("healthy", description="Overall system status: healthy, degraded, unhealthy")
    timestamp: datetime = Field(default_factory=utcnow)
    database_connected: bool
    scheduler_running: bool = False
    scheduled_jobs: int = 0
    recent_executions: List[ExecutionInfo] = Field(default_factory=list)
    recent_failures: int = 0

    @model_validator(mode="after")
    def determine_status(self):
        """Determine overall health status"""
        if not self.database_connected:
            self.status = "unhealthy"
        elif not self.scheduler_running:
            self.status = "degraded"
        elif self.recent_executions and self.recent_failures == len(self.recent_executions):
            self.status = "degraded"
        else:
            self.status = "healthy"
        return self

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "status": "healthy",
            "timestamp": "2024-01-15T10:30:00Z",
            "database_connected": True,
            "scheduler_running": True,
            "scheduled_jobs": 4,
            "recent_executions": [],
            "recent_failures": 0,
        }
    })


# ============================================================================
# OAuth Schemas
# ============================================================================

class AuthorizationUrlResponse(BaseModel):
    destination_id: int
    authorization_url: str


class OAuthCallbackResponse(BaseModel):
    success: bool
    destination_id: int
    expires_in: int


class TokenStatusResponse(BaseModel):
    """Credential state after a refresh; never carries token values"""
    destination_id: int
    status: CredentialStatus
    token_expires_at: Optional[datetime] = None


class RevokeResponse(BaseModel):
    success: bool
    destination_id: int
