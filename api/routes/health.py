"""
Health check endpoint with database, scheduler and recent run status
"""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, text
from api.dependencies import get_db
from schemas.api import HealthCheckResponse, ExecutionInfo
from models.base import ExecutionStatus
from models.job_execution import JobExecution
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Health"])

RECENT_EXECUTIONS = 10


@router.get("/health", response_model=HealthCheckResponse)
async def health_check(request: Request, db: AsyncSession = Depends(get_db)):
    """
    Health check endpoint.

    Returns:
    - Database connectivity status
    - Whether the job scheduler is running and how many triggers it holds
    - The most recent job executions
    """

    # Check database connectivity
    db_connected = False

    try:
        await db.execute(text("SELECT 1"))
        db_connected = True
    except Exception as e:
        logger.error(f"Database connection failed: {str(e)}")

    scheduler = getattr(request.app.state, "scheduler", None)
    scheduler_running = bool(scheduler and scheduler.scheduler.running)
    scheduled_jobs = len(scheduler.registry) if scheduler else 0

    recent_executions = []
    recent_failures = 0

    if db_connected:
        try:
            result = await db.execute(
                select(JobExecution)
                .order_by(JobExecution.started_at.desc())
                .limit(RECENT_EXECUTIONS)
            )
            for execution in result.scalars().all():
                if execution.status == ExecutionStatus.FAILED:
                    recent_failures += 1
                recent_executions.append(ExecutionInfo.model_validate(execution))
        except Exception as e:
            logger.error(f"Failed to fetch recent executions: {str(e)}")

    return HealthCheckResponse(
        database_connected=db_connected,
        scheduler_running=scheduler_running,
        scheduled_jobs=scheduled_jobs,
        recent_executions=recent_executions,
        recent_failures=recent_failures,
    )
