# ============================================================================
# File: pipeline/runner.py
# Description: Job execution engine driving one scheduled export run
# ============================================================================
"""
Job Runner - Orchestrates Extract, Validate, Transform, Format, Upload.

This module drives one run of a schedule through the pipeline with:
- A persisted execution state machine (one JobExecution row per run)
- Every status change committed before the stage it announces starts
- Strictly sequential stages; each consumes the previous stage's output
- A FAILED row with the cause's message for any stage failure
- next_run / last_run advanced only after a successful upload

Execution states:
    PENDING → STARTED → EXTRACTING → VALIDATING → TRANSFORMING
            → FORMATTING → UPLOADING → COMPLETED
    any non-terminal state → FAILED
"""

from typing import Any, Dict, Optional
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from core.clock import utcnow, ensure_utc
from core.config import settings
from core.error_logger import ErrorLogger
from core.exceptions import (
    ETLException,
    DestinationError,
    ExecutionStateError,
)
from core.retry import RetryPolicy, linear_backoff
from credentials.cipher import CredentialCipher, get_cipher
from credentials.oauth_manager import OAuthManager
from models.base import ExecutionStatus as Status
from models.destination import Destination
from models.job_execution import JobExecution
from models.schedule import Schedule
from pipeline.base import ApiData, FormattedOutput
from pipeline.clients.converters import default_converters
from pipeline.clients.destinations import default_destination_clients
from pipeline.clients.shopify import ShopifySourceClient
from pipeline.next_run import compute_next_run
from pipeline.stages.extract import Extractor
from pipeline.stages.format import Formatter
from pipeline.stages.transform import Transformer
from pipeline.stages.upload import Uploader
from pipeline.stages.validate import Validator

logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS = {
    Status.PENDING: {Status.STARTED, Status.FAILED},
    Status.STARTED: {Status.EXTRACTING, Status.FAILED},
    Status.EXTRACTING: {Status.VALIDATING, Status.FAILED},
    Status.VALIDATING: {Status.TRANSFORMING, Status.FAILED},
    Status.TRANSFORMING: {Status.FORMATTING, Status.FAILED},
    Status.FORMATTING: {Status.UPLOADING, Status.FAILED},
    Status.UPLOADING: {Status.COMPLETED, Status.FAILED},
}

# Name used in the failure message of a run that stops in a given state
STAGE_NAMES = {
    Status.PENDING: "Job",
    Status.STARTED: "Job",
    Status.EXTRACTING: "Extraction",
    Status.VALIDATING: "Validation",
    Status.TRANSFORMING: "Transformation",
    Status.FORMATTING: "Formatting",
    Status.UPLOADING: "Upload",
}


TERMINAL_STATUSES = (Status.COMPLETED, Status.FAILED)


def pending_execution(schedule: Schedule) -> JobExecution:
    """New PENDING row for a run of ``schedule`` (not yet added to a session)."""
    return JobExecution(
        schedule_id=schedule.id,
        source_id=schedule.source_id,
        transformation_id=schedule.transformation_id,
        destination_id=schedule.destination_id,
        status=Status.PENDING,
        message="Job queued",
        started_at=utcnow(),
    )


class JobRunner:
    """
    Job execution engine.

    Responsibilities:
    - Create and advance the JobExecution row of a run
    - Run the five stages in order
    - Record FAILED with a readable message and re-raise on any failure
    - Recompute the schedule's next_run after a successful run
    """

    def __init__(
        self,
        db_session: AsyncSession,
        extractor: Extractor,
        validator: Validator,
        transformer: Transformer,
        formatter: Formatter,
        uploader: Uploader,
        error_logger: Optional[ErrorLogger] = None,
        timezone: Optional[str] = None
    ):
        self.db = db_session
        self.extractor = extractor
        self.validator = validator
        self.transformer = transformer
        self.formatter = formatter
        self.uploader = uploader
        self.error_logger = error_logger or ErrorLogger()
        self.timezone = timezone or settings.SCHEDULER_TIMEZONE

    # --------------------------------------------------
    # Stage operations
    # --------------------------------------------------

    async def extract(self, source_id: int) -> ApiData:
        return await self.extractor.extract(source_id)

    async def validate(self, data: ApiData) -> ApiData:
        return self.validator.validate(data)

    async def transform(self, transformation_id: Optional[int], data: ApiData) -> ApiData:
        return await self.transformer.transform(transformation_id, data)

    async def format(self, data: ApiData, file_format: str) -> FormattedOutput:
        return self.formatter.format(data, file_format)

    async def upload(self, output: FormattedOutput, destination: Destination) -> Dict[str, Any]:
        return await self.uploader.upload(output, destination)

    # --------------------------------------------------
    # State machine
    # --------------------------------------------------

    async def _transition(
        self,
        execution: JobExecution,
        status: Status,
        message: str,
        **fields: Any
    ) -> None:
        """Persist a status change; illegal changes raise ExecutionStateError."""
        current = Status(execution.status)
        if status not in ALLOWED_TRANSITIONS.get(current, set()):
            raise ExecutionStateError(
                f"Illegal execution transition {current.value} -> {status.value}",
                context={"execution_id": execution.id}
            )

        execution.status = status
        execution.message = message
        execution.updated_at = utcnow()
        for name, value in fields.items():
            setattr(execution, name, value)

        await self.db.commit()
        logger.info(f"Execution {execution.id}: {status.value} - {message}")

    async def _load_destination(self, destination_id: int) -> Destination:
        result = await self.db.execute(
            select(Destination).where(
                Destination.id == destination_id,
                Destination.is_active.is_(True)
            )
        )
        destination = result.scalar_one_or_none()
        if destination is None:
            raise DestinationError(
                "Destination not found or inactive",
                context={"destination_id": destination_id}
            )
        return destination

    # --------------------------------------------------
    # Run
    # --------------------------------------------------

    async def execute(
        self, schedule: Schedule, execution: Optional[JobExecution] = None
    ) -> JobExecution:
        """
        Run the pipeline once for ``schedule``.

        Args:
            schedule: Schedule loaded through this runner's session
            execution: PENDING row already claimed by the scheduler; a new
                one is created when omitted

        Returns:
            The COMPLETED JobExecution

        Raises:
            ETLException: The stage failure (after FAILED has been recorded)
        """
        schedule_id = schedule.id
        source_id = schedule.source_id
        transformation_id = schedule.transformation_id
        destination_id = schedule.destination_id

        if execution is None:
            execution = pending_execution(schedule)
            self.db.add(execution)
            await self.db.commit()

        output: Optional[FormattedOutput] = None

        try:
            await self._transition(execution, Status.STARTED, "Job started")
            destination = await self._load_destination(destination_id)
            file_format = destination.file_format

            await self._transition(execution, Status.EXTRACTING, "Extracting source data")
            data = await self.extract(source_id)

            await self._transition(
                execution, Status.VALIDATING,
                f"Validating {sum(len(r) for r in data.values())} records"
            )
            data = await self.validate(data)

            await self._transition(execution, Status.TRANSFORMING, "Applying transformations")
            data = await self.transform(transformation_id, data)

            await self._transition(execution, Status.FORMATTING, f"Converting to {file_format}")
            output = await self.format(data, file_format)

            await self._transition(execution, Status.UPLOADING, "Uploading to destination")
            await self.upload(output, destination)

            # Timing may have been edited and rescheduled while this run was in flight
            await self.db.refresh(schedule)
            now = utcnow()
            schedule.last_run = now
            schedule.next_run = compute_next_run(
                schedule.frequency,
                schedule.time_of_day,
                schedule.day_of_week,
                schedule.day_of_month,
                now=now,
                tz=self.timezone,
            )
            await self._transition(
                execution, Status.COMPLETED, "Job completed successfully",
                completed_at=now,
                duration_seconds=(now - ensure_utc(execution.started_at)).total_seconds(),
            )

            logger.info(
                f"Schedule {schedule_id} run completed, next run at {schedule.next_run.isoformat()}"
            )
            return execution

        except Exception as e:
            error = e if isinstance(e, ETLException) else ETLException(
                "Unexpected error in job pipeline",
                context={"schedule_id": schedule_id},
                original_exception=e
            )
            await self._fail(execution, error)

            if error is e:
                raise
            raise error

        finally:
            if output is not None:
                self.formatter.cleanup(output)

    async def _fail(self, execution: JobExecution, error: ETLException) -> None:
        # Drop whatever the failing stage left pending, then reload the row
        await self.db.rollback()
        await self.db.refresh(execution)

        stage = STAGE_NAMES.get(Status(execution.status), "Job")
        message = f"{stage} failed: {error.message}"
        now = utcnow()

        try:
            await self._transition(
                execution, Status.FAILED, message,
                error_details=error.to_dict(),
                completed_at=now,
                duration_seconds=(now - ensure_utc(execution.started_at)).total_seconds(),
            )
        except ExecutionStateError:
            logger.error(f"Execution {execution.id} already terminal, failure not recorded: {message}")

        await self.error_logger.log_error(error, {
            "execution_id": execution.id,
            "schedule_id": execution.schedule_id,
            "stage": stage,
        })


def build_runner(
    db_session: AsyncSession,
    cipher: Optional[CredentialCipher] = None,
    error_logger: Optional[ErrorLogger] = None
) -> JobRunner:
    """Wire a runner with the bundled collaborators and settings-driven policies."""
    cipher = cipher or get_cipher()
    error_logger = error_logger or ErrorLogger()

    oauth_manager = OAuthManager(db_session, cipher=cipher, error_logger=error_logger)
    upload_policy = RetryPolicy(
        max_attempts=settings.UPLOAD_MAX_RETRY_ATTEMPTS,
        backoff=linear_backoff(settings.UPLOAD_RETRY_BASE_DELAY),
    )

    return JobRunner(
        db_session,
        extractor=Extractor(db_session, ShopifySourceClient()),
        validator=Validator(),
        transformer=Transformer(db_session),
        formatter=Formatter(default_converters()),
        uploader=Uploader(
            oauth_manager, cipher, default_destination_clients(), upload_policy
        ),
        error_logger=error_logger,
    )
