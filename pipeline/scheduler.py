"""
Schedule-driven job scheduler.

One APScheduler ``DateTrigger`` job per active schedule (``schedule:<id>``)
fires the job runner at the schedule's ``next_run``; after each run the
trigger is installed again for the recomputed ``next_run``. A housekeeping
job purges expired OAuth states on a fixed interval and reinstalls any
trigger lost to a crashed run.

At most one run per schedule id is in flight: every schedule has an entry in
the ``ScheduleRegistry`` holding an ``asyncio.Lock``. A firing that finds the
lock taken is coalesced (logged and dropped), never run in parallel. Across
processes (the API and scripts/run_schedule.py) the schedule row is locked
while the PENDING execution is inserted, and a schedule that already has a
non-terminal execution is coalesced the same way.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.clock import utcnow, ensure_utc
from core.config import settings
from core.database import async_session_maker, session_scope
from core.exceptions import ETLException, ConfigError
from credentials.store import CredentialStore
from models.base import ExecutionStatus
from models.job_execution import JobExecution
from models.schedule import Schedule
from pipeline.next_run import compute_next_run
from pipeline.runner import TERMINAL_STATUSES, JobRunner, build_runner, pending_execution

logger = logging.getLogger(__name__)

HOUSEKEEPING_JOB_ID = "housekeeping"


@dataclass
class ScheduleEntry:
    """Per-schedule coordination state."""
    schedule_id: int
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    consecutive_failures: int = 0
    active: bool = True


class ScheduleRegistry:
    """Explicit map of schedule id to its entry, owned by one JobScheduler."""

    def __init__(self):
        self._entries: Dict[int, ScheduleEntry] = {}

    def get(self, schedule_id: int) -> Optional[ScheduleEntry]:
        return self._entries.get(schedule_id)

    def get_or_create(self, schedule_id: int) -> ScheduleEntry:
        # Entries are never replaced, so the lock of an in-flight run stays authoritative
        entry = self._entries.get(schedule_id)
        if entry is None:
            entry = ScheduleEntry(schedule_id)
            self._entries[schedule_id] = entry
        return entry

    def active_ids(self) -> List[int]:
        return sorted(i for i, e in self._entries.items() if e.active)

    def __contains__(self, schedule_id: int) -> bool:
        entry = self._entries.get(schedule_id)
        return entry is not None and entry.active

    def __len__(self) -> int:
        return len(self.active_ids())


class JobScheduler:
    """
    Attributes:
        registry: Schedule id → entry (lock, failure count)
        stale_after: Age after which an in-flight execution without progress
            no longer blocks new runs
        max_consecutive_failures: Pause a schedule after this many failed
            runs in a row (None disables pausing)
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        runner_factory: Callable[[AsyncSession], JobRunner] = build_runner,
        scheduler: Optional[AsyncIOScheduler] = None,
        timezone: Optional[str] = None,
        max_consecutive_failures: Optional[int] = None,
        housekeeping_minutes: Optional[int] = None
    ):
        self.session_factory = session_factory or async_session_maker
        self.runner_factory = runner_factory
        self.timezone = timezone or settings.SCHEDULER_TIMEZONE
        self.scheduler = scheduler or AsyncIOScheduler(timezone=self.timezone)
        self.registry = ScheduleRegistry()
        self.max_consecutive_failures = (
            max_consecutive_failures
            if max_consecutive_failures is not None
            else settings.SCHEDULER_MAX_CONSECUTIVE_FAILURES
        )
        self.housekeeping_minutes = housekeeping_minutes or settings.SCHEDULER_HOUSEKEEPING_MINUTES
        self.stale_after = timedelta(minutes=settings.SCHEDULER_STALE_EXECUTION_MINUTES)

    @staticmethod
    def job_id(schedule_id: int) -> str:
        return f"schedule:{schedule_id}"

    # --------------------------------------------------
    # Lifecycle
    # --------------------------------------------------

    async def start(self) -> int:
        """
        Start APScheduler and install a trigger for every active schedule.

        Schedules without next_run get one computed; schedules whose next_run
        has already passed fire once, immediately.

        Returns:
            Number of schedules installed
        """
        self.scheduler.add_job(
            self.housekeeping,
            trigger=IntervalTrigger(minutes=self.housekeeping_minutes),
            id=HOUSEKEEPING_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        if not self.scheduler.running:
            self.scheduler.start()

        installed = 0
        async with session_scope(self.session_factory) as session:
            result = await session.execute(select(Schedule).where(Schedule.is_active.is_(True)))
            for schedule in result.scalars().all():
                try:
                    if schedule.next_run is None:
                        schedule.next_run = self._compute(schedule)
                except ConfigError as e:
                    logger.error(f"Schedule {schedule.id} has invalid timing, not installed: {e.message}")
                    continue
                self._install(schedule.id, ensure_utc(schedule.next_run))
                installed += 1
            await session.commit()

        logger.info(f"Job scheduler started with {installed} active schedules")
        return installed

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("Job scheduler stopped")

    # --------------------------------------------------
    # Registry operations
    # --------------------------------------------------

    def _compute(self, schedule: Schedule, now: Optional[datetime] = None) -> datetime:
        return compute_next_run(
            schedule.frequency,
            schedule.time_of_day,
            schedule.day_of_week,
            schedule.day_of_month,
            now=now or utcnow(),
            tz=self.timezone,
        )

    def _install(self, schedule_id: int, run_at: datetime) -> None:
        """Install (or replace) the pending trigger of a schedule."""
        entry = self.registry.get_or_create(schedule_id)
        entry.active = True

        run_at = max(run_at, utcnow())
        self.scheduler.add_job(
            self._fire,
            trigger=DateTrigger(run_date=run_at),
            args=[schedule_id],
            id=self.job_id(schedule_id),
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=None,
        )
        logger.debug(f"Schedule {schedule_id} triggers at {run_at.isoformat()}")

    def _cancel(self, schedule_id: int) -> bool:
        try:
            self.scheduler.remove_job(self.job_id(schedule_id))
            return True
        except JobLookupError:
            return False

    async def _load(self, session: AsyncSession, schedule_id: int) -> Schedule:
        schedule = await session.get(Schedule, schedule_id)
        if schedule is None:
            raise ConfigError("Schedule not found", context={"schedule_id": schedule_id})
        return schedule

    async def add_schedule(self, schedule_id: int) -> datetime:
        """
        Install a newly created (or reactivated) schedule.

        Keeps a stored next_run that is still ahead; computes it otherwise.
        """
        async with session_scope(self.session_factory) as session:
            schedule = await self._load(session, schedule_id)
            if not schedule.is_active:
                raise ConfigError("Schedule is inactive", context={"schedule_id": schedule_id})

            next_run = ensure_utc(schedule.next_run)
            if next_run is None or next_run <= utcnow():
                next_run = self._compute(schedule)
                schedule.next_run = next_run
                await session.commit()

        self._install(schedule_id, next_run)
        logger.info(f"Schedule {schedule_id} added, next run at {next_run.isoformat()}")
        return next_run

    async def reschedule(self, schedule_id: int) -> datetime:
        """
        Recompute next_run from the schedule's (edited) timing and replace
        the pending trigger. An in-flight run is not affected.
        """
        async with session_scope(self.session_factory) as session:
            schedule = await self._load(session, schedule_id)
            if not schedule.is_active:
                raise ConfigError("Schedule is inactive", context={"schedule_id": schedule_id})

            next_run = self._compute(schedule)
            schedule.next_run = next_run
            await session.commit()

        self._install(schedule_id, next_run)
        logger.info(f"Schedule {schedule_id} rescheduled to {next_run.isoformat()}")
        return next_run

    async def deactivate(self, schedule_id: int) -> None:
        """
        Soft-delete a schedule and cancel its pending trigger.

        Execution history is kept and an in-flight run finishes normally.
        """
        entry = self.registry.get(schedule_id)
        if entry is not None:
            entry.active = False
        cancelled = self._cancel(schedule_id)

        async with session_scope(self.session_factory) as session:
            schedule = await self._load(session, schedule_id)
            schedule.is_active = False
            await session.commit()

        logger.info(
            f"Schedule {schedule_id} deactivated"
            + (" (pending trigger cancelled)" if cancelled else "")
        )

    def is_scheduled(self, schedule_id: int) -> bool:
        return self.scheduler.get_job(self.job_id(schedule_id)) is not None

    def is_running(self, schedule_id: int) -> bool:
        entry = self.registry.get(schedule_id)
        return entry is not None and entry.lock.locked()

    # --------------------------------------------------
    # Runs
    # --------------------------------------------------

    async def _fire(self, schedule_id: int) -> None:
        """
        APScheduler entry point.

        The DateTrigger that called us is spent, so whatever happens here the
        schedule must leave with a pending trigger unless it was deactivated.
        """
        try:
            await self.run_schedule(schedule_id)
        except ETLException as e:
            logger.error(f"Scheduled run of schedule {schedule_id} failed: {e.message}")
        except Exception:
            logger.exception(f"Scheduled run of schedule {schedule_id} crashed")
        finally:
            await self._ensure_installed(schedule_id)

    async def _ensure_installed(self, schedule_id: int) -> bool:
        """
        Install a trigger for an active schedule that has none.

        Returns:
            True when a trigger was installed
        """
        entry = self.registry.get(schedule_id)
        if entry is None or not entry.active or entry.lock.locked():
            return False
        if self.is_scheduled(schedule_id):
            return False

        try:
            async with session_scope(self.session_factory) as session:
                schedule = await session.get(Schedule, schedule_id)
                if schedule is None or not schedule.is_active:
                    entry.active = False
                    return False
                next_run = self._compute(schedule)
                schedule.next_run = next_run
                await session.commit()
        except ConfigError as e:
            logger.error(f"Schedule {schedule_id} has invalid timing, not reinstalled: {e.message}")
            return False
        except Exception:
            logger.exception(
                f"Could not reinstall trigger of schedule {schedule_id}; housekeeping will retry"
            )
            return False

        self._install(schedule_id, next_run)
        logger.warning(f"Schedule {schedule_id} trigger reinstalled for {next_run.isoformat()}")
        return True

    async def run_schedule(self, schedule_id: int) -> Optional[JobExecution]:
        """
        Run a schedule now, unless a run for it is already in flight.

        In-flight runs are detected in this process by the registry lock and
        across processes by a non-terminal JobExecution row for the schedule.

        Returns:
            The completed execution, or None when coalesced or inactive

        Raises:
            ETLException: The run failed (FAILED is already recorded)
        """
        entry = self.registry.get_or_create(schedule_id)
        if entry.lock.locked():
            logger.warning(
                f"Schedule {schedule_id} is already running, coalescing overlapping trigger"
            )
            return None

        async with entry.lock:
            return await self._run_locked(entry)

    async def _claim(
        self, session: AsyncSession, entry: ScheduleEntry
    ) -> Optional[Tuple[Schedule, JobExecution]]:
        """
        Lock the schedule row and insert the PENDING execution of this run.

        Returns None (nothing inserted) when the schedule is missing or
        inactive, or another process has a run of it in flight. In-flight
        rows without progress for ``stale_after`` are failed and ignored.
        """
        schedule_id = entry.schedule_id
        result = await session.execute(
            select(Schedule).where(Schedule.id == schedule_id).with_for_update()
        )
        schedule = result.scalar_one_or_none()
        if schedule is None or not schedule.is_active:
            await session.rollback()
            logger.info(f"Schedule {schedule_id} is missing or inactive, skipping run")
            entry.active = False
            return None

        result = await session.execute(
            select(JobExecution).where(
                JobExecution.schedule_id == schedule_id,
                JobExecution.status.notin_(TERMINAL_STATUSES),
            )
        )
        now = utcnow()
        for running in result.scalars().all():
            last_progress = ensure_utc(running.updated_at or running.started_at)
            if last_progress > now - self.stale_after:
                await session.rollback()
                logger.warning(
                    f"Schedule {schedule_id} has execution {running.id} in flight "
                    f"({running.status.value}), coalescing"
                )
                return None

            running.status = ExecutionStatus.FAILED
            running.message = f"Abandoned: no progress since {last_progress.isoformat()}"
            running.completed_at = now
            logger.warning(f"Execution {running.id} of schedule {schedule_id} marked abandoned")

        execution = pending_execution(schedule)
        session.add(execution)
        await session.commit()
        return schedule, execution

    async def _run_locked(self, entry: ScheduleEntry) -> Optional[JobExecution]:
        schedule_id = entry.schedule_id

        async with session_scope(self.session_factory) as session:
            claimed = await self._claim(session, entry)
            if claimed is None:
                return None
            schedule, pending = claimed
            pending_id = pending.id

            try:
                runner = self.runner_factory(session)
                execution = await runner.execute(schedule, pending)
            except ETLException:
                entry.consecutive_failures += 1
                await self._after_failure(session, schedule_id, entry)
                raise
            except Exception as e:
                entry.consecutive_failures += 1
                await self._abandon(session, pending_id, e)
                raise

            entry.consecutive_failures = 0
            await session.refresh(schedule)
            if entry.active and schedule.is_active:
                self._install(schedule_id, ensure_utc(schedule.next_run))
            return execution

    async def _abandon(self, session: AsyncSession, execution_id: int, error: Exception) -> None:
        """Fail a claimed execution the runner never finished, so it stops blocking runs."""
        try:
            await session.rollback()
            execution = await session.get(JobExecution, execution_id, populate_existing=True)
            if execution is not None and execution.status not in TERMINAL_STATUSES:
                now = utcnow()
                execution.status = ExecutionStatus.FAILED
                execution.message = f"Job failed: {error}"
                execution.completed_at = now
                await session.commit()
        except Exception:
            logger.exception(
                f"Could not mark execution {execution_id} failed; it expires after {self.stale_after}"
            )

    async def _after_failure(
        self, session: AsyncSession, schedule_id: int, entry: ScheduleEntry
    ) -> None:
        """Advance next_run past the failed slot and apply the pause policy."""
        # Reload: the run may have been rolled back, and timing may have been edited meanwhile
        schedule = await session.get(Schedule, schedule_id, populate_existing=True)

        limit = self.max_consecutive_failures
        if limit and entry.consecutive_failures >= limit:
            schedule.is_active = False
            entry.active = False
            await session.commit()
            self._cancel(schedule_id)
            logger.error(
                f"Schedule {schedule_id} paused after {entry.consecutive_failures} consecutive failures"
            )
            return

        try:
            schedule.next_run = self._compute(schedule)
        except ConfigError as e:
            logger.error(f"Schedule {schedule_id} has invalid timing: {e.message}")
            return
        await session.commit()

        if entry.active and schedule.is_active:
            self._install(schedule_id, ensure_utc(schedule.next_run))

    # --------------------------------------------------
    # Housekeeping
    # --------------------------------------------------

    async def housekeeping(self) -> int:
        """
        Purge expired OAuth states and reinstall triggers lost to crashed runs.

        Returns:
            Number of purged states
        """
        async with session_scope(self.session_factory) as session:
            store = CredentialStore(session)
            purged = await store.purge_expired_states(utcnow())
            await store.commit()

        if purged:
            logger.info(f"Housekeeping purged {purged} expired OAuth states")

        for schedule_id in self.registry.active_ids():
            await self._ensure_installed(schedule_id)
        return purged
