"""
Script to run one schedule immediately, outside the scheduler's timing

Usage:
    python scripts/run_schedule.py <schedule_id>
"""

import asyncio
import sys
import os
import logging

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from core.database import async_session_maker, engine
from core.error_logger import ErrorLogger
from core.exceptions import ETLException
from core.logging import setup_logging
from pipeline.runner import build_runner
from pipeline.scheduler import JobScheduler

logger = logging.getLogger(__name__)


async def run_schedule(schedule_id: int) -> int:
    """Run a schedule once; returns the process exit code"""
    scheduler = JobScheduler(
        runner_factory=lambda session: build_runner(
            session, error_logger=ErrorLogger(async_session_maker)
        )
    )

    try:
        execution = await scheduler.run_schedule(schedule_id)
        if execution is None:
            logger.warning(f"Schedule {schedule_id} was not run (inactive or already running)")
            return 1

        logger.info(
            f"Schedule {schedule_id} completed: execution {execution.id} "
            f"in {execution.duration_seconds:.1f}s"
        )
        return 0

    except ETLException as e:
        logger.error(f"Schedule {schedule_id} failed: {e.message}")
        return 1
    finally:
        await engine.dispose()


if __name__ == "__main__":
    if len(sys.argv) != 2 or not sys.argv[1].isdigit():
        print("Usage: python scripts/run_schedule.py <schedule_id>")
        sys.exit(2)

    setup_logging()
    sys.exit(asyncio.run(run_schedule(int(sys.argv[1]))))
