"""
Persist failures to the ``error_logs`` table.

Records are written through their own session so that a rolled back
business transaction does not take the error record with it. A failure to
persist is logged and never replaces the original error.
"""

import logging
import traceback
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from core.exceptions import ETLException, to_jsonable
from models.error_log import ErrorLog

logger = logging.getLogger(__name__)


class ErrorLogger:
    """Write structured error records (type, code, context, traceback)."""

    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        self.session_factory = session_factory

    async def log_error(
        self, error: BaseException, context: Optional[Dict[str, Any]] = None
    ) -> None:
        context = {k: to_jsonable(v) for k, v in (context or {}).items()}
        details = error.to_dict() if isinstance(error, ETLException) else None

        logger.error(
            f"{type(error).__name__}: {getattr(error, 'message', str(error))}",
            extra={"error_context": {"details": details, "context": context}}
        )

        if self.session_factory is None:
            return

        try:
            async with self.session_factory() as session:
                session.add(ErrorLog(
                    error_type=type(error).__name__,
                    error_message=getattr(error, "message", str(error)),
                    error_code=getattr(error, "code", None),
                    error_details=details,
                    context=context,
                    stack_trace="".join(
                        traceback.format_exception(type(error), error, error.__traceback__)
                    ),
                ))
                await session.commit()
        except Exception as log_error:
            logger.error(f"Error logging failed: {log_error}")
