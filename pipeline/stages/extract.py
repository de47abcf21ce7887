"""
Extract stage: pull raw records for every selected API of a source.
"""

import logging
from typing import Any, Dict, List

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core.exceptions import ExtractionError
from models.source import Source
from pipeline.base import ApiData, SourceClient

logger = logging.getLogger(__name__)


class Extractor:
    """
    Loads a source's selected APIs/fields and fetches each through the
    source client.

    Not retried here: the source client owns its own retry policy.
    """

    def __init__(self, db_session: AsyncSession, source_client: SourceClient):
        self.db = db_session
        self.source_client = source_client

    async def _load_source(self, source_id: int) -> Source:
        result = await self.db.execute(
            select(Source).where(Source.id == source_id, Source.is_active.is_(True))
        )
        source = result.scalar_one_or_none()
        if source is None:
            raise ExtractionError(
                "Source not found or inactive",
                context={"source_id": source_id}
            )
        return source

    async def extract(self, source_id: int) -> ApiData:
        """
        Returns:
            Mapping of API name to its records

        Raises:
            ExtractionError: Source missing/inactive or any client failure
        """
        source = await self._load_source(source_id)

        selections = [s for s in source.selected_apis if s.is_active and s.api.is_active]
        if not selections:
            logger.warning(f"Source {source_id} has no selected APIs, nothing to extract")

        data: Dict[str, List[Dict[str, Any]]] = {}
        for selection in selections:
            api = selection.api
            try:
                records = await self.source_client.fetch(
                    source.credentials or {},
                    api.endpoint,
                    selection.selected_fields or None,
                )
            except ExtractionError:
                raise
            except Exception as e:
                raise ExtractionError(
                    f"Failed to fetch {api.name}: {getattr(e, 'message', str(e))}",
                    context={
                        "source_id": source_id,
                        "api_name": api.name,
                        "error_code": getattr(e, "code", None),
                    },
                    original_exception=e
                )

            data[api.name] = records
            logger.info(f"Extracted {len(records)} {api.name} records from source {source_id}")

        return data
