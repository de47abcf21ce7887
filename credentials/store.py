"""
Token store: the narrow persistence contract used by the OAuth lifecycle.

Reads and writes destinations, credential audit rows and one-time OAuth
states. Nothing here commits implicitly except through ``commit()``; the
OAuth manager decides where transactions begin and end.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select, delete
from sqlalchemy.engine import Row
from sqlalchemy.ext.asyncio import AsyncSession

from core.exceptions import ConfigError
from models.destination import Destination, CredentialAudit
from models.oauth_state import OAuthState
from schemas.credentials import DestinationCredentials

logger = logging.getLogger(__name__)


class CredentialStore:
    """Persistence for destination credentials and OAuth states."""

    def __init__(self, db_session: AsyncSession):
        self.db = db_session

    async def get_destination(
        self, destination_id: int, for_update: bool = False
    ) -> Destination:
        """
        Load an active destination with its type.

        With ``for_update`` the row stays locked until the surrounding
        transaction ends, so concurrent refreshes of one credential serialize.
        """
        query = select(Destination).where(
            Destination.id == destination_id,
            Destination.is_active.is_(True)
        )
        if for_update:
            query = query.with_for_update(of=Destination).execution_options(
                populate_existing=True
            )

        result = await self.db.execute(query)
        destination = result.scalar_one_or_none()

        if destination is None:
            raise ConfigError(
                "Destination not found",
                context={"destination_id": destination_id}
            )
        return destination

    def save_credentials(
        self,
        destination: Destination,
        new_credentials: DestinationCredentials,
        old_credentials: Optional[DestinationCredentials],
        action: str
    ) -> CredentialAudit:
        """Replace the credential blob and append a redacted audit row."""
        destination.credentials = new_credentials.to_storage()

        audit = CredentialAudit(
            destination_id=destination.id,
            action=action,
            old_credentials=old_credentials.redacted() if old_credentials else None,
            new_credentials=new_credentials.redacted(),
        )
        self.db.add(audit)
        return audit

    def create_state(
        self,
        state: str,
        user_id: int,
        destination_id: int,
        provider: str,
        expires_at: datetime
    ) -> OAuthState:
        row = OAuthState(
            state=state,
            user_id=user_id,
            destination_id=destination_id,
            provider=provider,
            expires_at=expires_at,
        )
        self.db.add(row)
        return row

    async def consume_state(self, state: str, now: datetime) -> Optional[Row]:
        """
        Delete an unexpired state and return its (user_id, destination_id, provider).

        The delete is the verification: a second caller with the same state
        deletes nothing and gets ``None``.
        """
        result = await self.db.execute(
            delete(OAuthState)
            .where(OAuthState.state == state, OAuthState.expires_at > now)
            .returning(OAuthState.user_id, OAuthState.destination_id, OAuthState.provider)
            .execution_options(synchronize_session=False)
        )
        return result.first()

    async def purge_expired_states(self, now: datetime) -> int:
        result = await self.db.execute(
            delete(OAuthState)
            .where(OAuthState.expires_at <= now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    async def commit(self) -> None:
        await self.db.commit()

    async def rollback(self) -> None:
        await self.db.rollback()
