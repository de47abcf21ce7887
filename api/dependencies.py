"""
FastAPI dependencies: database session, caller identity, OAuth manager
"""

from typing import AsyncGenerator, Optional

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from core.database import async_session_maker, get_session
from core.error_logger import ErrorLogger
from credentials.oauth_manager import OAuthManager


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async for session in get_session():
        yield session


async def get_current_user_id(x_user_id: Optional[str] = Header(None)) -> int:
    """
    Identity is asserted by the upstream gateway through X-User-ID;
    this service does no password authentication of its own.
    """
    if not x_user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-User-ID header")
    try:
        return int(x_user_id)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid X-User-ID header")


async def get_oauth_manager(db: AsyncSession = Depends(get_db)) -> OAuthManager:
    return OAuthManager(db, error_logger=ErrorLogger(async_session_maker))
