"""
Create tables and seed the destination type and source API catalogues
"""

import asyncio
import logging
import sys
import os

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from sqlalchemy import select
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from core.config import settings
from core.database import create_all
from core.logging import setup_logging
from models import DestinationType, SourceApi

logger = logging.getLogger(__name__)

DESTINATION_TYPES = [
    {
        "name": "SFTP",
        "description": "Upload over SFTP",
        "requires_oauth": False,
        "required_fields": ["host", "port", "username", "password", "remotePath"],
    },
    {
        "name": "OneDrive",
        "description": "Microsoft OneDrive through Microsoft Graph",
        "requires_oauth": True,
        "oauth_config": {
            "auth_url": "https://login.microsoftonline.com/common/oauth2/v2.0/authorize",
            "token_url": "https://login.microsoftonline.com/common/oauth2/v2.0/token",
            "required_scopes": ["files.readwrite", "offline_access"],
        },
        "required_fields": ["clientId", "clientSecret", "redirectUri", "folderPath"],
    },
    {
        "name": "GoogleDrive",
        "description": "Google Drive v3",
        "requires_oauth": True,
        "oauth_config": {
            "auth_url": "https://accounts.google.com/o/oauth2/v2/auth",
            "token_url": "https://oauth2.googleapis.com/token",
            "required_scopes": ["https://www.googleapis.com/auth/drive.file"],
        },
        "required_fields": ["clientId", "clientSecret", "redirectUri", "folderId"],
    },
]

SOURCE_APIS = [
    {"name": "orders", "endpoint": "orders", "description": "Shopify orders"},
    {"name": "products", "endpoint": "products", "description": "Shopify products"},
    {"name": "customers", "endpoint": "customers", "description": "Shopify customers"},
]


async def seed(session: AsyncSession) -> None:
    for row in DESTINATION_TYPES:
        existing = await session.execute(
            select(DestinationType).where(DestinationType.name == row["name"])
        )
        if existing.scalar_one_or_none() is None:
            session.add(DestinationType(**row))
            logger.info(f"Seeded destination type {row['name']}")

    for row in SOURCE_APIS:
        existing = await session.execute(select(SourceApi).where(SourceApi.name == row["name"]))
        if existing.scalar_one_or_none() is None:
            session.add(SourceApi(**row))
            logger.info(f"Seeded source API {row['name']}")

    await session.commit()


async def init_database():
    logger.info("Connecting to database...")
    engine = create_async_engine(settings.DATABASE_URL, echo=False)

    try:
        logger.info("Creating tables...")
        await create_all(engine)

        session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        async with session_maker() as session:
            await seed(session)
        logger.info("Database initialised.")
    finally:
        await engine.dispose()


if __name__ == "__main__":
    setup_logging()
    asyncio.run(init_database())
