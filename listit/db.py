from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool

import logging

from . import config
# register table models on SQLModel.metadata
from . import models  # noqa: F401

logger = logging.getLogger(__name__)

DATABASE_URL = config.DATABASE_URL

engine = create_async_engine(DATABASE_URL, echo=False, future=True, poolclass=NullPool)

async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_db():
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    logger.info('local backend database ready at %s', DATABASE_URL)


async def reset_db():
    """Drop and recreate every table. Used by the test suite."""
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.drop_all)
        await conn.run_sync(SQLModel.metadata.create_all)
