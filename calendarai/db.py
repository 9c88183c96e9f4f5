from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession
from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool

import logging

from . import config
# imported for table registration on SQLModel.metadata
from . import models  # noqa: F401

logger = logging.getLogger(__name__)

DATABASE_URL = config.DATABASE_URL

# Use NullPool to avoid connection-pool objects being bound to a specific
# event loop; tests and admin tools create fresh loops per run.
engine = create_async_engine(DATABASE_URL, echo=False, future=True, poolclass=NullPool)


def _is_sqlite(url: str | None) -> bool:
    return bool(url) and url.startswith('sqlite')


if _is_sqlite(DATABASE_URL):
    # SQLite ignores ON DELETE CASCADE unless foreign keys are enabled on
    # every connection.
    @event.listens_for(engine.sync_engine, 'connect')
    def _enable_sqlite_foreign_keys(dbapi_con, con_record):
        cur = dbapi_con.cursor()
        try:
            cur.execute('PRAGMA foreign_keys=ON')
        finally:
            cur.close()


async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_db():
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    logger.info('database initialized url=%s', DATABASE_URL)
