import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase

from .errors import StoreError

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


class Database:
    """Async ledger connection manager."""

    def __init__(self, database_url: str):
        self.engine = create_async_engine(database_url, echo=False, pool_pre_ping=True)
        self.session_factory = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )

    async def create_tables(self):
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def ping(self) -> bool:
        async with self.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True

    async def close(self):
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """One transaction: commit on clean exit, roll back on any exception.

        Integrity violations propagate as-is so callers can resolve them;
        other driver failures become StoreError.
        """
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except IntegrityError:
                await session.rollback()
                raise
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error(f"Ledger store failure: {e}")
                raise StoreError() from e
            except Exception:
                await session.rollback()
                raise
