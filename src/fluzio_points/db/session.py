"""Async engine, session factory and request-scoped session dependency."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from fluzio_points.core.settings import settings

SessionFactory = Callable[[], AsyncSession] | Callable[[], Awaitable[AsyncSession]]

engine = create_async_engine(settings.database_url, echo=settings.database_echo, future=True)
async_session = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


async def get_session() -> AsyncIterator[AsyncSession]:
    async with async_session() as session:
        yield session


def get_session_factory() -> SessionFactory:
    """Dependency returning the factory used by work that opens its own sessions."""

    return async_session


async def open_session(session_factory: SessionFactory) -> AsyncSession:
    maybe_session = session_factory()
    if isinstance(maybe_session, AsyncSession):
        return maybe_session
    return await maybe_session


@asynccontextmanager
async def commit_or_rollback(session: AsyncSession) -> AsyncIterator[AsyncSession]:
    """Commit on clean exit; roll back and re-raise otherwise."""

    try:
        yield session
    except BaseException:
        await session.rollback()
        raise
    else:
        await session.commit()


async def conditional_update(session: AsyncSession, model: Any, *criteria: Any, values: dict[str, Any]) -> int:
    """Run a compare-and-set UPDATE and return the matched row count.

    The identity map is not synchronised; callers refresh the rows they keep using.
    """

    stmt = update(model).where(*criteria).values(**values).execution_options(synchronize_session=False)
    result = await session.execute(stmt)
    return int(result.rowcount or 0)
