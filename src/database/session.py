from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.database.engine import async_session


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """FastAPI dependency returning the session factory used by the pipeline stores."""
    return async_session


@asynccontextmanager
async def unit_of_work(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    session: AsyncSession | None = None,
) -> AsyncIterator[AsyncSession]:
    """Run a block inside one database transaction.

    When ``session`` is given the block joins the caller's transaction and
    committing is left to the caller. Otherwise a new session is opened from
    ``session_factory`` and committed on exit (rolled back on any exception,
    including cancellation).
    """
    if session is not None:
        yield session
        return

    factory = session_factory or async_session
    async with factory() as new_session:
        async with new_session.begin():
            yield new_session
