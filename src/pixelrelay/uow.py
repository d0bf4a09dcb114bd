"""Unit of Work pattern for pixelrelay.

Provides transaction management with automatic commit/rollback and access to all repositories.
"""

from typing import Awaitable, Callable

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pixelrelay.repositories.credit import CreditRepository
from pixelrelay.repositories.provider_key import ProviderKeyRepository
from pixelrelay.repositories.task import TaskRepository
from pixelrelay.repositories.trial import TrialUsageRepository

logger = structlog.get_logger()


class UnitOfWork:
    """Unit of Work pattern implementation.

    Manages one database transaction and exposes every repository on it.
    Use as async context manager for automatic commit/rollback.

    Example:
        async with await uow_factory() as uow:
            task = await uow.tasks.get(task_id)
            task.mark_failed({"code": "timeout", "message": "..."})
            await uow.tasks.save(task)
            # Commits on successful exit, rolls back on exception
    """

    def __init__(self, session: AsyncSession):
        """Initialize UnitOfWork with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

        self.tasks = TaskRepository(session)
        self.provider_keys = ProviderKeyRepository(session)
        self.credits = CreditRepository(session)
        self.trials = TrialUsageRepository(session)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Commit on clean exit, roll back otherwise.

        Returns:
            False: Always re-raise exceptions after rollback
        """
        try:
            if exc_type is None:
                await self.session.commit()
                logger.debug("transaction.committed")
            else:
                await self.session.rollback()
                logger.debug("transaction.rolled_back", exc_type=exc_type.__name__)
        finally:
            await self.session.close()

        return False


UnitOfWorkFactory = Callable[[], Awaitable[UnitOfWork]]


def create_uow_factory(session_factory: async_sessionmaker[AsyncSession]) -> UnitOfWorkFactory:
    """Create a factory function that produces UnitOfWork instances.

    Args:
        session_factory: SQLAlchemy async session factory

    Returns:
        Callable that creates UnitOfWork instances from new sessions

    Example:
        session_factory = setup_db_session(db_url, pool_size=20)
        uow_factory = create_uow_factory(session_factory)

        async with await uow_factory() as uow:
            await uow.tasks.create(task)
    """

    async def _create_uow() -> UnitOfWork:
        session = session_factory()
        return UnitOfWork(session)

    return _create_uow
