"""TrialUsage repository."""

from uuid import UUID

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from pixelrelay.models.trial import TrialUsage


class TrialUsageRepository:
    """Repository for TrialUsage entities."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, fingerprint: str) -> TrialUsage | None:
        result = await self.session.execute(
            select(TrialUsage).where(TrialUsage.fingerprint == fingerprint)  # type: ignore[arg-type]
        )
        return result.scalar_one_or_none()

    async def claim(self, fingerprint: str) -> TrialUsage:
        """Record the fingerprint's trial.

        Raises:
            sqlalchemy.exc.IntegrityError: If the fingerprint already used its trial
        """
        usage = TrialUsage(fingerprint=fingerprint)
        self.session.add(usage)
        await self.session.flush()
        return usage

    async def attach_task(self, fingerprint: str, task_id: UUID) -> None:
        await self.session.execute(
            update(TrialUsage)
            .where(TrialUsage.fingerprint == fingerprint)  # type: ignore[arg-type]
            .values(task_id=task_id)
            .execution_options(synchronize_session=False)
        )

    async def release(self, fingerprint: str) -> None:
        """Forget a claim whose submission never reached the provider."""
        await self.session.execute(
            delete(TrialUsage).where(TrialUsage.fingerprint == fingerprint)  # type: ignore[arg-type]
        )
