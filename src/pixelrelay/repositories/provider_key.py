"""ProviderKey repository.

Every counter mutation is a single conditional UPDATE so that concurrent
acquires can never push `used_today` past `daily_limit`.
"""

from datetime import date
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from pixelrelay.core.timezone import utcnow
from pixelrelay.models.provider_key import ProviderKey


class ProviderKeyRepository:
    """Repository for ProviderKey entities."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def add(self, key: ProviderKey) -> ProviderKey:
        self.session.add(key)
        await self.session.flush()
        return key

    async def get(self, key_id: UUID) -> ProviderKey | None:
        result = await self.session.execute(
            select(ProviderKey)
            .where(ProviderKey.id == key_id)  # type: ignore[arg-type]
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def reset_stale_days(self, provider: str, today: date) -> int:
        """Reset counters of keys whose last reset happened before today.

        Query explanation:
        - WHERE last_reset_date != :today: only keys not yet rolled over
        - Concurrent rollovers match zero rows once the first one landed

        Args:
            provider: Provider whose keys to roll over
            today: Current UTC date

        Returns:
            Number of keys reset
        """
        result = await self.session.execute(
            update(ProviderKey)
            .where(ProviderKey.provider == provider)  # type: ignore[arg-type]
            .where(ProviderKey.last_reset_date != today)  # type: ignore[arg-type]
            .values(used_today=0, last_reset_date=today, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount  # type: ignore[attr-defined]

    async def list_available(self, provider: str, limit: int = 10) -> list[ProviderKey]:
        """List active keys with remaining quota, least used first."""
        result = await self.session.execute(
            select(ProviderKey)
            .where(ProviderKey.provider == provider)  # type: ignore[arg-type]
            .where(ProviderKey.is_active.is_(True))  # type: ignore[attr-defined]
            .where(ProviderKey.used_today < ProviderKey.daily_limit)  # type: ignore[arg-type]
            .order_by(ProviderKey.used_today.asc(), ProviderKey.id.asc())  # type: ignore[attr-defined]
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def try_claim(self, key_id: UUID) -> bool:
        """Atomically take one slot on a key if it still has quota.

        Query explanation:
        - UPDATE ... SET used_today = used_today + 1
        - WHERE id = :id AND is_active AND used_today < daily_limit
        - rowcount == 1 means the slot was claimed by this call

        Args:
            key_id: Key to claim a slot on

        Returns:
            True if the slot was claimed
        """
        result = await self.session.execute(
            update(ProviderKey)
            .where(ProviderKey.id == key_id)  # type: ignore[arg-type]
            .where(ProviderKey.is_active.is_(True))  # type: ignore[attr-defined]
            .where(ProviderKey.used_today < ProviderKey.daily_limit)  # type: ignore[arg-type]
            .values(used_today=ProviderKey.used_today + 1, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def increment(self, key_id: UUID) -> bool:
        """Count one use on a key that was selected without counting."""
        result = await self.session.execute(
            update(ProviderKey)
            .where(ProviderKey.id == key_id)  # type: ignore[arg-type]
            .values(used_today=ProviderKey.used_today + 1, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def decrement(self, key_id: UUID) -> bool:
        """Give one slot back, never going below zero.

        Returns:
            True if a slot was given back, False if the counter was already 0
        """
        result = await self.session.execute(
            update(ProviderKey)
            .where(ProviderKey.id == key_id)  # type: ignore[arg-type]
            .where(ProviderKey.used_today > 0)  # type: ignore[arg-type]
            .values(used_today=ProviderKey.used_today - 1, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def stats(self, provider: str) -> dict[str, int]:
        """Aggregate pool counters for one provider.

        Returns:
            Dict with total_keys, active_keys, total_daily_limit, total_used_today
            and available_keys
        """
        active = ProviderKey.is_active.is_(True)  # type: ignore[attr-defined]
        result = await self.session.execute(
            select(
                func.count(ProviderKey.id),  # type: ignore[arg-type]
                func.count(ProviderKey.id).filter(active),  # type: ignore[arg-type]
                func.coalesce(func.sum(ProviderKey.daily_limit).filter(active), 0),
                func.coalesce(func.sum(ProviderKey.used_today).filter(active), 0),
                func.count(ProviderKey.id).filter(  # type: ignore[arg-type]
                    active,
                    ProviderKey.used_today < ProviderKey.daily_limit,  # type: ignore[arg-type]
                ),
            ).where(ProviderKey.provider == provider)  # type: ignore[arg-type]
        )
        total, active_count, total_limit, total_used, available = result.one()
        return {
            "total_keys": int(total),
            "active_keys": int(active_count),
            "total_daily_limit": int(total_limit),
            "total_used_today": int(total_used),
            "available_keys": int(available),
        }
