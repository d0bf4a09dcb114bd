"""Provider key pool with daily quotas.

acquire() is race-free because the slot is claimed by a conditional UPDATE
(`used_today < daily_limit`); losing candidates are skipped and the next one
is tried.
"""

from dataclasses import dataclass
from uuid import UUID

import structlog

from pixelrelay.core.timezone import utc_today
from pixelrelay.uow import UnitOfWorkFactory

logger = structlog.get_logger()

# Candidates examined per acquire call
CANDIDATE_BATCH = 10


@dataclass(frozen=True)
class LeasedKey:
    """A provider credential handed out by the pool."""

    id: UUID
    provider: str
    secret: str


class ProviderKeyPool:
    """Rotating pool of upstream API credentials, one pool per provider."""

    def __init__(self, uow_factory: UnitOfWorkFactory):
        self.uow_factory = uow_factory

    async def acquire(self, provider: str) -> LeasedKey | None:
        """Take one slot on an active key with remaining quota.

        Keys whose last reset happened before today are rolled over first.
        Each candidate is claimed with a conditional increment; a candidate
        exhausted by a concurrent acquire in the meantime is skipped.

        Args:
            provider: Provider whose pool to draw from

        Returns:
            LeasedKey, or None when no key qualifies (capacity signal)
        """
        async with await self.uow_factory() as uow:
            reset = await uow.provider_keys.reset_stale_days(provider, utc_today())
            if reset:
                logger.info("key_pool.daily_reset", provider=provider, keys_reset=reset)

            for candidate in await uow.provider_keys.list_available(provider, CANDIDATE_BATCH):
                if await uow.provider_keys.try_claim(candidate.id):
                    logger.info("key_pool.acquired", provider=provider, key_id=str(candidate.id))
                    return LeasedKey(id=candidate.id, provider=provider, secret=candidate.secret)

        logger.warning("key_pool.exhausted", provider=provider)
        return None

    async def peek(self, provider: str) -> LeasedKey | None:
        """Select a key with remaining quota without counting a use.

        The caller commits the use with increment() once the key was
        actually used.
        """
        async with await self.uow_factory() as uow:
            await uow.provider_keys.reset_stale_days(provider, utc_today())
            candidates = await uow.provider_keys.list_available(provider, 1)

        if not candidates:
            logger.warning("key_pool.exhausted", provider=provider, peek=True)
            return None
        key = candidates[0]
        return LeasedKey(id=key.id, provider=provider, secret=key.secret)

    async def increment(self, key_id: UUID) -> None:
        async with await self.uow_factory() as uow:
            await uow.provider_keys.increment(key_id)
        logger.info("key_pool.incremented", key_id=str(key_id))

    async def release(self, key_id: UUID) -> None:
        """Give back a slot after a synchronous provider-call failure (floored at 0)."""
        async with await self.uow_factory() as uow:
            released = await uow.provider_keys.decrement(key_id)
        logger.info("key_pool.released", key_id=str(key_id), released=released)

    async def stats(self, provider: str) -> dict[str, int]:
        async with await self.uow_factory() as uow:
            return await uow.provider_keys.stats(provider)
