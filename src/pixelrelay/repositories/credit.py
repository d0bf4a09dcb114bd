"""Credit repository for balances and the append-only credit log."""

from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from pixelrelay.core.timezone import utcnow
from pixelrelay.models.credit import CreditAccount, CreditLogEntry


class CreditRepository:
    """Repository for CreditAccount and CreditLogEntry entities.

    Balance mutations are conditional UPDATE statements; the caller owns the
    transaction (Unit of Work) that pairs each mutation with its log row.
    """

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def get_balance(self, owner: str) -> int | None:
        """Read the current balance straight from the database.

        Returns:
            Balance, or None if the owner has no account
        """
        result = await self.session.execute(
            select(CreditAccount.balance).where(CreditAccount.owner == owner)  # type: ignore[arg-type]
        )
        return result.scalar_one_or_none()

    async def ensure_account(self, owner: str) -> None:
        """Create an empty account for the owner if none exists."""
        if await self.get_balance(owner) is None:
            self.session.add(CreditAccount(owner=owner, balance=0))
            await self.session.flush()

    async def try_debit(self, owner: str, amount: int) -> int | None:
        """Atomically decrement a balance if it covers the amount.

        Query explanation:
        - UPDATE credit_accounts SET balance = balance - :amount
        - WHERE owner = :owner AND balance >= :amount

        Args:
            owner: Account owner
            amount: Credits to take

        Returns:
            Balance after the debit, or None if the balance was insufficient
        """
        result = await self.session.execute(
            update(CreditAccount)
            .where(CreditAccount.owner == owner)  # type: ignore[arg-type]
            .where(CreditAccount.balance >= amount)  # type: ignore[arg-type]
            .values(balance=CreditAccount.balance - amount, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:  # type: ignore[attr-defined]
            return None
        return await self.get_balance(owner)

    async def add_to_balance(self, owner: str, amount: int) -> int:
        """Increment a balance, creating the account when missing.

        Returns:
            Balance after the increment
        """
        await self.ensure_account(owner)
        await self.session.execute(
            update(CreditAccount)
            .where(CreditAccount.owner == owner)  # type: ignore[arg-type]
            .values(balance=CreditAccount.balance + amount, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        balance = await self.get_balance(owner)
        return balance or 0

    async def append_log(self, entry: CreditLogEntry) -> CreditLogEntry:
        """Append a log row.

        Raises:
            sqlalchemy.exc.IntegrityError: If the idempotency key was already used
        """
        self.session.add(entry)
        await self.session.flush()
        return entry

    async def get_by_idempotency_key(self, key: str) -> CreditLogEntry | None:
        result = await self.session.execute(
            select(CreditLogEntry).where(CreditLogEntry.idempotency_key == key)  # type: ignore[arg-type]
        )
        return result.scalar_one_or_none()

    async def list_for_task(self, task_id: UUID) -> list[CreditLogEntry]:
        result = await self.session.execute(
            select(CreditLogEntry)
            .where(CreditLogEntry.task_id == task_id)  # type: ignore[arg-type]
            .order_by(CreditLogEntry.created_at.asc())  # type: ignore[attr-defined]
        )
        return list(result.scalars().all())

    async def list_history(self, owner: str, offset: int = 0, limit: int = 20) -> list[CreditLogEntry]:
        """List an owner's log rows, newest first."""
        result = await self.session.execute(
            select(CreditLogEntry)
            .where(CreditLogEntry.owner == owner)  # type: ignore[arg-type]
            .order_by(CreditLogEntry.created_at.desc())  # type: ignore[attr-defined]
            .offset(offset)
            .limit(limit)
        )
        return list(result.scalars().all())
