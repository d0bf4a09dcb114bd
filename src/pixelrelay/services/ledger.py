"""Credit ledger: atomic debit, idempotent refund and grant.

Every mutation runs in its own Unit of Work that pairs the conditional
balance UPDATE with an immutable credit log row carrying the resulting
balance snapshot.
"""

from dataclasses import dataclass
from uuid import UUID

import structlog
from sqlalchemy.exc import IntegrityError

from pixelrelay.models.credit import CreditEntryKind, CreditLogEntry, refund_idempotency_key
from pixelrelay.services.exceptions import InsufficientBalance, ValidationFailed
from pixelrelay.uow import UnitOfWorkFactory

logger = structlog.get_logger()


@dataclass(frozen=True)
class RefundResult:
    ok: bool
    already_refunded: bool
    balance: int | None = None


class CreditLedger:
    """Per-owner credit balances backed by the credit_accounts/credit_log tables."""

    def __init__(self, uow_factory: UnitOfWorkFactory):
        self.uow_factory = uow_factory

    async def debit(
        self, owner: str, amount: int, memo: str, task_id: UUID | None = None
    ) -> int:
        """Take credits from an owner's balance.

        The balance check and decrement are one conditional UPDATE, so two
        concurrent debits can never both spend the same credits.

        Args:
            owner: Account owner
            amount: Credits to take (must be positive)
            memo: Human-readable reason stored in the log
            task_id: Task the debit pays for, if any

        Returns:
            Balance after the debit

        Raises:
            InsufficientBalance: If the balance does not cover the amount
            ValidationFailed: If amount is not positive
        """
        if amount <= 0:
            raise ValidationFailed("Debit amount must be positive")

        async with await self.uow_factory() as uow:
            balance = await uow.credits.try_debit(owner, amount)
            if balance is None:
                available = await uow.credits.get_balance(owner) or 0
                logger.info(
                    "ledger.debit.insufficient", owner=owner, required=amount, available=available
                )
                raise InsufficientBalance(required=amount, available=available)

            await uow.credits.append_log(
                CreditLogEntry(
                    owner=owner,
                    kind=CreditEntryKind.DEBIT,
                    amount=amount,
                    balance_after=balance,
                    memo=memo,
                    task_id=task_id,
                )
            )

        logger.info("ledger.debit.applied", owner=owner, amount=amount, balance=balance)
        return balance

    async def refund(self, owner: str, amount: int, task_id: UUID) -> RefundResult:
        """Give a task's credits back exactly once.

        The refund log row carries the unique idempotency key
        `refund:<task_id>`. A second refund either sees the marker up front or
        loses the unique-constraint race on insert; in both cases the balance
        is left untouched and `already_refunded` is reported.

        Args:
            owner: Account owner
            amount: Credits to return
            task_id: Task being refunded

        Returns:
            RefundResult describing whether the refund was applied now
        """
        if amount <= 0:
            return RefundResult(ok=True, already_refunded=False)

        key = refund_idempotency_key(task_id)
        try:
            async with await self.uow_factory() as uow:
                if await uow.credits.get_by_idempotency_key(key) is not None:
                    logger.info("ledger.refund.already_applied", task_id=str(task_id))
                    return RefundResult(ok=True, already_refunded=True)

                balance = await uow.credits.add_to_balance(owner, amount)
                await uow.credits.append_log(
                    CreditLogEntry(
                        owner=owner,
                        kind=CreditEntryKind.REFUND,
                        amount=amount,
                        balance_after=balance,
                        memo=f"Refund for task {task_id}",
                        task_id=task_id,
                        idempotency_key=key,
                    )
                )
        except IntegrityError:
            # Concurrent refund committed the marker first
            logger.info("ledger.refund.already_applied", task_id=str(task_id), raced=True)
            return RefundResult(ok=True, already_refunded=True)

        logger.info(
            "ledger.refund.applied", owner=owner, amount=amount, task_id=str(task_id), balance=balance
        )
        return RefundResult(ok=True, already_refunded=False, balance=balance)

    async def grant(
        self, owner: str, amount: int, related_order: str | None = None, memo: str | None = None
    ) -> int:
        """Add purchased or promotional credits to an owner's balance.

        Returns:
            Balance after the grant
        """
        if amount <= 0:
            raise ValidationFailed("Grant amount must be positive")

        async with await self.uow_factory() as uow:
            balance = await uow.credits.add_to_balance(owner, amount)
            await uow.credits.append_log(
                CreditLogEntry(
                    owner=owner,
                    kind=CreditEntryKind.GRANT,
                    amount=amount,
                    balance_after=balance,
                    memo=memo or "Credit grant",
                    related_order=related_order,
                )
            )

        logger.info("ledger.grant.applied", owner=owner, amount=amount, related_order=related_order)
        return balance

    async def balance(self, owner: str) -> int:
        async with await self.uow_factory() as uow:
            return await uow.credits.get_balance(owner) or 0

    async def history(self, owner: str, offset: int = 0, limit: int = 20) -> list[CreditLogEntry]:
        async with await self.uow_factory() as uow:
            return await uow.credits.list_history(owner, offset=offset, limit=limit)
