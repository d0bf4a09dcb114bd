"""Credit ledger entities - per-owner balance and the append-only credit log."""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import CheckConstraint, DateTime
from sqlmodel import Field, SQLModel

from pixelrelay.core.timezone import utcnow


class CreditEntryKind(str, Enum):
    """Kind of balance mutation recorded in the credit log."""

    DEBIT = "debit"
    REFUND = "refund"
    GRANT = "grant"


def refund_idempotency_key(task_id: UUID | str) -> str:
    """Idempotency marker guarding the single refund of a task."""
    return f"refund:{task_id}"


class CreditAccount(SQLModel, table=True):
    """Denormalized running balance for one owner."""

    __tablename__ = "credit_accounts"  # type: ignore[assignment]
    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_credit_accounts_balance_non_negative"),
    )

    owner: str = Field(primary_key=True, max_length=255)
    balance: int = Field(default=0, ge=0)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))


class CreditLogEntry(SQLModel, table=True):
    """Immutable audit row written for every balance mutation."""

    __tablename__ = "credit_log"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    owner: str = Field(max_length=255, index=True)
    kind: CreditEntryKind
    amount: int = Field(ge=0)
    balance_after: int = Field(ge=0)
    memo: Optional[str] = Field(default=None, max_length=500)
    task_id: Optional[UUID] = Field(default=None, index=True)
    related_order: Optional[str] = Field(default=None, max_length=255)
    idempotency_key: Optional[str] = Field(default=None, max_length=255, unique=True)
    created_at: datetime = Field(
        default_factory=utcnow, sa_type=DateTime(timezone=True), index=True
    )
