"""SQLModel database entities.

All models are imported here to ensure they're registered with SQLModel metadata
for Alembic autogenerate support.
"""

from pixelrelay.models.credit import (
    CreditAccount,
    CreditEntryKind,
    CreditLogEntry,
    refund_idempotency_key,
)
from pixelrelay.models.provider_key import ProviderKey
from pixelrelay.models.task import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    InvalidStateTransition,
    Task,
    TaskKind,
    TaskStatus,
)
from pixelrelay.models.trial import TrialUsage

__all__ = [
    "Task",
    "TaskKind",
    "TaskStatus",
    "InvalidStateTransition",
    "ACTIVE_STATUSES",
    "TERMINAL_STATUSES",
    "ProviderKey",
    "CreditAccount",
    "CreditEntryKind",
    "CreditLogEntry",
    "refund_idempotency_key",
    "TrialUsage",
]
