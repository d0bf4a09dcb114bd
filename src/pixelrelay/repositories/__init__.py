"""Repository layer for pixelrelay.

Provides data access abstractions for all domain entities.
Each repository is self-contained; there is no base class.
"""

from pixelrelay.repositories.credit import CreditRepository
from pixelrelay.repositories.provider_key import ProviderKeyRepository
from pixelrelay.repositories.task import TaskRepository
from pixelrelay.repositories.trial import TrialUsageRepository

__all__ = [
    "TaskRepository",
    "ProviderKeyRepository",
    "CreditRepository",
    "TrialUsageRepository",
]
