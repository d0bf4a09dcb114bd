"""TrialUsage entity - one anonymous trial per browser fingerprint."""

from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel

from pixelrelay.core.timezone import utcnow


class TrialUsage(SQLModel, table=True):
    """Records that a fingerprint consumed its free trial."""

    __tablename__ = "trial_usage"  # type: ignore[assignment]

    fingerprint: str = Field(primary_key=True, max_length=256)
    task_id: Optional[UUID] = Field(default=None)
    used_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))
