"""ProviderKey entity - upstream API credential with a daily quota."""

from datetime import date, datetime
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel

from pixelrelay.core.timezone import utc_today, utcnow


class ProviderKey(SQLModel, table=True):
    """ProviderKey is one rotating credential in a provider's key pool."""

    __tablename__ = "provider_keys"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    provider: str = Field(max_length=50, index=True)
    name: Optional[str] = Field(default=None, max_length=100)
    secret: str = Field(max_length=512)
    daily_limit: int = Field(default=100, ge=0)
    used_today: int = Field(default=0, ge=0)
    last_reset_date: date = Field(default_factory=utc_today)
    is_active: bool = Field(default=True, index=True)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))

    @property
    def remaining(self) -> int:
        return max(0, self.daily_limit - self.used_today)
