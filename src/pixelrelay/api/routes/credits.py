"""Credit balance and history endpoint."""

from datetime import datetime
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field

from pixelrelay.api.dependencies import get_owner, get_services
from pixelrelay.core.timezone import as_utc
from pixelrelay.models.credit import CreditEntryKind
from pixelrelay.services.container import Services

router = APIRouter(prefix="/api/credits", tags=["credits"])


class CreditLogItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    kind: str = Field(..., description="debit, refund or grant")
    amount: int
    balance_after: int = Field(..., alias="balanceAfter")
    memo: Optional[str] = None
    task_id: Optional[UUID] = Field(default=None, alias="taskId")
    created_at: datetime = Field(..., alias="createdAt")


class CreditsResponse(BaseModel):
    balance: int = Field(..., description="Current credit balance")
    history: list[CreditLogItem] = Field(default_factory=list, description="Newest entries first")


@router.get("", response_model=CreditsResponse)
async def get_credits(
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=20, ge=1, le=100),
    owner: str = Depends(get_owner),
    services: Services = Depends(get_services),
):
    balance = await services.ledger.balance(owner)
    entries = await services.ledger.history(owner, offset=offset, limit=limit)

    return CreditsResponse(
        balance=balance,
        history=[
            CreditLogItem(
                kind=CreditEntryKind(entry.kind).value,
                amount=entry.amount,
                balance_after=entry.balance_after,
                memo=entry.memo,
                task_id=entry.task_id,
                created_at=as_utc(entry.created_at),
            )
            for entry in entries
        ],
    )
