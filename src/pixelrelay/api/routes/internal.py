"""Queue-facing and operator endpoints."""

import json
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field, ValidationError

from pixelrelay.api.dependencies import get_services, require_admin, verify_queue_request
from pixelrelay.services.container import Services

logger = structlog.get_logger()
router = APIRouter(prefix="/internal", tags=["internal"])


class PollTaskMessage(BaseModel):
    """Body published to the delay queue for a scheduled poll."""

    task_id: UUID = Field(..., alias="taskId")
    attempt: int = Field(..., ge=1)


class KeyPoolStatsResponse(BaseModel):
    provider: str
    total_keys: int
    active_keys: int
    total_daily_limit: int
    total_used_today: int
    available_keys: int


@router.post("/poll-task")
async def poll_task(
    raw_body: bytes = Depends(verify_queue_request),
    services: Services = Depends(get_services),
):
    """Scheduled re-check delivered by the delay queue.

    Malformed messages answer 400 so the queue does not keep redelivering
    them; everything else answers 200.
    """
    try:
        message = PollTaskMessage.model_validate(json.loads(raw_body))
    except (json.JSONDecodeError, UnicodeDecodeError, ValidationError) as e:
        logger.warning("poll.invalid_message", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "validation_error", "message": "Invalid poll message"},
        ) from e

    return await services.reconciler.handle_scheduled_poll(message.task_id, message.attempt)


@router.get(
    "/key-pool/stats",
    response_model=KeyPoolStatsResponse,
    dependencies=[Depends(require_admin)],
)
async def key_pool_stats(
    provider: str = Query(default="freepik"),
    services: Services = Depends(get_services),
):
    stats = await services.key_pool.stats(provider)
    return KeyPoolStatsResponse(provider=provider, **stats)
