"""Provider webhook receivers.

Providers push task status changes here. Every well-formed request is
acknowledged with 200 so providers do not retry deliveries that were
already handled or deliberately ignored; only signature failures are
rejected.
"""

import json
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Query

from pixelrelay.api.dependencies import get_services, read_webhook_body
from pixelrelay.services.container import Services

logger = structlog.get_logger()
router = APIRouter()


@router.post("/{provider}")
async def receive_provider_webhook(
    provider: str,
    task: Optional[str] = Query(default=None, description="Internal task id from the callback URL"),
    raw_body: bytes = Depends(read_webhook_body),
    services: Services = Depends(get_services),
):
    """Receive a provider push and hand it to the reconciler.

    Returns:
        200 with `{"status": ...}` describing what happened
    """
    try:
        payload = json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        logger.warning("webhook.invalid_json", provider=provider, error=str(e))
        return {"status": "ignored", "reason": "invalid_json"}

    if not isinstance(payload, dict):
        logger.warning("webhook.invalid_json", provider=provider, error="payload is not an object")
        return {"status": "ignored", "reason": "invalid_json"}

    return await services.reconciler.handle_webhook(provider, payload, task_hint=task)
