"""FastAPI dependencies for request validation and common operations.

This module provides reusable FastAPI dependencies for:
- Access to settings and services built in the application lifespan
- Caller identity (X-User-Id) and trial fingerprint headers
- Webhook and queue callback signature validation
- Admin token checks
"""

import hmac
from typing import Annotated

from fastapi import Depends, Header, HTTPException, Request, status

from pixelrelay.core.config import Settings
from pixelrelay.services.container import POLL_TASK_PATH, Services
from pixelrelay.services.signatures import validate_hmac_signature, verify_queue_signature
from pixelrelay.uow import UnitOfWorkFactory

FINGERPRINT_MIN_LENGTH = 16
FINGERPRINT_MAX_LENGTH = 256


def get_settings(request: Request) -> Settings:
    """Settings instance loaded once in the application lifespan."""
    return request.app.state.settings


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_uow_factory(request: Request) -> UnitOfWorkFactory:
    """Get UnitOfWork factory from app state.

    Example:
        >>> @router.get("/endpoint")
        >>> async def endpoint(uow_factory=Depends(get_uow_factory)):
        ...     async with await uow_factory() as uow:
        ...         await uow.tasks.get(task_id)
    """
    return request.app.state.uow_factory


def get_owner(x_user_id: Annotated[str | None, Header()] = None) -> str:
    """Caller identity forwarded by the upstream authentication layer.

    Raises:
        HTTPException: 401 Unauthorized if the header is missing
    """
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-User-Id header")
    return x_user_id.strip()


def get_fingerprint(x_browser_fingerprint: Annotated[str | None, Header()] = None) -> str:
    """Anonymous trial fingerprint.

    Raises:
        HTTPException: 400 Bad Request if missing or of invalid length
    """
    fingerprint = (x_browser_fingerprint or "").strip()
    if not FINGERPRINT_MIN_LENGTH <= len(fingerprint) <= FINGERPRINT_MAX_LENGTH:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"X-Browser-Fingerprint must be {FINGERPRINT_MIN_LENGTH}-{FINGERPRINT_MAX_LENGTH} characters",
        )
    return fingerprint


async def read_webhook_body(
    provider: str,
    request: Request,
    x_freepik_signature: Annotated[str | None, Header()] = None,
    settings: Settings = Depends(get_settings),
) -> bytes:
    """Read the raw webhook body, validating the Freepik signature when configured.

    Freepik webhooks must carry `X-Freepik-Signature: sha256=<hex>` when
    FREEPIK_WEBHOOK_SECRET is set. The raw body is returned so the endpoint
    parses exactly the bytes that were validated.

    Raises:
        HTTPException: 401 Unauthorized if the signature is missing or invalid
    """
    raw_body = await request.body()

    if provider == "freepik" and settings.freepik_webhook_secret:
        if not x_freepik_signature:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-Freepik-Signature header"
            )
        if not validate_hmac_signature(raw_body, x_freepik_signature, settings.freepik_webhook_secret):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook signature")

    return raw_body


async def verify_queue_request(
    request: Request,
    upstash_signature: Annotated[str | None, Header()] = None,
    settings: Settings = Depends(get_settings),
) -> bytes:
    """Validate that a poll callback comes from the delay queue.

    With signing keys configured the `Upstash-Signature` JWT is fully
    verified; without them only its presence is required.

    Raises:
        HTTPException: 401 Unauthorized if the signature is missing or invalid
    """
    if not upstash_signature:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing Upstash-Signature header"
        )

    raw_body = await request.body()

    if settings.queue_signing_keys and not verify_queue_signature(
        upstash_signature,
        raw_body,
        settings.callback_url(POLL_TASK_PATH),
        settings.queue_signing_keys,
    ):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid queue signature")

    return raw_body


def require_admin(
    x_admin_token: Annotated[str | None, Header()] = None,
    settings: Settings = Depends(get_settings),
) -> None:
    """Guard for operator routes.

    Raises:
        HTTPException: 404 if ADMIN_TOKEN is not configured, 401 if the token is wrong
    """
    if not settings.admin_token:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not Found")
    if not x_admin_token or not hmac.compare_digest(x_admin_token, settings.admin_token):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid admin token")
