"""Anonymous one-shot trial endpoints.

Each browser fingerprint gets one free 2x upscale. The trial routes answer
404 when TRIAL_ENABLED is false.
"""

import structlog
from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from pixelrelay.api.dependencies import get_fingerprint, get_services, get_settings
from pixelrelay.api.errors import to_http_exception
from pixelrelay.api.routes.tasks import SubmissionResponse, to_submission_response
from pixelrelay.core.config import Settings
from pixelrelay.services.container import Services
from pixelrelay.services.exceptions import ServiceError

logger = structlog.get_logger()
router = APIRouter(prefix="/api/trial", tags=["trial"])


class TrialUpscaleRequest(BaseModel):
    image: str = Field(..., min_length=1, description="Base64 image, optionally as a data URL")


class TrialStatusResponse(BaseModel):
    used: bool = Field(..., description="Whether this fingerprint already used its trial")


def require_trial_enabled(settings: Settings = Depends(get_settings)) -> None:
    if not settings.trial_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not Found")


@router.post(
    "/upscale",
    response_model=SubmissionResponse,
    status_code=status.HTTP_202_ACCEPTED,
    dependencies=[Depends(require_trial_enabled)],
)
async def submit_trial_upscale(
    request: TrialUpscaleRequest,
    fingerprint: str = Depends(get_fingerprint),
    services: Services = Depends(get_services),
):
    """Submit the free trial upscale for this fingerprint.

    Raises:
        HTTPException 409: Fingerprint already used its trial
        HTTPException 503: No provider key available
    """
    try:
        receipt = await services.submission.submit_trial(fingerprint, request.image)
    except ServiceError as e:
        logger.info("api.trial.rejected", code=e.code)
        raise to_http_exception(e) from e
    return to_submission_response(receipt)


@router.get(
    "/status",
    response_model=TrialStatusResponse,
    dependencies=[Depends(require_trial_enabled)],
)
async def get_trial_status(
    fingerprint: str = Depends(get_fingerprint),
    services: Services = Depends(get_services),
):
    return TrialStatusResponse(used=await services.submission.trial_used(fingerprint))
