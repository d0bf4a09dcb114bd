"""Task submission and client status endpoints."""

from datetime import datetime
from typing import Literal
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, ConfigDict, Field

from pixelrelay.api.dependencies import get_owner, get_services
from pixelrelay.api.errors import to_http_exception
from pixelrelay.core.timezone import as_utc
from pixelrelay.models.task import TaskKind, TaskStatus
from pixelrelay.services.container import Services
from pixelrelay.services.exceptions import ServiceError
from pixelrelay.services.policies import RETRYABLE_ERROR_CODES
from pixelrelay.services.reconciliation import TaskSnapshot
from pixelrelay.services.submission import SubmissionReceipt, SubmissionRequest

logger = structlog.get_logger()
router = APIRouter(prefix="/api/tasks", tags=["tasks"])

ScaleFactor = Literal["2x", "4x", "8x", "16x"]
OptimizedFor = Literal[
    "standard",
    "soft_portraits",
    "hard_portraits",
    "art_n_illustration",
    "videogame_assets",
    "nature_n_landscapes",
    "films_n_photography",
    "3d_renders",
    "science_fiction_n_horror",
]
UpscaleEngine = Literal["automatic", "magnific_illusio", "magnific_sharpy", "magnific_sparkle"]
AspectRatio = Literal[
    "square_1_1",
    "classic_4_3",
    "traditional_3_4",
    "widescreen_16_9",
    "social_story_9_16",
    "standard_3_2",
    "portrait_2_3",
    "horizontal_2_1",
    "vertical_1_2",
    "social_post_4_5",
]


# Request/Response Models


class UpscaleRequest(BaseModel):
    """Request model for image upscaling."""

    image: str = Field(..., min_length=1, description="Base64 image, optionally as a data URL")
    scale_factor: ScaleFactor = Field(default="2x")
    optimized_for: OptimizedFor = Field(default="standard")
    prompt: str | None = Field(default=None, max_length=500)
    creativity: int = Field(default=0, ge=-10, le=10)
    hdr: int = Field(default=0, ge=-10, le=10)
    resemblance: int = Field(default=0, ge=-10, le=10)
    fractality: int = Field(default=0, ge=-10, le=10)
    engine: UpscaleEngine = Field(default="automatic")


class BackgroundRemovalRequest(BaseModel):
    image: str = Field(..., min_length=1, description="Base64 image, optionally as a data URL")


class TextToImageRequest(BaseModel):
    prompt: str = Field(..., min_length=1, max_length=1000)
    aspect_ratio: AspectRatio = Field(default="square_1_1")
    seed: int | None = Field(default=None, ge=1, le=4294967295)
    engine: Literal["flux-dev", "flux-schnell"] = Field(default="flux-dev")


class ImageEditRequest(BaseModel):
    image: str = Field(..., min_length=1, description="Base64 image, optionally as a data URL")
    prompt: str = Field(..., min_length=1, max_length=1000)
    num_images: int = Field(default=1, ge=1, le=4)
    guidance_scale: float = Field(default=4, ge=0, le=20)
    num_inference_steps: int = Field(default=30, ge=1, le=100)


class SubmissionResponse(BaseModel):
    """Response model for accepted submissions."""

    model_config = ConfigDict(populate_by_name=True)

    task_id: UUID = Field(..., alias="taskId", description="Internal task id")
    status: str = Field(..., description="processing, completed or failed")
    estimated_time: int = Field(
        ..., alias="estimatedTime", description="Typical completion time in seconds"
    )
    credits_consumed: int = Field(..., alias="creditsConsumed")


class TaskStatusResponse(BaseModel):
    """Client-facing projection of a task. Never exposes provider URLs or credentials."""

    model_config = ConfigDict(populate_by_name=True)

    task_id: UUID = Field(..., alias="taskId")
    status: str = Field(..., description="processing, completed or failed")
    progress: int | None = Field(default=None, description="Provider progress hint (0-100)")
    result_url: str | None = Field(default=None, alias="resultUrl")
    error: str | None = Field(default=None, description="Human-readable failure reason")
    can_retry: bool = Field(default=False, alias="canRetry")
    created_at: datetime = Field(..., alias="createdAt")
    completed_at: datetime | None = Field(default=None, alias="completedAt")


def to_submission_response(receipt: SubmissionReceipt) -> SubmissionResponse:
    return SubmissionResponse(
        task_id=receipt.task_id,
        status=receipt.status.value,
        estimated_time=receipt.estimated_seconds,
        credits_consumed=receipt.credits_consumed,
    )


def to_status_response(snapshot: TaskSnapshot) -> TaskStatusResponse:
    """Project a task for clients; `uploading` is reported as `processing`."""
    task = snapshot.task
    task_status = TaskStatus(task.status)
    public_status = TaskStatus.PROCESSING if task_status == TaskStatus.UPLOADING else task_status

    error_message = None
    can_retry = False
    if task_status == TaskStatus.FAILED:
        error = task.error or {}
        error_message = error.get("message") or "Task failed"
        can_retry = error.get("code") in RETRYABLE_ERROR_CODES

    return TaskStatusResponse(
        task_id=task.id,
        status=public_status.value,
        progress=snapshot.progress,
        result_url=task.result_url if task_status == TaskStatus.COMPLETED else None,
        error=error_message,
        can_retry=can_retry,
        created_at=as_utc(task.created_at),
        completed_at=as_utc(task.completed_at) if task.completed_at else None,
    )


async def _submit(
    services: Services, owner: str, request: SubmissionRequest
) -> SubmissionResponse:
    try:
        receipt = await services.submission.submit(owner, request)
    except ServiceError as e:
        logger.info("api.submission.rejected", owner=owner, kind=request.kind.value, code=e.code)
        raise to_http_exception(e) from e
    return to_submission_response(receipt)


# API Endpoints


@router.post("/upscale", response_model=SubmissionResponse, status_code=status.HTTP_202_ACCEPTED)
async def submit_upscale(
    request: UpscaleRequest,
    owner: str = Depends(get_owner),
    services: Services = Depends(get_services),
):
    parameters = request.model_dump(exclude={"image", "engine"}, exclude_none=True)
    return await _submit(
        services,
        owner,
        SubmissionRequest(
            kind=TaskKind.UPSCALE, engine=request.engine, parameters=parameters, image_b64=request.image
        ),
    )


@router.post(
    "/background-removal", response_model=SubmissionResponse, status_code=status.HTTP_202_ACCEPTED
)
async def submit_background_removal(
    request: BackgroundRemovalRequest,
    owner: str = Depends(get_owner),
    services: Services = Depends(get_services),
):
    return await _submit(
        services,
        owner,
        SubmissionRequest(
            kind=TaskKind.BACKGROUND_REMOVAL,
            engine="remove_background",
            parameters={},
            image_b64=request.image,
        ),
    )


@router.post("/text-to-image", response_model=SubmissionResponse, status_code=status.HTTP_202_ACCEPTED)
async def submit_text_to_image(
    request: TextToImageRequest,
    owner: str = Depends(get_owner),
    services: Services = Depends(get_services),
):
    parameters = request.model_dump(exclude={"engine"}, exclude_none=True)
    return await _submit(
        services,
        owner,
        SubmissionRequest(kind=TaskKind.TEXT_TO_IMAGE, engine=request.engine, parameters=parameters),
    )


@router.post("/image-edit", response_model=SubmissionResponse, status_code=status.HTTP_202_ACCEPTED)
async def submit_image_edit(
    request: ImageEditRequest,
    owner: str = Depends(get_owner),
    services: Services = Depends(get_services),
):
    parameters = request.model_dump(exclude={"image"})
    return await _submit(
        services,
        owner,
        SubmissionRequest(
            kind=TaskKind.IMAGE_EDIT,
            engine="qwen-image-edit",
            parameters=parameters,
            image_b64=request.image,
        ),
    )


@router.get("/status", response_model=TaskStatusResponse)
async def get_task_status(
    task_id: UUID = Query(..., alias="taskId"),
    owner: str = Depends(get_owner),
    services: Services = Depends(get_services),
):
    """Current task status for its owner.

    Stale tasks are reconciled before answering (active provider query past
    the soft timeout, forced failure past the absolute ceiling).

    Raises:
        HTTPException 403: Task belongs to another user
        HTTPException 404: Unknown task
    """
    try:
        snapshot = await services.reconciler.poll_status(task_id, owner)
    except ServiceError as e:
        raise to_http_exception(e) from e
    except Exception as e:
        logger.exception("api.status.failed", task_id=str(task_id), error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"code": "internal_error", "message": "Failed to read task status"},
        ) from e
    return to_status_response(snapshot)
