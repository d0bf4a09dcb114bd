"""Task entity - one unit of submitted AI processing work."""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column, DateTime
from sqlmodel import Field, SQLModel

from pixelrelay.core.timezone import as_utc, utcnow


class TaskStatus(str, Enum):
    """Task lifecycle status.

    `uploading` is a transient sub-state of `processing`: a terminal provider
    result was observed and the result relay is in flight.
    """

    PROCESSING = "processing"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED)


TERMINAL_STATUSES = (TaskStatus.COMPLETED, TaskStatus.FAILED)
ACTIVE_STATUSES = (TaskStatus.PROCESSING, TaskStatus.UPLOADING)


class TaskKind(str, Enum):
    """Provider operation a task performs."""

    UPSCALE = "upscale"
    BACKGROUND_REMOVAL = "background_removal"
    TEXT_TO_IMAGE = "text_to_image"
    IMAGE_EDIT = "image_edit"


class InvalidStateTransition(Exception):
    """Raised when attempting to move a task out of a terminal state."""

    pass


class Task(SQLModel, table=True):
    """Durable record of a task. Single source of truth for its status."""

    __tablename__ = "tasks"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    provider_task_id: Optional[str] = Field(default=None, max_length=255, unique=True, index=True)
    owner: str = Field(max_length=255, index=True)
    is_trial: bool = Field(default=False)
    kind: TaskKind = Field(index=True)
    provider: str = Field(max_length=50)
    engine: str = Field(max_length=100)
    status: TaskStatus = Field(default=TaskStatus.PROCESSING, index=True)
    parameters: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    credits_consumed: int = Field(default=0, ge=0)
    provider_key_id: Optional[UUID] = Field(default=None, foreign_key="provider_keys.id")
    source_object_ref: Optional[str] = Field(default=None, max_length=1024)
    result_object_ref: Optional[str] = Field(default=None, max_length=1024)
    result_url: Optional[str] = Field(default=None, max_length=2048)
    error: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    poll_attempts: int = Field(default=0, ge=0)
    created_at: datetime = Field(
        default_factory=utcnow, sa_type=DateTime(timezone=True), index=True
    )
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))
    completed_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))

    @property
    def is_terminal(self) -> bool:
        return TaskStatus(self.status).is_terminal

    @property
    def owner_scope(self) -> str:
        """Object store prefix for this task's blobs."""
        if self.is_trial:
            return "anonymous"
        return f"users/{self.owner}"

    def age_seconds(self, now: datetime | None = None) -> float:
        return (as_utc(now or utcnow()) - as_utc(self.created_at)).total_seconds()

    def mark_completed(self, result_object_ref: str, result_url: str) -> None:
        """Transition to completed with the relayed result.

        Raises:
            InvalidStateTransition: If the task is already terminal
        """
        if self.is_terminal:
            raise InvalidStateTransition(
                f"Cannot mark completed from terminal state {TaskStatus(self.status).value}."
            )
        if not result_url:
            raise ValueError("result_url is required")
        now = utcnow()
        self.status = TaskStatus.COMPLETED
        self.result_object_ref = result_object_ref
        self.result_url = result_url
        self.error = None
        self.completed_at = now
        self.updated_at = now

    def mark_failed(self, error_dict: dict) -> None:
        """Transition from any non-terminal state to failed.

        Args:
            error_dict: Error details (`code`, `message`) to store in the error field

        Raises:
            InvalidStateTransition: If the task is already terminal
        """
        if self.is_terminal:
            raise InvalidStateTransition(
                f"Cannot mark failed from terminal state {TaskStatus(self.status).value}."
            )
        now = utcnow()
        self.status = TaskStatus.FAILED
        self.error = error_dict
        self.completed_at = now
        self.updated_at = now
