"""Provider adapter interface, status normalization and error classification.

Every upstream AI provider is wrapped by a ProviderAdapter so the orchestration
core (submission, completion, reconciliation) never deals with provider wire
formats directly.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

import httpx

from pixelrelay.models.task import Task
from pixelrelay.services.exceptions import (
    ProviderError,
    ProviderPermanentError,
    ProviderTimeoutError,
    ProviderTransientError,
)


class ProviderState(str, Enum):
    """Internal status vocabulary every provider status is mapped onto."""

    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not ProviderState.PROCESSING


COMPLETED_STATUSES = frozenset({"DONE", "COMPLETED", "OK", "SUCCEEDED", "SUCCESS"})
FAILED_STATUSES = frozenset({"FAILED", "ERROR", "CANCELED", "CANCELLED"})


def normalize_status(raw: Optional[str]) -> ProviderState:
    """Map a provider status string onto ProviderState (case-insensitive).

    Unknown values, including CREATED/IN_QUEUE/IN_PROGRESS/STARTING, are
    treated as still processing.
    """
    value = (raw or "").strip().upper()
    if value in COMPLETED_STATUSES:
        return ProviderState.COMPLETED
    if value in FAILED_STATUSES:
        return ProviderState.FAILED
    return ProviderState.PROCESSING


@dataclass
class ProviderReport:
    """Normalized observation of a provider job."""

    provider_task_id: Optional[str]
    state: ProviderState
    result_url: Optional[str] = None
    error: Optional[str] = None
    progress: Optional[int] = None
    raw_status: Optional[str] = None


@dataclass
class Submission:
    """Result of a provider submission.

    Synchronous providers complete during submission and carry the final
    report in `immediate`.
    """

    provider_task_id: str
    immediate: Optional[ProviderReport] = None


@dataclass
class SourceImage:
    """Input image handed to a provider: inline base64 and its stored public URL."""

    data_b64: str
    content_type: str
    url: Optional[str] = None
    extra: dict[str, Any] = field(default_factory=dict)


class ProviderAdapter(ABC):
    """Per-provider protocol adapter.

    Attributes:
        name: Provider name used in routes, task rows and key pools
        uses_key_pool: Whether credentials come from the provider key pool
    """

    name: str = ""
    uses_key_pool: bool = False

    @abstractmethod
    async def submit(
        self,
        task: Task,
        credential: Optional[str],
        callback_url: str,
        source: Optional[SourceImage] = None,
    ) -> Submission:
        """Submit the task to the provider.

        Raises:
            ProviderError: Classified by classify_provider_error()
        """

    @abstractmethod
    async def query_status(
        self, provider_task_id: str, credential: Optional[str], task: Task
    ) -> ProviderReport:
        """Actively query the provider for the job's current status.

        Raises:
            ProviderError: Classified by classify_provider_error()
        """

    @abstractmethod
    def parse_webhook(self, payload: dict[str, Any]) -> ProviderReport:
        """Parse a provider push payload.

        Raises:
            ValueError: If the payload carries no task id or status
        """

    @abstractmethod
    def extract_result(self, payload: dict[str, Any]) -> Optional[str]:
        """Pull the result URL out of a provider payload."""

    def normalize_status(self, raw: Optional[str]) -> ProviderState:
        return normalize_status(raw)


def classify_provider_error(exception: BaseException) -> ProviderError:
    """Classify an exception raised while talking to a provider.

    Classification rules:
        - Read/write timeouts → ProviderTimeoutError (request may have landed)
        - Connect/pool timeouts, connection errors → ProviderTransientError
        - 429 and 5xx responses → ProviderTransientError
        - 400/401/403/404/422 and other responses → ProviderPermanentError
        - Anything else → ProviderPermanentError

    Args:
        exception: Original exception from httpx, a provider SDK or the network layer

    Returns:
        Classified ProviderError subclass instance
    """
    if isinstance(exception, ProviderError):
        return exception

    if isinstance(exception, (httpx.ConnectTimeout, httpx.PoolTimeout)):
        return ProviderTransientError(f"Provider unreachable: {exception}")

    if isinstance(exception, (httpx.TimeoutException, TimeoutError)):
        return ProviderTimeoutError(f"Provider call timed out: {exception}")

    if isinstance(exception, httpx.HTTPStatusError):
        return classify_status_code(exception.response.status_code, exception.response.text)

    status = getattr(exception, "status", None)
    if isinstance(status, int):
        return classify_status_code(status, str(exception))

    if isinstance(exception, (httpx.TransportError, ConnectionError, OSError)):
        return ProviderTransientError(f"Connection error: {exception}")

    return ProviderPermanentError(f"Unexpected provider error: {exception}")


def classify_status_code(status_code: int, detail: str = "") -> ProviderError:
    detail = detail[:300]
    if status_code == 429:
        return ProviderTransientError(f"Rate limit exceeded (429): {detail}")
    if status_code >= 500:
        return ProviderTransientError(f"Provider unavailable ({status_code}): {detail}")
    return ProviderPermanentError(f"Provider rejected request ({status_code}): {detail}")
