"""Freepik adapter: image upscaler, background removal and flux-dev text-to-image.

Freepik credentials come from the provider key pool and are sent in the
`x-freepik-api-key` header.
"""

import uuid
from typing import Any, Optional

import httpx
import structlog

from pixelrelay.models.task import Task, TaskKind
from pixelrelay.services.exceptions import ProviderPermanentError
from pixelrelay.services.providers.base import (
    ProviderAdapter,
    ProviderReport,
    ProviderState,
    SourceImage,
    Submission,
    classify_provider_error,
)

logger = structlog.get_logger()

UPSCALER_PATH = "/v1/ai/image-upscaler"
FLUX_DEV_PATH = "/v1/ai/text-to-image/flux-dev"
REMOVE_BACKGROUND_PATH = "/v1/ai/beta/remove-background"

USER_AGENT = "pixelrelay/0.1"


class FreepikAdapter(ProviderAdapter):
    name = "freepik"
    uses_key_pool = True

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        api_base: str = "https://api.freepik.com",
        submit_timeout: float = 120.0,
        query_timeout: float = 30.0,
    ):
        self.http_client = http_client
        self.api_base = api_base.rstrip("/")
        self.submit_timeout = submit_timeout
        self.query_timeout = query_timeout

    def _headers(self, credential: Optional[str]) -> dict[str, str]:
        if not credential:
            raise ProviderPermanentError("Freepik API key missing")
        return {"x-freepik-api-key": credential, "User-Agent": USER_AGENT}

    def _endpoint(self, kind: TaskKind) -> str:
        if kind == TaskKind.UPSCALE:
            return UPSCALER_PATH
        if kind == TaskKind.TEXT_TO_IMAGE:
            return FLUX_DEV_PATH
        raise ProviderPermanentError(f"Freepik has no asynchronous endpoint for {kind}")

    def build_payload(
        self, task: Task, callback_url: str, source: Optional[SourceImage]
    ) -> dict[str, Any]:
        """Request body for the asynchronous endpoints."""
        params = task.parameters
        if task.kind == TaskKind.UPSCALE:
            if source is None:
                raise ProviderPermanentError("Upscale requires a source image")
            payload: dict[str, Any] = {
                "image": source.data_b64,
                "scale_factor": params["scale_factor"],
                "optimized_for": params.get("optimized_for", "standard"),
                "webhook_url": callback_url,
                "creativity": params.get("creativity", 0),
                "hdr": params.get("hdr", 0),
                "resemblance": params.get("resemblance", 0),
                "fractality": params.get("fractality", 0),
                "engine": task.engine,
            }
            if params.get("prompt"):
                payload["prompt"] = params["prompt"]
            return payload

        payload = {
            "prompt": params["prompt"],
            "aspect_ratio": params.get("aspect_ratio", "square_1_1"),
            "webhook_url": callback_url,
        }
        if params.get("seed") is not None:
            payload["seed"] = params["seed"]
        return payload

    async def submit(
        self,
        task: Task,
        credential: Optional[str],
        callback_url: str,
        source: Optional[SourceImage] = None,
    ) -> Submission:
        """Submit a job to Freepik.

        Background removal is synchronous: the result is returned by the
        submission call and reported through `Submission.immediate`.
        """
        if TaskKind(task.kind) == TaskKind.BACKGROUND_REMOVAL:
            return await self._remove_background(credential, source)

        try:
            response = await self.http_client.post(
                f"{self.api_base}{self._endpoint(TaskKind(task.kind))}",
                json=self.build_payload(task, callback_url, source),
                headers=self._headers(credential),
                timeout=self.submit_timeout,
            )
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise classify_provider_error(e) from e

        data = body.get("data") or {}
        provider_task_id = data.get("task_id")
        if not provider_task_id:
            raise ProviderPermanentError("Freepik response carried no task_id")

        logger.info("provider.freepik.submitted", task_id=str(task.id), provider_task_id=provider_task_id)
        return Submission(provider_task_id=str(provider_task_id))

    async def _remove_background(
        self, credential: Optional[str], source: Optional[SourceImage]
    ) -> Submission:
        if source is None or not source.url:
            raise ProviderPermanentError("Background removal requires a stored source image URL")

        try:
            response = await self.http_client.post(
                f"{self.api_base}{REMOVE_BACKGROUND_PATH}",
                data={"image_url": source.url},
                headers=self._headers(credential),
                timeout=self.submit_timeout,
            )
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise classify_provider_error(e) from e

        provider_task_id = f"rbg_{uuid.uuid4().hex}"
        result_url = body.get("high_resolution") or body.get("url")
        if result_url:
            report = ProviderReport(
                provider_task_id=provider_task_id,
                state=ProviderState.COMPLETED,
                result_url=result_url,
                raw_status="DONE",
            )
        else:
            report = ProviderReport(
                provider_task_id=provider_task_id,
                state=ProviderState.FAILED,
                error="Freepik returned no background removal result",
                raw_status="FAILED",
            )
        return Submission(provider_task_id=provider_task_id, immediate=report)

    async def query_status(
        self, provider_task_id: str, credential: Optional[str], task: Task
    ) -> ProviderReport:
        kind = TaskKind(task.kind)
        if kind == TaskKind.BACKGROUND_REMOVAL:
            raise ProviderPermanentError("Background removal has no status endpoint")

        try:
            response = await self.http_client.get(
                f"{self.api_base}{self._endpoint(kind)}/{provider_task_id}",
                headers=self._headers(credential),
                timeout=self.query_timeout,
            )
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise classify_provider_error(e) from e

        return self._report(body.get("data") or body, provider_task_id)

    def parse_webhook(self, payload: dict[str, Any]) -> ProviderReport:
        data = payload.get("data") if isinstance(payload.get("data"), dict) else payload
        provider_task_id = data.get("task_id") or data.get("request_id")
        if not data.get("status"):
            raise ValueError("Freepik webhook payload missing status")
        return self._report(data, provider_task_id)

    def _report(self, data: dict[str, Any], provider_task_id: Optional[str]) -> ProviderReport:
        raw_status = data.get("status")
        state = self.normalize_status(raw_status)
        result_url = self.extract_result(data) if state == ProviderState.COMPLETED else None
        error = None
        if state == ProviderState.FAILED:
            error = _error_text(data.get("error")) or "Freepik reported failure"

        progress = data.get("progress")
        return ProviderReport(
            provider_task_id=str(provider_task_id) if provider_task_id else None,
            state=state,
            result_url=result_url,
            error=error,
            progress=int(progress) if isinstance(progress, (int, float)) else None,
            raw_status=raw_status,
        )

    def extract_result(self, payload: dict[str, Any]) -> Optional[str]:
        if payload.get("image_url"):
            return payload["image_url"]

        generated = payload.get("generated") or []
        if generated:
            first = generated[0]
            if isinstance(first, str):
                return first
            if isinstance(first, dict):
                return first.get("url") or first.get("image_url")

        return payload.get("high_resolution")


def _error_text(error: Any) -> Optional[str]:
    if not error:
        return None
    if isinstance(error, dict):
        return str(error.get("message") or error)
    return str(error)
