"""fal.ai adapter: image editing through the fal queue REST API.

Submission: POST {queue}/{model}?fal_webhook=<callback>
Status:     GET  {queue}/{model}/requests/{request_id}/status
Result:     GET  {queue}/{model}/requests/{request_id}
"""

from typing import Any, Optional
from urllib.parse import urlencode

import httpx
import structlog

from pixelrelay.models.task import Task
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


class FalAdapter(ProviderAdapter):
    name = "fal"
    uses_key_pool = False

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        api_key: str,
        model: str = "fal-ai/qwen-image-edit",
        queue_base: str = "https://queue.fal.run",
        submit_timeout: float = 120.0,
        query_timeout: float = 30.0,
    ):
        self.http_client = http_client
        self.api_key = api_key
        self.model = model.strip("/")
        self.queue_base = queue_base.rstrip("/")
        self.submit_timeout = submit_timeout
        self.query_timeout = query_timeout

    def _headers(self, credential: Optional[str]) -> dict[str, str]:
        key = credential or self.api_key
        if not key:
            raise ProviderPermanentError("FAL_API_KEY not configured")
        return {"Authorization": f"Key {key}"}

    def _request_url(self, request_id: str, suffix: str = "") -> str:
        return f"{self.queue_base}/{self.model}/requests/{request_id}{suffix}"

    async def submit(
        self,
        task: Task,
        credential: Optional[str],
        callback_url: str,
        source: Optional[SourceImage] = None,
    ) -> Submission:
        if source is None or not source.url:
            raise ProviderPermanentError("Image edit requires a stored source image URL")

        params = task.parameters
        body = {
            "image_url": source.url,
            "prompt": params["prompt"],
            "num_images": params.get("num_images", 1),
            "guidance_scale": params.get("guidance_scale", 4),
            "num_inference_steps": params.get("num_inference_steps", 30),
        }
        url = f"{self.queue_base}/{self.model}?{urlencode({'fal_webhook': callback_url})}"

        try:
            response = await self.http_client.post(
                url, json=body, headers=self._headers(credential), timeout=self.submit_timeout
            )
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise classify_provider_error(e) from e

        request_id = data.get("request_id")
        if not request_id:
            raise ProviderPermanentError("fal response carried no request_id")

        logger.info("provider.fal.submitted", task_id=str(task.id), provider_task_id=request_id)
        return Submission(provider_task_id=str(request_id))

    async def query_status(
        self, provider_task_id: str, credential: Optional[str], task: Task
    ) -> ProviderReport:
        headers = self._headers(credential)
        try:
            response = await self.http_client.get(
                self._request_url(provider_task_id, "/status"),
                headers=headers,
                timeout=self.query_timeout,
            )
            response.raise_for_status()
            status_body = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise classify_provider_error(e) from e

        raw_status = status_body.get("status")
        state = self.normalize_status(raw_status)
        if state != ProviderState.COMPLETED:
            return ProviderReport(
                provider_task_id=provider_task_id,
                state=state,
                error=_error_text(status_body.get("error")) if state == ProviderState.FAILED else None,
                raw_status=raw_status,
            )

        # COMPLETED on the status endpoint also covers failed runs; the result tells them apart
        try:
            response = await self.http_client.get(
                self._request_url(provider_task_id), headers=headers, timeout=self.query_timeout
            )
            if response.status_code in (400, 422, 500):
                return ProviderReport(
                    provider_task_id=provider_task_id,
                    state=ProviderState.FAILED,
                    error=_error_text(_safe_json(response).get("detail")) or "fal request failed",
                    raw_status="ERROR",
                )
            response.raise_for_status()
            result_body = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise classify_provider_error(e) from e

        return self._completed_report(provider_task_id, result_body, raw_status)

    def parse_webhook(self, payload: dict[str, Any]) -> ProviderReport:
        request_id = payload.get("request_id") or payload.get("gateway_request_id")
        raw_status = payload.get("status")
        if not raw_status:
            raise ValueError("fal webhook payload missing status")

        state = self.normalize_status(raw_status)
        if state == ProviderState.COMPLETED:
            return self._completed_report(request_id, payload, raw_status)

        error = None
        if state == ProviderState.FAILED:
            error = _error_text(payload.get("error") or (payload.get("payload") or {}).get("detail"))
        return ProviderReport(
            provider_task_id=request_id,
            state=state,
            error=error or ("fal reported failure" if state == ProviderState.FAILED else None),
            raw_status=raw_status,
        )

    def _completed_report(
        self, request_id: Optional[str], body: dict[str, Any], raw_status: Optional[str]
    ) -> ProviderReport:
        result_url = self.extract_result(body)
        if not result_url:
            return ProviderReport(
                provider_task_id=request_id,
                state=ProviderState.FAILED,
                error="fal returned no image",
                raw_status=raw_status,
            )
        return ProviderReport(
            provider_task_id=request_id,
            state=ProviderState.COMPLETED,
            result_url=result_url,
            raw_status=raw_status,
        )

    def extract_result(self, payload: dict[str, Any]) -> Optional[str]:
        for container in (payload.get("payload"), payload.get("output"), payload):
            if not isinstance(container, dict):
                continue
            images = container.get("images") or []
            if images and isinstance(images[0], dict) and images[0].get("url"):
                return images[0]["url"]
        return None


def _safe_json(response: httpx.Response) -> dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def _error_text(error: Any) -> Optional[str]:
    if not error:
        return None
    if isinstance(error, list):
        return "; ".join(str(item.get("msg", item)) if isinstance(item, dict) else str(item) for item in error)
    if isinstance(error, dict):
        return str(error.get("message") or error)
    return str(error)
