"""Replicate adapter: flux-schnell text-to-image.

The replicate SDK is synchronous, so every call runs in a worker thread.
Predictions are created with a `completed` webhook filter.
"""

import asyncio
from typing import Any, Optional

import replicate
import structlog
from replicate.exceptions import ReplicateError

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

ASPECT_RATIOS = {
    "square_1_1": "1:1",
    "classic_4_3": "4:3",
    "traditional_3_4": "3:4",
    "widescreen_16_9": "16:9",
    "social_story_9_16": "9:16",
    "standard_3_2": "3:2",
    "portrait_2_3": "2:3",
    "horizontal_2_1": "16:9",
    "vertical_1_2": "9:16",
    "social_post_4_5": "4:5",
}


class ReplicateAdapter(ProviderAdapter):
    name = "replicate"
    uses_key_pool = False

    def __init__(
        self,
        api_token: str,
        model: str = "black-forest-labs/flux-schnell",
        client: Any = None,
    ):
        self.api_token = api_token
        self.model = model
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            if not self.api_token:
                raise ProviderPermanentError("REPLICATE_API_TOKEN not configured")
            self._client = replicate.Client(api_token=self.api_token)
        return self._client

    async def submit(
        self,
        task: Task,
        credential: Optional[str],
        callback_url: str,
        source: Optional[SourceImage] = None,
    ) -> Submission:
        params = task.parameters
        prediction_input: dict[str, Any] = {
            "prompt": params["prompt"],
            "aspect_ratio": ASPECT_RATIOS.get(params.get("aspect_ratio", "square_1_1"), "1:1"),
        }
        if params.get("seed") is not None:
            prediction_input["seed"] = params["seed"]

        def _create() -> Any:
            return self.client.predictions.create(
                model=self.model,
                input=prediction_input,
                webhook=callback_url,
                webhook_events_filter=["completed"],
            )

        try:
            prediction = await asyncio.to_thread(_create)
        except (ReplicateError, ConnectionError, OSError, TimeoutError) as e:
            raise classify_provider_error(e) from e

        logger.info("provider.replicate.submitted", task_id=str(task.id), provider_task_id=prediction.id)
        return Submission(provider_task_id=str(prediction.id))

    async def query_status(
        self, provider_task_id: str, credential: Optional[str], task: Task
    ) -> ProviderReport:
        try:
            prediction = await asyncio.to_thread(self.client.predictions.get, provider_task_id)
        except (ReplicateError, ConnectionError, OSError, TimeoutError) as e:
            raise classify_provider_error(e) from e

        return self._report(
            {
                "id": prediction.id,
                "status": prediction.status,
                "output": prediction.output,
                "error": prediction.error,
            }
        )

    def parse_webhook(self, payload: dict[str, Any]) -> ProviderReport:
        if not payload.get("status"):
            raise ValueError("Replicate webhook payload missing status")
        return self._report(payload)

    def _report(self, prediction: dict[str, Any]) -> ProviderReport:
        raw_status = prediction.get("status")
        state = self.normalize_status(raw_status)
        result_url = None
        error = None

        if state == ProviderState.COMPLETED:
            result_url = self.extract_result(prediction)
            if not result_url:
                state = ProviderState.FAILED
                error = "Replicate returned no output"
        elif state == ProviderState.FAILED:
            error = str(prediction.get("error") or f"Replicate prediction {raw_status}")

        return ProviderReport(
            provider_task_id=prediction.get("id"),
            state=state,
            result_url=result_url,
            error=error,
            raw_status=raw_status,
        )

    def extract_result(self, payload: dict[str, Any]) -> Optional[str]:
        output = payload.get("output")
        if isinstance(output, list) and output:
            return str(output[0])
        if isinstance(output, str) and output:
            return output
        return None
