"""Provider adapter tests: wire formats, status normalization and error classification."""

import json
from types import SimpleNamespace
from urllib.parse import parse_qs

import httpx
import pytest

from pixelrelay.models.task import Task, TaskKind
from pixelrelay.services.exceptions import (
    ProviderError,
    ProviderPermanentError,
    ProviderTimeoutError,
    ProviderTransientError,
)
from pixelrelay.services.providers import FalAdapter, FreepikAdapter, ReplicateAdapter
from pixelrelay.services.providers.base import (
    ProviderState,
    SourceImage,
    classify_provider_error,
    normalize_status,
)

CALLBACK = "https://api.example.com/webhooks/freepik?task=abc"
SOURCE = SourceImage(data_b64="aGVsbG8=", content_type="image/png", url="https://cdn.example.com/src.png")
RESULT = "https://provider.example.com/out.png"


def make_task(kind: TaskKind, **parameters) -> Task:
    return Task(owner="user-1", kind=kind, provider="freepik", engine="automatic", parameters=parameters)


class Recorder:
    """MockTransport handler returning scripted responses and recording requests."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response


def client_for(recorder: Recorder) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(recorder))


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("DONE", ProviderState.COMPLETED),
        ("completed", ProviderState.COMPLETED),
        ("OK", ProviderState.COMPLETED),
        ("succeeded", ProviderState.COMPLETED),
        ("FAILED", ProviderState.FAILED),
        ("error", ProviderState.FAILED),
        ("canceled", ProviderState.FAILED),
        ("CREATED", ProviderState.PROCESSING),
        ("IN_QUEUE", ProviderState.PROCESSING),
        ("IN_PROGRESS", ProviderState.PROCESSING),
        ("starting", ProviderState.PROCESSING),
        ("", ProviderState.PROCESSING),
        (None, ProviderState.PROCESSING),
    ],
)
def test_normalize_status(raw, expected):
    assert normalize_status(raw) == expected


class TestClassifyProviderError:
    request = httpx.Request("POST", "https://api.freepik.com/v1/ai/image-upscaler")

    def status_error(self, code: int) -> httpx.HTTPStatusError:
        response = httpx.Response(code, text="nope", request=self.request)
        return httpx.HTTPStatusError("error", request=self.request, response=response)

    def test_read_timeout_is_ambiguous(self):
        assert type(classify_provider_error(httpx.ReadTimeout("slow"))) is ProviderTimeoutError

    def test_connect_timeout_is_transient(self):
        assert type(classify_provider_error(httpx.ConnectTimeout("down"))) is ProviderTransientError

    @pytest.mark.parametrize("code", [429, 500, 502, 503])
    def test_retryable_status(self, code):
        assert type(classify_provider_error(self.status_error(code))) is ProviderTransientError

    @pytest.mark.parametrize("code", [400, 401, 403, 404, 422])
    def test_rejected_status(self, code):
        assert type(classify_provider_error(self.status_error(code))) is ProviderPermanentError

    def test_sdk_error_with_status_attribute(self):
        error = Exception("throttled")
        error.status = 429  # type: ignore[attr-defined]

        assert type(classify_provider_error(error)) is ProviderTransientError

    def test_connection_error_is_transient(self):
        assert type(classify_provider_error(httpx.ConnectError("refused"))) is ProviderTransientError

    def test_unknown_error_is_permanent(self):
        assert type(classify_provider_error(KeyError("data"))) is ProviderPermanentError

    def test_provider_error_passes_through(self):
        error = ProviderTimeoutError("already classified")

        assert classify_provider_error(error) is error


@pytest.mark.asyncio
class TestFreepikAdapter:
    async def test_submit_upscale(self):
        recorder = Recorder(httpx.Response(200, json={"data": {"task_id": "fp-1", "status": "CREATED"}}))
        async with client_for(recorder) as client:
            adapter = FreepikAdapter(client)
            submission = await adapter.submit(
                make_task(TaskKind.UPSCALE, scale_factor="4x", creativity=2, prompt="crisp"),
                "fpk-secret",
                CALLBACK,
                SOURCE,
            )

        assert submission.provider_task_id == "fp-1"
        assert submission.immediate is None
        [request] = recorder.requests
        assert request.url == "https://api.freepik.com/v1/ai/image-upscaler"
        assert request.headers["x-freepik-api-key"] == "fpk-secret"
        body = json.loads(request.content)
        assert body["image"] == SOURCE.data_b64
        assert body["scale_factor"] == "4x"
        assert body["creativity"] == 2
        assert body["prompt"] == "crisp"
        assert body["webhook_url"] == CALLBACK
        assert body["engine"] == "automatic"

    async def test_submit_text_to_image(self):
        recorder = Recorder(httpx.Response(200, json={"data": {"task_id": "fp-2"}}))
        async with client_for(recorder) as client:
            submission = await FreepikAdapter(client).submit(
                make_task(TaskKind.TEXT_TO_IMAGE, prompt="a fox", seed=42), "fpk-secret", CALLBACK
            )

        assert submission.provider_task_id == "fp-2"
        assert recorder.requests[0].url.path == "/v1/ai/text-to-image/flux-dev"
        body = json.loads(recorder.requests[0].content)
        assert body == {"prompt": "a fox", "aspect_ratio": "square_1_1", "webhook_url": CALLBACK, "seed": 42}

    async def test_submit_without_credential(self):
        async with client_for(Recorder(httpx.Response(200, json={}))) as client:
            with pytest.raises(ProviderPermanentError):
                await FreepikAdapter(client).submit(
                    make_task(TaskKind.UPSCALE, scale_factor="2x"), None, CALLBACK, SOURCE
                )

    @pytest.mark.parametrize(
        "response,error",
        [
            (httpx.Response(429, text="slow down"), ProviderTransientError),
            (httpx.Response(401, text="bad key"), ProviderPermanentError),
            (httpx.ReadTimeout("slow"), ProviderTimeoutError),
            (httpx.Response(200, json={"data": {}}), ProviderPermanentError),
        ],
    )
    async def test_submit_failures(self, response, error):
        async with client_for(Recorder(response)) as client:
            with pytest.raises(error):
                await FreepikAdapter(client).submit(
                    make_task(TaskKind.UPSCALE, scale_factor="2x"), "fpk-secret", CALLBACK, SOURCE
                )

    async def test_background_removal_is_synchronous(self):
        recorder = Recorder(httpx.Response(200, json={"high_resolution": RESULT, "preview": "p.png"}))
        async with client_for(recorder) as client:
            submission = await FreepikAdapter(client).submit(
                make_task(TaskKind.BACKGROUND_REMOVAL), "fpk-secret", CALLBACK, SOURCE
            )

        assert submission.provider_task_id.startswith("rbg_")
        assert submission.immediate.state == ProviderState.COMPLETED
        assert submission.immediate.result_url == RESULT
        assert parse_qs(recorder.requests[0].content.decode()) == {"image_url": [SOURCE.url]}

    async def test_background_removal_without_result(self):
        async with client_for(Recorder(httpx.Response(200, json={}))) as client:
            submission = await FreepikAdapter(client).submit(
                make_task(TaskKind.BACKGROUND_REMOVAL), "fpk-secret", CALLBACK, SOURCE
            )

        assert submission.immediate.state == ProviderState.FAILED

    async def test_query_status(self):
        recorder = Recorder(
            httpx.Response(200, json={"data": {"task_id": "fp-1", "status": "COMPLETED", "generated": [RESULT]}})
        )
        async with client_for(recorder) as client:
            report = await FreepikAdapter(client).query_status(
                "fp-1", "fpk-secret", make_task(TaskKind.UPSCALE, scale_factor="2x")
            )

        assert recorder.requests[0].url.path == "/v1/ai/image-upscaler/fp-1"
        assert report.state == ProviderState.COMPLETED
        assert report.result_url == RESULT

    async def test_query_in_progress(self):
        recorder = Recorder(httpx.Response(200, json={"data": {"status": "IN_PROGRESS", "progress": 35}}))
        async with client_for(recorder) as client:
            report = await FreepikAdapter(client).query_status(
                "fp-1", "fpk-secret", make_task(TaskKind.TEXT_TO_IMAGE, prompt="x")
            )

        assert report.state == ProviderState.PROCESSING
        assert report.progress == 35
        assert report.provider_task_id == "fp-1"

    def test_parse_webhook(self):
        adapter = FreepikAdapter(httpx.AsyncClient())

        done = adapter.parse_webhook({"data": {"task_id": "fp-1", "status": "DONE", "generated": [{"url": RESULT}]}})
        failed = adapter.parse_webhook({"task_id": "fp-2", "status": "FAILED", "error": {"message": "NSFW"}})

        assert (done.provider_task_id, done.state, done.result_url) == ("fp-1", ProviderState.COMPLETED, RESULT)
        assert (failed.state, failed.error) == (ProviderState.FAILED, "NSFW")
        with pytest.raises(ValueError):
            adapter.parse_webhook({"task_id": "fp-3"})


@pytest.mark.asyncio
class TestFalAdapter:
    async def test_submit(self):
        recorder = Recorder(httpx.Response(200, json={"request_id": "req-1", "status": "IN_QUEUE"}))
        async with client_for(recorder) as client:
            submission = await FalAdapter(client, api_key="fal-key").submit(
                make_task(TaskKind.IMAGE_EDIT, prompt="add snow", num_images=2), None, CALLBACK, SOURCE
            )

        assert submission.provider_task_id == "req-1"
        [request] = recorder.requests
        assert request.url.path == "/fal-ai/qwen-image-edit"
        assert request.url.params["fal_webhook"] == CALLBACK
        assert request.headers["Authorization"] == "Key fal-key"
        body = json.loads(request.content)
        assert body["image_url"] == SOURCE.url
        assert body["num_images"] == 2

    async def test_submit_requires_source_url(self):
        async with client_for(Recorder(httpx.Response(200, json={}))) as client:
            with pytest.raises(ProviderPermanentError):
                await FalAdapter(client, api_key="fal-key").submit(
                    make_task(TaskKind.IMAGE_EDIT, prompt="x"), None, CALLBACK, None
                )

    async def test_query_in_progress(self):
        recorder = Recorder(httpx.Response(200, json={"status": "IN_PROGRESS"}))
        async with client_for(recorder) as client:
            report = await FalAdapter(client, api_key="fal-key").query_status(
                "req-1", None, make_task(TaskKind.IMAGE_EDIT, prompt="x")
            )

        assert report.state == ProviderState.PROCESSING
        assert recorder.requests[0].url.path == "/fal-ai/qwen-image-edit/requests/req-1/status"

    async def test_query_completed_fetches_result(self):
        recorder = Recorder(
            httpx.Response(200, json={"status": "COMPLETED"}),
            httpx.Response(200, json={"images": [{"url": RESULT}]}),
        )
        async with client_for(recorder) as client:
            report = await FalAdapter(client, api_key="fal-key").query_status(
                "req-1", None, make_task(TaskKind.IMAGE_EDIT, prompt="x")
            )

        assert report.state == ProviderState.COMPLETED
        assert report.result_url == RESULT
        assert recorder.requests[1].url.path == "/fal-ai/qwen-image-edit/requests/req-1"

    async def test_query_completed_with_failed_run(self):
        recorder = Recorder(
            httpx.Response(200, json={"status": "COMPLETED"}),
            httpx.Response(422, json={"detail": [{"msg": "image too large"}]}),
        )
        async with client_for(recorder) as client:
            report = await FalAdapter(client, api_key="fal-key").query_status(
                "req-1", None, make_task(TaskKind.IMAGE_EDIT, prompt="x")
            )

        assert report.state == ProviderState.FAILED
        assert report.error == "image too large"

    def test_parse_webhook(self):
        adapter = FalAdapter(httpx.AsyncClient(), api_key="fal-key")

        ok = adapter.parse_webhook({"request_id": "req-1", "status": "OK", "payload": {"images": [{"url": RESULT}]}})
        empty = adapter.parse_webhook({"request_id": "req-2", "status": "OK", "payload": {"images": []}})
        error = adapter.parse_webhook({"request_id": "req-3", "status": "ERROR", "error": "Invalid image"})

        assert (ok.state, ok.result_url) == (ProviderState.COMPLETED, RESULT)
        assert empty.state == ProviderState.FAILED
        assert (error.state, error.error) == (ProviderState.FAILED, "Invalid image")


class FakePredictions:
    def __init__(self):
        self.created: list[dict] = []
        self.prediction = SimpleNamespace(id="pred-1", status="starting", output=None, error=None)
        self.error: Exception | None = None

    def create(self, **kwargs):
        self.created.append(kwargs)
        if self.error:
            raise self.error
        return self.prediction

    def get(self, prediction_id):
        if self.error:
            raise self.error
        return self.prediction


@pytest.mark.asyncio
class TestReplicateAdapter:
    @pytest.fixture
    def predictions(self):
        return FakePredictions()

    @pytest.fixture
    def adapter(self, predictions):
        return ReplicateAdapter("r8-token", client=SimpleNamespace(predictions=predictions))

    async def test_submit(self, adapter, predictions):
        submission = await adapter.submit(
            make_task(TaskKind.TEXT_TO_IMAGE, prompt="a fox", aspect_ratio="widescreen_16_9", seed=7),
            None,
            "https://api.example.com/webhooks/replicate?task=abc",
        )

        assert submission.provider_task_id == "pred-1"
        [created] = predictions.created
        assert created["model"] == "black-forest-labs/flux-schnell"
        assert created["input"] == {"prompt": "a fox", "aspect_ratio": "16:9", "seed": 7}
        assert created["webhook_events_filter"] == ["completed"]

    async def test_submit_connection_failure(self, adapter, predictions):
        predictions.error = ConnectionError("reset by peer")

        with pytest.raises(ProviderTransientError):
            await adapter.submit(make_task(TaskKind.TEXT_TO_IMAGE, prompt="x"), None, CALLBACK)

    async def test_query_succeeded(self, adapter, predictions):
        predictions.prediction = SimpleNamespace(
            id="pred-1", status="succeeded", output=["https://replicate.delivery/out.webp"], error=None
        )

        report = await adapter.query_status("pred-1", None, make_task(TaskKind.TEXT_TO_IMAGE, prompt="x"))

        assert report.state == ProviderState.COMPLETED
        assert report.result_url == "https://replicate.delivery/out.webp"

    async def test_query_failure_is_classified(self, adapter, predictions):
        predictions.error = TimeoutError("timed out")

        with pytest.raises(ProviderError):
            await adapter.query_status("pred-1", None, make_task(TaskKind.TEXT_TO_IMAGE, prompt="x"))

    def test_parse_webhook(self, adapter):
        failed = adapter.parse_webhook({"id": "pred-2", "status": "failed", "error": "NSFW content"})
        empty = adapter.parse_webhook({"id": "pred-3", "status": "succeeded", "output": []})

        assert (failed.state, failed.error) == (ProviderState.FAILED, "NSFW content")
        assert empty.state == ProviderState.FAILED
        with pytest.raises(ValueError):
            adapter.parse_webhook({"id": "pred-4"})
