from unittest.mock import MagicMock

import pytest
import requests

from studio.errors import ErrorKind, StudioError, Surface
from studio.models.shared import MediaKind, ProviderStatus
from studio.services.provider.fal_ai import FalAiProvider

HANDLE = "fal-ai/veo3.1/requests/req-1"


def response(status_code=200, body=None):
    mock = MagicMock()
    mock.status_code = status_code
    mock.json.return_value = body if body is not None else {}
    mock.text = str(body)
    return mock


@pytest.fixture
def session():
    return MagicMock()


@pytest.fixture
def provider(session):
    return FalAiProvider(api_key="test-key", base_url="https://queue.test/", session=session)


def test_requires_api_key(monkeypatch):
    monkeypatch.setattr("config.FAL_API_KEY", None)
    with pytest.raises(ValueError):
        FalAiProvider(api_key=None, session=MagicMock())


def test_app_id():
    assert FalAiProvider.app_id("fal-ai/veo3.1/fast/image-to-video") == "fal-ai/veo3.1"


class TestCreateJob:
    @pytest.mark.asyncio
    async def test_returns_handle(self, provider, session):
        session.request.return_value = response(body={"request_id": "req-1"})

        handle = await provider.create_job("fal-ai/veo3.1/image-to-video", {"prompt": "x"})

        assert handle == "fal-ai/veo3.1/requests/req-1"
        args, kwargs = session.request.call_args
        assert args == ("POST", "https://queue.test/fal-ai/veo3.1/image-to-video")
        assert kwargs["json"] == {"prompt": "x"}
        assert kwargs["headers"]["Authorization"] == "Key test-key"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status_code,kind",
        [
            (422, ErrorKind.BAD_REQUEST),
            (401, ErrorKind.UNAUTHORIZED),
            (429, ErrorKind.RATE_LIMIT),
            (503, ErrorKind.UPSTREAM_UNAVAILABLE),
        ],
    )
    async def test_http_errors_are_mapped(self, provider, session, status_code, kind):
        session.request.return_value = response(status_code, {"detail": "nope"})

        with pytest.raises(StudioError) as exc_info:
            await provider.create_job("fal-ai/veo3.1", {})

        assert exc_info.value.kind == kind
        assert exc_info.value.surface == Surface.PROVIDER

    @pytest.mark.asyncio
    async def test_connection_error_is_upstream_unavailable(self, provider, session):
        session.request.side_effect = requests.ConnectionError("refused")

        with pytest.raises(StudioError) as exc_info:
            await provider.create_job("fal-ai/veo3.1", {})

        assert exc_info.value.kind == ErrorKind.UPSTREAM_UNAVAILABLE

    @pytest.mark.asyncio
    async def test_missing_request_id(self, provider, session):
        session.request.return_value = response(body={})

        with pytest.raises(StudioError) as exc_info:
            await provider.create_job("fal-ai/veo3.1", {})

        assert exc_info.value.is_transient


class TestGetStatus:
    @pytest.mark.asyncio
    async def test_in_queue(self, provider, session):
        session.request.return_value = response(
            body={"status": "IN_QUEUE", "queue_position": 2}
        )

        status = await provider.get_status(HANDLE)

        assert status.status == ProviderStatus.QUEUED
        assert status.position == 2
        assert session.request.call_args.args == (
            "GET",
            f"https://queue.test/{HANDLE}/status?logs=1",
        )

    @pytest.mark.asyncio
    async def test_in_progress_with_logs(self, provider, session):
        session.request.return_value = response(
            body={
                "status": "IN_PROGRESS",
                "logs": [{"message": "loading"}, {"message": ""}, "plain"],
            }
        )

        status = await provider.get_status(HANDLE)

        assert status.status == ProviderStatus.RUNNING
        assert status.logs == ["loading", "plain"]

    @pytest.mark.asyncio
    async def test_completed_fetches_video_result(self, provider, session):
        session.request.side_effect = [
            response(body={"status": "COMPLETED"}),
            response(
                body={
                    "video": {
                        "url": "https://v.fal.media/out.mp4",
                        "content_type": "video/mp4",
                    }
                }
            ),
        ]

        status = await provider.get_status(HANDLE)

        assert status.status == ProviderStatus.SUCCEEDED
        assert status.output.media_kind == MediaKind.VIDEO
        assert status.output.url == "https://v.fal.media/out.mp4"
        assert session.request.call_args.args == ("GET", f"https://queue.test/{HANDLE}")

    @pytest.mark.asyncio
    async def test_completed_with_error_is_failure(self, provider, session):
        session.request.return_value = response(
            body={"status": "COMPLETED", "error": "NSFW content detected"}
        )

        status = await provider.get_status(HANDLE)

        assert status.status == ProviderStatus.FAILED
        assert status.error_message == "NSFW content detected"

    @pytest.mark.asyncio
    async def test_unprocessable_result_is_failure(self, provider, session):
        session.request.side_effect = [
            response(body={"status": "COMPLETED"}),
            response(422, {"detail": "invalid image"}),
        ]

        status = await provider.get_status(HANDLE)

        assert status.status == ProviderStatus.FAILED

    @pytest.mark.asyncio
    async def test_unavailable_result_is_raised_for_retry(self, provider, session):
        session.request.side_effect = [
            response(body={"status": "COMPLETED"}),
            response(502, {"detail": "bad gateway"}),
        ]

        with pytest.raises(StudioError) as exc_info:
            await provider.get_status(HANDLE)

        assert exc_info.value.is_transient


class TestParseOutput:
    def test_first_image(self):
        output = FalAiProvider.parse_output(
            {"images": [{"url": "https://a/1.png", "width": 10, "height": 20}, {"url": "https://a/2.png"}]}
        )
        assert output.url == "https://a/1.png"
        assert output.media_kind == MediaKind.IMAGE
        assert (output.width, output.height) == (10, 20)

    def test_single_image(self):
        assert FalAiProvider.parse_output({"image": {"url": "https://a/1.png"}}).url == "https://a/1.png"

    def test_no_media(self):
        assert FalAiProvider.parse_output({"text": "hello"}) is None


class TestCancel:
    @pytest.mark.asyncio
    async def test_acknowledged(self, provider, session):
        session.request.return_value = response(body={"status": "CANCELLATION_REQUESTED"})

        assert await provider.cancel(HANDLE) is True
        assert session.request.call_args.args == ("PUT", f"https://queue.test/{HANDLE}/cancel")

    @pytest.mark.asyncio
    async def test_errors_are_not_acknowledged(self, provider, session):
        session.request.return_value = response(400, {"status": "NOT_FOUND"})

        assert await provider.cancel(HANDLE) is False
