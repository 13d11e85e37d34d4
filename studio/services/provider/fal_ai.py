import asyncio
import logging
from functools import partial
from traceback import format_exc
from typing import Any, Dict, List, Optional

import requests

import config
from studio.errors import ErrorKind, StudioError, Surface, kind_from_status_code
from studio.models.shared import MediaKind, ProviderStatus
from studio.services.provider.common import (
    GenerationProvider,
    ProviderJobStatus,
    ProviderOutput,
)

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

STATUS_MAP = {
    "IN_QUEUE": ProviderStatus.QUEUED,
    "IN_PROGRESS": ProviderStatus.RUNNING,
    "COMPLETED": ProviderStatus.SUCCEEDED,
}


class FalAiProvider(GenerationProvider):
    """fal.ai queue API implementation of the generation provider."""

    # NOTE: https://docs.fal.ai/model-endpoints/queue
    SUBMIT_URL = "{base_url}/{model_id}"
    REQUEST_URL = "{base_url}/{handle}"

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: str = config.PROVIDER_BASE_URL,
        timeout: float = config.PROVIDER_REQUEST_TIMEOUT_SECONDS,
        session: Optional[requests.Session] = None,
    ):
        """
        Initialize the fal.ai provider.

        Args:
            api_key: fal.ai API key. Defaults to STUDIO_FAL_API_KEY.
            base_url: Queue endpoint base URL
            timeout: Per-request timeout in seconds
            session: Optional requests session, mostly for tests
        """
        self.api_key = api_key or config.FAL_API_KEY
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

        # Validate required configuration
        if not self.api_key:
            raise ValueError(
                "fal.ai API key is required. Set STUDIO_FAL_API_KEY environment variable or pass api_key parameter."
            )

    @staticmethod
    def app_id(model_id: str) -> str:
        """Get the queue app id (owner/app) of a model endpoint id."""
        return "/".join(model_id.split("/")[:2])

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Key {self.api_key}",
            "Content-Type": "application/json",
        }

    async def _request(
        self, method: str, url: str, json: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """Send a request in a worker thread and map failures onto StudioError."""
        loop = asyncio.get_running_loop()
        try:
            response = await loop.run_in_executor(
                None,
                partial(
                    self.session.request,
                    method,
                    url,
                    json=json,
                    headers=self._headers(),
                    timeout=self.timeout,
                ),
            )
        except requests.RequestException as e:
            logger.error(f"Request to {url} failed: {str(e)}\n{format_exc()}")
            raise StudioError(
                ErrorKind.UPSTREAM_UNAVAILABLE, Surface.PROVIDER, cause=str(e)
            )

        if response.status_code >= 400:
            detail = self._error_detail(response)
            logger.error(
                f"Provider returned {response.status_code} for {method} {url}: {detail}"
            )
            raise StudioError(
                kind_from_status_code(response.status_code),
                Surface.PROVIDER,
                cause=f"HTTP {response.status_code}: {detail}",
            )

        try:
            return response.json()
        except ValueError as e:
            logger.error(f"Invalid JSON from {url}: {str(e)}")
            raise StudioError(
                ErrorKind.UPSTREAM_UNAVAILABLE,
                Surface.PROVIDER,
                cause=f"Invalid JSON response: {str(e)}",
            )

    @staticmethod
    def _error_detail(response: requests.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text[:500]
        if isinstance(body, dict) and "detail" in body:
            return str(body["detail"])[:500]
        return str(body)[:500]

    async def create_job(self, model_id: str, payload: Dict[str, Any]) -> str:
        """Submit a job to the queue."""
        url = self.SUBMIT_URL.format(base_url=self.base_url, model_id=model_id)
        body = await self._request("POST", url, json=payload)

        request_id = body.get("request_id")
        if not request_id:
            raise StudioError(
                ErrorKind.UPSTREAM_UNAVAILABLE,
                Surface.PROVIDER,
                cause=f"Submit response had no request_id: {body}",
            )

        logger.info(f"Submitted {model_id} as request {request_id}")
        return f"{self.app_id(model_id)}/requests/{request_id}"

    async def get_status(self, provider_job_id: str) -> ProviderJobStatus:
        """Get the queue status, fetching the result once the job is done."""
        url = self.REQUEST_URL.format(base_url=self.base_url, handle=provider_job_id)
        body = await self._request("GET", f"{url}/status?logs=1")

        raw_status = body.get("status", "")
        logs = self._parse_logs(body.get("logs"))

        if raw_status not in STATUS_MAP:
            logger.warning(f"Unknown provider status {raw_status!r} for {provider_job_id}")
            return ProviderJobStatus(status=ProviderStatus.RUNNING, logs=logs)

        status = STATUS_MAP[raw_status]
        if status != ProviderStatus.SUCCEEDED:
            return ProviderJobStatus(
                status=status, position=body.get("queue_position"), logs=logs
            )

        if body.get("error"):
            return ProviderJobStatus(
                status=ProviderStatus.FAILED,
                logs=logs,
                error_message=str(body["error"]),
            )

        try:
            result = await self._request("GET", url)
        except StudioError as e:
            # Unprocessable results are reported as job failures, not transport ones
            if e.kind == ErrorKind.BAD_REQUEST:
                return ProviderJobStatus(
                    status=ProviderStatus.FAILED, logs=logs, error_message=e.cause
                )
            raise

        output = self.parse_output(result)
        if output is None:
            return ProviderJobStatus(
                status=ProviderStatus.FAILED,
                logs=logs,
                error_message="Provider result contained no media output",
            )
        return ProviderJobStatus(status=ProviderStatus.SUCCEEDED, logs=logs, output=output)

    async def cancel(self, provider_job_id: str) -> bool:
        """Ask the queue to cancel a job."""
        url = self.REQUEST_URL.format(base_url=self.base_url, handle=provider_job_id)
        try:
            body = await self._request("PUT", f"{url}/cancel")
        except StudioError as e:
            logger.warning(f"Cancel of {provider_job_id} not acknowledged: {e.cause}")
            return False
        return body.get("status") in ("CANCELLATION_REQUESTED", "ALREADY_COMPLETED")

    @staticmethod
    def _parse_logs(logs: Any) -> List[str]:
        if not logs:
            return []
        lines = []
        for entry in logs:
            if isinstance(entry, dict):
                message = entry.get("message")
                if message:
                    lines.append(str(message))
            elif entry:
                lines.append(str(entry))
        return lines

    @staticmethod
    def parse_output(result: Dict[str, Any]) -> Optional[ProviderOutput]:
        """Extract the first image or the video from a result payload."""
        images = result.get("images") or []
        if images and images[0].get("url"):
            image = images[0]
            return ProviderOutput(
                url=image["url"],
                media_kind=MediaKind.IMAGE,
                content_type=image.get("content_type"),
                width=image.get("width"),
                height=image.get("height"),
                raw=result,
            )

        image = result.get("image")
        if isinstance(image, dict) and image.get("url"):
            return ProviderOutput(
                url=image["url"],
                media_kind=MediaKind.IMAGE,
                content_type=image.get("content_type"),
                width=image.get("width"),
                height=image.get("height"),
                raw=result,
            )

        video = result.get("video")
        if isinstance(video, dict) and video.get("url"):
            return ProviderOutput(
                url=video["url"],
                media_kind=MediaKind.VIDEO,
                content_type=video.get("content_type"),
                width=video.get("width"),
                height=video.get("height"),
                duration=video.get("duration"),
                fps=video.get("fps"),
                raw=result,
            )

        return None
