"""Shared fixtures: a small catalog, fake provider and storage, and an orchestrator."""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Union
from urllib.parse import urlencode

import pytest

from studio.errors import StudioError
from studio.models.catalog import ModelCatalog
from studio.models.generations import GenerationJob, GenerationRequest, ReferenceInput
from studio.models.shared import GenerationType, InputKind, MediaKind, ProviderStatus
from studio.services.materializer import AssetMaterializer
from studio.services.orchestrator import GenerationOrchestrator, OrchestratorSettings
from studio.services.persistence import InMemoryPersistenceService
from studio.services.progress import ProgressBroker
from studio.services.provider.common import (
    GenerationProvider,
    ProviderJobStatus,
    ProviderOutput,
)
from studio.services.resolver import ModalityResolver
from studio.services.storage import StorageService, StoredObject, parse_storage_reference

CATALOG_RECORDS = [
    {
        "id": "test/image",
        "name": "Test Image",
        "mediaKind": "image",
    },
    {
        "id": "test/image/edit",
        "name": "Test Image Edit",
        "mediaKind": "image",
        "acceptsImageInput": True,
        "requiresReferenceInput": True,
        "requiredInputs": ["reference-image"],
    },
    {
        "id": "test/video",
        "name": "Test Video",
        "mediaKind": "video",
        "parameters": {"defaults": {"duration": "4s"}},
    },
    {
        "id": "test/video/image-to-video",
        "name": "Test Image to Video",
        "mediaKind": "video",
        "acceptsImageInput": True,
        "requiresReferenceInput": True,
        "requiredInputs": ["reference-image"],
        "optionalInputs": ["last-frame"],
        "parameters": {
            "fixed": {"generate_audio": False},
            "defaults": {"resolution": "720p", "duration": "8s"},
        },
    },
    {
        "id": "test/video/lipsync",
        "name": "Test Lipsync",
        "mediaKind": "video",
        "acceptsVideoInput": True,
        "requiredInputs": ["reference-video"],
    },
]

IMAGE_REFERENCE = "gs://test-bucket/user-1/uploads/cat.png"


class FakeClock:
    def __init__(self):
        self.now = datetime(2025, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeProvider(GenerationProvider):
    """Provider returning scripted statuses; the last one repeats."""

    def __init__(self):
        self.created: List[Dict[str, Any]] = []
        self.cancelled: List[str] = []
        self.statuses: List[Union[ProviderJobStatus, Exception]] = [
            ProviderJobStatus(status=ProviderStatus.RUNNING)
        ]
        self.create_error: Optional[Exception] = None
        self.status_calls = 0

    async def create_job(self, model_id: str, payload: Dict[str, Any]) -> str:
        if self.create_error is not None:
            raise self.create_error
        self.created.append({"model_id": model_id, "payload": payload})
        return f"{model_id}/requests/req-{len(self.created)}"

    async def get_status(self, provider_job_id: str) -> ProviderJobStatus:
        self.status_calls += 1
        status = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        if isinstance(status, Exception):
            raise status
        return status

    async def cancel(self, provider_job_id: str) -> bool:
        self.cancelled.append(provider_job_id)
        return True


class FakeStorage(StorageService):
    """Storage signing deterministic fake URLs and ingesting without network."""

    def __init__(self):
        super().__init__(bucket_name="test-bucket", client=object())
        self.ingested: List[str] = []
        self.deleted: List[str] = []
        self.sign_error: Optional[StudioError] = None

    async def sign(self, reference, expires_in, download=False, query_parameters=None):
        if self.sign_error is not None:
            raise self.sign_error
        parsed = parse_storage_reference(reference)
        if parsed is None:
            raise StudioError("bad_request", "storage", cause=reference)
        bucket, path = parsed
        params = {"expires": expires_in, **(query_parameters or {})}
        if download:
            params["download"] = download if isinstance(download, str) else "1"
        return f"https://signed.example/{bucket}/{path}?{urlencode(params)}"

    async def upload_bytes(self, data, path, content_type=None):
        return f"gs://{self.bucket_name}/{path}"

    async def ingest_from_url(self, url, path_without_extension, content_type=None):
        self.ingested.append(url)
        extension = "mp4" if (content_type or "").startswith("video/") else "png"
        return StoredObject(
            storage_ref=f"gs://{self.bucket_name}/{path_without_extension}.{extension}",
            size=1024,
            content_type=content_type or "image/png",
            width=512,
            height=512,
        )

    async def delete(self, reference):
        self.deleted.append(reference)


class RecordingPersistence(InMemoryPersistenceService):
    """In-memory persistence remembering every status written per job."""

    def __init__(self):
        super().__init__()
        self.history: Dict[str, List[str]] = {}

    def _record(self, job: GenerationJob) -> None:
        statuses = self.history.setdefault(job.id, [])
        if not statuses or statuses[-1] != job.status.value:
            statuses.append(job.status.value)

    async def create_job(self, job):
        result = await super().create_job(job)
        self._record(job)
        return result

    async def update_job_record(self, job):
        result = await super().update_job_record(job)
        self._record(job)
        return result


def succeeded(url: str = "https://cdn.example/out.png", kind: MediaKind = MediaKind.IMAGE):
    return ProviderJobStatus(
        status=ProviderStatus.SUCCEEDED,
        output=ProviderOutput(
            url=url,
            media_kind=kind,
            content_type="image/png" if kind == MediaKind.IMAGE else "video/mp4",
            raw={"seed": 42},
        ),
    )


def image_to_video_request(**overrides) -> GenerationRequest:
    data = {
        "model_id": "test/video/image-to-video",
        "generation_type": GenerationType.IMAGE_TO_VIDEO,
        "prompt": "the cat starts dancing",
        "inputs": [ReferenceInput(kind=InputKind.REFERENCE_IMAGE, reference=IMAGE_REFERENCE)],
    }
    data.update(overrides)
    return GenerationRequest(**data)


@pytest.fixture
def catalog() -> ModelCatalog:
    return ModelCatalog.from_records(CATALOG_RECORDS)


@pytest.fixture
def resolver(catalog) -> ModalityResolver:
    return ModalityResolver(catalog, priorities={})


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def storage() -> FakeStorage:
    return FakeStorage()


@pytest.fixture
def persistence() -> RecordingPersistence:
    return RecordingPersistence()


@pytest.fixture
def materializer(storage) -> AssetMaterializer:
    return AssetMaterializer(storage)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> OrchestratorSettings:
    return OrchestratorSettings(
        poll_interval=0,
        job_timeout=600,
        max_retries=2,
        retry_base_delay=0,
        start_polling=False,
    )


@pytest.fixture
def orchestrator(
    resolver, provider, persistence, storage, materializer, settings, clock
) -> GenerationOrchestrator:
    return GenerationOrchestrator(
        resolver=resolver,
        provider=provider,
        persistence=persistence,
        storage=storage,
        materializer=materializer,
        broker=ProgressBroker(),
        settings=settings,
        clock=clock,
    )
