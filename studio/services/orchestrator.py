"""
Generation Job Orchestrator

This module drives a generation job from submission to a terminal state:

    pending --submit ok--> processing --provider success--> completed
    pending --submit failure--> failed
    processing --provider failure / timeout--> failed
    pending, processing --cancel--> cancelled

Terminal states are sinks. Each job is polled by its own asyncio task, and
every read-modify-write of a job record happens under that job's lock, so
transitions of one job are totally ordered while jobs stay independent.
Provider and storage calls run outside the lock; a result that arrives after
the job went terminal (e.g. cancelled) is discarded.
"""

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from traceback import format_exc
from typing import (
    Any,
    AsyncIterator,
    Callable,
    Dict,
    List,
    Optional,
    Tuple,
)

from pydantic import BaseModel, ConfigDict

import config
from studio.errors import (
    GENERIC_ERROR_MESSAGE,
    LOG_ONLY_SURFACES,
    ErrorKind,
    StudioError,
    Surface,
    get_message,
)
from studio.models.assets import Asset, AssetMetadata, DeliveryOptions, Provenance
from studio.models.catalog import ModelDescriptor
from studio.models.generations import (
    LOG_TAIL_SIZE,
    GenerationJob,
    GenerationRequest,
    JobError,
    JobProgress,
    ProviderProgress,
)
from studio.models.shared import (
    AssetType,
    InputKind,
    JobStatus,
    MediaKind,
    ProviderStatus,
    SourceType,
)
from studio.services.materializer import AssetMaterializer
from studio.services.persistence import PersistenceService, generation_asset_id
from studio.services.progress import ProgressBroker
from studio.services.provider.common import GenerationProvider, ProviderJobStatus
from studio.services.resolver import ModalityResolver
from studio.services.storage import StorageService, is_storage_reference

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Provider payload field of each reference input kind
INPUT_FIELDS: Dict[InputKind, str] = {
    InputKind.REFERENCE_IMAGE: "image_url",
    InputKind.FIRST_FRAME: "first_frame_image_url",
    InputKind.LAST_FRAME: "last_frame_image_url",
    InputKind.REFERENCE_VIDEO: "video_url",
}

# Lifetime of signed URLs handed to the provider for reference inputs
REFERENCE_INPUT_EXPIRY_SECONDS = 3600

# Age after which a job still pending at startup is considered abandoned
PENDING_GRACE_SECONDS = 60


class OrchestratorSettings(BaseModel):
    """Tunables of the poll loop."""

    model_config = ConfigDict(frozen=True)

    poll_interval: float = config.POLL_INTERVAL_SECONDS
    job_timeout: float = config.JOB_TIMEOUT_SECONDS
    max_retries: int = config.POLL_MAX_RETRIES
    retry_base_delay: float = config.POLL_RETRY_BASE_DELAY_SECONDS
    retry_max_delay: float = 60.0
    max_prompt_length: int = config.MAX_PROMPT_LENGTH
    # Start a background poll loop for every submitted job
    start_polling: bool = True


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def build_payload(
    descriptor: ModelDescriptor,
    request: GenerationRequest,
    input_urls: Optional[Dict[InputKind, str]] = None,
) -> Dict[str, Any]:
    """
    Build the provider payload of a request.

    Parameters are merged as defaults, then request parameters, then the
    model's fixed values. Prompts and reference inputs are added on top.
    """
    payload = descriptor.parameters.apply(dict(request.parameters))

    if request.prompt:
        payload["prompt"] = request.prompt
    if request.negative_prompt:
        payload["negative_prompt"] = request.negative_prompt

    input_urls = input_urls or {}
    for reference_input in request.inputs:
        payload[INPUT_FIELDS[reference_input.kind]] = input_urls.get(
            reference_input.kind, reference_input.reference
        )

    return payload


def job_error_from(error: StudioError) -> JobError:
    """Get the display-safe error recorded on a job."""
    message = error.message
    if error.surface in LOG_ONLY_SURFACES:
        message = GENERIC_ERROR_MESSAGE
    return JobError(kind=error.kind, surface=error.surface, message=message)


class GenerationOrchestrator:
    """Asynchronous state machine of generation jobs."""

    def __init__(
        self,
        resolver: ModalityResolver,
        provider: GenerationProvider,
        persistence: PersistenceService,
        storage: StorageService,
        materializer: AssetMaterializer,
        broker: Optional[ProgressBroker] = None,
        settings: Optional[OrchestratorSettings] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.resolver = resolver
        self.provider = provider
        self.persistence = persistence
        self.storage = storage
        self.materializer = materializer
        self.broker = broker or ProgressBroker()
        self.settings = settings or OrchestratorSettings()
        self.clock = clock
        self._locks: Dict[str, asyncio.Lock] = {}
        self._tasks: Dict[str, asyncio.Task] = {}

    # Validation
    def _validate_prompt(self, request: GenerationRequest) -> None:
        prompt = (request.prompt or "").strip()
        if request.generation_type.is_text_prompted and not prompt:
            raise StudioError(
                ErrorKind.BAD_REQUEST,
                Surface.JOB,
                cause="Missing prompt",
                message=f"A prompt is required for {request.generation_type.value} generation.",
            )

        for text in (request.prompt, request.negative_prompt):
            if text and len(text) > self.settings.max_prompt_length:
                raise StudioError(
                    ErrorKind.BAD_REQUEST,
                    Surface.JOB,
                    cause=f"Prompt of {len(text)} characters",
                    message=f"Prompts are limited to {self.settings.max_prompt_length} characters.",
                )

    async def _check_project(self, project_id: Optional[str], user_id: str) -> None:
        if not project_id:
            return

        project = await self.persistence.get_project(project_id)
        if project is None:
            raise StudioError(
                ErrorKind.NOT_FOUND,
                Surface.PROJECT,
                cause=f"Project not found: {project_id}",
            )
        if project.user_id != user_id:
            raise StudioError(
                ErrorKind.FORBIDDEN,
                Surface.PROJECT,
                cause=f"Project {project_id} is not owned by {user_id}",
            )

    async def _resolve_inputs(self, request: GenerationRequest) -> Dict[InputKind, str]:
        """Sign storage references of inputs so the provider can fetch them."""
        urls: Dict[InputKind, str] = {}
        for reference_input in request.inputs:
            if not is_storage_reference(reference_input.reference):
                continue

            url = await self.materializer.materialize(
                reference_input.reference,
                DeliveryOptions(expires_in=REFERENCE_INPUT_EXPIRY_SECONDS),
            )
            if url is None:
                raise StudioError(
                    ErrorKind.BAD_REQUEST,
                    Surface.JOB,
                    cause=f"Could not sign {reference_input.reference}",
                    message=f"The {reference_input.kind.value} input could not be read.",
                )
            urls[reference_input.kind] = url
        return urls

    # Job records
    def _lock_for(self, job_id: str) -> asyncio.Lock:
        lock = self._locks.get(job_id)
        if lock is None:
            lock = self._locks[job_id] = asyncio.Lock()
        return lock

    async def _require_job(self, job_id: str) -> GenerationJob:
        job = await self.persistence.get_job_record(job_id)
        if job is None:
            raise StudioError(
                ErrorKind.NOT_FOUND, Surface.JOB, cause=f"Job not found: {job_id}"
            )
        return job

    async def _transition(
        self, job_id: str, mutate: Callable[[GenerationJob], GenerationJob]
    ) -> Tuple[GenerationJob, bool]:
        """
        Apply an update to the latest job record under the job's lock.

        Updates of terminal jobs are discarded.

        Returns:
            The current job and whether the update was applied
        """
        async with self._lock_for(job_id):
            job = await self._require_job(job_id)
            if job.status.is_terminal:
                logger.info(f"Job {job_id} is already {job.status.value}, discarding update")
                return job, False

            updated = mutate(job).model_copy(update={"updated_at": self.clock()})
            await self.persistence.update_job_record(updated)

        if updated.status != job.status:
            logger.info(f"Job {job_id} -> {updated.status.value}")
        if updated.status.is_terminal:
            self._locks.pop(job_id, None)

        self.broker.publish(JobProgress.from_job(updated))
        return updated, True

    async def _fail(self, job_id: str, error: JobError) -> GenerationJob:
        now = self.clock()
        job, _ = await self._transition(
            job_id,
            lambda j: j.model_copy(
                update={"status": JobStatus.FAILED, "error": error, "completed_at": now}
            ),
        )
        return job

    async def _complete(
        self, job_id: str, asset: Asset, provider_response: Optional[Dict[str, Any]]
    ) -> Tuple[GenerationJob, bool]:
        now = self.clock()

        def mutate(j: GenerationJob) -> GenerationJob:
            return j.model_copy(
                update={
                    "status": JobStatus.COMPLETED,
                    "output_asset_id": asset.id,
                    "provider_response": provider_response or j.provider_response,
                    "processing_time": int(self._elapsed(j, now)),
                    "completed_at": now,
                    "progress": j.progress.model_copy(
                        update={
                            "provider_status": ProviderStatus.SUCCEEDED,
                            "queue_position": None,
                        }
                    ),
                }
            )

        job, applied = await self._transition(job_id, mutate)
        if not applied:
            logger.warning(
                f"Asset {asset.id} was produced for job {job_id} after it became {job.status.value}"
            )
        return job, applied

    def _elapsed(self, job: GenerationJob, now: Optional[datetime] = None) -> float:
        created_at = job.created_at
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=timezone.utc)
        return max(0.0, ((now or self.clock()) - created_at).total_seconds())

    def _remaining(self, job: GenerationJob) -> float:
        return self.settings.job_timeout - self._elapsed(job)

    async def _fail_timeout(self, job: GenerationJob) -> GenerationJob:
        logger.warning(
            f"Job {job.id} exceeded the {self.settings.job_timeout}s timeout"
        )
        return await self._fail(
            job.id,
            JobError(
                kind=ErrorKind.TIMEOUT,
                surface=Surface.JOB,
                message=get_message(ErrorKind.TIMEOUT, Surface.JOB),
            ),
        )

    # Operations
    async def submit(self, request: GenerationRequest, user_id: str) -> GenerationJob:
        """
        Validate a request, create its job and submit it to the provider.

        Validation failures raise before any job record exists. Provider
        failures are recorded on the job, which is returned as failed.

        Raises:
            StudioError: bad_request for invalid requests, not_found or
                forbidden for projects the user cannot use
        """
        descriptor = self.resolver.validate(request)
        self._validate_prompt(request)
        await self._check_project(request.project_id, user_id)
        input_urls = await self._resolve_inputs(request)

        job = GenerationJob(
            id=str(uuid.uuid4()),
            user_id=user_id,
            request=request,
            status=JobStatus.PENDING,
            created_at=self.clock(),
        )
        await self.persistence.create_job(job)
        logger.info(f"Created job {job.id} for {request.model_id} ({request.generation_type.value})")

        try:
            handle = await self.provider.create_job(
                request.model_id, build_payload(descriptor, request, input_urls)
            )
        except StudioError as e:
            logger.error(f"Provider rejected job {job.id}: {e.code} ({e.cause})")
            return await self._fail(job.id, job_error_from(e))
        except Exception as e:
            logger.error(f"Error submitting job {job.id}: {str(e)}\n{format_exc()}")
            return await self._fail(
                job.id,
                JobError(
                    kind=ErrorKind.UPSTREAM_UNAVAILABLE,
                    surface=Surface.JOB,
                    message=GENERIC_ERROR_MESSAGE,
                ),
            )

        try:
            job, applied = await self._transition(
                job.id,
                lambda j: j.model_copy(
                    update={
                        "status": JobStatus.PROCESSING,
                        "provider_job_id": handle,
                        "progress": ProviderProgress(provider_status=ProviderStatus.QUEUED),
                    }
                ),
            )
        except Exception as e:
            # Without the handle on record the job could never be polled
            logger.error(
                f"Could not record provider handle of job {job.id}: {str(e)}\n{format_exc()}"
            )
            await self._cancel_at_provider(job.id, handle)
            return await self._fail(
                job.id,
                JobError(
                    kind=ErrorKind.UPSTREAM_UNAVAILABLE,
                    surface=Surface.JOB,
                    message=get_message(ErrorKind.UPSTREAM_UNAVAILABLE, Surface.JOB),
                ),
            )

        if not applied:
            logger.info(f"Job {job.id} became {job.status.value} during submission")
            await self._cancel_at_provider(job.id, handle)
            return job

        if self.settings.start_polling and job.status == JobStatus.PROCESSING:
            self.start(job.id)
        return job

    async def poll(self, job_id: str) -> JobProgress:
        """
        Run one poll step of a job.

        Safe to call redundantly: terminal jobs are returned as they are, and
        an output asset is created at most once per job.

        Raises:
            StudioError: transient provider or storage failures, for the
                caller to retry
        """
        job = await self._require_job(job_id)
        if job.status != JobStatus.PROCESSING:
            return JobProgress.from_job(job)

        if self._remaining(job) <= 0:
            return JobProgress.from_job(await self._fail_timeout(job))

        # An asset may exist from an earlier step whose final write failed
        asset = await self.persistence.find_asset_by_generation(job_id)
        if asset is not None:
            logger.info(f"Linking existing asset {asset.id} to job {job_id}")
            job, _ = await self._complete(job_id, asset, None)
            return JobProgress.from_job(job)

        status = await self.provider.get_status(job.provider_job_id)

        if status.status == ProviderStatus.SUCCEEDED:
            return JobProgress.from_job(await self._handle_success(job_id, status))

        if status.status == ProviderStatus.FAILED:
            logger.warning(f"Provider reported failure for job {job_id}: {status.error_message}")
            return JobProgress.from_job(
                await self._fail(
                    job_id,
                    JobError(
                        kind=ErrorKind.BAD_REQUEST,
                        surface=Surface.PROVIDER,
                        message=status.error_message
                        or get_message(ErrorKind.BAD_REQUEST, Surface.PROVIDER),
                    ),
                )
            )

        def update_progress(j: GenerationJob) -> GenerationJob:
            logs = (list(j.progress.logs) + list(status.logs))[-LOG_TAIL_SIZE:]
            return j.model_copy(
                update={
                    "progress": ProviderProgress(
                        provider_status=status.status,
                        queue_position=status.position,
                        logs=logs,
                    )
                }
            )

        job, _ = await self._transition(job_id, update_progress)
        return JobProgress.from_job(job)

    async def _handle_success(
        self, job_id: str, status: ProviderJobStatus
    ) -> GenerationJob:
        job = await self._require_job(job_id)
        if job.status != JobStatus.PROCESSING:
            return job
        if self._remaining(job) <= 0:
            return await self._fail_timeout(job)

        output = status.output
        if output is None:
            return await self._fail(
                job_id,
                JobError(
                    kind=ErrorKind.BAD_REQUEST,
                    surface=Surface.PROVIDER,
                    message="The generation finished without producing any media.",
                ),
            )

        stored = await self.storage.ingest_from_url(
            output.url,
            f"{job.user_id}/generations/{job.id}",
            content_type=output.content_type,
        )

        # The job may have been cancelled while the output was being copied
        current = await self._require_job(job_id)
        if current.status != JobStatus.PROCESSING:
            logger.info(
                f"Job {job_id} became {current.status.value} during ingestion, discarding its output"
            )
            await self._discard_output(stored.storage_ref)
            return current

        is_image = output.media_kind == MediaKind.IMAGE
        asset = Asset(
            id=generation_asset_id(job.id),
            owner_id=job.user_id,
            project_id=job.request.project_id,
            type=AssetType.IMAGE if is_image else AssetType.VIDEO,
            name=f"{job.request.generation_type.value} {job.id[:8]}",
            storage_ref=stored.storage_ref,
            thumbnail_ref=stored.storage_ref if is_image else None,
            metadata=AssetMetadata(
                size=stored.size,
                width=output.width or stored.width,
                height=output.height or stored.height,
                duration=output.duration,
                fps=output.fps,
                format=stored.content_type,
            ),
            provenance=Provenance(
                source_type=SourceType.GENERATION, source_generation_id=job.id
            ),
            created_at=self.clock(),
        )
        asset = await self.persistence.create_asset(asset)
        logger.info(f"Stored output of job {job_id} as asset {asset.id}")

        job, _ = await self._complete(job_id, asset, output.raw or None)
        return job

    async def _discard_output(self, storage_ref: str) -> None:
        try:
            await self.storage.delete(storage_ref)
        except StudioError as e:
            logger.warning(f"Could not delete discarded output {storage_ref}: {e.code} ({e.cause})")

    def _backoff(self, attempt: int) -> float:
        delay = self.settings.retry_base_delay * (2 ** (attempt - 1))
        return min(delay, self.settings.retry_max_delay)

    async def run(self, job_id: str) -> Optional[GenerationJob]:
        """
        Poll a job at a fixed interval until it is terminal.

        Transient failures are retried with exponential backoff up to the
        configured bound, then the job fails as upstream_unavailable. The
        timeout is measured from job creation and is never retried.
        """
        retries = 0
        try:
            while True:
                job = await self.persistence.get_job_record(job_id)
                if job is None:
                    logger.warning(f"Job {job_id} disappeared, stopping its poll loop")
                    return None
                if job.status.is_terminal:
                    return job

                try:
                    progress = await self.poll(job_id)
                    retries = 0
                except StudioError as e:
                    if not e.is_transient:
                        logger.error(f"Polling job {job_id} failed: {e.code} ({e.cause})")
                        return await self._fail(job_id, job_error_from(e))

                    retries += 1
                    if retries > self.settings.max_retries:
                        logger.error(
                            f"Polling job {job_id} failed after {self.settings.max_retries} retries: {e.code} ({e.cause})"
                        )
                        return await self._fail(
                            job_id,
                            JobError(
                                kind=ErrorKind.UPSTREAM_UNAVAILABLE,
                                surface=e.surface,
                                message=GENERIC_ERROR_MESSAGE
                                if e.surface in LOG_ONLY_SURFACES
                                else get_message(ErrorKind.UPSTREAM_UNAVAILABLE, e.surface),
                            ),
                        )

                    delay = self._backoff(retries)
                    logger.warning(
                        f"Transient failure polling job {job_id} ({e.code}), retry {retries}/{self.settings.max_retries} in {delay}s"
                    )
                    await asyncio.sleep(max(0.0, min(delay, self._remaining(job))))
                    continue

                if progress.is_terminal:
                    return await self.persistence.get_job_record(job_id)

                await asyncio.sleep(
                    max(0.0, min(self.settings.poll_interval, self._remaining(job)))
                )
        except asyncio.CancelledError:
            logger.info(f"Poll loop of job {job_id} cancelled")
            raise
        except Exception as e:
            logger.error(f"Error polling job {job_id}: {str(e)}\n{format_exc()}")
            return await self._fail(
                job_id,
                JobError(
                    kind=ErrorKind.UPSTREAM_UNAVAILABLE,
                    surface=Surface.JOB,
                    message=GENERIC_ERROR_MESSAGE,
                ),
            )

    def start(self, job_id: str) -> asyncio.Task:
        """Start the background poll loop of a job, unless one is running."""
        task = self._tasks.get(job_id)
        if task is not None and not task.done():
            return task

        task = asyncio.create_task(self.run(job_id), name=f"poll-{job_id}")
        self._tasks[job_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(job_id, None))
        return task

    def is_polling(self, job_id: str) -> bool:
        task = self._tasks.get(job_id)
        return task is not None and not task.done()

    async def _cancel_at_provider(self, job_id: str, handle: str) -> None:
        """Best-effort cancellation of a provider job."""
        try:
            acknowledged = await self.provider.cancel(handle)
            if not acknowledged:
                logger.warning(f"Provider did not acknowledge cancel of job {job_id}")
        except Exception as e:
            logger.warning(f"Error cancelling job {job_id} at the provider: {str(e)}")

    async def cancel(self, job_id: str, user_id: Optional[str] = None) -> GenerationJob:
        """
        Cancel a pending or processing job.

        The provider is notified on a best-effort basis; the local record is
        cancelled regardless. Cancelling a terminal job is a no-op.
        """
        job = await self.get_job(job_id, user_id)
        if job.status.is_terminal:
            return job

        if job.provider_job_id:
            await self._cancel_at_provider(job_id, job.provider_job_id)

        now = self.clock()
        job, _ = await self._transition(
            job_id,
            lambda j: j.model_copy(
                update={"status": JobStatus.CANCELLED, "completed_at": now}
            ),
        )
        return job

    async def get_job(self, job_id: str, user_id: Optional[str] = None) -> GenerationJob:
        """Get a job, checking ownership when a user is given."""
        job = await self._require_job(job_id)
        if user_id is not None and job.user_id != user_id:
            raise StudioError(
                ErrorKind.FORBIDDEN,
                Surface.JOB,
                cause=f"Job {job_id} is not owned by {user_id}",
            )
        return job

    async def list_jobs(
        self, user_id: str, project_id: Optional[str] = None
    ) -> List[GenerationJob]:
        if project_id:
            await self._check_project(project_id, user_id)
        return await self.persistence.list_jobs(user_id, project_id)

    async def subscribe(
        self,
        job_id: str,
        user_id: Optional[str] = None,
        keepalive: Optional[float] = None,
    ) -> AsyncIterator[Optional[JobProgress]]:
        """
        Open a progress stream of a job.

        The stream starts with the current state and ends at a terminal
        event. Ownership is checked before the stream is returned.
        """
        q = self.broker.subscribe(job_id)
        try:
            job = await self.get_job(job_id, user_id)
        except StudioError:
            self.broker.unsubscribe(job_id, q)
            raise

        if (
            self.settings.start_polling
            and job.status == JobStatus.PROCESSING
            and not self.is_polling(job_id)
        ):
            self.start(job_id)

        return self._progress_stream(job, q, keepalive)

    async def _progress_stream(
        self, job: GenerationJob, q: asyncio.Queue, keepalive: Optional[float]
    ) -> AsyncIterator[Optional[JobProgress]]:
        try:
            current = JobProgress.from_job(job)
            yield current
            if current.is_terminal:
                return
            async for progress in self.broker.stream(job.id, q, keepalive):
                yield progress
        finally:
            self.broker.unsubscribe(job.id, q)

    async def reconcile(self) -> List[str]:
        """
        Link processing jobs to assets that already exist for them.

        Returns:
            IDs of the jobs that were completed
        """
        linked = []
        for job in await self.persistence.list_jobs_by_status([JobStatus.PROCESSING]):
            try:
                asset = await self.persistence.find_asset_by_generation(job.id)
                if asset is None:
                    continue
                _, applied = await self._complete(job.id, asset, None)
                if applied:
                    linked.append(job.id)
            except StudioError as e:
                logger.error(f"Could not reconcile job {job.id}: {e.code} ({e.cause})")

        if linked:
            logger.info(f"Reconciled {len(linked)} jobs with existing assets")
        return linked

    async def fail_abandoned(self) -> List[str]:
        """
        Fail jobs left pending by a submission that never finished.

        Returns:
            IDs of the jobs that were failed
        """
        failed = []
        for job in await self.persistence.list_jobs_by_status([JobStatus.PENDING]):
            if self._elapsed(job) < PENDING_GRACE_SECONDS:
                continue
            logger.warning(f"Job {job.id} was abandoned while pending")
            job = await self._fail(
                job.id,
                JobError(
                    kind=ErrorKind.UPSTREAM_UNAVAILABLE,
                    surface=Surface.JOB,
                    message=get_message(ErrorKind.UPSTREAM_UNAVAILABLE, Surface.JOB),
                ),
            )
            if job.status == JobStatus.FAILED:
                failed.append(job.id)
        return failed

    async def resume(self) -> None:
        """Fail abandoned jobs, reconcile, then restart poll loops of jobs still processing."""
        await self.fail_abandoned()
        await self.reconcile()
        for job in await self.persistence.list_jobs_by_status([JobStatus.PROCESSING]):
            self.start(job.id)

    async def shutdown(self) -> None:
        """Cancel all background poll loops."""
        tasks = [t for t in self._tasks.values() if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info(f"Stopped {len(tasks)} poll loops")
