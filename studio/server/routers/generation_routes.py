import logging
from typing import Annotated, List, Optional

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse

from studio.models.generations import (
    GenerationJob,
    GenerationRequest,
    SubmitGenerationResponse,
)
from studio.server.dependencies import get_current_user_id, get_orchestrator
from studio.services.orchestrator import GenerationOrchestrator
from studio.services.progress import KEEPALIVE_SECONDS, format_sse

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Create a router for generation jobs
generation_router = APIRouter()


@generation_router.post("/submit", response_model=SubmitGenerationResponse)
async def submit_generation(
    request: GenerationRequest,
    user_id: Annotated[str, Depends(get_current_user_id)],
    orchestrator: Annotated[GenerationOrchestrator, Depends(get_orchestrator)],
) -> SubmitGenerationResponse:
    """Submit a generation request.

    Invalid requests are rejected before any job exists. A job whose
    submission the provider rejected is returned with status failed.
    """
    job = await orchestrator.submit(request, user_id)
    return SubmitGenerationResponse(job_id=job.id, status=job.status)


@generation_router.get("/list", response_model=List[GenerationJob])
async def list_generations(
    user_id: Annotated[str, Depends(get_current_user_id)],
    orchestrator: Annotated[GenerationOrchestrator, Depends(get_orchestrator)],
    project_id: Optional[str] = None,
) -> List[GenerationJob]:
    """List the caller's generation jobs, newest first."""
    return await orchestrator.list_jobs(user_id, project_id)


@generation_router.get("/{job_id}", response_model=GenerationJob)
async def get_generation(
    job_id: str,
    user_id: Annotated[str, Depends(get_current_user_id)],
    orchestrator: Annotated[GenerationOrchestrator, Depends(get_orchestrator)],
) -> GenerationJob:
    return await orchestrator.get_job(job_id, user_id)


@generation_router.get("/{job_id}/progress")
async def stream_generation_progress(
    job_id: str,
    user_id: Annotated[str, Depends(get_current_user_id)],
    orchestrator: Annotated[GenerationOrchestrator, Depends(get_orchestrator)],
) -> StreamingResponse:
    """Stream progress events of a job until it reaches a terminal state."""
    events = await orchestrator.subscribe(job_id, user_id, keepalive=KEEPALIVE_SECONDS)

    async def _stream_progress():
        yield ": connected\n\n"
        async for progress in events:
            yield format_sse(progress)

    return StreamingResponse(
        _stream_progress(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@generation_router.post("/{job_id}/cancel", response_model=GenerationJob)
async def cancel_generation(
    job_id: str,
    user_id: Annotated[str, Depends(get_current_user_id)],
    orchestrator: Annotated[GenerationOrchestrator, Depends(get_orchestrator)],
) -> GenerationJob:
    """Cancel a job. Cancelling a finished job leaves it unchanged."""
    return await orchestrator.cancel(job_id, user_id)
