"""
Generation Data Models

This module contains the caller-supplied generation request, the persisted
generation job owned by the orchestrator, and the progress events emitted
while a job is being polled.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

from studio.errors import ErrorKind, Surface
from studio.models.shared import (
    FirestoreBaseModel,
    GenerationType,
    InputKind,
    JobStatus,
    ProviderStatus,
)

# Number of provider log lines kept on a job
LOG_TAIL_SIZE = 20

DURABLE_REFERENCE_SCHEMES = ("gs://", "http://", "https://")


class ReferenceInput(BaseModel):
    """A typed reference input, already resolved to a durable location."""

    model_config = ConfigDict(frozen=True)

    kind: InputKind = Field(..., description="Role of the input for the model")
    reference: str = Field(
        ..., min_length=1, description="Storage reference or external URL"
    )

    @field_validator("reference")
    @classmethod
    def validate_reference(cls, v: str) -> str:
        """Reject raw payloads; inputs must be uploaded before submission."""
        if not v.startswith(DURABLE_REFERENCE_SCHEMES):
            raise ValueError(
                "reference must be a storage reference (gs://) or an http(s) URL"
            )
        return v


class GenerationRequest(BaseModel):
    """Caller-supplied generation request, immutable once accepted."""

    model_config = ConfigDict(frozen=True)

    model_id: str = Field(..., min_length=1, description="Catalog model id")
    generation_type: GenerationType
    project_id: Optional[str] = Field(None, description="Owning project")
    prompt: Optional[str] = None
    negative_prompt: Optional[str] = None
    inputs: Tuple[ReferenceInput, ...] = Field(
        default_factory=tuple, description="Typed reference inputs"
    )
    parameters: Dict[str, Any] = Field(
        default_factory=dict, description="Model-specific parameters"
    )

    def input_kinds(self) -> List[InputKind]:
        return [i.kind for i in self.inputs]

    def get_input(self, kind: InputKind) -> Optional[str]:
        for i in self.inputs:
            if i.kind == kind:
                return i.reference
        return None


class JobError(BaseModel):
    """Display-safe failure recorded on a job."""

    kind: ErrorKind
    surface: Surface
    message: str


class ProviderProgress(BaseModel):
    """Last provider-reported state of a job."""

    provider_status: Optional[ProviderStatus] = None
    queue_position: Optional[int] = Field(None, ge=0)
    logs: List[str] = Field(default_factory=list, description="Log tail")


class BaseGenerationJob(BaseModel):
    """Base generation job model shared between Firestore and API."""

    id: str = Field(..., description="Unique job identifier")
    user_id: str = Field(..., description="User who submitted the job")
    request: GenerationRequest = Field(..., description="Frozen request copy")
    status: JobStatus = Field(JobStatus.PENDING, description="Lifecycle state")
    provider_job_id: Optional[str] = Field(
        None, description="Opaque provider handle once submitted"
    )
    progress: ProviderProgress = Field(default_factory=ProviderProgress)
    output_asset_id: Optional[str] = Field(None, description="Set only on success")
    error: Optional[JobError] = Field(None, description="Set only on failure")
    provider_response: Optional[Dict[str, Any]] = Field(
        None, description="Raw provider output descriptor"
    )
    processing_time: Optional[int] = Field(
        None, ge=0, description="Seconds from submission to completion"
    )
    created_at: datetime = Field(..., description="Job creation timestamp")
    updated_at: Optional[datetime] = Field(None, description="Last update timestamp")
    completed_at: Optional[datetime] = Field(None, description="Terminal timestamp")


class GenerationJob(BaseGenerationJob, FirestoreBaseModel):
    """Generation job document model for generations_jobs collection."""

    pass


class JobProgress(BaseModel):
    """A progress event emitted while a job is polled."""

    job_id: str
    status: JobStatus
    provider_status: Optional[ProviderStatus] = None
    queue_position: Optional[int] = None
    logs: List[str] = Field(default_factory=list)
    output_asset_id: Optional[str] = None
    error: Optional[JobError] = None

    @classmethod
    def from_job(cls, job: BaseGenerationJob) -> "JobProgress":
        return cls(
            job_id=job.id,
            status=job.status,
            provider_status=job.progress.provider_status,
            queue_position=job.progress.queue_position,
            logs=list(job.progress.logs),
            output_asset_id=job.output_asset_id,
            error=job.error,
        )

    @property
    def is_terminal(self) -> bool:
        return JobStatus(self.status).is_terminal


class SubmitGenerationResponse(BaseModel):
    """Response with job ID for tracking."""

    job_id: str
    status: JobStatus
