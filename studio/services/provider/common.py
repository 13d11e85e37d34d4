from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from studio.models.shared import MediaKind, ProviderStatus


class ProviderOutput(BaseModel):
    """Output descriptor of a finished provider job."""

    url: str
    media_kind: MediaKind
    content_type: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    duration: Optional[float] = None
    fps: Optional[float] = None
    raw: Dict[str, Any] = Field(default_factory=dict)


class ProviderJobStatus(BaseModel):
    """Status of a provider job as reported by the provider."""

    status: ProviderStatus
    position: Optional[int] = None
    logs: List[str] = Field(default_factory=list)
    output: Optional[ProviderOutput] = None
    error_message: Optional[str] = None


class GenerationProvider(ABC):
    """Abstract base class for external generation providers.

    Implementations raise StudioError (surface provider) for failed calls.
    """

    @abstractmethod
    async def create_job(self, model_id: str, payload: Dict[str, Any]) -> str:
        """Submit a job and return the opaque provider job handle."""
        pass

    @abstractmethod
    async def get_status(self, provider_job_id: str) -> ProviderJobStatus:
        """Get the status of a job, including its output once succeeded."""
        pass

    @abstractmethod
    async def cancel(self, provider_job_id: str) -> bool:
        """Best-effort cancellation. Returns whether the provider acknowledged it."""
        pass
