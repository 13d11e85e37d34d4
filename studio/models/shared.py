"""
Shared Data Models

This module contains shared Pydantic base classes and the enumerations
used across the catalog, job and asset schemas.
"""

from enum import Enum

from pydantic import BaseModel, ConfigDict


class FirestoreBaseModel(BaseModel):
    """Base model for all Firestore documents with common configuration.

    Documents are written from ``model_dump(mode="json")``, so no custom
    encoders are configured here.
    """

    model_config = ConfigDict(
        # Allow population by field name or alias
        populate_by_name=True,
        # Validate assignments
        validate_assignment=True,
    )


# Enums
class MediaKind(str, Enum):
    """Output media produced by a model."""

    IMAGE = "image"
    VIDEO = "video"


class InputKind(str, Enum):
    """Kinds of reference input a model can consume."""

    REFERENCE_IMAGE = "reference-image"
    FIRST_FRAME = "first-frame"
    LAST_FRAME = "last-frame"
    REFERENCE_VIDEO = "reference-video"


class GenerationType(str, Enum):
    """Input-modality to output-modality category of a request."""

    TEXT_TO_IMAGE = "text-to-image"
    TEXT_TO_VIDEO = "text-to-video"
    IMAGE_TO_IMAGE = "image-to-image"
    IMAGE_TO_VIDEO = "image-to-video"
    VIDEO_TO_VIDEO = "video-to-video"
    INPAINT = "inpaint"
    LIPSYNC = "lipsync"

    @property
    def is_text_prompted(self) -> bool:
        return self.value.startswith("text-to")


class JobStatus(str, Enum):
    """Generation job lifecycle states."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


class ProviderStatus(str, Enum):
    """Job states reported by the generation provider."""

    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class AssetType(str, Enum):
    """Stored media type."""

    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"


class SourceType(str, Enum):
    """How an asset came to exist."""

    UPLOAD = "upload"
    GENERATION = "generation"
