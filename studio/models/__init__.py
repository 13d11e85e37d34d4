"""
Models Package

This package contains the data models organized by domain:
- catalog.py: Model descriptors and the model catalog
- generations.py: Generation requests, jobs and progress events
- assets.py: Asset records and delivery options
- projects.py: Project records
- shared.py: Common base model and enumerations
"""

# Import all models for easy access
from studio.models.assets import (
    Asset,
    AssetMetadata,
    AssetWithUrls,
    BaseAsset,
    DeliveryOptions,
    ImageTransform,
    Provenance,
)
from studio.models.catalog import ModelCatalog, ModelDescriptor, ModelParameters
from studio.models.generations import (
    BaseGenerationJob,
    GenerationJob,
    GenerationRequest,
    JobError,
    JobProgress,
    ProviderProgress,
    ReferenceInput,
)
from studio.models.projects import BaseProject, Project
from studio.models.shared import (
    AssetType,
    FirestoreBaseModel,
    GenerationType,
    InputKind,
    JobStatus,
    MediaKind,
    ProviderStatus,
    SourceType,
)

# Collection model mappings for Firestore operations
COLLECTION_MODELS = {
    "generations_jobs": GenerationJob,
    "assets": Asset,
    "projects": Project,
}

__all__ = [
    # Base models
    "FirestoreBaseModel",
    # Enums
    "AssetType",
    "GenerationType",
    "InputKind",
    "JobStatus",
    "MediaKind",
    "ProviderStatus",
    "SourceType",
    # Catalog models
    "ModelCatalog",
    "ModelDescriptor",
    "ModelParameters",
    # Generation models
    "BaseGenerationJob",
    "GenerationJob",
    "GenerationRequest",
    "JobError",
    "JobProgress",
    "ProviderProgress",
    "ReferenceInput",
    # Asset models
    "Asset",
    "AssetMetadata",
    "AssetWithUrls",
    "BaseAsset",
    "DeliveryOptions",
    "ImageTransform",
    "Provenance",
    # Project models
    "BaseProject",
    "Project",
    # Collection mappings
    "COLLECTION_MODELS",
]
