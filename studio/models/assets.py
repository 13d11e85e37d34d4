"""
Asset Data Models

This module contains the durable asset record created for uploads and
successful generations, and the options accepted when turning an asset's
storage reference into a delivery URL.
"""

from datetime import datetime
from typing import List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

import config
from studio.models.shared import AssetType, FirestoreBaseModel, SourceType


class AssetMetadata(BaseModel):
    """Technical metadata of a stored media object."""

    model_config = ConfigDict(extra="allow")

    size: Optional[int] = Field(None, ge=0, description="Size in bytes")
    width: Optional[int] = Field(None, ge=0)
    height: Optional[int] = Field(None, ge=0)
    duration: Optional[float] = Field(None, ge=0, description="Seconds")
    fps: Optional[float] = Field(None, ge=0)
    format: Optional[str] = Field(None, description="MIME type or file extension")


class Provenance(BaseModel):
    """Where an asset came from."""

    source_type: SourceType
    source_generation_id: Optional[str] = Field(
        None, description="Generation job that produced the asset"
    )


class BaseAsset(BaseModel):
    """Base asset model shared between Firestore and API."""

    id: str = Field(..., description="Unique asset identifier")
    owner_id: str = Field(..., description="Owning user ID")
    project_id: Optional[str] = Field(None, description="Owning project")
    type: AssetType
    name: str = Field("", description="Display name")
    storage_ref: str = Field(
        ..., description="Durable storage reference, never a public URL"
    )
    thumbnail_ref: Optional[str] = Field(None, description="Durable thumbnail reference")
    metadata: AssetMetadata = Field(default_factory=AssetMetadata)
    provenance: Provenance
    created_at: datetime = Field(..., description="Asset creation timestamp")


class Asset(BaseAsset, FirestoreBaseModel):
    """Asset document model for assets collection."""

    pass


class ImageTransform(BaseModel):
    """On-the-fly image transformation.

    Quality is accepted as given and clamped when the delivery URL is built.
    """

    model_config = ConfigDict(frozen=True)

    width: Optional[int] = Field(None, gt=0)
    height: Optional[int] = Field(None, gt=0)
    quality: Optional[int] = None
    format: Optional[Literal["origin", "webp", "avif"]] = None
    resize: Optional[Literal["cover", "contain", "fill"]] = None


class DeliveryOptions(BaseModel):
    """Options for materializing a storage reference."""

    model_config = ConfigDict(frozen=True)

    expires_in: int = Field(
        config.SIGNED_URL_EXPIRY_SECONDS, description="Seconds until expiry"
    )
    download: Union[bool, str] = Field(
        False, description="Force download, optionally with a filename"
    )
    transform: Optional[ImageTransform] = None


class DeliveryUrlRequest(BaseModel):
    """Request for one or many delivery URLs."""

    reference: Optional[str] = None
    references: Optional[List[Optional[str]]] = None
    options: DeliveryOptions = Field(default_factory=DeliveryOptions)


class DeliveryUrlResponse(BaseModel):
    """Response with a single delivery URL."""

    url: Optional[str]


class DeliveryUrlsResponse(BaseModel):
    """Response with delivery URLs in input order."""

    urls: List[Optional[str]]


class AssetWithUrls(BaseAsset):
    """Asset enriched with delivery URLs."""

    signed_url: Optional[str] = None
    signed_thumbnail_url: Optional[str] = None


class BulkDeleteRequest(BaseModel):
    """Request to delete several of the caller's assets."""

    asset_ids: List[str] = Field(..., min_length=1)


class BulkDeleteResponse(BaseModel):
    """Outcome of a bulk delete."""

    success: bool
    deleted: int
    failed: int = 0
