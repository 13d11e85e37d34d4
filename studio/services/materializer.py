"""
Access-Scoped Asset Materializer

Turns durable, private storage references into short-lived delivery URLs.
External http(s) URLs pass through unchanged, empty references resolve to
None, and signing failures degrade to None instead of raising.
"""

import asyncio
import logging
from typing import Dict, Iterable, List, Literal, Optional, Union

import config
from studio.errors import StudioError
from studio.models.assets import (
    Asset,
    AssetWithUrls,
    BaseAsset,
    DeliveryOptions,
    ImageTransform,
)
from studio.models.shared import AssetType
from studio.services.storage import StorageService

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

EXTERNAL_URL_SCHEMES = ("http://", "https://")

PreviewSize = Literal["small", "medium", "large"]

PRESETS: Dict[str, DeliveryOptions] = {
    # Grid views
    "small": DeliveryOptions(
        transform=ImageTransform(
            width=200, height=200, resize="cover", quality=75, format="webp"
        ),
    ),
    # List views
    "medium": DeliveryOptions(
        transform=ImageTransform(
            width=400, height=300, resize="cover", quality=80, format="webp"
        ),
    ),
    # Detail views
    "large": DeliveryOptions(
        expires_in=7200,
        transform=ImageTransform(
            width=800, height=600, resize="contain", quality=85, format="webp"
        ),
    ),
    "full": DeliveryOptions(
        transform=ImageTransform(
            width=1920, height=1080, resize="contain", quality=90, format="webp"
        ),
    ),
    "download": DeliveryOptions(expires_in=300, download=True),
}

# Raw video playback when no thumbnail exists
VIDEO_PLAYBACK_OPTIONS = DeliveryOptions(expires_in=7200)


def clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, value))


def transform_parameters(transform: Optional[ImageTransform]) -> Dict[str, str]:
    """
    Build the canonical query parameters of an image transform.

    Keys are emitted in a fixed order and quality is clamped, so equal
    transforms always produce equal parameters.
    """
    if transform is None:
        return {}

    params: Dict[str, str] = {}
    if transform.width:
        params["width"] = str(transform.width)
    if transform.height:
        params["height"] = str(transform.height)
    if transform.quality is not None:
        params["quality"] = str(
            clamp(
                transform.quality,
                config.TRANSFORM_QUALITY_MIN,
                config.TRANSFORM_QUALITY_MAX,
            )
        )
    if transform.format:
        params["format"] = transform.format
    if transform.resize:
        params["resize"] = transform.resize
    return params


def download_options(filename: Optional[str] = None) -> DeliveryOptions:
    """Get the download preset, optionally naming the saved file."""
    if filename:
        return PRESETS["download"].model_copy(update={"download": filename})
    return PRESETS["download"]


class AssetMaterializer:
    """Stateless translator from storage references to delivery URLs."""

    def __init__(self, storage_service: StorageService):
        self.storage = storage_service

    async def materialize(
        self, reference: Optional[str], options: Optional[DeliveryOptions] = None
    ) -> Optional[str]:
        """
        Get a delivery URL for a reference.

        Args:
            reference: Internal storage reference, external URL, or None
            options: Expiry, download and transform options

        Returns:
            The delivery URL, or None when there is nothing to deliver
        """
        if not reference:
            return None

        if reference.startswith(EXTERNAL_URL_SCHEMES):
            return reference

        options = options or DeliveryOptions()
        expires_in = clamp(
            options.expires_in,
            config.SIGNED_URL_MIN_EXPIRY_SECONDS,
            config.SIGNED_URL_MAX_EXPIRY_SECONDS,
        )

        try:
            return await self.storage.sign(
                reference,
                expires_in=expires_in,
                download=options.download,
                query_parameters=transform_parameters(options.transform),
            )
        except StudioError as e:
            logger.warning(f"Could not materialize {reference}: {e.cause}")
            return None

    async def materialize_all(
        self,
        references: Iterable[Optional[str]],
        options: Optional[DeliveryOptions] = None,
    ) -> List[Optional[str]]:
        """Materialize many references, keeping input order."""
        return list(
            await asyncio.gather(*(self.materialize(r, options) for r in references))
        )

    async def preset(self, reference: Optional[str], name: str) -> Optional[str]:
        """Materialize a reference with a named preset."""
        if name not in PRESETS:
            raise ValueError(f"Unknown delivery preset: {name}")
        return await self.materialize(reference, PRESETS[name])

    async def preview_url(
        self, asset: BaseAsset, size: PreviewSize = "medium"
    ) -> Optional[str]:
        """
        Get a size-tiered preview URL of an asset.

        Videos preview their thumbnail; a video without a thumbnail falls
        back to its raw reference.
        """
        if asset.type == AssetType.VIDEO:
            if asset.thumbnail_ref:
                return await self.preset(asset.thumbnail_ref, size)
            return await self.materialize(asset.storage_ref, VIDEO_PLAYBACK_OPTIONS)

        return await self.preset(asset.thumbnail_ref or asset.storage_ref, size)

    async def playback_url(
        self, asset: BaseAsset, download: Union[bool, str] = False
    ) -> Optional[str]:
        """Get a URL of the full media, for playback or download."""
        if download:
            filename = download if isinstance(download, str) else None
            return await self.materialize(asset.storage_ref, download_options(filename))
        return await self.materialize(asset.storage_ref, VIDEO_PLAYBACK_OPTIONS)

    async def enrich_assets(
        self, assets: List[Asset], options: Optional[DeliveryOptions] = None
    ) -> List[AssetWithUrls]:
        """Attach delivery URLs of the media and its thumbnail to each asset."""
        urls = await self.materialize_all([a.storage_ref for a in assets], options)
        thumbnail_urls = await self.materialize_all(
            [a.thumbnail_ref for a in assets], options
        )

        return [
            AssetWithUrls(
                **asset.model_dump(),
                signed_url=url,
                signed_thumbnail_url=thumbnail_url,
            )
            for asset, url, thumbnail_url in zip(assets, urls, thumbnail_urls)
        ]
