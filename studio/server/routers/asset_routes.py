import asyncio
import logging
from typing import Annotated, List, Literal, Optional, Union

from fastapi import APIRouter, Depends, Query, Response

from studio.errors import ErrorKind, StudioError, Surface
from studio.models.assets import (
    Asset,
    AssetWithUrls,
    BulkDeleteRequest,
    BulkDeleteResponse,
    DeliveryUrlRequest,
    DeliveryUrlResponse,
    DeliveryUrlsResponse,
)
from studio.server.dependencies import (
    get_current_user_id,
    get_materializer,
    get_persistence,
    get_storage,
)
from studio.services.materializer import AssetMaterializer
from studio.services.persistence import PersistenceService
from studio.services.storage import StorageService, is_storage_reference

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Create a router for asset delivery
asset_router = APIRouter()


def _can_deliver(
    reference: Optional[str], user_id: str, storage: StorageService
) -> bool:
    """Internal references must belong to the caller; anything else is passed on."""
    if is_storage_reference(reference):
        return storage.owns(reference, user_id)
    return True


async def _get_owned_asset(
    asset_id: str, user_id: str, persistence: PersistenceService
) -> Asset:
    asset = await persistence.get_asset(asset_id)
    if asset is None:
        raise StudioError(
            ErrorKind.NOT_FOUND, Surface.ASSET, cause=f"Asset not found: {asset_id}"
        )
    if asset.owner_id != user_id:
        raise StudioError(
            ErrorKind.FORBIDDEN,
            Surface.ASSET,
            cause=f"Asset {asset_id} is not owned by {user_id}",
        )
    return asset


@asset_router.get("", response_model=List[AssetWithUrls])
async def list_assets(
    user_id: Annotated[str, Depends(get_current_user_id)],
    materializer: Annotated[AssetMaterializer, Depends(get_materializer)],
    persistence: Annotated[PersistenceService, Depends(get_persistence)],
    project_id: Optional[str] = None,
) -> List[AssetWithUrls]:
    """List the caller's assets, newest first, with delivery URLs."""
    if project_id:
        project = await persistence.get_project(project_id)
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

    assets = await persistence.list_assets(user_id, project_id)
    return await materializer.enrich_assets(assets)


@asset_router.post("/bulk-delete", response_model=BulkDeleteResponse)
async def bulk_delete_assets(
    request: BulkDeleteRequest,
    response: Response,
    user_id: Annotated[str, Depends(get_current_user_id)],
    persistence: Annotated[PersistenceService, Depends(get_persistence)],
) -> BulkDeleteResponse:
    """Delete several assets at once.

    Nothing is deleted unless every asset exists and belongs to the caller.
    Partial failures are reported with status 207.
    """
    asset_ids = list(dict.fromkeys(request.asset_ids))
    assets = await asyncio.gather(*(persistence.get_asset(i) for i in asset_ids))

    missing = [i for i, a in zip(asset_ids, assets) if a is None]
    if missing:
        raise StudioError(
            ErrorKind.NOT_FOUND,
            Surface.ASSET,
            cause=f"Assets not found: {missing}",
            message="Some assets were not found.",
        )

    if any(a.owner_id != user_id for a in assets):
        raise StudioError(
            ErrorKind.FORBIDDEN,
            Surface.ASSET,
            cause=f"{user_id} tried to delete assets of other users",
            message="You cannot delete assets owned by other users.",
        )

    results = await asyncio.gather(
        *(persistence.delete_asset(i) for i in asset_ids), return_exceptions=True
    )
    failed = 0
    for asset_id, result in zip(asset_ids, results):
        if isinstance(result, Exception):
            failed += 1
            logger.error(f"Failed to delete asset {asset_id}: {str(result)}")

    logger.info(f"Deleted {len(asset_ids) - failed} assets of {user_id}")
    if failed:
        response.status_code = 207
    return BulkDeleteResponse(
        success=failed == 0, deleted=len(asset_ids) - failed, failed=failed
    )


@asset_router.post(
    "/delivery_url", response_model=Union[DeliveryUrlsResponse, DeliveryUrlResponse]
)
async def get_delivery_url(
    request: DeliveryUrlRequest,
    user_id: Annotated[str, Depends(get_current_user_id)],
    materializer: Annotated[AssetMaterializer, Depends(get_materializer)],
    storage: Annotated[StorageService, Depends(get_storage)],
) -> Union[DeliveryUrlsResponse, DeliveryUrlResponse]:
    """Get delivery URLs for one reference or a batch of references.

    In a batch, references the caller may not read resolve to null.
    """
    if request.references is not None:
        references = [
            r if _can_deliver(r, user_id, storage) else None
            for r in request.references
        ]
        urls = await materializer.materialize_all(references, request.options)
        return DeliveryUrlsResponse(urls=urls)

    if request.reference is None:
        raise StudioError(
            ErrorKind.BAD_REQUEST,
            Surface.ASSET,
            cause="Neither reference nor references given",
            message="Missing 'reference' or 'references' parameter.",
        )

    if not _can_deliver(request.reference, user_id, storage):
        raise StudioError(
            ErrorKind.FORBIDDEN,
            Surface.ASSET,
            cause=f"{request.reference} is outside the storage of {user_id}",
        )

    url = await materializer.materialize(request.reference, request.options)
    return DeliveryUrlResponse(url=url)


@asset_router.get("/{asset_id}", response_model=AssetWithUrls)
async def get_asset(
    asset_id: str,
    user_id: Annotated[str, Depends(get_current_user_id)],
    materializer: Annotated[AssetMaterializer, Depends(get_materializer)],
    persistence: Annotated[PersistenceService, Depends(get_persistence)],
) -> AssetWithUrls:
    """Get an asset with delivery URLs of its media and thumbnail."""
    asset = await _get_owned_asset(asset_id, user_id, persistence)
    enriched = await materializer.enrich_assets([asset])
    return enriched[0]


@asset_router.get("/{asset_id}/preview", response_model=DeliveryUrlResponse)
async def get_asset_preview(
    asset_id: str,
    user_id: Annotated[str, Depends(get_current_user_id)],
    materializer: Annotated[AssetMaterializer, Depends(get_materializer)],
    persistence: Annotated[PersistenceService, Depends(get_persistence)],
    size: Literal["small", "medium", "large"] = "medium",
) -> DeliveryUrlResponse:
    asset = await _get_owned_asset(asset_id, user_id, persistence)
    return DeliveryUrlResponse(url=await materializer.preview_url(asset, size))


@asset_router.get("/{asset_id}/download", response_model=DeliveryUrlResponse)
async def get_asset_download(
    asset_id: str,
    user_id: Annotated[str, Depends(get_current_user_id)],
    materializer: Annotated[AssetMaterializer, Depends(get_materializer)],
    persistence: Annotated[PersistenceService, Depends(get_persistence)],
    filename: Annotated[Optional[str], Query(max_length=255)] = None,
) -> DeliveryUrlResponse:
    """Get a short-lived URL that downloads the full media."""
    asset = await _get_owned_asset(asset_id, user_id, persistence)
    return DeliveryUrlResponse(
        url=await materializer.playback_url(asset, download=filename or True)
    )
