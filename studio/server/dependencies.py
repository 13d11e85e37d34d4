from typing import Annotated, Optional

from fastapi import Header, Request

from studio.errors import ErrorKind, StudioError, Surface
from studio.services.materializer import AssetMaterializer
from studio.services.orchestrator import GenerationOrchestrator
from studio.services.persistence import PersistenceService
from studio.services.resolver import ModalityResolver
from studio.services.storage import StorageService


async def get_current_user_id(
    x_user_id: Annotated[Optional[str], Header()] = None,
) -> str:
    """Get the caller's user id, set by the authentication layer in front of us."""
    if not x_user_id or not x_user_id.strip():
        raise StudioError(
            ErrorKind.UNAUTHORIZED, Surface.JOB, cause="Missing X-User-Id header"
        )
    return x_user_id.strip()


def get_resolver(request: Request) -> ModalityResolver:
    return request.app.state.services.resolver


def get_orchestrator(request: Request) -> GenerationOrchestrator:
    return request.app.state.services.orchestrator


def get_materializer(request: Request) -> AssetMaterializer:
    return request.app.state.services.materializer


def get_persistence(request: Request) -> PersistenceService:
    return request.app.state.services.persistence


def get_storage(request: Request) -> StorageService:
    return request.app.state.services.storage
