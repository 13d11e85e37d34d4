import logging
from contextlib import asynccontextmanager
from traceback import format_exc
from typing import Callable, Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

import config
from studio.errors import GENERIC_ERROR_MESSAGE, StudioError
from studio.models.catalog import ModelCatalog
from studio.server.routers.asset_routes import asset_router
from studio.server.routers.generation_routes import generation_router
from studio.server.routers.model_routes import model_router
from studio.services.materializer import AssetMaterializer
from studio.services.orchestrator import GenerationOrchestrator, OrchestratorSettings
from studio.services.persistence import PersistenceService, create_persistence_service
from studio.services.progress import ProgressBroker
from studio.services.provider.common import GenerationProvider
from studio.services.provider.fal_ai import FalAiProvider
from studio.services.resolver import ModalityResolver
from studio.services.storage import StorageService

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Define the allowed origins
origins = [
    "http://localhost:3000",
    "http://localhost:8080",
    # Add other origins as needed
]


class StudioServices:
    """The collaborators wired together for one application instance."""

    def __init__(
        self,
        catalog: ModelCatalog,
        provider: GenerationProvider,
        persistence: PersistenceService,
        storage: StorageService,
        settings: Optional[OrchestratorSettings] = None,
    ):
        self.catalog = catalog
        self.resolver = ModalityResolver(catalog)
        self.provider = provider
        self.persistence = persistence
        self.storage = storage
        self.materializer = AssetMaterializer(storage)
        self.broker = ProgressBroker()
        self.orchestrator = GenerationOrchestrator(
            resolver=self.resolver,
            provider=provider,
            persistence=persistence,
            storage=storage,
            materializer=self.materializer,
            broker=self.broker,
            settings=settings,
        )


def build_services() -> StudioServices:
    """Wire the production collaborators from configuration."""
    return StudioServices(
        catalog=ModelCatalog.from_file(config.CATALOG_PATH),
        provider=FalAiProvider(),
        persistence=create_persistence_service(),
        storage=StorageService(),
    )


def create_app(
    services_factory: Callable[[], StudioServices] = build_services,
) -> FastAPI:
    """Create the FastAPI application.

    Args:
        services_factory: Builds the collaborators when the app starts
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup: load the catalog once and wire the collaborators
        services = services_factory()
        app.state.services = services
        try:
            await services.orchestrator.resume()
        except Exception as e:
            logger.error(f"Failed to resume generation jobs: {str(e)}\n{format_exc()}")

        yield

        # Shutdown: stop background poll loops
        await services.orchestrator.shutdown()

    app = FastAPI(title="Studio Server", lifespan=lifespan)

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,  # Allows requests from these origins
        allow_credentials=True,
        allow_methods=["*"],  # Allows all methods (GET, POST, etc.)
        allow_headers=["*"],  # Allows all headers
    )

    @app.exception_handler(StudioError)
    async def studio_error_handler(request: Request, exc: StudioError):
        if exc.cause:
            logger.info(f"{request.method} {request.url.path} failed: {exc.code} ({exc.cause})")
        http_exception = exc.to_http_exception()
        return JSONResponse(
            status_code=http_exception.status_code,
            content=jsonable_encoder({"detail": http_exception.detail}),
        )

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.error(
            f"Unexpected error on {request.method} {request.url.path}: {str(exc)}\n{format_exc()}"
        )
        return JSONResponse(
            status_code=500, content={"detail": {"code": "", "message": GENERIC_ERROR_MESSAGE}}
        )

    @app.get("/", tags=["root"])
    def root():
        return {"message": "success"}

    # Include the routers in the main app with a prefix
    app.include_router(generation_router, prefix="/generation", tags=["generation"])
    app.include_router(model_router, prefix="/models", tags=["models"])
    app.include_router(asset_router, prefix="/assets", tags=["assets"])

    return app
