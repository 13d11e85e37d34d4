"""
Persistence Collaborator

Read/write contracts for generation jobs, assets and projects, with a
Firestore implementation for production and an in-memory implementation
for development mode.

Asset creation is idempotent per generation job: the asset id of a
generated asset is derived from the job id, so a second creation attempt
for the same job returns the already stored asset.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional

from google.api_core.exceptions import AlreadyExists

import config
from studio.models.assets import Asset
from studio.models.generations import GenerationJob
from studio.models.projects import Project
from studio.models.shared import JobStatus
from studio.services.firestore_service import FirestoreService, get_firestore_service

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

JOBS_COLLECTION = "generations_jobs"
ASSETS_COLLECTION = "assets"
PROJECTS_COLLECTION = "projects"


def generation_asset_id(job_id: str) -> str:
    """Get the deterministic asset id of a generation job's output."""
    return f"gen-{job_id}"


class PersistenceService(ABC):
    """Abstract base class for the persistence collaborator."""

    @abstractmethod
    async def create_job(self, job: GenerationJob) -> GenerationJob:
        pass

    @abstractmethod
    async def update_job_record(self, job: GenerationJob) -> GenerationJob:
        """Write the full job record."""
        pass

    @abstractmethod
    async def get_job_record(self, job_id: str) -> Optional[GenerationJob]:
        pass

    @abstractmethod
    async def list_jobs(
        self, user_id: str, project_id: Optional[str] = None
    ) -> List[GenerationJob]:
        """Get a user's jobs, newest first."""
        pass

    @abstractmethod
    async def list_jobs_by_status(
        self, statuses: Iterable[JobStatus]
    ) -> List[GenerationJob]:
        pass

    @abstractmethod
    async def create_asset(self, asset: Asset) -> Asset:
        """Create an asset, returning the stored one if the id already exists."""
        pass

    @abstractmethod
    async def get_asset(self, asset_id: str) -> Optional[Asset]:
        pass

    @abstractmethod
    async def find_asset_by_generation(self, job_id: str) -> Optional[Asset]:
        """Get the asset produced by a generation job, if any."""
        pass

    @abstractmethod
    async def list_assets(
        self, user_id: str, project_id: Optional[str] = None
    ) -> List[Asset]:
        """Get a user's assets, newest first."""
        pass

    @abstractmethod
    async def delete_asset(self, asset_id: str) -> None:
        """Delete an asset record. The stored media is left in place."""
        pass

    @abstractmethod
    async def get_project(self, project_id: str) -> Optional[Project]:
        pass


class FirestorePersistenceService(PersistenceService):
    """Persistence on Firestore collections."""

    def __init__(self, firestore_service: Optional[FirestoreService] = None):
        self.firestore = firestore_service or get_firestore_service()

    async def create_job(self, job: GenerationJob) -> GenerationJob:
        await self.firestore.create_document(JOBS_COLLECTION, job)
        return job

    async def update_job_record(self, job: GenerationJob) -> GenerationJob:
        await self.firestore.set_document(JOBS_COLLECTION, job)
        return job

    async def get_job_record(self, job_id: str) -> Optional[GenerationJob]:
        return await self.firestore.get_document(
            JOBS_COLLECTION, job_id, model_class=GenerationJob
        )

    async def list_jobs(
        self, user_id: str, project_id: Optional[str] = None
    ) -> List[GenerationJob]:
        filters = [("user_id", "==", user_id)]
        if project_id:
            filters.append(("request.project_id", "==", project_id))
        return await self.firestore.query_collection(
            JOBS_COLLECTION,
            filters=filters,
            order_by="created_at",
            descending=True,
            model_class=GenerationJob,
        )

    async def list_jobs_by_status(
        self, statuses: Iterable[JobStatus]
    ) -> List[GenerationJob]:
        values = [JobStatus(s).value for s in statuses]
        return await self.firestore.query_collection(
            JOBS_COLLECTION,
            filters=[("status", "in", values)],
            model_class=GenerationJob,
        )

    async def create_asset(self, asset: Asset) -> Asset:
        try:
            await self.firestore.create_document(ASSETS_COLLECTION, asset)
            return asset
        except AlreadyExists:
            logger.info(f"Asset {asset.id} already exists, reusing it")
            existing = await self.get_asset(asset.id)
            if existing is None:
                raise
            return existing

    async def get_asset(self, asset_id: str) -> Optional[Asset]:
        return await self.firestore.get_document(
            ASSETS_COLLECTION, asset_id, model_class=Asset
        )

    async def find_asset_by_generation(self, job_id: str) -> Optional[Asset]:
        asset = await self.get_asset(generation_asset_id(job_id))
        if asset is not None:
            return asset

        assets = await self.firestore.query_collection(
            ASSETS_COLLECTION,
            filters=[("provenance.source_generation_id", "==", job_id)],
            limit=1,
            model_class=Asset,
        )
        return assets[0] if assets else None

    async def list_assets(
        self, user_id: str, project_id: Optional[str] = None
    ) -> List[Asset]:
        filters = [("owner_id", "==", user_id)]
        if project_id:
            filters.append(("project_id", "==", project_id))
        return await self.firestore.query_collection(
            ASSETS_COLLECTION,
            filters=filters,
            order_by="created_at",
            descending=True,
            model_class=Asset,
        )

    async def delete_asset(self, asset_id: str) -> None:
        await self.firestore.delete_document(ASSETS_COLLECTION, asset_id)

    async def get_project(self, project_id: str) -> Optional[Project]:
        return await self.firestore.get_document(
            PROJECTS_COLLECTION, project_id, model_class=Project
        )


class InMemoryPersistenceService(PersistenceService):
    """Process-local persistence for development mode and tests."""

    def __init__(self):
        self.jobs: Dict[str, GenerationJob] = {}
        self.assets: Dict[str, Asset] = {}
        self.projects: Dict[str, Project] = {}
        self._lock = asyncio.Lock()

    async def create_job(self, job: GenerationJob) -> GenerationJob:
        async with self._lock:
            if job.id in self.jobs:
                raise AlreadyExists(f"Job {job.id} already exists")
            self.jobs[job.id] = job.model_copy(deep=True)
        return job

    async def update_job_record(self, job: GenerationJob) -> GenerationJob:
        async with self._lock:
            self.jobs[job.id] = job.model_copy(deep=True)
        return job

    async def get_job_record(self, job_id: str) -> Optional[GenerationJob]:
        job = self.jobs.get(job_id)
        return job.model_copy(deep=True) if job else None

    async def list_jobs(
        self, user_id: str, project_id: Optional[str] = None
    ) -> List[GenerationJob]:
        jobs = [
            job.model_copy(deep=True)
            for job in self.jobs.values()
            if job.user_id == user_id
            and (project_id is None or job.request.project_id == project_id)
        ]
        return sorted(jobs, key=lambda j: j.created_at, reverse=True)

    async def list_jobs_by_status(
        self, statuses: Iterable[JobStatus]
    ) -> List[GenerationJob]:
        wanted = {JobStatus(s) for s in statuses}
        return [j.model_copy(deep=True) for j in self.jobs.values() if j.status in wanted]

    async def create_asset(self, asset: Asset) -> Asset:
        async with self._lock:
            existing = self.assets.get(asset.id)
            if existing is not None:
                logger.info(f"Asset {asset.id} already exists, reusing it")
                return existing.model_copy(deep=True)
            self.assets[asset.id] = asset.model_copy(deep=True)
        return asset

    async def get_asset(self, asset_id: str) -> Optional[Asset]:
        asset = self.assets.get(asset_id)
        return asset.model_copy(deep=True) if asset else None

    async def find_asset_by_generation(self, job_id: str) -> Optional[Asset]:
        for asset in self.assets.values():
            if asset.provenance.source_generation_id == job_id:
                return asset.model_copy(deep=True)
        return None

    async def list_assets(
        self, user_id: str, project_id: Optional[str] = None
    ) -> List[Asset]:
        assets = [
            asset.model_copy(deep=True)
            for asset in self.assets.values()
            if asset.owner_id == user_id
            and (project_id is None or asset.project_id == project_id)
        ]
        return sorted(assets, key=lambda a: a.created_at, reverse=True)

    async def delete_asset(self, asset_id: str) -> None:
        async with self._lock:
            self.assets.pop(asset_id, None)

    async def get_project(self, project_id: str) -> Optional[Project]:
        project = self.projects.get(project_id)
        return project.model_copy(deep=True) if project else None

    def add_project(self, project: Project) -> None:
        self.projects[project.id] = project


def create_persistence_service() -> PersistenceService:
    """Get the persistence service for the configured environment."""
    if config.ENV == "d":
        logger.info("Using in-memory persistence (development mode)")
        return InMemoryPersistenceService()
    return FirestorePersistenceService()
