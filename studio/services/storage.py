"""
Object Storage Service

This module wraps Google Cloud Storage for the three operations the studio
needs: signing a time-bounded delivery URL for an internal reference, raw
uploads, and ingesting a provider output into durable storage.

Internal references use the ``gs://{bucket}/{path}`` form and are never
handed to callers directly.
"""

import asyncio
import logging
import mimetypes
from datetime import timedelta
from functools import partial
from io import BytesIO
from traceback import format_exc
from typing import Dict, Optional, Tuple, Union

import requests
from google.api_core import exceptions as google_exceptions
from google.cloud import storage
from PIL import Image, UnidentifiedImageError
from pydantic import BaseModel

import config
from studio.errors import ErrorKind, StudioError, Surface

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

STORAGE_SCHEME = "gs://"


class StoredObject(BaseModel):
    """A binary object written to storage."""

    storage_ref: str
    size: int
    content_type: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None


def parse_storage_reference(reference: Optional[str]) -> Optional[Tuple[str, str]]:
    """Split a ``gs://bucket/path`` reference into bucket and path."""
    if not reference or not reference.startswith(STORAGE_SCHEME):
        return None

    bucket, _, path = reference[len(STORAGE_SCHEME):].partition("/")
    if not bucket or not path:
        return None
    return bucket, path


def is_storage_reference(reference: Optional[str]) -> bool:
    return parse_storage_reference(reference) is not None


def build_storage_reference(bucket: str, path: str) -> str:
    return f"{STORAGE_SCHEME}{bucket}/{path.lstrip('/')}"


def is_owned_reference(
    reference: Optional[str], user_id: str, bucket_name: str
) -> bool:
    """Check that a storage reference lives under the user's prefix of our bucket."""
    parsed = parse_storage_reference(reference)
    if parsed is None:
        return False
    bucket, path = parsed
    if bucket != bucket_name:
        return False
    return path.startswith(f"{user_id}/") and ".." not in path.split("/")


def read_image_dimensions(data: bytes) -> Tuple[Optional[int], Optional[int]]:
    """Read width and height of an encoded image, if it is one."""
    try:
        with Image.open(BytesIO(data)) as image:
            return image.width, image.height
    except (UnidentifiedImageError, OSError):
        return None, None


def guess_extension(content_type: Optional[str], url: str = "") -> str:
    """Get a file extension for a content type, falling back to the URL."""
    if content_type:
        extension = mimetypes.guess_extension(content_type.split(";")[0].strip())
        if extension:
            return extension.lstrip(".")
    tail = url.split("?")[0].rsplit("/", 1)[-1]
    if "." in tail:
        return tail.rsplit(".", 1)[-1].lower()
    return "bin"


def _map_storage_error(e: Exception) -> StudioError:
    if isinstance(e, google_exceptions.NotFound):
        return StudioError(ErrorKind.NOT_FOUND, Surface.STORAGE, cause=str(e))
    if isinstance(e, google_exceptions.Forbidden):
        return StudioError(ErrorKind.FORBIDDEN, Surface.STORAGE, cause=str(e))
    if isinstance(e, google_exceptions.TooManyRequests):
        return StudioError(ErrorKind.RATE_LIMIT, Surface.STORAGE, cause=str(e))
    return StudioError(ErrorKind.UPSTREAM_UNAVAILABLE, Surface.STORAGE, cause=str(e))


class StorageService:
    """Google Cloud Storage operations used by the studio."""

    def __init__(
        self,
        bucket_name: str = config.GCLOUD_STB_ASSETS_NAME,
        client: Optional[storage.Client] = None,
        download_timeout: float = config.PROVIDER_REQUEST_TIMEOUT_SECONDS,
    ):
        self.bucket_name = bucket_name
        self._client = client
        self.download_timeout = download_timeout

    @property
    def client(self) -> storage.Client:
        """Get or create the storage client."""
        if self._client is None:
            self._client = storage.Client()
        return self._client

    async def _run(self, func, *args, **kwargs):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(func, *args, **kwargs))

    def _sign_blocking(
        self,
        bucket: str,
        path: str,
        expires_in: int,
        download: Union[bool, str],
        query_parameters: Dict[str, str],
    ) -> str:
        blob = self.client.bucket(bucket).blob(path)

        response_disposition = None
        if isinstance(download, str) and download:
            filename = "".join(c for c in download if c not in '"\\\r\n')
            response_disposition = f'attachment; filename="{filename}"'
        elif download is True:
            response_disposition = "attachment"

        return blob.generate_signed_url(
            version="v4",
            expiration=timedelta(seconds=expires_in),
            method="GET",
            response_disposition=response_disposition,
            query_parameters=query_parameters or None,
        )

    async def sign(
        self,
        reference: str,
        expires_in: int,
        download: Union[bool, str] = False,
        query_parameters: Optional[Dict[str, str]] = None,
    ) -> str:
        """
        Sign a time-bounded delivery URL for an internal reference.

        Args:
            reference: Internal ``gs://`` reference
            expires_in: Seconds until the URL expires
            download: Force download, optionally with a filename
            query_parameters: Transform parameters, signed into the URL

        Returns:
            The signed URL
        """
        parsed = parse_storage_reference(reference)
        if parsed is None:
            raise StudioError(
                ErrorKind.BAD_REQUEST,
                Surface.STORAGE,
                cause=f"Invalid storage reference: {reference}",
            )

        bucket, path = parsed
        try:
            return await self._run(
                self._sign_blocking,
                bucket,
                path,
                expires_in,
                download,
                dict(query_parameters or {}),
            )
        except Exception as e:
            logger.error(f"Failed to sign {reference}: {str(e)}\n{format_exc()}")
            raise _map_storage_error(e)

    async def upload_bytes(
        self, data: bytes, path: str, content_type: Optional[str] = None
    ) -> str:
        """Upload raw bytes and return the internal reference."""
        try:
            blob = self.client.bucket(self.bucket_name).blob(path)
            await self._run(blob.upload_from_string, data, content_type=content_type)
        except Exception as e:
            logger.error(f"Failed to upload {path}: {str(e)}\n{format_exc()}")
            raise _map_storage_error(e)

        reference = build_storage_reference(self.bucket_name, path)
        logger.info(f"Uploaded {len(data)} bytes to {reference}")
        return reference

    async def ingest_from_url(
        self, url: str, path_without_extension: str, content_type: Optional[str] = None
    ) -> StoredObject:
        """
        Download an external object and store it durably.

        Args:
            url: External URL of the object (e.g. a provider output)
            path_without_extension: Destination path; the extension is derived
                from the content type
            content_type: Expected content type, if known

        Returns:
            StoredObject describing the durable copy
        """
        try:
            response = await self._run(requests.get, url, timeout=self.download_timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            logger.error(f"Error downloading {url}: {str(e)}\n{format_exc()}")
            raise StudioError(
                ErrorKind.UPSTREAM_UNAVAILABLE, Surface.STORAGE, cause=str(e)
            )

        data = response.content
        content_type = content_type or response.headers.get("content-type")
        path = f"{path_without_extension}.{guess_extension(content_type, url)}"

        width, height = None, None
        if content_type and content_type.startswith("image/"):
            width, height = read_image_dimensions(data)

        reference = await self.upload_bytes(data, path, content_type=content_type)
        return StoredObject(
            storage_ref=reference,
            size=len(data),
            content_type=content_type,
            width=width,
            height=height,
        )

    def owns(self, reference: Optional[str], user_id: str) -> bool:
        """Check that a reference is in this service's bucket under the user's prefix."""
        return is_owned_reference(reference, user_id, self.bucket_name)

    async def delete(self, reference: str) -> None:
        """Delete a stored object. A missing object is not an error."""
        parsed = parse_storage_reference(reference)
        if parsed is None:
            raise StudioError(
                ErrorKind.BAD_REQUEST,
                Surface.STORAGE,
                cause=f"Invalid storage reference: {reference}",
            )

        bucket, path = parsed
        try:
            blob = self.client.bucket(bucket).blob(path)
            await self._run(blob.delete)
        except google_exceptions.NotFound:
            logger.info(f"{reference} was already deleted")
            return
        except Exception as e:
            logger.error(f"Failed to delete {reference}: {str(e)}\n{format_exc()}")
            raise _map_storage_error(e)

        logger.info(f"Deleted {reference}")
