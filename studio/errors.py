"""
Error Taxonomy

This module contains the closed set of failure kinds shared by the resolver,
the job orchestrator and the asset materializer, together with the surface
(subsystem) that raised them. Every component-level failure is a StudioError
tagged with exactly one kind and one surface.
"""

import logging
from enum import Enum
from typing import Dict, Optional, Tuple

from fastapi import HTTPException

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

GENERIC_ERROR_MESSAGE = "Something went wrong. Please try again later."


class ErrorKind(str, Enum):
    """Failure kind enumeration."""

    BAD_REQUEST = "bad_request"
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    RATE_LIMIT = "rate_limit"
    TIMEOUT = "timeout"
    UPSTREAM_UNAVAILABLE = "upstream_unavailable"


class Surface(str, Enum):
    """Subsystem that raised a failure."""

    JOB = "job"
    ASSET = "asset"
    MODEL_RESOLUTION = "model_resolution"
    STORAGE = "storage"
    PROVIDER = "provider"
    PROJECT = "project"


STATUS_CODES: Dict[ErrorKind, int] = {
    ErrorKind.BAD_REQUEST: 400,
    ErrorKind.UNAUTHORIZED: 401,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.RATE_LIMIT: 429,
    ErrorKind.UPSTREAM_UNAVAILABLE: 503,
    ErrorKind.TIMEOUT: 504,
}

TRANSIENT_KINDS = frozenset({ErrorKind.RATE_LIMIT, ErrorKind.UPSTREAM_UNAVAILABLE})

# Surfaces whose messages are only written to the log
LOG_ONLY_SURFACES = frozenset({Surface.STORAGE})

MESSAGES: Dict[Tuple[ErrorKind, Surface], str] = {
    # Jobs
    (ErrorKind.BAD_REQUEST, Surface.JOB): "The generation request is invalid. Please check your parameters and try again.",
    (ErrorKind.NOT_FOUND, Surface.JOB): "The requested generation was not found. It may have been deleted.",
    (ErrorKind.FORBIDDEN, Surface.JOB): "This generation belongs to another user. You don't have permission to access it.",
    (ErrorKind.UNAUTHORIZED, Surface.JOB): "You need to sign in to start a generation. Please sign in and try again.",
    (ErrorKind.RATE_LIMIT, Surface.JOB): "You have exceeded your generation quota. Please wait or upgrade your plan.",
    (ErrorKind.TIMEOUT, Surface.JOB): "The generation took too long to complete and was stopped.",
    (ErrorKind.UPSTREAM_UNAVAILABLE, Surface.JOB): "The generation could not be completed because a service is unavailable.",
    # Model resolution
    (ErrorKind.BAD_REQUEST, Surface.MODEL_RESOLUTION): "The selected model does not support this kind of generation or is missing required inputs.",
    (ErrorKind.NOT_FOUND, Surface.MODEL_RESOLUTION): "The requested AI model was not found. It may have been deprecated.",
    # Provider
    (ErrorKind.BAD_REQUEST, Surface.PROVIDER): "The generation request was rejected by the AI service. Please check your parameters.",
    (ErrorKind.UNAUTHORIZED, Surface.PROVIDER): "AI service authentication failed. Please contact support.",
    (ErrorKind.FORBIDDEN, Surface.PROVIDER): "This AI model is not available in your plan. Please upgrade or choose a different model.",
    (ErrorKind.NOT_FOUND, Surface.PROVIDER): "The requested AI model was not found. It may have been deprecated.",
    (ErrorKind.RATE_LIMIT, Surface.PROVIDER): "AI service rate limit exceeded. Please wait a moment and try again.",
    (ErrorKind.TIMEOUT, Surface.PROVIDER): "The AI service took too long to respond.",
    (ErrorKind.UPSTREAM_UNAVAILABLE, Surface.PROVIDER): "AI service is temporarily unavailable. Please try again later.",
    # Assets
    (ErrorKind.BAD_REQUEST, Surface.ASSET): "The asset data is invalid. Please check your input and try again.",
    (ErrorKind.NOT_FOUND, Surface.ASSET): "The requested asset was not found. It may have been deleted.",
    (ErrorKind.FORBIDDEN, Surface.ASSET): "This asset belongs to another user. You don't have permission to access it.",
    (ErrorKind.UNAUTHORIZED, Surface.ASSET): "You need to sign in to access this asset. Please sign in and try again.",
    # Projects
    (ErrorKind.NOT_FOUND, Surface.PROJECT): "The requested project was not found. Please check the project ID and try again.",
    (ErrorKind.FORBIDDEN, Surface.PROJECT): "This project belongs to another user. You don't have permission to access it.",
}


def get_message(kind: ErrorKind, surface: Surface) -> str:
    """Get the display-safe message for a kind/surface pair."""
    return MESSAGES.get((kind, surface), GENERIC_ERROR_MESSAGE)


class StudioError(Exception):
    """A failure tagged with exactly one kind and one surface.

    Args:
        kind: Failure kind
        surface: Subsystem that raised the failure
        cause: Internal detail, written to logs only
        message: Display-safe message override. Defaults to the message table.
    """

    def __init__(
        self,
        kind: ErrorKind,
        surface: Surface,
        cause: Optional[str] = None,
        message: Optional[str] = None,
    ):
        self.kind = ErrorKind(kind)
        self.surface = Surface(surface)
        self.cause = cause
        self.message = message or get_message(self.kind, self.surface)
        super().__init__(self.message)

    @property
    def code(self) -> str:
        return f"{self.kind.value}:{self.surface.value}"

    @property
    def status_code(self) -> int:
        return STATUS_CODES.get(self.kind, 500)

    @property
    def is_transient(self) -> bool:
        """Whether the failure may succeed when retried."""
        return self.kind in TRANSIENT_KINDS

    def to_http_exception(self) -> HTTPException:
        """Convert into an HTTPException without leaking the internal cause."""
        if self.surface in LOG_ONLY_SURFACES:
            logger.error(f"{self.code}: {self.message} (cause: {self.cause})")
            return HTTPException(
                status_code=self.status_code,
                detail={"code": "", "message": GENERIC_ERROR_MESSAGE},
            )

        return HTTPException(
            status_code=self.status_code,
            detail={"code": self.code, "message": self.message},
        )

    def __repr__(self) -> str:
        return f"StudioError({self.code!r}, cause={self.cause!r})"


def kind_from_status_code(status_code: int) -> ErrorKind:
    """Map an upstream HTTP status code onto the shared taxonomy."""
    if status_code in (400, 422):
        return ErrorKind.BAD_REQUEST
    if status_code == 401:
        return ErrorKind.UNAUTHORIZED
    if status_code == 403:
        return ErrorKind.FORBIDDEN
    if status_code == 404:
        return ErrorKind.NOT_FOUND
    if status_code == 429:
        return ErrorKind.RATE_LIMIT
    return ErrorKind.UPSTREAM_UNAVAILABLE
