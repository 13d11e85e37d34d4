from typing import Annotated, List

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from studio.models.catalog import ModelDescriptor
from studio.models.shared import GenerationType
from studio.server.dependencies import get_resolver
from studio.services.resolver import (
    DEFAULT_RECOMMENDATION_LIMIT,
    InputRequirements,
    ModalityResolver,
)

# Create a router for model catalog queries
model_router = APIRouter()


class SupportsResponse(BaseModel):
    model_id: str
    generation_type: GenerationType
    supported: bool


# Multi-segment model routes are declared before /{generation_type}/...
@model_router.get("/requirements/{model_id:path}", response_model=InputRequirements)
async def get_model_requirements(
    model_id: str,
    resolver: Annotated[ModalityResolver, Depends(get_resolver)],
) -> InputRequirements:
    return resolver.requirements_of(model_id)


@model_router.get(
    "/supports/{generation_type}/{model_id:path}", response_model=SupportsResponse
)
async def get_model_supports(
    generation_type: GenerationType,
    model_id: str,
    resolver: Annotated[ModalityResolver, Depends(get_resolver)],
) -> SupportsResponse:
    return SupportsResponse(
        model_id=model_id,
        generation_type=generation_type,
        supported=resolver.supports(model_id, generation_type),
    )


@model_router.get("/types/{model_id:path}", response_model=List[GenerationType])
async def get_model_generation_types(
    model_id: str,
    resolver: Annotated[ModalityResolver, Depends(get_resolver)],
) -> List[GenerationType]:
    """Get the generation types a model supports; empty for unknown models."""
    return resolver.generation_types_of(model_id)


@model_router.get("/{generation_type}", response_model=List[ModelDescriptor])
async def get_models_for_type(
    generation_type: GenerationType,
    resolver: Annotated[ModalityResolver, Depends(get_resolver)],
) -> List[ModelDescriptor]:
    """Get all models supporting a generation type, in catalog order."""
    return resolver.models_for(generation_type)


@model_router.get(
    "/{generation_type}/recommended", response_model=List[ModelDescriptor]
)
async def get_recommended_models(
    generation_type: GenerationType,
    resolver: Annotated[ModalityResolver, Depends(get_resolver)],
    limit: Annotated[int, Query(ge=0, le=100)] = DEFAULT_RECOMMENDATION_LIMIT,
) -> List[ModelDescriptor]:
    return resolver.recommend(generation_type, limit)
