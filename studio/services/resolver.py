"""
Model-Modality Resolver

This module classifies catalog models into generation-type buckets using one
capability predicate per GenerationType, and answers compatibility,
recommendation and input-requirement questions over an injected catalog.
"""

import logging
import threading
from typing import Callable, Dict, FrozenSet, List, Optional, Tuple

from pydantic import BaseModel

from studio.errors import ErrorKind, StudioError, Surface
from studio.models.catalog import ModelCatalog, ModelDescriptor
from studio.models.generations import GenerationRequest
from studio.models.shared import GenerationType, InputKind, MediaKind

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

Predicate = Callable[[ModelDescriptor], bool]


def _takes_image(m: ModelDescriptor) -> bool:
    return m.accepts_image_input or m.requires_reference_input


def _is_text_only(m: ModelDescriptor) -> bool:
    return not (
        m.accepts_image_input or m.accepts_video_input or m.requires_reference_input
    )


CLASSIFICATION_RULES: Dict[GenerationType, Predicate] = {
    GenerationType.TEXT_TO_IMAGE: lambda m: (
        m.media_kind == MediaKind.IMAGE and _is_text_only(m)
    ),
    GenerationType.TEXT_TO_VIDEO: lambda m: (
        m.media_kind == MediaKind.VIDEO
        and _is_text_only(m)
        and InputKind.FIRST_FRAME not in m.required_inputs
        and InputKind.REFERENCE_VIDEO not in m.required_inputs
    ),
    GenerationType.IMAGE_TO_IMAGE: lambda m: (
        m.media_kind == MediaKind.IMAGE and _takes_image(m)
    ),
    GenerationType.INPAINT: lambda m: (
        m.media_kind == MediaKind.IMAGE
        and _takes_image(m)
        and "inpaint" in m.id.lower()
    ),
    GenerationType.IMAGE_TO_VIDEO: lambda m: (
        m.media_kind == MediaKind.VIDEO
        and _takes_image(m)
        and InputKind.REFERENCE_VIDEO not in m.required_inputs
    ),
    GenerationType.VIDEO_TO_VIDEO: lambda m: (
        m.media_kind == MediaKind.VIDEO
        and (m.accepts_video_input or InputKind.REFERENCE_VIDEO in m.required_inputs)
    ),
    GenerationType.LIPSYNC: lambda m: (
        m.media_kind == MediaKind.VIDEO
        and m.accepts_video_input
        and "lipsync" in m.id.lower()
    ),
}

# Preferred models per generation type, in priority order.
# An empty list falls back to catalog order.
PRIORITY_MODELS: Dict[GenerationType, Tuple[str, ...]] = {
    GenerationType.TEXT_TO_IMAGE: (),
    GenerationType.TEXT_TO_VIDEO: (
        "fal-ai/sora-2/text-to-video",
        "fal-ai/sora-2/text-to-video/pro",
        "fal-ai/veo3.1",
        "fal-ai/veo3.1/fast",
    ),
    GenerationType.IMAGE_TO_IMAGE: (),
    GenerationType.IMAGE_TO_VIDEO: (
        "fal-ai/sora-2/image-to-video",
        "fal-ai/sora-2/image-to-video/pro",
        "fal-ai/veo3.1/image-to-video",
        "fal-ai/veo3.1/fast/image-to-video",
    ),
    GenerationType.VIDEO_TO_VIDEO: (),
    GenerationType.INPAINT: (),
    GenerationType.LIPSYNC: (),
}

DEFAULT_RECOMMENDATION_LIMIT = 5


class InputRequirements(BaseModel):
    """Reference inputs a model needs and accepts."""

    required: List[InputKind]
    optional: List[InputKind]


def classify(descriptor: ModelDescriptor) -> FrozenSet[GenerationType]:
    """Get every generation type a descriptor supports."""
    return frozenset(
        generation_type
        for generation_type, predicate in CLASSIFICATION_RULES.items()
        if predicate(descriptor)
    )


class ModalityResolver:
    """Answers generation-type questions over a model catalog.

    The catalog-wide classification is built on first use and cached. Calling
    invalidate() drops the cache; the next lookup rebuilds it.
    """

    def __init__(
        self,
        catalog: ModelCatalog,
        priorities: Optional[Dict[GenerationType, Tuple[str, ...]]] = None,
    ):
        self.catalog = catalog
        self.priorities = PRIORITY_MODELS if priorities is None else priorities
        self._mapping: Optional[Dict[GenerationType, Tuple[ModelDescriptor, ...]]] = None
        self._lock = threading.Lock()

    def _build_mapping(self) -> Dict[GenerationType, Tuple[ModelDescriptor, ...]]:
        buckets: Dict[GenerationType, List[ModelDescriptor]] = {
            generation_type: [] for generation_type in GenerationType
        }
        for descriptor in self.catalog:
            for generation_type in classify(descriptor):
                buckets[generation_type].append(descriptor)
        return {k: tuple(v) for k, v in buckets.items()}

    def _get_mapping(self) -> Dict[GenerationType, Tuple[ModelDescriptor, ...]]:
        mapping = self._mapping
        if mapping is None:
            with self._lock:
                if self._mapping is None:
                    self._mapping = self._build_mapping()
                    logger.info(
                        f"Classified {len(self.catalog)} models into {len(self._mapping)} generation types"
                    )
                mapping = self._mapping
        return mapping

    def invalidate(self) -> None:
        """Drop the cached classification."""
        with self._lock:
            self._mapping = None

    def lookup(self, model_id: str) -> Optional[ModelDescriptor]:
        return self.catalog.get(model_id)

    def classify(self, descriptor: ModelDescriptor) -> FrozenSet[GenerationType]:
        return classify(descriptor)

    def models_for(self, generation_type: GenerationType) -> List[ModelDescriptor]:
        """Get all models supporting a generation type, in catalog order."""
        return list(self._get_mapping()[GenerationType(generation_type)])

    def recommend(
        self,
        generation_type: GenerationType,
        limit: int = DEFAULT_RECOMMENDATION_LIMIT,
    ) -> List[ModelDescriptor]:
        """Get priority models first, then the remaining matches in catalog order."""
        generation_type = GenerationType(generation_type)
        if limit <= 0:
            return []

        models = self.models_for(generation_type)
        by_id = {m.id: m for m in models}
        priorities = list(dict.fromkeys(self.priorities.get(generation_type, ())))

        prioritized = [by_id[model_id] for model_id in priorities if model_id in by_id]
        priority_ids = set(priorities)
        others = [m for m in models if m.id not in priority_ids]

        return (prioritized + others)[:limit]

    def requirements_of(self, model_id: str) -> InputRequirements:
        """Get the required and optional reference inputs of a model."""
        descriptor = self.lookup(model_id)
        if descriptor is None:
            raise StudioError(
                ErrorKind.NOT_FOUND,
                Surface.MODEL_RESOLUTION,
                cause=f"Model not found: {model_id}",
            )
        return InputRequirements(
            required=list(descriptor.required_inputs),
            optional=list(descriptor.optional_inputs),
        )

    def generation_types_of(self, model_id: str) -> List[GenerationType]:
        """Get the generation types of a model, in enum order."""
        descriptor = self.lookup(model_id)
        if descriptor is None:
            return []
        supported = classify(descriptor)
        return [t for t in GenerationType if t in supported]

    def supports(self, model_id: str, generation_type: GenerationType) -> bool:
        """Check compatibility; unknown models are simply unsupported."""
        descriptor = self.lookup(model_id)
        if descriptor is None:
            return False
        return GenerationType(generation_type) in classify(descriptor)

    def validate(self, request: GenerationRequest) -> ModelDescriptor:
        """Check a request against the catalog before any job exists.

        Raises:
            StudioError: bad_request when the model is unknown, does not
                support the generation type, or a required input is missing
        """
        descriptor = self.lookup(request.model_id)
        if descriptor is None:
            raise StudioError(
                ErrorKind.BAD_REQUEST,
                Surface.MODEL_RESOLUTION,
                cause=f"Model not found: {request.model_id}",
                message=f"Unknown model: {request.model_id}",
            )

        if request.generation_type not in classify(descriptor):
            raise StudioError(
                ErrorKind.BAD_REQUEST,
                Surface.MODEL_RESOLUTION,
                cause=f"{request.model_id} does not support {request.generation_type.value}",
                message=f"Model {request.model_id} does not support {request.generation_type.value} generation.",
            )

        provided = set(request.input_kinds())
        missing = [k for k in descriptor.required_inputs if k not in provided]
        if missing:
            missing_names = ", ".join(k.value for k in missing)
            raise StudioError(
                ErrorKind.BAD_REQUEST,
                Surface.MODEL_RESOLUTION,
                cause=f"{request.model_id} is missing required inputs: {missing_names}",
                message=f"Missing required inputs: {missing_names}",
            )

        return descriptor
