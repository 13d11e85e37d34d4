"""
Model Catalog

This module contains the immutable descriptors of the third-party generation
models and the catalog object that owns them. The catalog is loaded once at
startup and passed by reference; nothing in it is mutated after load.
"""

import json
import logging
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from studio.models.shared import InputKind, MediaKind

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class ModelParameters(BaseModel):
    """Model-specific parameter policy."""

    model_config = ConfigDict(frozen=True)

    fixed: Dict[str, Any] = Field(
        default_factory=dict, description="Always sent, cannot be overridden"
    )
    defaults: Dict[str, Any] = Field(
        default_factory=dict, description="Sent unless the request overrides them"
    )

    def apply(self, parameters: Dict[str, Any]) -> Dict[str, Any]:
        """Merge request parameters between the defaults and the fixed values."""
        return {**self.defaults, **parameters, **self.fixed}


class ModelDescriptor(BaseModel):
    """Static metadata describing one generation model."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str = Field(..., min_length=1, description="Unique model identifier")
    name: str = Field("", description="Display name")
    description: str = Field("", description="Model description")
    creator: str = Field("", description="Model creator")
    quality: Optional[str] = Field(None, description="Quality label")
    media_kind: MediaKind = Field(..., alias="mediaKind")
    accepts_image_input: bool = Field(False, alias="acceptsImageInput")
    accepts_video_input: bool = Field(False, alias="acceptsVideoInput")
    requires_reference_input: bool = Field(False, alias="requiresReferenceInput")
    required_inputs: Tuple[InputKind, ...] = Field((), alias="requiredInputs")
    optional_inputs: Tuple[InputKind, ...] = Field((), alias="optionalInputs")
    parameters: ModelParameters = Field(default_factory=ModelParameters)
    settings: Dict[str, Any] = Field(
        default_factory=dict, description="Free-form per-model settings schema"
    )

    @field_validator("required_inputs", "optional_inputs")
    @classmethod
    def deduplicate_inputs(cls, v: Tuple[InputKind, ...]) -> Tuple[InputKind, ...]:
        """Keep input kinds as ordered sets."""
        return tuple(dict.fromkeys(v))

    @model_validator(mode="after")
    def check_inputs_disjoint(self) -> "ModelDescriptor":
        overlap = set(self.required_inputs) & set(self.optional_inputs)
        if overlap:
            raise ValueError(
                f"Model {self.id} lists {sorted(k.value for k in overlap)} as both required and optional"
            )
        return self


class ModelCatalog:
    """Read-only, ordered collection of model descriptors."""

    def __init__(self, descriptors: Sequence[ModelDescriptor]):
        self._descriptors: Tuple[ModelDescriptor, ...] = tuple(descriptors)
        self._by_id: Dict[str, ModelDescriptor] = {}
        for descriptor in self._descriptors:
            if descriptor.id in self._by_id:
                raise ValueError(f"Duplicate model id in catalog: {descriptor.id}")
            self._by_id[descriptor.id] = descriptor

    @classmethod
    def from_records(cls, records: List[Dict[str, Any]]) -> "ModelCatalog":
        """Build a catalog from raw descriptor dictionaries."""
        return cls([ModelDescriptor.model_validate(record) for record in records])

    @classmethod
    def from_file(cls, path: str) -> "ModelCatalog":
        """Load a catalog from a JSON file.

        The file holds either a list of descriptors or a list of
        ``{"creator": ..., "models": [...]}`` groups.
        """
        with open(path, encoding="utf-8") as catalog_file:
            data = json.load(catalog_file)

        records: List[Dict[str, Any]] = []
        for entry in data:
            if "models" in entry:
                for model in entry["models"]:
                    records.append({"creator": entry.get("creator", ""), **model})
            else:
                records.append(entry)

        catalog = cls.from_records(records)
        logger.info(f"Loaded {len(catalog)} model descriptors from {path}")
        return catalog

    def get(self, model_id: str) -> Optional[ModelDescriptor]:
        """Get a descriptor by id, or None if the id is unknown."""
        return self._by_id.get(model_id)

    @property
    def descriptors(self) -> Tuple[ModelDescriptor, ...]:
        return self._descriptors

    def __iter__(self) -> Iterator[ModelDescriptor]:
        return iter(self._descriptors)

    def __len__(self) -> int:
        return len(self._descriptors)

    def __contains__(self, model_id: object) -> bool:
        return model_id in self._by_id
