"""Immutable model metadata: versions, model types and descriptors.

A ModelDescriptor is created once from a catalog entry and never mutated.
Everything downstream (cache keys, storage paths, backend selection, output
decoding) is derived from it.

Usage:
    descriptor = ModelDescriptor(
        id="yolo-lite",
        name="YOLO Lite",
        version=SemanticVersion.parse("1.2.0"),
        model_type=ModelType.detection(),
        input_shape=(1, 3, 320, 320),
        output_shape=(1, 100, 6),
        byte_size=12_000_000,
    )
    descriptor.cache_key  # "yolo-lite@1.2.0"
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

_VERSION_PATTERN = re.compile(r"^v?(\d+)(?:\.(\d+))?(?:\.(\d+))?$")


@dataclass(frozen=True, order=True, slots=True)
class SemanticVersion:
    """A ``major.minor.patch`` version, totally ordered by its components."""

    major: int
    minor: int = 0
    patch: int = 0

    def __post_init__(self) -> None:
        if self.major < 0 or self.minor < 0 or self.patch < 0:
            raise ValueError(f"Version components must be non-negative: {self}")

    @classmethod
    def parse(cls, value: str | SemanticVersion) -> SemanticVersion:
        """Parse ``"1.2.3"``, ``"1.2"``, ``"1"`` or ``"v1.2.3"``.

        Missing components default to zero.

        Raises:
            ValueError: If the string is not a plain numeric version
        """
        if isinstance(value, SemanticVersion):
            return value
        match = _VERSION_PATTERN.match(value.strip())
        if match is None:
            raise ValueError(f"Invalid semantic version: {value!r}")
        major, minor, patch = (int(part) if part else 0 for part in match.groups())
        return cls(major, minor, patch)

    def is_older_than(self, other: SemanticVersion) -> bool:
        return self < other

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}"


class ModelKind(StrEnum):
    """Tag of the ModelType variant."""

    DETECTION = "detection"
    CLASSIFICATION = "classification"
    SEGMENTATION = "segmentation"
    CUSTOM = "custom"


@dataclass(frozen=True, slots=True)
class ModelType:
    """Tagged model type: detection | classification | segmentation | custom(name).

    Consumers dispatch on ``kind`` with ``match``; ``custom_name`` is only
    set for the CUSTOM tag.
    """

    kind: ModelKind
    custom_name: str | None = None

    def __post_init__(self) -> None:
        if self.kind is ModelKind.CUSTOM and not self.custom_name:
            raise ValueError("Custom model types require a name")
        if self.kind is not ModelKind.CUSTOM and self.custom_name is not None:
            raise ValueError(f"Only custom model types carry a name, got {self.kind}")

    @classmethod
    def detection(cls) -> ModelType:
        return cls(ModelKind.DETECTION)

    @classmethod
    def classification(cls) -> ModelType:
        return cls(ModelKind.CLASSIFICATION)

    @classmethod
    def segmentation(cls) -> ModelType:
        return cls(ModelKind.SEGMENTATION)

    @classmethod
    def custom(cls, name: str) -> ModelType:
        return cls(ModelKind.CUSTOM, name)

    @classmethod
    def parse(cls, value: str | ModelType) -> ModelType:
        """Parse ``"detection"`` or ``"custom:<name>"``.

        Unknown plain names are treated as custom types, so catalogs can
        introduce new families without a code change.
        """
        if isinstance(value, ModelType):
            return value
        text = value.strip()
        if text.startswith("custom:"):
            return cls.custom(text.removeprefix("custom:"))
        try:
            return cls(ModelKind(text.lower()))
        except ValueError:
            return cls.custom(text)

    @property
    def label(self) -> str:
        """Label used for metrics and performance statistics."""
        return self.kind.value if self.kind is not ModelKind.CUSTOM else f"custom:{self.custom_name}"

    @property
    def produces_boxes(self) -> bool:
        return self.kind in (ModelKind.DETECTION, ModelKind.SEGMENTATION)

    def __str__(self) -> str:
        return self.label


@dataclass(frozen=True, slots=True)
class ModelDescriptor:
    """Immutable metadata for one version of a model.

    Attributes:
        id: Stable model identifier shared by all versions
        name: Human readable name
        version: Semantic version of this artifact
        model_type: Tagged model type
        input_shape: Declared input tensor shape, e.g. (1, 3, 224, 224)
        output_shape: Declared output tensor shape
        byte_size: Artifact size in bytes; also its resident size in the cache
        accuracy: Optional reported accuracy in [0, 1]
        min_platform_version: Optional minimum runtime version
        checksum_sha256: Optional expected SHA-256 hex digest of the artifact
        class_labels: Ordered class labels indexed by class id
        description: Optional free text
    """

    id: str
    name: str
    version: SemanticVersion
    model_type: ModelType
    input_shape: tuple[int, ...]
    output_shape: tuple[int, ...]
    byte_size: int
    accuracy: float | None = None
    min_platform_version: SemanticVersion | None = None
    checksum_sha256: str | None = None
    class_labels: tuple[str, ...] = field(default_factory=tuple)
    description: str | None = None

    def __post_init__(self) -> None:
        if not self.id:
            raise ValueError("Model id must not be empty")
        if self.byte_size < 0:
            raise ValueError(f"byte_size must be non-negative, got {self.byte_size}")
        if self.accuracy is not None and not 0.0 <= self.accuracy <= 1.0:
            raise ValueError(f"accuracy must be within [0, 1], got {self.accuracy}")
        if any(dim <= 0 for dim in self.input_shape):
            raise ValueError(f"input_shape dimensions must be positive: {self.input_shape}")

    @property
    def cache_key(self) -> str:
        return f"{self.id}@{self.version}"

    def supports_platform(self, platform_version: SemanticVersion) -> bool:
        """Whether a runtime of ``platform_version`` can run this model."""
        return self.min_platform_version is None or platform_version >= self.min_platform_version

    def label_for(self, class_id: int) -> str:
        """Return the class label for ``class_id``, or ``"class_<id>"`` when unknown."""
        if 0 <= class_id < len(self.class_labels):
            return self.class_labels[class_id]
        return f"class_{class_id}"

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the manifest/catalog representation."""
        return {
            "id": self.id,
            "name": self.name,
            "version": str(self.version),
            "model_type": self.model_type.label,
            "input_shape": list(self.input_shape),
            "output_shape": list(self.output_shape),
            "byte_size": self.byte_size,
            "accuracy": self.accuracy,
            "min_platform_version": (
                str(self.min_platform_version) if self.min_platform_version else None
            ),
            "checksum_sha256": self.checksum_sha256,
            "class_labels": list(self.class_labels),
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ModelDescriptor:
        """Build a descriptor from its ``to_dict`` representation."""
        min_platform = data.get("min_platform_version")
        return cls(
            id=data["id"],
            name=data.get("name") or data["id"],
            version=SemanticVersion.parse(data["version"]),
            model_type=ModelType.parse(data["model_type"]),
            input_shape=tuple(data.get("input_shape") or ()),
            output_shape=tuple(data.get("output_shape") or ()),
            byte_size=int(data["byte_size"]),
            accuracy=data.get("accuracy"),
            min_platform_version=SemanticVersion.parse(min_platform) if min_platform else None,
            checksum_sha256=data.get("checksum_sha256"),
            class_labels=tuple(data.get("class_labels") or ()),
            description=data.get("description"),
        )
