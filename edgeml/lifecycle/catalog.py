"""Model catalog: the remote source of truth for available model versions.

The catalog only answers "what is the latest version of model X" and "which
models exist". Artifact bytes are fetched separately through a blob transport.

Two implementations are provided:
- StaticModelCatalog: in-memory, optionally loaded from a JSON file
- HttpModelCatalog: ``GET {base}/models`` and ``GET {base}/models/{id}``

Usage:
    catalog = HttpModelCatalog(settings.catalog_url)
    entry = await catalog.latest("yolo-lite")
    if entry is not None:
        descriptor = entry.to_descriptor()
"""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol

import httpx
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from edgeml.core.exceptions import CatalogUnavailableError
from edgeml.core.logging import get_logger, sanitize_error
from edgeml.lifecycle.descriptor import ModelDescriptor, ModelType, SemanticVersion

logger = get_logger(__name__)


class CatalogEntry(BaseModel):
    """One model version as published by the catalog feed."""

    model_config = ConfigDict(protected_namespaces=(), extra="ignore")

    id: str = Field(min_length=1)
    name: str
    version: str
    model_type: str = Field(description='"detection", "classification", "segmentation" or "custom:<name>"')
    input_shape: list[int] = Field(default_factory=list)
    output_shape: list[int] = Field(default_factory=list)
    byte_size: int = Field(ge=0)
    accuracy: float | None = Field(default=None, ge=0.0, le=1.0)
    min_platform_version: str | None = None
    checksum_sha256: str | None = Field(default=None, pattern=r"^[0-9a-fA-F]{64}$")
    class_labels: list[str] = Field(default_factory=list)
    description: str | None = None
    release_date: datetime | None = None
    change_notes: str = ""
    is_security_update: bool = False

    @field_validator("version", "min_platform_version")
    @classmethod
    def validate_version(cls, v: str | None) -> str | None:
        """Reject versions that SemanticVersion cannot parse."""
        if v is not None:
            SemanticVersion.parse(v)
        return v

    @property
    def semantic_version(self) -> SemanticVersion:
        return SemanticVersion.parse(self.version)

    def to_descriptor(self) -> ModelDescriptor:
        """Create the immutable descriptor for this entry."""
        return ModelDescriptor(
            id=self.id,
            name=self.name,
            version=SemanticVersion.parse(self.version),
            model_type=ModelType.parse(self.model_type),
            input_shape=tuple(self.input_shape),
            output_shape=tuple(self.output_shape),
            byte_size=self.byte_size,
            accuracy=self.accuracy,
            min_platform_version=(
                SemanticVersion.parse(self.min_platform_version)
                if self.min_platform_version
                else None
            ),
            checksum_sha256=self.checksum_sha256.lower() if self.checksum_sha256 else None,
            class_labels=tuple(self.class_labels),
            description=self.description,
        )


_ENTRY_LIST = TypeAdapter(list[CatalogEntry])


class ModelCatalog(Protocol):
    """Read-only view of the published model versions."""

    async def latest(self, model_id: str) -> CatalogEntry | None:
        """Return the newest published entry for ``model_id``, or None if unknown."""
        ...

    async def entries(self) -> list[CatalogEntry]:
        """Return the newest entry of every published model."""
        ...


class StaticModelCatalog:
    """In-memory catalog, useful for bundled manifests and tests.

    Several versions of the same model may be published; ``latest`` returns
    the highest version.
    """

    def __init__(self, entries: list[CatalogEntry] | None = None) -> None:
        self._entries: dict[str, list[CatalogEntry]] = {}
        for entry in entries or []:
            self.publish(entry)

    @classmethod
    def from_file(cls, path: str | Path) -> StaticModelCatalog:
        """Load a catalog from a JSON file holding a list of entries."""
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
        if isinstance(raw, dict):
            raw = raw.get("models", [])
        return cls(_ENTRY_LIST.validate_python(raw))

    def publish(self, entry: CatalogEntry) -> None:
        versions = self._entries.setdefault(entry.id, [])
        versions.append(entry)
        versions.sort(key=lambda e: e.semantic_version)

    async def latest(self, model_id: str) -> CatalogEntry | None:
        versions = self._entries.get(model_id)
        return versions[-1] if versions else None

    async def entries(self) -> list[CatalogEntry]:
        return [versions[-1] for versions in self._entries.values() if versions]


class HttpModelCatalog:
    """Catalog backed by the artifact service's HTTP API."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: httpx.Timeout | float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)
        logger.info(f"HttpModelCatalog initialized with base_url={self._base_url}")

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _get_json(self, path: str) -> Any:
        url = f"{self._base_url}{path}"
        try:
            response = await self._client.get(url)
            if response.status_code == httpx.codes.NOT_FOUND:
                return None
            response.raise_for_status()
            return response.json()
        except httpx.HTTPError as e:
            logger.warning(f"Catalog request {url} failed: {sanitize_error(e)}")
            raise CatalogUnavailableError(
                f"Catalog request failed: {sanitize_error(e)}",
                details={"url": url},
            ) from e
        except ValueError as e:
            raise self._malformed(path, e) from e

    def _malformed(self, path: str, error: ValueError) -> CatalogUnavailableError:
        url = f"{self._base_url}{path}"
        logger.warning(f"Catalog returned a malformed payload for {url}: {sanitize_error(error)}")
        return CatalogUnavailableError(
            f"Catalog returned a malformed payload: {sanitize_error(error)}",
            details={"url": url},
        )

    async def latest(self, model_id: str) -> CatalogEntry | None:
        path = f"/models/{model_id}"
        payload = await self._get_json(path)
        if payload is None:
            return None
        try:
            return CatalogEntry.model_validate(payload)
        except ValidationError as e:
            raise self._malformed(path, e) from e

    async def entries(self) -> list[CatalogEntry]:
        payload = await self._get_json("/models")
        if payload is None:
            return []
        if isinstance(payload, dict):
            payload = payload.get("models", [])
        try:
            return _ENTRY_LIST.validate_python(payload)
        except ValidationError as e:
            raise self._malformed("/models", e) from e
