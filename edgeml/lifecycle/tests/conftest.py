"""Shared fixtures for lifecycle tests: fake loader, in-memory transport, catalog."""

from __future__ import annotations

import asyncio
import hashlib
import threading
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import pytest

from edgeml.core.exceptions import DownloadFailedError
from edgeml.lifecycle.catalog import CatalogEntry, StaticModelCatalog
from edgeml.lifecycle.descriptor import ModelDescriptor, ModelType, SemanticVersion
from edgeml.lifecycle.model_registry import LocalModelRegistry
from edgeml.lifecycle.storage import LocalModelStore
from edgeml.lifecycle.transport import BlobStream

# =============================================================================
# Fakes
# =============================================================================


@dataclass
class FakeModel:
    key: str


class FakeLoader:
    """Loader that records calls; configure ``fail_keys`` and ``delay`` per test."""

    def __init__(self) -> None:
        self.loaded: list[str] = []
        self.unloaded: list[str] = []
        self.fail_keys: set[str] = set()
        self.delay = 0.0
        self._lock = threading.Lock()

    def load(self, descriptor: ModelDescriptor, path: Path) -> FakeModel:
        if self.delay:
            time.sleep(self.delay)
        if descriptor.cache_key in self.fail_keys:
            raise RuntimeError("corrupt artifact")
        with self._lock:
            self.loaded.append(descriptor.cache_key)
        return FakeModel(descriptor.cache_key)

    def unload(self, model: FakeModel) -> None:
        with self._lock:
            self.unloaded.append(model.key)


class InMemoryTransport:
    """Blob transport serving registered byte strings in small chunks.

    Tracks how many streams are open at once so tests can check the
    parallelism bound.
    """

    def __init__(self, chunk_size: int = 4) -> None:
        self.chunk_size = chunk_size
        self.blobs: dict[tuple[str, str], bytes] = {}
        self.declared_checksums: dict[tuple[str, str], str | None] = {}
        self.fail_after_chunks: dict[tuple[str, str], int] = {}
        self.chunk_delay = 0.0
        self.gate: asyncio.Event | None = None
        self.opened: list[tuple[str, str]] = []
        self.active = 0
        self.max_active = 0

    def add(self, model_id: str, version: str, data: bytes) -> None:
        key = (model_id, str(SemanticVersion.parse(version)))
        self.blobs[key] = data

    @asynccontextmanager
    async def open(self, model_id: str, version: SemanticVersion) -> AsyncIterator[BlobStream]:
        key = (model_id, str(version))
        self.opened.append(key)
        if key not in self.blobs:
            raise DownloadFailedError(model_id, "HTTP 404 from artifact service")
        data = self.blobs[key]
        checksum = self.declared_checksums.get(key, hashlib.sha256(data).hexdigest())
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            yield BlobStream(
                chunks=self._chunks(model_id, key, data),
                total_size=len(data),
                checksum_sha256=checksum,
            )
        finally:
            self.active -= 1

    async def _chunks(self, model_id: str, key: tuple[str, str], data: bytes) -> AsyncIterator[bytes]:
        fail_after = self.fail_after_chunks.get(key)
        for index, offset in enumerate(range(0, len(data), self.chunk_size)):
            if fail_after is not None and index >= fail_after:
                raise DownloadFailedError(model_id, "connection reset")
            if self.gate is not None:
                await self.gate.wait()
            if self.chunk_delay:
                await asyncio.sleep(self.chunk_delay)
            else:
                await asyncio.sleep(0)
            yield data[offset : offset + self.chunk_size]


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def loader() -> FakeLoader:
    return FakeLoader()


@pytest.fixture
def transport() -> InMemoryTransport:
    return InMemoryTransport()


@pytest.fixture
def catalog() -> StaticModelCatalog:
    return StaticModelCatalog()


@pytest.fixture
def store(tmp_path: Path) -> LocalModelStore:
    return LocalModelStore(tmp_path / "models")


@pytest.fixture
def registry(tmp_path: Path) -> LocalModelRegistry:
    return LocalModelRegistry(tmp_path / "registry.json")


@pytest.fixture
def make_descriptor() -> Callable[..., ModelDescriptor]:
    """Factory for descriptors with small, test-friendly defaults."""

    def _make(
        model_id: str = "yolo-lite",
        version: str = "1.0.0",
        byte_size: int = 100,
        model_type: ModelType | None = None,
        **fields: Any,
    ) -> ModelDescriptor:
        return ModelDescriptor(
            id=model_id,
            name=model_id.replace("-", " ").title(),
            version=SemanticVersion.parse(version),
            model_type=model_type or ModelType.detection(),
            input_shape=(1, 3, 8, 8),
            output_shape=(1, 10, 6),
            byte_size=byte_size,
            **fields,
        )

    return _make


@pytest.fixture
def write_artifact(store: LocalModelStore) -> Callable[..., Path]:
    """Place an artifact at a descriptor's canonical path, bypassing downloads."""

    def _write(descriptor: ModelDescriptor, data: bytes | None = None) -> Path:
        path = store.canonical_path(descriptor)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data if data is not None else b"\0" * descriptor.byte_size)
        return path

    return _write


@pytest.fixture
def publish(catalog: StaticModelCatalog, transport: InMemoryTransport) -> Callable[..., ModelDescriptor]:
    """Publish a model version to the catalog and serve its bytes from the transport."""

    def _publish(
        model_id: str,
        version: str = "1.0.0",
        data: bytes = b"model-weights-v1",
        *,
        catalog_checksum: str | None = None,
        **fields: Any,
    ) -> ModelDescriptor:
        entry = CatalogEntry(
            id=model_id,
            name=model_id.replace("-", " ").title(),
            version=version,
            model_type=fields.pop("model_type", "classification"),
            input_shape=[1, 3, 8, 8],
            output_shape=[1, 4],
            byte_size=len(data),
            checksum_sha256=catalog_checksum or hashlib.sha256(data).hexdigest(),
            **fields,
        )
        catalog.publish(entry)
        transport.add(model_id, version, data)
        return entry.to_descriptor()

    return _publish
