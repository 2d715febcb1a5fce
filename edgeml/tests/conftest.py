"""Fixtures for runtime and CLI tests: a runtime wired with in-memory collaborators."""

from __future__ import annotations

import hashlib
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from pathlib import Path

import pytest
import torch

from edgeml.core.config import Settings
from edgeml.core.exceptions import DownloadFailedError
from edgeml.inference.compute_backend import StaticPlatformCapabilities
from edgeml.lifecycle.catalog import CatalogEntry, StaticModelCatalog
from edgeml.lifecycle.descriptor import ModelDescriptor, SemanticVersion
from edgeml.lifecycle.transport import BlobStream
from edgeml.runtime import ModelRuntime, build_runtime


class ThreeClassLogits(torch.nn.Module):
    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return torch.tensor([[1.0, 2.0, 3.0]])


class ModuleLoader:
    """Hands out a fixed three-class classifier instead of reading the artifact."""

    def __init__(self) -> None:
        self.loaded: list[str] = []

    def load(self, descriptor: ModelDescriptor, path: Path) -> torch.nn.Module:
        self.loaded.append(descriptor.cache_key)
        return ThreeClassLogits()

    def unload(self, model: torch.nn.Module) -> None:
        pass


class MemoryTransport:
    def __init__(self) -> None:
        self.blobs: dict[tuple[str, str], bytes] = {}

    @asynccontextmanager
    async def open(self, model_id: str, version: SemanticVersion) -> AsyncIterator[BlobStream]:
        data = self.blobs.get((model_id, str(version)))
        if data is None:
            raise DownloadFailedError(model_id, "HTTP 404 from artifact service")

        async def chunks() -> AsyncIterator[bytes]:
            yield data

        yield BlobStream(chunks=chunks(), total_size=len(data), checksum_sha256=None)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        _env_file=None,
        model_storage_dir=str(tmp_path / "models"),
        model_cache_budget_mb=1,
        inference_workers=2,
        max_parallel_downloads=2,
    )


@pytest.fixture
def catalog() -> StaticModelCatalog:
    return StaticModelCatalog()


@pytest.fixture
def transport() -> MemoryTransport:
    return MemoryTransport()


@pytest.fixture
def module_loader() -> ModuleLoader:
    return ModuleLoader()


@pytest.fixture
async def runtime(settings, catalog, transport, module_loader) -> AsyncIterator[ModelRuntime]:
    runtime = build_runtime(
        settings,
        catalog=catalog,
        transport=transport,
        loader=module_loader,
        capabilities=StaticPlatformCapabilities(),
    )
    yield runtime
    await runtime.aclose()


@pytest.fixture
def publish(catalog, transport) -> Callable[..., None]:
    """Publish a three-class classifier version and serve its bytes."""

    def _publish(model_id: str, version: str = "1.0.0", data: bytes = b"weights") -> None:
        catalog.publish(
            CatalogEntry(
                id=model_id,
                name=model_id,
                version=version,
                model_type="classification",
                input_shape=[1, 3, 8, 8],
                output_shape=[1, 3],
                byte_size=len(data),
                checksum_sha256=hashlib.sha256(data).hexdigest(),
                class_labels=["cat", "dog", "fox"],
            )
        )
        transport.blobs[(model_id, version)] = data

    return _publish
