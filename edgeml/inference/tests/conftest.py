"""Shared fixtures for inference tests: a fake loader and runner over a real cache."""

from __future__ import annotations

import hashlib
import threading
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from pathlib import Path

import numpy as np
import pytest

from edgeml.core.exceptions import DownloadFailedError
from edgeml.inference.batch_inference import BatchInferenceOrchestrator, InferenceState
from edgeml.inference.compute_backend import ComputeBackendOptimizer, StaticPlatformCapabilities
from edgeml.inference.postprocessing import ResultPostprocessor
from edgeml.inference.predictions import Prediction
from edgeml.inference.runners import ImageBuffer
from edgeml.lifecycle.catalog import CatalogEntry, StaticModelCatalog
from edgeml.lifecycle.descriptor import ModelDescriptor, ModelType, SemanticVersion
from edgeml.lifecycle.download_service import DownloadCoordinator
from edgeml.lifecycle.model_manager import ModelCache
from edgeml.lifecycle.model_registry import LocalModelRegistry
from edgeml.lifecycle.storage import LocalModelStore
from edgeml.lifecycle.transport import BlobStream

# =============================================================================
# Fakes
# =============================================================================


class StubLoader:
    def __init__(self) -> None:
        self.fail_keys: set[str] = set()
        self.loaded: list[str] = []

    def load(self, descriptor: ModelDescriptor, path: Path) -> str:
        if descriptor.cache_key in self.fail_keys:
            raise RuntimeError("corrupt artifact")
        self.loaded.append(descriptor.cache_key)
        return descriptor.cache_key

    def unload(self, model: str) -> None:
        pass


class TaggedRunner:
    """Runner keyed on the image's tag (its first pixel value).

    ``delays[tag]`` sleeps before answering; tags in ``fail_tags`` raise.
    Each answer is one prediction labelled ``tag-<n>`` with confidence n/100.
    """

    def __init__(self) -> None:
        self.delays: dict[int, float] = {}
        self.fail_tags: set[int] = set()
        self.started: list[int] = []
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def run(self, model: str, descriptor: ModelDescriptor, image: ImageBuffer) -> list[Prediction]:
        tag = int(image.pixels[0, 0, 0])
        with self._lock:
            self.started.append(tag)
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            time.sleep(self.delays.get(tag, 0.0))
            if tag in self.fail_tags:
                raise RuntimeError(f"accelerator fault on image {tag}")
            return [Prediction(label=f"tag-{tag}", confidence=tag / 100)]
        finally:
            with self._lock:
                self.active -= 1


class BytesTransport:
    def __init__(self) -> None:
        self.blobs: dict[tuple[str, str], bytes] = {}

    @asynccontextmanager
    async def open(self, model_id: str, version: SemanticVersion) -> AsyncIterator[BlobStream]:
        key = (model_id, str(version))
        if key not in self.blobs:
            raise DownloadFailedError(model_id, "HTTP 404 from artifact service")
        data = self.blobs[key]

        async def chunks() -> AsyncIterator[bytes]:
            yield data

        yield BlobStream(
            chunks=chunks(), total_size=len(data), checksum_sha256=hashlib.sha256(data).hexdigest()
        )


class StateRecorder:
    def __init__(self) -> None:
        self.transitions: list[tuple[int | None, InferenceState]] = []

    def __call__(self, index: int | None, state: InferenceState) -> None:
        self.transitions.append((index, state))

    def states_for(self, index: int | None) -> list[InferenceState]:
        return [state for i, state in self.transitions if i == index]


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def store(tmp_path: Path) -> LocalModelStore:
    return LocalModelStore(tmp_path / "models")


@pytest.fixture
def registry(tmp_path: Path) -> LocalModelRegistry:
    return LocalModelRegistry(tmp_path / "registry.json")


@pytest.fixture
def stub_loader() -> StubLoader:
    return StubLoader()


@pytest.fixture
def runner() -> TaggedRunner:
    return TaggedRunner()


@pytest.fixture
def cache(store, stub_loader) -> ModelCache:
    return ModelCache(store, stub_loader, budget_bytes=1000)


@pytest.fixture
def recorder() -> StateRecorder:
    return StateRecorder()


@pytest.fixture
def install(store, registry) -> Callable[..., ModelDescriptor]:
    """Register a classifier and place its artifact on disk."""

    def _install(model_id: str = "scene-net") -> ModelDescriptor:
        descriptor = ModelDescriptor(
            id=model_id,
            name=model_id,
            version=SemanticVersion(1, 0, 0),
            model_type=ModelType.classification(),
            input_shape=(1, 3, 8, 8),
            output_shape=(1, 4),
            byte_size=100,
        )
        path = store.canonical_path(descriptor)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(b"\0" * descriptor.byte_size)
        registry.register(descriptor)
        return descriptor

    return _install


@pytest.fixture
def make_orchestrator(registry, cache, runner, store, recorder):
    """Factory for orchestrators over the shared cache and runner."""

    def _make(
        *, max_workers: int = 4, downloader: DownloadCoordinator | None = None
    ) -> BatchInferenceOrchestrator:
        return BatchInferenceOrchestrator(
            registry,
            cache,
            runner,
            ResultPostprocessor(confidence_threshold=0.0),
            ComputeBackendOptimizer(StaticPlatformCapabilities()),
            store=store,
            downloader=downloader,
            max_workers=max_workers,
            observer=recorder,
        )

    return _make


@pytest.fixture
def catalog() -> StaticModelCatalog:
    return StaticModelCatalog()


@pytest.fixture
def transport() -> BytesTransport:
    return BytesTransport()


@pytest.fixture
def downloader(transport, store, catalog, registry) -> DownloadCoordinator:
    return DownloadCoordinator(transport, store, catalog, registry)


@pytest.fixture
def publish(catalog, transport) -> Callable[[str, bytes], None]:
    """Publish a classifier to the catalog and serve its bytes."""

    def _publish(model_id: str, data: bytes = b"classifier-weights") -> None:
        catalog.publish(
            CatalogEntry(
                id=model_id,
                name=model_id,
                version="1.0.0",
                model_type="classification",
                input_shape=[1, 3, 8, 8],
                output_shape=[1, 4],
                byte_size=len(data),
                checksum_sha256=hashlib.sha256(data).hexdigest(),
            )
        )
        transport.blobs[(model_id, "1.0.0")] = data

    return _publish


@pytest.fixture
def image() -> Callable[[int], ImageBuffer]:
    """Factory for 8x8 images whose pixels all equal ``tag``."""

    def _image(tag: int) -> ImageBuffer:
        return ImageBuffer(np.full((8, 8, 3), tag, dtype=np.uint8))

    return _image
