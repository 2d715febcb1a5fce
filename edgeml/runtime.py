"""Composition root: builds one explicitly-owned set of pipeline components.

Nothing here is a module-level singleton. Callers build a runtime, pass it
(or its parts) to whatever needs it and close it when done. Tests build
runtimes with fake transports, catalogs and loaders.

Usage:
    runtime = build_runtime(get_settings())
    try:
        predictions = await runtime.orchestrator.infer(image, "yolo-lite")
    finally:
        await runtime.aclose()
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import httpx

from edgeml.core.config import Settings, get_settings
from edgeml.core.logging import get_logger
from edgeml.inference.batch_inference import BatchInferenceOrchestrator, StateObserver
from edgeml.inference.compute_backend import (
    ComputeBackendOptimizer,
    PlatformCapabilities,
    TorchPlatformCapabilities,
)
from edgeml.inference.postprocessing import ResultPostprocessor
from edgeml.inference.runners import ModelRunner, TorchScriptModelLoader
from edgeml.lifecycle.catalog import HttpModelCatalog, ModelCatalog
from edgeml.lifecycle.download_service import DownloadCoordinator
from edgeml.lifecycle.model_manager import ModelCache, ModelLoader
from edgeml.lifecycle.model_registry import LocalModelRegistry
from edgeml.lifecycle.storage import LocalModelStore
from edgeml.lifecycle.transport import BlobTransport, HttpBlobTransport
from edgeml.lifecycle.update_service import UpdateCoordinator

logger = get_logger(__name__)


@dataclass
class ModelRuntime:
    """All pipeline components wired against one settings instance."""

    settings: Settings
    store: LocalModelStore
    registry: LocalModelRegistry
    catalog: ModelCatalog
    transport: BlobTransport
    optimizer: ComputeBackendOptimizer
    loader: ModelLoader
    cache: ModelCache
    downloader: DownloadCoordinator
    updater: UpdateCoordinator
    runner: ModelRunner
    postprocessor: ResultPostprocessor
    orchestrator: BatchInferenceOrchestrator
    _closeables: list[Any] = field(default_factory=list, repr=False)

    async def cleanup_idle_models(self) -> list[str]:
        """Unload models idle for longer than ``model_idle_unload_seconds``."""
        return await self.cache.cleanup_idle_models(self.settings.model_idle_unload_seconds)

    async def aclose(self) -> None:
        """Unload unreferenced models and close HTTP clients owned by the runtime."""
        pinned = await self.cache.unload_all()
        if pinned:
            logger.warning(f"Models still referenced at shutdown: {', '.join(pinned)}")
        for closeable in self._closeables:
            await closeable.close()
        self._closeables.clear()


def build_runtime(
    settings: Settings | None = None,
    *,
    catalog: ModelCatalog | None = None,
    transport: BlobTransport | None = None,
    loader: ModelLoader | None = None,
    capabilities: PlatformCapabilities | None = None,
    observer: StateObserver | None = None,
) -> ModelRuntime:
    """Build a runtime; any collaborator not passed in is created from settings.

    The registry manifest is loaded and stale temp downloads are purged.
    """
    settings = settings or get_settings()
    closeables: list[Any] = []

    store = LocalModelStore(settings.model_storage_dir)
    store.purge_temp()

    registry = LocalModelRegistry(settings.registry_manifest_path)
    registry.load_manifest()

    timeout = httpx.Timeout(
        settings.transport_timeout_seconds,
        connect=settings.transport_connect_timeout_seconds,
    )
    if catalog is None:
        http_catalog = HttpModelCatalog(settings.catalog_url, timeout=timeout)
        closeables.append(http_catalog)
        catalog = http_catalog
    if transport is None:
        http_transport = HttpBlobTransport(
            settings.catalog_url,
            timeout=timeout,
            chunk_size=settings.download_chunk_size_bytes,
        )
        closeables.append(http_transport)
        transport = http_transport

    optimizer = ComputeBackendOptimizer(
        capabilities or TorchPlatformCapabilities(),
        override=settings.compute_backend_override,
    )
    loader = loader or TorchScriptModelLoader(optimizer)
    cache = ModelCache(store, loader, budget_bytes=settings.model_cache_budget_bytes)
    downloader = DownloadCoordinator(
        transport,
        store,
        catalog,
        registry,
        max_parallel=settings.max_parallel_downloads,
    )
    updater = UpdateCoordinator(
        catalog,
        registry,
        downloader,
        store,
        cache,
        loader,
        platform_version=settings.platform_version,
        max_parallel=settings.max_parallel_downloads,
    )
    runner = ModelRunner(optimizer)
    postprocessor = ResultPostprocessor.from_settings(settings)
    orchestrator = BatchInferenceOrchestrator(
        registry,
        cache,
        runner,
        postprocessor,
        optimizer,
        store=store,
        downloader=downloader,
        max_workers=settings.inference_workers,
        observer=observer,
    )

    logger.info(
        f"Runtime ready: {len(registry)} registered model(s), "
        f"cache budget {settings.model_cache_budget_mb}MB"
    )
    return ModelRuntime(
        settings=settings,
        store=store,
        registry=registry,
        catalog=catalog,
        transport=transport,
        optimizer=optimizer,
        loader=loader,
        cache=cache,
        downloader=downloader,
        updater=updater,
        runner=runner,
        postprocessor=postprocessor,
        orchestrator=orchestrator,
        _closeables=closeables,
    )
