"""Model cache with reference counting and LRU eviction under a byte budget.

This module provides the ModelCache class, which materializes model artifacts
from local storage on demand and evicts least-recently-used idle models when
the byte budget would otherwise be exceeded.

Key features:
- Byte budget enforcement (resident + in-flight reservations never exceed it)
- Reference counting: a model in use by an inference call is never evicted
- LRU eviction among idle (ref_count == 0) entries only
- Admission is rejected up front when pinned models leave no room, instead of
  evicting idle models for a load that can't succeed
- Loads of different models run concurrently; concurrent loads of the same
  model share one materialization
- A cancelled load returns its reservation and never strands callers waiting
  on the same model
- Prometheus metrics for resident bytes, evictions, hits/misses and load time

Usage:
    cache = ModelCache(store, loader, budget_bytes=500 * 1024 * 1024)

    handle = await cache.load(descriptor)
    try:
        output = handle.model(batch)
    finally:
        await cache.release(handle)

    # or
    async with cache.acquire(descriptor) as handle:
        output = handle.model(batch)
"""

from __future__ import annotations

import asyncio
import time
from collections import OrderedDict
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from functools import partial
from pathlib import Path
from typing import Any, Protocol

from edgeml.core import metrics
from edgeml.core.exceptions import (
    InsufficientCapacityError,
    ModelInUseError,
    ModelLifecycleError,
    ModelLoadError,
)
from edgeml.core.logging import get_logger, sanitize_error
from edgeml.lifecycle.descriptor import ModelDescriptor
from edgeml.lifecycle.storage import LocalModelStore

logger = get_logger(__name__)

DEFAULT_BUDGET_BYTES = 500 * 1024 * 1024


class ModelLoader(Protocol):
    """Turns an artifact on disk into a runnable model object.

    Both methods are blocking and are always called from a worker thread.
    """

    def load(self, descriptor: ModelDescriptor, path: Path) -> Any: ...

    def unload(self, model: Any) -> None: ...


@dataclass
class CacheEntry:
    """Runtime information about a resident model.

    Attributes:
        descriptor: Descriptor the model was loaded from
        model: The loaded model object
        resident_bytes: Bytes charged against the cache budget
        loaded_at: When the model was materialized
        last_used: Last time a caller loaded it (drives LRU order)
        ref_count: Number of outstanding handles
    """

    descriptor: ModelDescriptor
    model: Any
    resident_bytes: int
    loaded_at: datetime
    last_used: datetime
    ref_count: int = 0


class ModelHandle:
    """A reference to a resident model, released exactly once."""

    __slots__ = ("_released", "descriptor", "key", "model")

    def __init__(self, descriptor: ModelDescriptor, model: Any) -> None:
        self.descriptor = descriptor
        self.key = descriptor.cache_key
        self.model = model
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def __repr__(self) -> str:
        state = "released" if self._released else "active"
        return f"ModelHandle({self.key}, {state})"


@dataclass
class _PendingLoad:
    done: asyncio.Event = field(default_factory=asyncio.Event)
    error: Exception | None = None


class ModelCache:
    """Reference-counted model cache with LRU eviction under a byte budget.

    Thread Safety:
    - Admission, eviction and reference-count changes run under one asyncio
      lock, so check-evict-reserve happens as a unit
    - Artifact materialization runs outside the lock, in a worker thread,
      against a byte reservation taken inside it

    Attributes:
        budget_bytes: Maximum bytes of resident models
        entries: OrderedDict of cache key to CacheEntry, least recently used first
    """

    def __init__(
        self,
        store: LocalModelStore,
        loader: ModelLoader,
        budget_bytes: int = DEFAULT_BUDGET_BYTES,
    ) -> None:
        if budget_bytes <= 0:
            raise ValueError(f"budget_bytes must be positive, got {budget_bytes}")
        self.budget_bytes = budget_bytes
        self.entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._store = store
        self._loader = loader
        self._lock = asyncio.Lock()
        self._pending: dict[str, _PendingLoad] = {}
        self._reserved_bytes = 0

        self._update_metrics()
        logger.info(f"Initialized ModelCache with {budget_bytes / (1024 * 1024):.1f}MB budget")

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def load(self, descriptor: ModelDescriptor) -> ModelHandle:
        """Return a handle to a resident model, loading it if necessary.

        Args:
            descriptor: Descriptor of the model version to load

        Returns:
            A handle that must be passed to release() exactly once

        Raises:
            ModelNotFoundError: If no local artifact exists for the descriptor
            InsufficientCapacityError: If the budget can't be met because the
                model is larger than the budget or resident models are in use
            ModelLoadError: If the artifact exists but could not be loaded
        """
        key = descriptor.cache_key
        while True:
            async with self._lock:
                entry = self.entries.get(key)
                if entry is not None:
                    self.entries.move_to_end(key)
                    entry.last_used = datetime.now(UTC)
                    entry.ref_count += 1
                    metrics.record_cache_lookup(hit=True)
                    logger.debug(f"Model '{key}' accessed (refs: {entry.ref_count})")
                    return ModelHandle(entry.descriptor, entry.model)

                pending = self._pending.get(key)
                if pending is None:
                    metrics.record_cache_lookup(hit=False)
                    path = self._store.artifact_path(descriptor)
                    await self._make_room(key, descriptor.byte_size)
                    pending = _PendingLoad()
                    self._pending[key] = pending
                    self._reserved_bytes += descriptor.byte_size
                    self._update_metrics()
                    break

            # Another caller is materializing this model; wait and retry.
            await pending.done.wait()
            if pending.error is not None:
                raise pending.error

        return await self._materialize(descriptor, path, pending)

    async def release(self, handle: ModelHandle) -> None:
        """Drop one reference. Never evicts; eviction is lazy on the next load.

        Raises:
            ValueError: If the handle was already released
        """
        async with self._lock:
            if handle.released:
                raise ValueError(f"Handle for '{handle.key}' was already released")
            handle._released = True
            entry = self.entries.get(handle.key)
            if entry is None:
                logger.warning(f"Released handle for '{handle.key}' which is not resident")
                return
            entry.ref_count -= 1
            logger.debug(f"Released '{handle.key}' (refs: {entry.ref_count})")

    @asynccontextmanager
    async def acquire(self, descriptor: ModelDescriptor) -> AsyncIterator[ModelHandle]:
        """Load a model for the duration of a block and release it afterwards."""
        handle = await self.load(descriptor)
        try:
            yield handle
        finally:
            await self.release(handle)

    async def unload(self, descriptor: ModelDescriptor) -> bool:
        """Explicitly remove a resident model.

        Returns:
            True if the model was resident and has been unloaded

        Raises:
            ModelInUseError: If the model has outstanding handles
        """
        async with self._lock:
            entry = self.entries.get(descriptor.cache_key)
            if entry is None:
                return False
            if entry.ref_count > 0:
                raise ModelInUseError(descriptor.cache_key, entry.ref_count)
            await self._unload_internal(descriptor.cache_key)
            return True

    async def unload_if_idle(self, descriptor: ModelDescriptor) -> bool:
        """Unload a model only if nothing references it.

        Returns:
            True if the model was unloaded
        """
        async with self._lock:
            entry = self.entries.get(descriptor.cache_key)
            if entry is None or entry.ref_count > 0:
                return False
            await self._unload_internal(descriptor.cache_key)
            return True

    async def unload_all(self) -> list[str]:
        """Unload every idle model. Useful for cleanup during shutdown.

        Returns:
            Cache keys of models that stayed resident because they are in use
        """
        async with self._lock:
            pinned: list[str] = []
            for key in list(self.entries.keys()):
                if self.entries[key].ref_count > 0:
                    pinned.append(key)
                    continue
                await self._unload_internal(key)

            if pinned:
                logger.warning(f"Models still in use after unload_all: {pinned}")
            else:
                logger.info("All models unloaded")
            return pinned

    async def cleanup_idle_models(self, idle_seconds: float = 300.0) -> list[str]:
        """Unload idle models that haven't been used recently.

        Args:
            idle_seconds: Unreferenced models unused for this many seconds are unloaded

        Returns:
            Cache keys of the unloaded models
        """
        async with self._lock:
            now = datetime.now(UTC)
            to_unload: list[str] = []

            for key, entry in self.entries.items():
                idle_time = (now - entry.last_used).total_seconds()
                if entry.ref_count == 0 and idle_time > idle_seconds:
                    to_unload.append(key)
                    logger.info(
                        f"Model '{key}' idle for {idle_time:.0f}s "
                        f"(threshold: {idle_seconds}s), marking for unload"
                    )

            for key in to_unload:
                await self._unload_internal(key)

            return to_unload

    def is_loaded(self, descriptor: ModelDescriptor) -> bool:
        return descriptor.cache_key in self.entries

    def resident_bytes(self) -> int:
        """Total bytes of resident models (excluding loads still in flight)."""
        return sum(entry.resident_bytes for entry in self.entries.values())

    def reference_count(self, descriptor: ModelDescriptor) -> int:
        entry = self.entries.get(descriptor.cache_key)
        return entry.ref_count if entry is not None else 0

    def get_loaded_models(self) -> list[str]:
        """Cache keys of resident models, least recently used first."""
        return list(self.entries.keys())

    def get_status(self) -> dict[str, Any]:
        """Get current status of the cache for health checks and the CLI.

        Returns:
            Dictionary with budget, usage, resident entries and pending loads
        """
        resident = self.resident_bytes()
        return {
            "budget_bytes": self.budget_bytes,
            "resident_bytes": resident,
            "reserved_bytes": self._reserved_bytes,
            "available_bytes": self.budget_bytes - resident - self._reserved_bytes,
            "utilization_percent": round(resident / self.budget_bytes * 100, 1),
            "loaded_models": [
                {
                    "key": key,
                    "resident_bytes": entry.resident_bytes,
                    "ref_count": entry.ref_count,
                    "loaded_at": entry.loaded_at.isoformat(),
                    "last_used": entry.last_used.isoformat(),
                }
                for key, entry in self.entries.items()
            ],
            "pending_loads": list(self._pending.keys()),
        }

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    async def _materialize(
        self, descriptor: ModelDescriptor, path: Path, pending: _PendingLoad
    ) -> ModelHandle:
        """Load the artifact outside the lock and admit it (lock not held on entry)."""
        key = descriptor.cache_key
        logger.info(f"Loading model '{key}' ({descriptor.byte_size} bytes)")
        start_time = time.monotonic()

        future = asyncio.get_running_loop().run_in_executor(
            None, self._loader.load, descriptor, path
        )
        try:
            # Shielded so the model the worker thread produces after a
            # cancellation can still be handed back to the loader.
            model = await asyncio.shield(future)
        except asyncio.CancelledError:
            self._abandon_load(descriptor, pending, error=None)
            future.add_done_callback(partial(self._discard_orphaned_load, key))
            raise
        except ModelLifecycleError as e:
            self._abandon_load(descriptor, pending, error=e)
            raise
        except Exception as e:
            error = ModelLoadError(key, sanitize_error(e))
            logger.error(f"Failed to load model '{key}': {error.reason}")
            self._abandon_load(descriptor, pending, error=error)
            raise error from e

        load_duration = time.monotonic() - start_time
        metrics.observe_model_load_time(descriptor.id, load_duration)

        admitted = False
        try:
            async with self._lock:
                now = datetime.now(UTC)
                self._reserved_bytes -= descriptor.byte_size
                self.entries[key] = CacheEntry(
                    descriptor=descriptor,
                    model=model,
                    resident_bytes=descriptor.byte_size,
                    loaded_at=now,
                    last_used=now,
                    ref_count=1,
                )
                del self._pending[key]
                pending.done.set()
                admitted = True
                self._update_metrics()
        except BaseException:
            if not admitted:
                logger.warning(f"Load of '{key}' cancelled before admission, discarding model")
                self._abandon_load(descriptor, pending, error=None)
                self._discard_model(key, model)
            raise

        logger.info(
            f"Model '{key}' loaded in {load_duration:.2f}s. "
            f"Resident: {self.resident_bytes()} / {self.budget_bytes} bytes"
        )
        return ModelHandle(descriptor, model)

    def _abandon_load(
        self, descriptor: ModelDescriptor, pending: _PendingLoad, error: Exception | None
    ) -> None:
        """Return a failed load's reservation and wake its waiters.

        Contains no await, so it completes before any other task observes the
        cache, even when the lock is held elsewhere.
        """
        self._reserved_bytes -= descriptor.byte_size
        self._pending.pop(descriptor.cache_key, None)
        pending.error = error
        pending.done.set()
        self._update_metrics()

    def _discard_orphaned_load(self, key: str, future: asyncio.Future[Any]) -> None:
        """Unload a model whose load finished after its caller was cancelled."""
        if future.cancelled() or future.exception() is not None:
            return
        logger.info(f"Discarding model '{key}' loaded after its request was cancelled")
        self._discard_model(key, future.result())

    def _discard_model(self, key: str, model: Any) -> None:
        """Hand a model that never became resident back to the loader, without awaiting."""
        future = asyncio.get_running_loop().run_in_executor(None, self._loader.unload, model)

        def _log_failure(done: asyncio.Future[None]) -> None:
            if not done.cancelled() and done.exception() is not None:
                logger.warning(f"Unloader for '{key}' raised: {sanitize_error(done.exception())}")

        future.add_done_callback(_log_failure)

    async def _make_room(self, key: str, required: int) -> None:
        """Evict LRU idle models until ``required`` bytes fit (lock held).

        Raises:
            InsufficientCapacityError: If the space can't be freed; nothing is
                evicted in that case
        """
        committed = self.resident_bytes() + self._reserved_bytes
        evictable = sum(e.resident_bytes for e in self.entries.values() if e.ref_count == 0)
        if required > self.budget_bytes or committed - evictable + required > self.budget_bytes:
            raise InsufficientCapacityError(
                key,
                required_bytes=required,
                budget_bytes=self.budget_bytes,
                resident_bytes=committed,
            )

        while self.resident_bytes() + self._reserved_bytes + required > self.budget_bytes:
            victim = next((k for k, e in self.entries.items() if e.ref_count == 0), None)
            if victim is None:
                raise InsufficientCapacityError(
                    key,
                    required_bytes=required,
                    budget_bytes=self.budget_bytes,
                    resident_bytes=self.resident_bytes() + self._reserved_bytes,
                )
            entry = self.entries[victim]
            logger.info(
                f"Evicting model '{victim}' to free {entry.resident_bytes} bytes "
                f"(last_used: {entry.last_used.isoformat()})"
            )
            metrics.record_eviction(entry.descriptor.id)
            await self._unload_internal(victim)

    async def _unload_internal(self, key: str) -> None:
        """Remove an entry and release its model (assumes lock is held)."""
        entry = self.entries.pop(key, None)
        if entry is None:
            return

        try:
            await asyncio.get_running_loop().run_in_executor(None, self._loader.unload, entry.model)
        except Exception as e:
            # The entry is already gone from the budget; a failing unloader
            # can only leak the object, not corrupt the accounting.
            logger.warning(f"Unloader for '{key}' raised: {sanitize_error(e)}")

        self._update_metrics()
        logger.info(
            f"Unloaded model '{key}'. "
            f"Resident: {self.resident_bytes()} / {self.budget_bytes} bytes"
        )

    def _update_metrics(self) -> None:
        metrics.update_cache_usage(
            resident_bytes=self.resident_bytes() + self._reserved_bytes,
            budget_bytes=self.budget_bytes,
            loaded_count=len(self.entries),
        )
