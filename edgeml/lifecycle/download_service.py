"""Download coordinator: bounded-concurrency artifact downloads.

Each download streams bytes from the blob transport into a temp file, reports
progress once per chunk, verifies size and SHA-256 on completion and only
then renames the temp file to the model's canonical path. A failed or
cancelled download never leaves a canonical artifact behind, so the cache
keeps reporting ModelNotFoundError instead of loading a truncated model.

Features:
- Shared semaphore bounding the number of transfers (default 3)
- Concurrent requests for the same model join the running transfer
- A model whose canonical artifact already exists completes immediately
- Pause/resume between chunks and cancellation that discards the temp file
- Task history with immutable terminal states for status queries
- Batch downloads that collect per-model failures instead of raising

Usage:
    coordinator = DownloadCoordinator(transport, store, catalog, registry)

    task = await coordinator.download("yolo-lite", on_progress=print)
    result = await coordinator.download_many(["yolo-lite", "mobilenet"])
    if not result.is_successful:
        print(result.failed_model_ids)
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum

from edgeml.core import metrics
from edgeml.core.exceptions import (
    DownloadCancelledError,
    DownloadFailedError,
    InvalidInputError,
    ModelLifecycleError,
    ModelNotFoundError,
    VerificationFailedError,
)
from edgeml.core.locks import KeyedLocks
from edgeml.core.logging import get_logger, operation_context, sanitize_error
from edgeml.lifecycle.catalog import ModelCatalog
from edgeml.lifecycle.descriptor import ModelDescriptor, SemanticVersion
from edgeml.lifecycle.model_registry import LocalModelRegistry
from edgeml.lifecycle.storage import LocalModelStore, TempArtifact
from edgeml.lifecycle.transport import BlobStream, BlobTransport

logger = get_logger(__name__)

DEFAULT_MAX_PARALLEL_DOWNLOADS = 3

ProgressCallback = Callable[[str, int, int | None], None]
"""Called as ``callback(model_id, downloaded_bytes, total_bytes)``."""


class DownloadStatus(StrEnum):
    PENDING = "pending"
    DOWNLOADING = "downloading"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset(
    {DownloadStatus.COMPLETED, DownloadStatus.FAILED, DownloadStatus.CANCELLED}
)


@dataclass
class DownloadTask:
    """Progress record of one download attempt.

    Once the status is terminal the record is frozen: every mutator raises
    RuntimeError. Retrying creates a new task.
    """

    model_id: str
    version: SemanticVersion
    total_size: int | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    downloaded_size: int = 0
    status: DownloadStatus = DownloadStatus.PENDING
    failure_reason: str | None = None
    speed_bytes_per_second: float = 0.0
    from_local: bool = False
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    started_at: datetime | None = None
    finished_at: datetime | None = None
    _started_monotonic: float | None = field(default=None, repr=False)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def progress(self) -> float:
        """Fraction in [0, 1]; 0 while the total size is unknown."""
        if self.status is DownloadStatus.COMPLETED:
            return 1.0
        if not self.total_size:
            return 0.0
        return min(self.downloaded_size / self.total_size, 1.0)

    @property
    def eta_seconds(self) -> float | None:
        if self.is_terminal or not self.total_size or self.speed_bytes_per_second <= 0:
            return None
        return max(self.total_size - self.downloaded_size, 0) / self.speed_bytes_per_second

    def _ensure_mutable(self) -> None:
        if self.is_terminal:
            raise RuntimeError(f"Download task {self.id} is {self.status} and can't change")

    def mark_downloading(self) -> None:
        self._ensure_mutable()
        self.status = DownloadStatus.DOWNLOADING
        self.started_at = datetime.now(UTC)
        self._started_monotonic = time.monotonic()

    def record_chunk(self, size: int) -> None:
        self._ensure_mutable()
        self.downloaded_size += size
        if self._started_monotonic is not None:
            elapsed = time.monotonic() - self._started_monotonic
            if elapsed > 0:
                self.speed_bytes_per_second = self.downloaded_size / elapsed

    def mark_paused(self) -> None:
        self._ensure_mutable()
        self.status = DownloadStatus.PAUSED

    def mark_resumed(self) -> None:
        self._ensure_mutable()
        self.status = DownloadStatus.DOWNLOADING

    def mark_completed(self) -> None:
        self._finish(DownloadStatus.COMPLETED)

    def mark_failed(self, reason: str) -> None:
        self._finish(DownloadStatus.FAILED)
        self.failure_reason = reason

    def mark_cancelled(self) -> None:
        self._finish(DownloadStatus.CANCELLED)

    def _finish(self, status: DownloadStatus) -> None:
        self._ensure_mutable()
        self.status = status
        self.finished_at = datetime.now(UTC)
        metrics.record_download_outcome(status.value)

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "model_id": self.model_id,
            "version": str(self.version),
            "status": self.status.value,
            "downloaded_size": self.downloaded_size,
            "total_size": self.total_size,
            "progress": round(self.progress, 4),
            "speed_bytes_per_second": round(self.speed_bytes_per_second, 1),
            "failure_reason": self.failure_reason,
        }


@dataclass
class BatchDownloadResult:
    """Summary of ``download_many``.

    Byte totals, progress and speed are aggregated over ``tasks``, i.e. only
    over downloads that were actually dispatched. Models that failed before a
    task existed (unknown to the catalog, for instance) count as failures but
    contribute no bytes.
    """

    requested_count: int
    tasks: list[DownloadTask]
    failed_model_ids: list[str]
    errors: dict[str, str]
    started_at: datetime
    finished_at: datetime

    @property
    def success_count(self) -> int:
        return self.requested_count - len(self.failed_model_ids)

    @property
    def failure_count(self) -> int:
        return len(self.failed_model_ids)

    @property
    def successful_tasks(self) -> list[DownloadTask]:
        return [t for t in self.tasks if t.status is DownloadStatus.COMPLETED]

    @property
    def total_bytes(self) -> int:
        return sum(t.total_size or 0 for t in self.tasks)

    @property
    def downloaded_bytes(self) -> int:
        return sum(t.downloaded_size for t in self.tasks)

    @property
    def overall_progress(self) -> float:
        total = self.total_bytes
        return min(self.downloaded_bytes / total, 1.0) if total > 0 else 0.0

    @property
    def duration_seconds(self) -> float:
        return (self.finished_at - self.started_at).total_seconds()

    @property
    def average_speed(self) -> float:
        """Bytes per second over transferred (not already-local) artifacts."""
        transferred = sum(t.downloaded_size for t in self.tasks if not t.from_local)
        duration = self.duration_seconds
        return transferred / duration if duration > 0 else 0.0

    @property
    def is_successful(self) -> bool:
        return not self.failed_model_ids

    def to_dict(self) -> dict[str, object]:
        return {
            "requested": self.requested_count,
            "succeeded": self.success_count,
            "failed": self.failure_count,
            "failed_model_ids": list(self.failed_model_ids),
            "errors": dict(self.errors),
            "total_bytes": self.total_bytes,
            "downloaded_bytes": self.downloaded_bytes,
            "overall_progress": round(self.overall_progress, 4),
            "average_speed": round(self.average_speed, 1),
        }


@dataclass
class _ActiveDownload:
    task: DownloadTask
    runner: asyncio.Task[DownloadTask]
    listeners: list[ProgressCallback]
    gate: asyncio.Event


class DownloadCoordinator:
    """Runs model downloads with bounded parallelism.

    Attributes:
        max_parallel: Maximum number of concurrent transfers
    """

    def __init__(
        self,
        transport: BlobTransport,
        store: LocalModelStore,
        catalog: ModelCatalog,
        registry: LocalModelRegistry | None = None,
        *,
        max_parallel: int = DEFAULT_MAX_PARALLEL_DOWNLOADS,
    ) -> None:
        if max_parallel < 1:
            raise ValueError(f"max_parallel must be at least 1, got {max_parallel}")
        self.max_parallel = max_parallel
        self._transport = transport
        self._store = store
        self._catalog = catalog
        self._registry = registry
        self._semaphore = asyncio.Semaphore(max_parallel)
        self._active: dict[str, _ActiveDownload] = {}
        # Held from the join check until the new transfer is in _active
        self._begin_locks = KeyedLocks()
        self._history: dict[str, DownloadTask] = {}

        logger.info(f"DownloadCoordinator initialized (max_parallel={max_parallel})")

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def download(
        self,
        model_id: str,
        *,
        descriptor: ModelDescriptor | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> DownloadTask:
        """Download a model (the catalog's latest version unless ``descriptor`` is given).

        Returns:
            The completed DownloadTask

        Raises:
            ModelNotFoundError: If the catalog doesn't know the model
            DownloadFailedError: On transport errors
            VerificationFailedError: On size or checksum mismatch
            DownloadCancelledError: If the download was cancelled via cancel()
        """
        task, active, shared = await self._begin(model_id, descriptor, on_progress)
        if active is None:
            return task
        return await self._wait(model_id, active.runner, shared=shared)

    async def download_many(
        self,
        model_ids: Sequence[str],
        *,
        on_progress: ProgressCallback | None = None,
    ) -> BatchDownloadResult:
        """Download several models concurrently, collecting per-model failures.

        Duplicate ids are downloaded once. ``failed_model_ids`` keeps input order.

        Raises:
            InvalidInputError: If ``model_ids`` is empty
        """
        if not model_ids:
            raise InvalidInputError("model_ids must not be empty", field="model_ids")

        unique_ids = list(dict.fromkeys(model_ids))
        started_at = datetime.now(UTC)

        with operation_context("download-batch"):
            logger.info(f"Starting batch download of {len(unique_ids)} model(s)")
            outcomes = await asyncio.gather(
                *(self._download_collecting(model_id, on_progress) for model_id in unique_ids)
            )

        tasks: list[DownloadTask] = []
        failed: list[str] = []
        errors: dict[str, str] = {}
        for model_id, task, error in outcomes:
            if task is not None:
                tasks.append(task)
            if error is not None:
                failed.append(model_id)
                errors[model_id] = error

        result = BatchDownloadResult(
            requested_count=len(unique_ids),
            tasks=tasks,
            failed_model_ids=failed,
            errors=errors,
            started_at=started_at,
            finished_at=datetime.now(UTC),
        )
        logger.info(
            f"Batch download finished: {result.success_count} succeeded, "
            f"{result.failure_count} failed, {result.downloaded_bytes} bytes"
        )
        return result

    def cancel(self, model_id: str) -> bool:
        """Cancel the active download of ``model_id``.

        The task becomes ``cancelled`` immediately; its temp file is discarded
        as the transfer unwinds.

        Returns:
            True if an active download was cancelled
        """
        active = self._active.get(model_id)
        if active is None or active.runner.done():
            return False
        if not active.task.is_terminal:
            active.task.mark_cancelled()
        active.runner.cancel()
        logger.info(f"Cancelled download of '{model_id}'")
        return True

    def pause(self, model_id: str) -> bool:
        """Stop reading further chunks of an active download.

        The transfer keeps its parallelism slot while paused.

        Returns:
            True if a downloading task was paused
        """
        active = self._active.get(model_id)
        if active is None or active.task.status is not DownloadStatus.DOWNLOADING:
            return False
        active.gate.clear()
        active.task.mark_paused()
        logger.info(f"Paused download of '{model_id}' at {active.task.downloaded_size} bytes")
        return True

    def resume(self, model_id: str) -> bool:
        """Resume a paused download.

        Returns:
            True if a paused task was resumed
        """
        active = self._active.get(model_id)
        if active is None or active.task.status is not DownloadStatus.PAUSED:
            return False
        active.task.mark_resumed()
        active.gate.set()
        logger.info(f"Resumed download of '{model_id}'")
        return True

    def get_task(self, task_id: str) -> DownloadTask | None:
        return self._history.get(task_id)

    def tasks_for(self, model_id: str) -> list[DownloadTask]:
        """All recorded tasks of a model, oldest first."""
        return [t for t in self._history.values() if t.model_id == model_id]

    def active_downloads(self) -> list[DownloadTask]:
        return [a.task for a in self._active.values() if not a.task.is_terminal]

    def history(self) -> list[DownloadTask]:
        return list(self._history.values())

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    async def _begin(
        self,
        model_id: str,
        descriptor: ModelDescriptor | None,
        on_progress: ProgressCallback | None,
    ) -> tuple[DownloadTask, _ActiveDownload | None, bool]:
        """Create (or join) the download of ``model_id``.

        Returns:
            (task, active download or None if already local, whether it was joined)
        """
        async with self._begin_locks.hold(model_id):
            return await self._begin_locked(model_id, descriptor, on_progress)

    async def _begin_locked(
        self,
        model_id: str,
        descriptor: ModelDescriptor | None,
        on_progress: ProgressCallback | None,
    ) -> tuple[DownloadTask, _ActiveDownload | None, bool]:
        existing = self._active.get(model_id)
        if existing is not None and (descriptor is None or descriptor.version == existing.task.version):
            if on_progress is not None:
                existing.listeners.append(on_progress)
            logger.debug(f"Joining active download of '{model_id}'")
            return existing.task, existing, True

        if descriptor is None:
            descriptor = await self._resolve(model_id)

        task = DownloadTask(
            model_id=model_id,
            version=descriptor.version,
            total_size=descriptor.byte_size,
        )
        self._history[task.id] = task

        if self._store.exists(descriptor):
            task.from_local = True
            task.downloaded_size = descriptor.byte_size
            task.mark_completed()
            self._register(descriptor)
            if on_progress is not None:
                self._call_listener(on_progress, task)
            logger.debug(f"Model '{descriptor.cache_key}' already present locally")
            return task, None, False

        gate = asyncio.Event()
        gate.set()
        active = _ActiveDownload(
            task=task,
            runner=asyncio.create_task(
                self._run(task, descriptor, gate), name=f"download-{model_id}"
            ),
            listeners=[on_progress] if on_progress is not None else [],
            gate=gate,
        )
        self._active[model_id] = active
        active.runner.add_done_callback(lambda _: self._forget(model_id, active))
        return task, active, False

    async def _wait(
        self, model_id: str, runner: asyncio.Task[DownloadTask], *, shared: bool
    ) -> DownloadTask:
        """Await a transfer, mapping an explicit cancel() to DownloadCancelledError.

        The starting caller awaits the transfer directly, so cancelling that
        caller cancels the transfer. Joined callers are shielded from it.
        """
        try:
            return await (asyncio.shield(runner) if shared else runner)
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if runner.cancelled() and (current is None or current.cancelling() == 0):
                raise DownloadCancelledError(model_id) from None
            raise

    async def _download_collecting(
        self, model_id: str, on_progress: ProgressCallback | None
    ) -> tuple[str, DownloadTask | None, str | None]:
        task: DownloadTask | None = None
        try:
            task, active, shared = await self._begin(model_id, None, on_progress)
            if active is not None:
                await self._wait(model_id, active.runner, shared=shared)
            return model_id, task, None
        except ModelLifecycleError as e:
            logger.warning(f"Download of '{model_id}' failed in batch: {e.message}")
            return model_id, task, e.message
        except Exception as e:
            reason = sanitize_error(e)
            logger.error(f"Unexpected error downloading '{model_id}': {reason}")
            return model_id, task, reason

    async def _resolve(self, model_id: str) -> ModelDescriptor:
        entry = await self._catalog.latest(model_id)
        if entry is None:
            raise ModelNotFoundError(model_id, f"Model '{model_id}' is not in the catalog")
        return entry.to_descriptor()

    async def _run(
        self, task: DownloadTask, descriptor: ModelDescriptor, gate: asyncio.Event
    ) -> DownloadTask:
        model_id = descriptor.id
        temp: TempArtifact | None = None
        with operation_context("download"):
            try:
                async with self._semaphore:
                    task.mark_downloading()
                    metrics.ACTIVE_DOWNLOADS.inc()
                    try:
                        logger.info(f"Downloading '{descriptor.cache_key}'")
                        async with self._transport.open(model_id, descriptor.version) as stream:
                            if stream.total_size is not None:
                                task.total_size = stream.total_size
                            temp = self._store.open_temp(descriptor)
                            async for chunk in stream.chunks:
                                temp.write(chunk)
                                task.record_chunk(len(chunk))
                                metrics.record_download_bytes(len(chunk))
                                self._notify(task)
                                if not gate.is_set():
                                    await gate.wait()
                            self._verify(descriptor, stream, temp)
                    finally:
                        metrics.ACTIVE_DOWNLOADS.dec()

                self._store.commit(temp)
                temp = None
                task.mark_completed()
                self._notify(task)
                self._register(descriptor)
                logger.info(
                    f"Downloaded '{descriptor.cache_key}' "
                    f"({task.downloaded_size} bytes, {task.speed_bytes_per_second:.0f} B/s)"
                )
                return task
            except asyncio.CancelledError:
                if not task.is_terminal:
                    task.mark_cancelled()
                logger.info(f"Download of '{descriptor.cache_key}' cancelled")
                raise
            except (DownloadFailedError, VerificationFailedError) as e:
                task.mark_failed(e.reason)
                logger.warning(f"Download of '{descriptor.cache_key}' failed: {e.reason}")
                raise
            except Exception as e:
                reason = sanitize_error(e) or type(e).__name__
                task.mark_failed(reason)
                logger.error(f"Download of '{descriptor.cache_key}' failed: {reason}")
                raise DownloadFailedError(model_id, reason) from e
            finally:
                if temp is not None:
                    self._store.discard(temp)

    def _verify(self, descriptor: ModelDescriptor, stream: BlobStream, temp: TempArtifact) -> None:
        """Check size and checksum of a finished temp artifact.

        Raises:
            VerificationFailedError: On any mismatch
        """
        expected_size = stream.total_size if stream.total_size is not None else descriptor.byte_size
        if expected_size and temp.bytes_written != expected_size:
            raise VerificationFailedError(
                descriptor.id,
                f"size mismatch: expected {expected_size} bytes, received {temp.bytes_written}",
            )

        digest = temp.hexdigest()
        for source, expected in (
            ("transport", stream.checksum_sha256),
            ("catalog", descriptor.checksum_sha256),
        ):
            if expected and expected.lower() != digest:
                raise VerificationFailedError(
                    descriptor.id,
                    f"checksum mismatch against {source}: expected {expected.lower()}, got {digest}",
                )

    def _register(self, descriptor: ModelDescriptor) -> None:
        if self._registry is not None and descriptor.id not in self._registry:
            self._registry.register(descriptor)

    def _notify(self, task: DownloadTask) -> None:
        active = self._active.get(task.model_id)
        if active is None or active.task is not task:
            return
        for listener in list(active.listeners):
            self._call_listener(listener, task)

    @staticmethod
    def _call_listener(listener: ProgressCallback, task: DownloadTask) -> None:
        try:
            listener(task.model_id, task.downloaded_size, task.total_size)
        except Exception as e:
            logger.warning(f"Progress callback for '{task.model_id}' raised: {sanitize_error(e)}")

    def _forget(self, model_id: str, active: _ActiveDownload) -> None:
        # A runner cancelled before its first step never reaches its own handler
        if active.runner.cancelled() and not active.task.is_terminal:
            active.task.mark_cancelled()
        if self._active.get(model_id) is active:
            del self._active[model_id]
