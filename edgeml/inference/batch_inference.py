"""Batch inference orchestrator.

Resolves a model (provisioning it through the download path if it has no
local artifact), obtains a cache handle, runs the model in a worker thread,
records the latency sample and post-processes the raw predictions.

Per-call state machine:

    REQUESTED -> MODEL_RESOLVING -> LOADED -> INFERRING -> SUCCEEDED
                                 \\-> LOAD_FAILED     \\-> FAILED
    REQUESTED -> CANCELLED  (batch cancelled before the item was scheduled)

LOAD_FAILED, FAILED, SUCCEEDED and CANCELLED are terminal; nothing is retried.

Batches run on a bounded number of workers. ``results[i]`` always belongs to
``images[i]``; an item's failure is stored in its result and never aborts the
batch. Cancelling a batch stops scheduling new items, lets in-flight items
finish and reports the unscheduled ones as cancelled.

Usage:
    predictions = await orchestrator.infer(image, "yolo-lite")

    job = orchestrator.submit_batch(images, "yolo-lite")
    ...
    job.cancel()
    results = await job.results()
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import StrEnum

from edgeml.core import metrics
from edgeml.core.exceptions import (
    InferenceCancelledError,
    InferenceFailedError,
    InvalidInputError,
    ModelLifecycleError,
    ModelLoadError,
    ModelNotRegisteredError,
)
from edgeml.core.logging import get_logger, operation_context, sanitize_error
from edgeml.inference.compute_backend import ComputeBackendOptimizer
from edgeml.inference.postprocessing import ResultPostprocessor
from edgeml.inference.predictions import Prediction
from edgeml.inference.runners import ImageBuffer, ModelRunner
from edgeml.lifecycle.descriptor import ModelDescriptor
from edgeml.lifecycle.download_service import DownloadCoordinator
from edgeml.lifecycle.model_manager import ModelCache
from edgeml.lifecycle.model_registry import LocalModelRegistry
from edgeml.lifecycle.storage import LocalModelStore

logger = get_logger(__name__)

DEFAULT_INFERENCE_WORKERS = 4


class InferenceState(StrEnum):
    REQUESTED = "requested"
    MODEL_RESOLVING = "model_resolving"
    LOADED = "loaded"
    LOAD_FAILED = "load_failed"
    INFERRING = "inferring"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


_TRANSITIONS: dict[InferenceState, frozenset[InferenceState]] = {
    InferenceState.REQUESTED: frozenset({InferenceState.MODEL_RESOLVING, InferenceState.CANCELLED}),
    InferenceState.MODEL_RESOLVING: frozenset({InferenceState.LOADED, InferenceState.LOAD_FAILED}),
    InferenceState.LOADED: frozenset({InferenceState.INFERRING, InferenceState.FAILED}),
    InferenceState.INFERRING: frozenset({InferenceState.SUCCEEDED, InferenceState.FAILED}),
}

StateObserver = Callable[[int | None, InferenceState], None]
"""Called as ``observer(batch_index, new_state)``; the index is None for single calls."""


class _InferenceCall:
    """Tracks one call through the state machine and notifies the observer."""

    __slots__ = ("index", "observer", "state")

    def __init__(self, index: int | None, observer: StateObserver | None) -> None:
        self.index = index
        self.observer = observer
        self.state = InferenceState.REQUESTED

    def advance(self, state: InferenceState) -> None:
        if state not in _TRANSITIONS.get(self.state, frozenset()):
            raise RuntimeError(f"Invalid inference transition {self.state} -> {state}")
        self.state = state
        if state not in _TRANSITIONS:
            metrics.record_inference_result(state.value)
        if self.observer is not None:
            try:
                self.observer(self.index, state)
            except Exception as e:
                logger.warning(f"Inference state observer raised: {sanitize_error(e)}")


@dataclass
class InferenceResult:
    """Outcome of one batch item."""

    index: int
    state: InferenceState
    predictions: list[Prediction] = field(default_factory=list)
    error: ModelLifecycleError | None = None
    latency: float = 0.0

    @property
    def ok(self) -> bool:
        return self.state is InferenceState.SUCCEEDED

    def unwrap(self) -> list[Prediction]:
        """Return the predictions, or raise the item's error."""
        if self.error is not None:
            raise self.error
        return self.predictions


@dataclass(frozen=True, slots=True)
class BatchStatistics:
    total: int
    succeeded: int
    failed: int
    cancelled: int
    average_confidence: float
    average_latency: float

    @property
    def success_rate(self) -> float:
        return self.succeeded / self.total if self.total else 0.0


def calculate_statistics(results: Sequence[InferenceResult]) -> BatchStatistics:
    """Summarize a batch; average confidence is over each success's top prediction."""
    succeeded = [r for r in results if r.ok]
    cancelled = sum(1 for r in results if r.state is InferenceState.CANCELLED)
    top_confidences = [max(p.confidence for p in r.predictions) for r in succeeded if r.predictions]
    latencies = [r.latency for r in succeeded]
    return BatchStatistics(
        total=len(results),
        succeeded=len(succeeded),
        failed=len(results) - len(succeeded) - cancelled,
        cancelled=cancelled,
        average_confidence=sum(top_confidences) / len(top_confidences) if top_confidences else 0.0,
        average_latency=sum(latencies) / len(latencies) if latencies else 0.0,
    )


class BatchInferenceJob:
    """A running batch. Await ``results()``; call ``cancel()`` to stop scheduling."""

    def __init__(
        self,
        orchestrator: BatchInferenceOrchestrator,
        images: Sequence[ImageBuffer],
        model_id: str,
        max_workers: int,
    ) -> None:
        self.model_id = model_id
        self._orchestrator = orchestrator
        self._images = list(images)
        self._max_workers = max_workers
        self._cancel_requested = False
        self._results: list[InferenceResult | None] = [None] * len(self._images)
        self._calls = [_InferenceCall(i, orchestrator.observer) for i in range(len(self._images))]
        self._task = asyncio.create_task(self._run(), name=f"batch-{model_id}")

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested

    @property
    def done(self) -> bool:
        return self._task.done()

    def cancel(self) -> None:
        """Stop scheduling new items; in-flight items still finish."""
        if not self._cancel_requested:
            self._cancel_requested = True
            logger.info(f"Batch for '{self.model_id}' cancelled")

    def completed_count(self) -> int:
        return sum(1 for r in self._results if r is not None)

    async def results(self) -> list[InferenceResult]:
        """Wait for the batch and return one result per input, in input order.

        If the awaiting task is cancelled, the batch is cancelled as a unit:
        scheduling stops, in-flight items are awaited, then CancelledError
        propagates.
        """
        try:
            return await asyncio.shield(self._task)
        except asyncio.CancelledError:
            self.cancel()
            await asyncio.wait({self._task})
            raise

    async def _run(self) -> list[InferenceResult]:
        with operation_context("batch"):
            logger.info(f"Starting batch of {len(self._images)} image(s) on '{self.model_id}'")
            descriptor: ModelDescriptor | None = None
            resolve_error: ModelLifecycleError | None = None
            try:
                descriptor = await self._orchestrator.resolve(self.model_id)
            except ModelLifecycleError as e:
                resolve_error = e
                logger.warning(f"Could not resolve '{self.model_id}' for batch: {e.message}")
            except Exception as e:
                resolve_error = ModelLoadError(self.model_id, sanitize_error(e))
                logger.error(
                    f"Unexpected error resolving '{self.model_id}' for batch: "
                    f"{resolve_error.reason}"
                )

            pending = iter(range(len(self._images)))

            async def worker() -> None:
                while not self._cancel_requested:
                    index = next(pending, None)
                    if index is None:
                        return
                    self._results[index] = await self._orchestrator._run_item(
                        self._calls[index], descriptor, resolve_error, self._images[index]
                    )

            worker_count = min(self._max_workers, len(self._images))
            await asyncio.gather(*(worker() for _ in range(worker_count)))

            results: list[InferenceResult] = []
            for index, result in enumerate(self._results):
                if result is None:
                    self._calls[index].advance(InferenceState.CANCELLED)
                    result = InferenceResult(
                        index=index,
                        state=InferenceState.CANCELLED,
                        error=InferenceCancelledError(
                            f"Batch item {index} was not started before cancellation"
                        ),
                    )
                results.append(result)

            stats = calculate_statistics(results)
            logger.info(
                f"Batch on '{self.model_id}' finished: {stats.succeeded} succeeded, "
                f"{stats.failed} failed, {stats.cancelled} cancelled"
            )
            return results


class BatchInferenceOrchestrator:
    """Single and batch inference over the model cache.

    Attributes:
        max_workers: Maximum batch items inferred concurrently
        observer: Optional callback receiving every state transition
    """

    def __init__(
        self,
        registry: LocalModelRegistry,
        cache: ModelCache,
        runner: ModelRunner,
        postprocessor: ResultPostprocessor,
        optimizer: ComputeBackendOptimizer,
        *,
        store: LocalModelStore | None = None,
        downloader: DownloadCoordinator | None = None,
        max_workers: int = DEFAULT_INFERENCE_WORKERS,
        observer: StateObserver | None = None,
    ) -> None:
        if max_workers < 1:
            raise ValueError(f"max_workers must be at least 1, got {max_workers}")
        self._registry = registry
        self._cache = cache
        self._runner = runner
        self._postprocessor = postprocessor
        self._optimizer = optimizer
        self._store = store
        self._downloader = downloader
        self.max_workers = max_workers
        self.observer = observer

    async def resolve(self, model_id: str) -> ModelDescriptor:
        """Return the active descriptor, downloading the model if it isn't local.

        Raises:
            ModelNotRegisteredError: If the model is unknown and no downloader is set
            DownloadFailedError / VerificationFailedError: If provisioning fails
        """
        descriptor = self._registry.find(model_id)
        has_artifact = descriptor is not None and (
            self._store is None or self._store.exists(descriptor)
        )
        if has_artifact:
            return descriptor  # type: ignore[return-value]

        if self._downloader is None:
            if descriptor is None:
                raise ModelNotRegisteredError(model_id)
            return descriptor

        logger.info(f"Provisioning '{model_id}' before inference")
        await self._downloader.download(model_id, descriptor=descriptor)
        return self._registry.get(model_id)

    async def infer(self, image: ImageBuffer, model_id: str) -> list[Prediction]:
        """Run one image through ``model_id`` and return post-processed predictions.

        Raises:
            ModelLifecycleError subclasses: resolution, load or inference failures
        """
        call = _InferenceCall(None, self.observer)
        call.advance(InferenceState.MODEL_RESOLVING)
        try:
            descriptor = await self.resolve(model_id)
        except ModelLifecycleError:
            call.advance(InferenceState.LOAD_FAILED)
            raise
        except Exception as e:
            call.advance(InferenceState.LOAD_FAILED)
            raise ModelLoadError(model_id, sanitize_error(e)) from e
        predictions, _ = await self._execute(call, descriptor, image)
        return predictions

    def submit_batch(
        self, images: Sequence[ImageBuffer], model_id: str
    ) -> BatchInferenceJob:
        """Start a batch and return its cancellable job handle.

        Raises:
            InvalidInputError: If ``images`` is empty
        """
        if not images:
            raise InvalidInputError("images must not be empty", field="images")
        return BatchInferenceJob(self, images, model_id, self.max_workers)

    async def infer_batch(
        self, images: Sequence[ImageBuffer], model_id: str
    ) -> list[InferenceResult]:
        """Run a batch to completion; ``result[i]`` corresponds to ``images[i]``.

        Raises:
            InvalidInputError: If ``images`` is empty
        """
        return await self.submit_batch(images, model_id).results()

    async def _run_item(
        self,
        call: _InferenceCall,
        descriptor: ModelDescriptor | None,
        resolve_error: ModelLifecycleError | None,
        image: ImageBuffer,
    ) -> InferenceResult:
        """Run one batch item, converting its failure into the result."""
        index = call.index if call.index is not None else -1
        call.advance(InferenceState.MODEL_RESOLVING)
        if descriptor is None:
            call.advance(InferenceState.LOAD_FAILED)
            return InferenceResult(index=index, state=call.state, error=resolve_error)

        try:
            predictions, latency = await self._execute(call, descriptor, image)
        except ModelLifecycleError as e:
            return InferenceResult(index=index, state=call.state, error=e)
        except Exception as e:
            error = InferenceFailedError(descriptor.id, sanitize_error(e))
            logger.error(f"Unexpected error in batch item {index}: {error.reason}")
            return InferenceResult(index=index, state=InferenceState.FAILED, error=error)
        return InferenceResult(
            index=index, state=call.state, predictions=predictions, latency=latency
        )

    async def _execute(
        self, call: _InferenceCall, descriptor: ModelDescriptor, image: ImageBuffer
    ) -> tuple[list[Prediction], float]:
        """Load, run, record and post-process (call is in MODEL_RESOLVING)."""
        try:
            handle = await self._cache.load(descriptor)
        except ModelLifecycleError:
            call.advance(InferenceState.LOAD_FAILED)
            raise
        except Exception as e:
            call.advance(InferenceState.LOAD_FAILED)
            raise ModelLoadError(descriptor.cache_key, sanitize_error(e)) from e

        call.advance(InferenceState.LOADED)
        try:
            call.advance(InferenceState.INFERRING)
            start_time = time.monotonic()
            raw = await asyncio.to_thread(self._runner.run, handle.model, descriptor, image)
            latency = time.monotonic() - start_time

            self._optimizer.record_inference(latency, descriptor.model_type)
            predictions = self._postprocessor.process(raw, descriptor.model_type)
        except ModelLifecycleError:
            call.advance(InferenceState.FAILED)
            raise
        except Exception as e:
            call.advance(InferenceState.FAILED)
            raise InferenceFailedError(descriptor.id, sanitize_error(e)) from e
        finally:
            await self._cache.release(handle)

        call.advance(InferenceState.SUCCEEDED)
        logger.debug(
            f"Inference on '{descriptor.cache_key}' took {latency * 1000:.1f}ms, "
            f"{len(predictions)} prediction(s)"
        )
        return predictions, latency
