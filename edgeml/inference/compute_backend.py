"""Compute-backend selection and per-model-type latency statistics.

Backends, most capable first:
- ACCELERATOR: run entirely on the GPU (CUDA, or MPS on Apple silicon)
- CPU_AND_ACCELERATOR: an accelerator exists but can't take the model's input
  shape; the model runs on the CPU with accelerator-side helpers left available
- CPU_ONLY: no accelerator on this platform

Selection defaults to the most capable backend and only falls back when the
platform reports the accelerator unsupported. Latency statistics are for
observability only and never influence selection.

Usage:
    optimizer = ComputeBackendOptimizer(TorchPlatformCapabilities())
    backend = optimizer.optimal_compute_units(ModelType.detection(), (1, 3, 640, 640))
    device = optimizer.device_for(backend)
"""

from __future__ import annotations

import math
import threading
from dataclasses import dataclass
from enum import StrEnum
from typing import Protocol

import torch

from edgeml.core.logging import get_logger
from edgeml.core.metrics import observe_inference_duration
from edgeml.lifecycle.descriptor import ModelDescriptor, ModelKind, ModelType

logger = get_logger(__name__)

# Input elements above which the accelerator path is considered unsupported
DEFAULT_MAX_ACCELERATOR_ELEMENTS = 64 * 1024 * 1024


class ComputeBackend(StrEnum):
    ACCELERATOR = "accelerator"
    CPU_AND_ACCELERATOR = "cpu_and_accelerator"
    CPU_ONLY = "cpu_only"


class PlatformCapabilities(Protocol):
    def accelerator_device(self) -> str | None:
        """Torch device string of the accelerator, or None if there is none."""
        ...

    def supports_input_shape(self, shape: tuple[int, ...]) -> bool:
        """Whether the accelerator can run a model with this input shape."""
        ...


class TorchPlatformCapabilities:
    """Capabilities detected from the local torch build.

    CUDA is preferred over MPS. The MPS backend is limited to rank <= 4 inputs.
    """

    def __init__(self, max_elements: int = DEFAULT_MAX_ACCELERATOR_ELEMENTS) -> None:
        self.max_elements = max_elements
        self._device = self._detect_device()
        logger.info(f"Detected accelerator: {self._device or 'none'}")

    @staticmethod
    def _detect_device() -> str | None:
        if torch.cuda.is_available():
            return "cuda:0"
        mps = getattr(torch.backends, "mps", None)
        if mps is not None and mps.is_available():
            return "mps"
        return None

    def accelerator_device(self) -> str | None:
        return self._device

    def supports_input_shape(self, shape: tuple[int, ...]) -> bool:
        if self._device is None or not shape:
            return False
        if math.prod(shape) > self.max_elements:
            return False
        return not (self._device == "mps" and len(shape) > 4)


@dataclass(frozen=True, slots=True)
class StaticPlatformCapabilities:
    """Fixed capabilities, for CPU-only deployments and tests."""

    device: str | None = None
    max_elements: int = DEFAULT_MAX_ACCELERATOR_ELEMENTS

    def accelerator_device(self) -> str | None:
        return self.device

    def supports_input_shape(self, shape: tuple[int, ...]) -> bool:
        return self.device is not None and bool(shape) and math.prod(shape) <= self.max_elements


@dataclass
class PerformanceStats:
    """Running latency statistics for one model type (seconds)."""

    count: int = 0
    mean_latency: float = 0.0
    min_latency: float = 0.0
    max_latency: float = 0.0
    last_latency: float = 0.0

    @property
    def mean_latency_ms(self) -> float:
        return self.mean_latency * 1000

    def add(self, latency: float) -> None:
        self.count += 1
        self.mean_latency += (latency - self.mean_latency) / self.count
        self.min_latency = latency if self.count == 1 else min(self.min_latency, latency)
        self.max_latency = max(self.max_latency, latency)
        self.last_latency = latency

    def to_dict(self) -> dict[str, float | int]:
        return {
            "count": self.count,
            "mean_latency_ms": round(self.mean_latency_ms, 3),
            "min_latency_ms": round(self.min_latency * 1000, 3),
            "max_latency_ms": round(self.max_latency * 1000, 3),
        }


class ComputeBackendOptimizer:
    """Chooses an execution backend per model and accumulates latency stats.

    Stats are guarded by a threading lock since samples are recorded from
    worker threads as well as the event loop.
    """

    def __init__(
        self,
        capabilities: PlatformCapabilities,
        override: ComputeBackend | str | None = None,
    ) -> None:
        self.capabilities = capabilities
        self.override = ComputeBackend(override) if override else None
        self._stats: dict[str, PerformanceStats] = {}
        self._stats_lock = threading.Lock()
        if self.override is not None:
            logger.info(f"Compute backend forced to {self.override}")

    def optimal_compute_units(
        self, model_type: ModelType, input_shape: tuple[int, ...] | None = None
    ) -> ComputeBackend:
        """Preferred backend for a model type and (optionally) its input shape.

        Without an explicit shape a typical shape for the model type is assumed;
        custom model types without a shape are assumed to be supported.
        """
        if self.override is not None:
            return self.override

        if self.capabilities.accelerator_device() is None:
            return ComputeBackend.CPU_ONLY

        shape = input_shape or self._typical_input_shape(model_type)
        if shape is not None and not self.capabilities.supports_input_shape(shape):
            logger.debug(f"Accelerator can't take {model_type} input {shape}; using CPU fallback")
            return ComputeBackend.CPU_AND_ACCELERATOR

        return ComputeBackend.ACCELERATOR

    def backend_for(self, descriptor: ModelDescriptor) -> ComputeBackend:
        return self.optimal_compute_units(descriptor.model_type, descriptor.input_shape or None)

    def device_for(self, backend: ComputeBackend) -> str:
        """Torch device that models on ``backend`` are placed on."""
        match backend:
            case ComputeBackend.ACCELERATOR:
                return self.capabilities.accelerator_device() or "cpu"
            case ComputeBackend.CPU_AND_ACCELERATOR | ComputeBackend.CPU_ONLY:
                return "cpu"

    @staticmethod
    def _typical_input_shape(model_type: ModelType) -> tuple[int, ...] | None:
        match model_type.kind:
            case ModelKind.DETECTION:
                return (1, 3, 640, 640)
            case ModelKind.CLASSIFICATION:
                return (1, 3, 224, 224)
            case ModelKind.SEGMENTATION:
                return (1, 3, 512, 512)
            case ModelKind.CUSTOM:
                return None

    # -------------------------------------------------------------------------
    # Performance statistics
    # -------------------------------------------------------------------------

    def record_inference(self, duration: float, model_type: ModelType) -> None:
        """Add one latency sample (seconds) for ``model_type``."""
        if duration < 0 or math.isnan(duration):
            logger.warning(f"Ignoring invalid inference duration {duration} for {model_type}")
            return
        with self._stats_lock:
            self._stats.setdefault(model_type.label, PerformanceStats()).add(duration)
        observe_inference_duration(model_type.label, duration)

    def get_performance_stats(self, model_type: ModelType) -> PerformanceStats:
        """Snapshot of the statistics for ``model_type`` (zeros if none recorded)."""
        with self._stats_lock:
            stats = self._stats.get(model_type.label)
            if stats is None:
                return PerformanceStats()
            return PerformanceStats(
                count=stats.count,
                mean_latency=stats.mean_latency,
                min_latency=stats.min_latency,
                max_latency=stats.max_latency,
                last_latency=stats.last_latency,
            )

    def all_performance_stats(self) -> dict[str, PerformanceStats]:
        with self._stats_lock:
            labels = list(self._stats)
        return {label: self.get_performance_stats(ModelType.parse(label)) for label in labels}

    def reset_stats(self) -> None:
        with self._stats_lock:
            self._stats.clear()
