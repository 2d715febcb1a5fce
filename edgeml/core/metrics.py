"""Prometheus metrics definitions and helpers.

Metric Naming Conventions:
- All metrics are prefixed with 'edgeml_'
- Counters end with '_total'
- Histograms/durations end with '_seconds'
- Gauges use descriptive names without suffix

Usage:
    from edgeml.core.metrics import observe_inference_duration, record_download_outcome

    observe_inference_duration("detection", 0.042)
    record_download_outcome("completed")
"""

from prometheus_client import (
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
)

from edgeml.core.logging import get_logger

logger = get_logger(__name__)

_registry = REGISTRY

# =============================================================================
# Model Cache
# =============================================================================

CACHE_RESIDENT_BYTES = Gauge(
    "edgeml_cache_resident_bytes",
    "Bytes currently held by resident models in the model cache",
    registry=_registry,
)

CACHE_BUDGET_BYTES = Gauge(
    "edgeml_cache_budget_bytes",
    "Configured byte budget of the model cache",
    registry=_registry,
)

CACHE_UTILIZATION_PERCENT = Gauge(
    "edgeml_cache_utilization_percent",
    "Model cache utilization percentage (resident / budget * 100)",
    registry=_registry,
)

CACHE_MODELS_LOADED = Gauge(
    "edgeml_cache_models_loaded",
    "Number of models currently resident in the model cache",
    registry=_registry,
)

CACHE_EVICTIONS_TOTAL = Counter(
    "edgeml_cache_evictions_total",
    "Total number of LRU evictions by model id",
    ["model_id"],
    registry=_registry,
)

CACHE_LOOKUPS_TOTAL = Counter(
    "edgeml_cache_lookups_total",
    "Cache lookups by result (hit or miss)",
    ["result"],
    registry=_registry,
)

MODEL_LOAD_TIME_SECONDS = Histogram(
    "edgeml_model_load_time_seconds",
    "Time taken to materialize a model from local storage",
    ["model_id"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
    registry=_registry,
)

# =============================================================================
# Downloads and Updates
# =============================================================================

DOWNLOADS_TOTAL = Counter(
    "edgeml_downloads_total",
    "Finished model downloads by terminal status",
    ["status"],
    registry=_registry,
)

DOWNLOAD_BYTES_TOTAL = Counter(
    "edgeml_download_bytes_total",
    "Total bytes received from the blob transport",
    registry=_registry,
)

ACTIVE_DOWNLOADS = Gauge(
    "edgeml_active_downloads",
    "Number of downloads currently transferring bytes",
    registry=_registry,
)

UPDATES_INSTALLED_TOTAL = Counter(
    "edgeml_updates_installed_total",
    "Model update installs by outcome (installed or rolled_back)",
    ["outcome"],
    registry=_registry,
)

# =============================================================================
# Inference
# =============================================================================

INFERENCE_DURATION_SECONDS = Histogram(
    "edgeml_inference_duration_seconds",
    "Model execution time per image by model type",
    ["model_type"],
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5],
    registry=_registry,
)

INFERENCE_RESULTS_TOTAL = Counter(
    "edgeml_inference_results_total",
    "Inference outcomes by terminal state",
    ["state"],
    registry=_registry,
)


def update_cache_usage(resident_bytes: int, budget_bytes: int, loaded_count: int) -> None:
    """Publish the model cache occupancy gauges.

    Args:
        resident_bytes: Bytes held by resident entries (including reservations)
        budget_bytes: Configured budget in bytes
        loaded_count: Number of resident entries
    """
    CACHE_RESIDENT_BYTES.set(resident_bytes)
    CACHE_BUDGET_BYTES.set(budget_bytes)
    CACHE_MODELS_LOADED.set(loaded_count)
    if budget_bytes > 0:
        CACHE_UTILIZATION_PERCENT.set(round(resident_bytes / budget_bytes * 100, 1))
    else:
        CACHE_UTILIZATION_PERCENT.set(0)


def record_cache_lookup(hit: bool) -> None:
    """Increment the cache lookup counter."""
    CACHE_LOOKUPS_TOTAL.labels(result="hit" if hit else "miss").inc()


def record_eviction(model_id: str) -> None:
    CACHE_EVICTIONS_TOTAL.labels(model_id=model_id).inc()


def observe_model_load_time(model_id: str, duration_seconds: float) -> None:
    MODEL_LOAD_TIME_SECONDS.labels(model_id=model_id).observe(duration_seconds)


def record_download_outcome(status: str) -> None:
    """Increment the finished downloads counter.

    Args:
        status: Terminal download status ("completed", "failed" or "cancelled")
    """
    DOWNLOADS_TOTAL.labels(status=status).inc()


def record_download_bytes(count: int) -> None:
    DOWNLOAD_BYTES_TOTAL.inc(count)


def record_update_outcome(outcome: str) -> None:
    """Increment the update installs counter.

    Args:
        outcome: "installed" or "rolled_back"
    """
    UPDATES_INSTALLED_TOTAL.labels(outcome=outcome).inc()


def observe_inference_duration(model_type: str, duration_seconds: float) -> None:
    """Record how long a single model execution took.

    Args:
        model_type: Model type tag ("detection", "classification", ...)
        duration_seconds: Duration in seconds
    """
    INFERENCE_DURATION_SECONDS.labels(model_type=model_type).observe(duration_seconds)


def record_inference_result(state: str) -> None:
    INFERENCE_RESULTS_TOTAL.labels(state=state).inc()

