"""Exception hierarchy for the model lifecycle and inference pipeline.

This module provides a single hierarchy that:
1. Categorizes errors by stage (cache, download, verification, inference)
2. Carries a stable machine-readable error code per category
3. Enables structured error payloads via ``to_dict()`` for progress/summary reporting

Single-item operations raise these directly. Batch operations collect them
per item instead of raising.
"""

from __future__ import annotations

from typing import Any


class ModelLifecycleError(Exception):
    """Base exception for all application-specific errors."""

    default_message: str = "An unexpected error occurred"
    default_error_code: str = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str | None = None,
        *,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.message = message or self.default_message
        self.error_code = error_code or self.default_error_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "code": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


# Input / configuration errors
class InvalidInputError(ModelLifecycleError):
    default_message = "Invalid input provided"
    default_error_code = "INVALID_INPUT"

    def __init__(
        self,
        message: str | None = None,
        *,
        field: str | None = None,
        value: Any = None,
        **kwargs: Any,
    ) -> None:
        details = kwargs.pop("details", {}) or {}
        if field:
            details["field"] = field
        if value is not None:
            str_value = str(value)
            details["value"] = str_value[:100] if len(str_value) > 100 else str_value
        super().__init__(message, details=details, **kwargs)


class ConfigurationError(ModelLifecycleError):
    default_message = "Invalid configuration"
    default_error_code = "CONFIGURATION_ERROR"


# Lookup errors
class ModelNotFoundError(ModelLifecycleError):
    """No local artifact (or catalog entry) exists for the requested model."""

    default_message = "Model not found"
    default_error_code = "MODEL_NOT_FOUND"

    def __init__(self, model_id: str, message: str | None = None, **kwargs: Any) -> None:
        self.model_id = model_id
        details = kwargs.pop("details", {}) or {}
        details["model_id"] = model_id
        super().__init__(message or f"Model not found: {model_id}", details=details, **kwargs)


class ModelNotRegisteredError(ModelNotFoundError):
    default_error_code = "MODEL_NOT_REGISTERED"

    def __init__(self, model_id: str, message: str | None = None, **kwargs: Any) -> None:
        super().__init__(model_id, message or f"Model is not registered locally: {model_id}", **kwargs)


# Cache errors
class ModelInUseError(ModelLifecycleError):
    default_message = "Model is in use"
    default_error_code = "MODEL_IN_USE"

    def __init__(self, model_key: str, ref_count: int, **kwargs: Any) -> None:
        self.model_key = model_key
        self.ref_count = ref_count
        super().__init__(
            f"Cannot unload '{model_key}': {ref_count} active reference(s)",
            details={"model_key": model_key, "ref_count": ref_count},
            **kwargs,
        )


class InsufficientCapacityError(ModelLifecycleError):
    default_message = "Cache budget cannot be satisfied"
    default_error_code = "INSUFFICIENT_CAPACITY"

    def __init__(
        self,
        model_key: str,
        required_bytes: int,
        budget_bytes: int,
        resident_bytes: int,
        **kwargs: Any,
    ) -> None:
        self.model_key = model_key
        self.required_bytes = required_bytes
        super().__init__(
            f"Cannot admit '{model_key}' ({required_bytes} bytes): "
            f"resident {resident_bytes} / budget {budget_bytes} bytes and "
            f"no idle model can be evicted",
            details={
                "model_key": model_key,
                "required_bytes": required_bytes,
                "budget_bytes": budget_bytes,
                "resident_bytes": resident_bytes,
            },
            **kwargs,
        )


class ModelLoadError(ModelLifecycleError):
    """The artifact is present but could not be materialized."""

    default_message = "Model failed to load"
    default_error_code = "LOAD_FAILED"

    def __init__(self, model_key: str, reason: str, **kwargs: Any) -> None:
        self.model_key = model_key
        self.reason = reason
        super().__init__(
            f"Failed to load '{model_key}': {reason}",
            details={"model_key": model_key, "reason": reason},
            **kwargs,
        )


# Download / verification errors
class DownloadFailedError(ModelLifecycleError):
    default_message = "Download failed"
    default_error_code = "DOWNLOAD_FAILED"

    def __init__(self, model_id: str, reason: str, **kwargs: Any) -> None:
        self.model_id = model_id
        self.reason = reason
        super().__init__(
            f"Download of '{model_id}' failed: {reason}",
            details={"model_id": model_id, "reason": reason},
            **kwargs,
        )


class DownloadCancelledError(ModelLifecycleError):
    default_message = "Download cancelled"
    default_error_code = "DOWNLOAD_CANCELLED"

    def __init__(self, model_id: str, **kwargs: Any) -> None:
        self.model_id = model_id
        super().__init__(
            f"Download of '{model_id}' was cancelled",
            details={"model_id": model_id},
            **kwargs,
        )


class VerificationFailedError(ModelLifecycleError):
    """Checksum, size or decode verification of an artifact failed."""

    default_message = "Artifact verification failed"
    default_error_code = "VERIFICATION_FAILED"

    def __init__(self, model_id: str, reason: str, **kwargs: Any) -> None:
        self.model_id = model_id
        self.reason = reason
        super().__init__(
            f"Verification of '{model_id}' failed: {reason}",
            details={"model_id": model_id, "reason": reason},
            **kwargs,
        )


# Inference errors
class InferenceFailedError(ModelLifecycleError):
    default_message = "Inference failed"
    default_error_code = "INFERENCE_FAILED"

    def __init__(self, model_id: str, reason: str, **kwargs: Any) -> None:
        self.model_id = model_id
        self.reason = reason
        super().__init__(
            f"Inference with '{model_id}' failed: {reason}",
            details={"model_id": model_id, "reason": reason},
            **kwargs,
        )


class InferenceCancelledError(ModelLifecycleError):
    default_message = "Inference was cancelled before it started"
    default_error_code = "INFERENCE_CANCELLED"


class CatalogUnavailableError(ModelLifecycleError):
    default_message = "Model catalog is unavailable"
    default_error_code = "CATALOG_UNAVAILABLE"
