"""Unit tests for the exception hierarchy."""

import pytest

from edgeml.core.exceptions import (
    CatalogUnavailableError,
    DownloadCancelledError,
    DownloadFailedError,
    InferenceCancelledError,
    InferenceFailedError,
    InsufficientCapacityError,
    InvalidInputError,
    ModelInUseError,
    ModelLifecycleError,
    ModelLoadError,
    ModelNotFoundError,
    ModelNotRegisteredError,
    VerificationFailedError,
)


class TestBaseError:
    def test_defaults(self):
        error = ModelLifecycleError()
        assert error.message == "An unexpected error occurred"
        assert error.error_code == "INTERNAL_ERROR"
        assert error.to_dict() == {"code": "INTERNAL_ERROR", "message": error.message}

    def test_custom_message_and_details(self):
        error = ModelLifecycleError("boom", error_code="CUSTOM", details={"a": 1})
        assert str(error) == "boom"
        assert error.to_dict() == {"code": "CUSTOM", "message": "boom", "details": {"a": 1}}

    def test_subclass_defaults(self):
        error = InferenceCancelledError()
        assert error.error_code == "INFERENCE_CANCELLED"
        assert isinstance(error, ModelLifecycleError)
        assert CatalogUnavailableError().error_code == "CATALOG_UNAVAILABLE"


class TestInvalidInputError:
    def test_field_and_value_in_details(self):
        error = InvalidInputError("bad", field="images", value="x" * 150)
        assert error.details["field"] == "images"
        assert len(error.details["value"]) == 100


class TestLookupErrors:
    def test_model_not_found(self):
        error = ModelNotFoundError("yolo")
        assert error.model_id == "yolo"
        assert error.details == {"model_id": "yolo"}
        assert "yolo" in error.message

    def test_not_registered_is_not_found(self):
        error = ModelNotRegisteredError("yolo")
        assert isinstance(error, ModelNotFoundError)
        assert error.error_code == "MODEL_NOT_REGISTERED"


@pytest.mark.parametrize(
    ("error", "code", "detail_key"),
    [
        (ModelInUseError("yolo@1.0.0", 2), "MODEL_IN_USE", "ref_count"),
        (InsufficientCapacityError("yolo@1.0.0", 10, 5, 0), "INSUFFICIENT_CAPACITY", "budget_bytes"),
        (ModelLoadError("yolo@1.0.0", "corrupt"), "LOAD_FAILED", "reason"),
        (DownloadFailedError("yolo", "HTTP 500"), "DOWNLOAD_FAILED", "reason"),
        (DownloadCancelledError("yolo"), "DOWNLOAD_CANCELLED", "model_id"),
        (VerificationFailedError("yolo", "checksum"), "VERIFICATION_FAILED", "reason"),
        (InferenceFailedError("yolo", "shape"), "INFERENCE_FAILED", "reason"),
    ],
)
def test_structured_errors_carry_details(error, code, detail_key):
    payload = error.to_dict()
    assert payload["code"] == code
    assert detail_key in payload["details"]
