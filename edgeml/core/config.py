"""Application configuration using Pydantic Settings."""

import os
from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables and ``.env``.

    Variable names are case-insensitive and unprefixed, e.g.
    ``MODEL_CACHE_BUDGET_MB=750`` or ``MAX_PARALLEL_DOWNLOADS=5``.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        protected_namespaces=("settings_",),
    )

    # Local storage
    model_storage_dir: str = Field(
        default="data/models",
        description="Directory holding downloaded model artifacts and the registry manifest",
    )
    registry_manifest_name: str = Field(
        default="registry.json",
        description="File name of the local registry manifest inside model_storage_dir",
    )

    # Model cache
    model_cache_budget_mb: int = Field(
        default=500,
        ge=1,
        le=65536,
        description="Maximum resident size of loaded models in megabytes",
    )
    model_idle_unload_seconds: float = Field(
        default=300.0,
        ge=0.0,
        description="Idle time after which cleanup_idle_models unloads an unreferenced model",
    )

    # Downloads
    max_parallel_downloads: int = Field(
        default=3,
        ge=1,
        le=32,
        description="Maximum number of model downloads running concurrently",
    )
    download_chunk_size_bytes: int = Field(
        default=1024 * 1024,
        ge=4096,
        description="Chunk size used when streaming model artifacts",
    )

    # Catalog / transport
    catalog_url: str = Field(
        default="http://localhost:8080",
        description="Base URL of the model catalog and artifact service",
    )
    transport_timeout_seconds: float = Field(
        default=60.0,
        ge=1.0,
        le=3600.0,
        description="Read timeout for catalog and artifact requests",
    )
    transport_connect_timeout_seconds: float = Field(
        default=10.0,
        ge=0.1,
        le=300.0,
        description="Connect timeout for catalog and artifact requests",
    )

    # Inference
    inference_workers: int = Field(
        default=4,
        ge=1,
        le=64,
        description="Maximum number of batch items inferred concurrently",
    )
    confidence_threshold: float = Field(
        default=0.5,
        ge=0.0,
        le=1.0,
        description="Minimum confidence kept by the result postprocessor",
    )
    nms_iou_threshold: float = Field(
        default=0.45,
        ge=0.0,
        le=1.0,
        description="IoU above which overlapping boxes are suppressed",
    )
    top_k: int | None = Field(
        default=None,
        ge=0,
        description="Keep at most this many predictions per image (unset keeps all)",
    )
    class_aware_nms: bool = Field(
        default=False,
        description="Only suppress overlapping boxes that share a class",
    )

    # Compute backend
    compute_backend_override: str | None = Field(
        default=None,
        pattern=r"^(accelerator|cpu_and_accelerator|cpu_only)$",
        description="Force a compute backend instead of detecting one",
    )
    platform_version: str = Field(
        default="1.0.0",
        pattern=r"^\d+(\.\d+){0,2}$",
        description="Version of this runtime, compared against a model's minimum platform version",
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    log_format: str = Field(
        default="text",
        pattern=r"^(text|json)$",
        description="Console log format: plain text or structured JSON",
    )
    log_file_path: str | None = Field(
        default=None,
        description="Optional path of a rotating log file",
    )
    log_file_max_bytes: int = Field(
        default=10 * 1024 * 1024,
        description="Maximum size of each log file before rotation",
    )
    log_file_backup_count: int = Field(
        default=5,
        description="Number of rotated log files to keep",
    )

    @field_validator("catalog_url")
    @classmethod
    def validate_catalog_url(cls, v: str) -> str:
        """Require an http(s) catalog URL and drop any trailing slash."""
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"Invalid catalog URL. Expected http:// or https://, got: {v}")
        return v.rstrip("/")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Normalize and validate the log level name."""
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Invalid log level: {v}")
        return level

    @property
    def model_cache_budget_bytes(self) -> int:
        """Cache budget converted to bytes."""
        return self.model_cache_budget_mb * 1024 * 1024

    @property
    def registry_manifest_path(self) -> Path:
        """Full path of the registry manifest."""
        return Path(self.model_storage_dir) / self.registry_manifest_name


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    env_path = os.getenv("EDGEML_ENV_FILE", ".env")
    return Settings(_env_file=env_path)
