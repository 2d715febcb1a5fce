"""Update coordinator: version checks and verify-then-swap installs.

An install never leaves a model without a usable version:

1. Download the new version to its own canonical path (old artifact untouched)
2. Verify the new artifact loads (load + unload through the model loader)
3. Swap the registry mapping to the new descriptor
4. Unload the old version from the cache if idle, then delete its artifact

If step 1 or 2 fails or is cancelled, the new artifact is removed and the
registry still points at the old descriptor. Failures are raised as
VerificationFailedError (or the download error).

Usage:
    updates = await coordinator.check_all_updates()
    result = await coordinator.install_all()
    print(result.success_count, result.failed_updates)
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from edgeml.core import metrics
from edgeml.core.exceptions import (
    ModelLifecycleError,
    VerificationFailedError,
)
from edgeml.core.locks import KeyedLocks
from edgeml.core.logging import get_logger, operation_context, sanitize_error
from edgeml.lifecycle.catalog import CatalogEntry, ModelCatalog
from edgeml.lifecycle.descriptor import ModelDescriptor, SemanticVersion
from edgeml.lifecycle.download_service import DownloadCoordinator
from edgeml.lifecycle.model_manager import ModelCache, ModelLoader
from edgeml.lifecycle.model_registry import LocalModelRegistry
from edgeml.lifecycle.storage import LocalModelStore

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class UpdateInfo:
    """An available update, derived from the catalog and the local registry."""

    model_id: str
    model_name: str
    current_version: SemanticVersion
    new_version: SemanticVersion
    byte_size: int
    candidate: ModelDescriptor
    release_date: datetime | None = None
    change_notes: str = ""
    is_security_update: bool = False

    @property
    def version_bump(self) -> str:
        """Which component changed: "major", "minor" or "patch"."""
        if self.new_version.major != self.current_version.major:
            return "major"
        if self.new_version.minor != self.current_version.minor:
            return "minor"
        return "patch"

    def to_dict(self) -> dict[str, Any]:
        return {
            "model_id": self.model_id,
            "model_name": self.model_name,
            "current_version": str(self.current_version),
            "new_version": str(self.new_version),
            "version_bump": self.version_bump,
            "byte_size": self.byte_size,
            "release_date": self.release_date.isoformat() if self.release_date else None,
            "change_notes": self.change_notes,
            "is_security_update": self.is_security_update,
        }


@dataclass
class UpdateInstallationResult:
    """Summary of ``install_all``; failures are collected per model id."""

    available_count: int
    installed: list[ModelDescriptor] = field(default_factory=list)
    failed_updates: dict[str, str] = field(default_factory=dict)
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    finished_at: datetime | None = None

    @property
    def success_count(self) -> int:
        return len(self.installed)

    @property
    def failure_count(self) -> int:
        return len(self.failed_updates)

    @property
    def is_successful(self) -> bool:
        return self.failure_count == 0

    @property
    def partial_success(self) -> bool:
        return self.success_count > 0 and self.failure_count > 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "available": self.available_count,
            "installed": [f"{d.id}@{d.version}" for d in self.installed],
            "failed": dict(self.failed_updates),
            "is_successful": self.is_successful,
            "partial_success": self.partial_success,
        }


class UpdateCoordinator:
    """Checks the catalog for newer versions and installs them atomically."""

    def __init__(
        self,
        catalog: ModelCatalog,
        registry: LocalModelRegistry,
        downloader: DownloadCoordinator,
        store: LocalModelStore,
        cache: ModelCache,
        loader: ModelLoader,
        *,
        platform_version: SemanticVersion | str = "1.0.0",
        max_parallel: int = 3,
    ) -> None:
        if max_parallel < 1:
            raise ValueError(f"max_parallel must be at least 1, got {max_parallel}")
        self._catalog = catalog
        self._registry = registry
        self._downloader = downloader
        self._store = store
        self._cache = cache
        self._loader = loader
        self.platform_version = SemanticVersion.parse(platform_version)
        self.max_parallel = max_parallel
        self._install_locks = KeyedLocks()

    async def check_for_update(self, model_id: str) -> UpdateInfo | None:
        """Compare the registered version with the catalog's latest.

        Returns:
            UpdateInfo, or None if the local version is current or newer, the
            catalog doesn't list the model, or the new version needs a newer
            platform than this runtime

        Raises:
            ModelNotRegisteredError: If the model isn't registered locally
        """
        current = self._registry.get(model_id)
        entry = await self._catalog.latest(model_id)
        if entry is None:
            return None
        return self._compare(current, entry)

    async def check_all_updates(self) -> list[UpdateInfo]:
        """Check every registered model, in registration order."""
        updates: list[UpdateInfo] = []
        for descriptor in self._registry.all():
            entry = await self._catalog.latest(descriptor.id)
            if entry is None:
                continue
            info = self._compare(descriptor, entry)
            if info is not None:
                updates.append(info)
        logger.info(f"{len(updates)} model update(s) available")
        return updates

    async def install(self, update: UpdateInfo) -> ModelDescriptor:
        """Install an update with rollback-safe replacement.

        Returns:
            The newly active descriptor (or the current one if it's already
            at or beyond the update's version)

        Raises:
            VerificationFailedError: If the new artifact fails verification
            DownloadFailedError: If the transfer fails
        """
        async with self._install_locks.hold(update.model_id):
            with operation_context("install"):
                current = self._registry.get(update.model_id)
                if current.version >= update.new_version:
                    logger.info(
                        f"Model '{update.model_id}' already at {current.version}, "
                        f"skipping update to {update.new_version}"
                    )
                    return current

                candidate = update.candidate
                logger.info(f"Installing '{update.model_id}' {current.version} -> {candidate.version}")

                try:
                    await self._downloader.download(update.model_id, descriptor=candidate)
                    await self._verify_loadable(candidate)
                except VerificationFailedError:
                    self._store.delete(candidate)
                    metrics.record_update_outcome("rolled_back")
                    logger.warning(
                        f"Rolled back update of '{update.model_id}'; "
                        f"{current.version} remains active"
                    )
                    raise
                except BaseException:
                    # Anything before the swap leaves the new artifact unregistered
                    self._store.delete(candidate)
                    logger.warning(
                        f"Install of '{update.model_id}' {candidate.version} aborted; "
                        f"{current.version} remains active"
                    )
                    raise

                self._registry.replace(candidate)
                await self._cache.unload_if_idle(current)
                if current.version != candidate.version:
                    self._store.delete(current)

                metrics.record_update_outcome("installed")
                logger.info(f"Installed '{update.model_id}' {candidate.version}")
                return candidate

    async def install_all(self) -> UpdateInstallationResult:
        """Check for and install every available update with bounded parallelism."""
        updates = await self.check_all_updates()
        result = UpdateInstallationResult(available_count=len(updates))
        semaphore = asyncio.Semaphore(self.max_parallel)

        async def _install_one(update: UpdateInfo) -> tuple[UpdateInfo, ModelDescriptor | None, str | None]:
            async with semaphore:
                try:
                    return update, await self.install(update), None
                except ModelLifecycleError as e:
                    return update, None, e.message
                except Exception as e:
                    reason = sanitize_error(e)
                    logger.error(f"Unexpected error installing '{update.model_id}': {reason}")
                    return update, None, reason

        outcomes = await asyncio.gather(*(_install_one(u) for u in updates))
        for update, installed, error in outcomes:
            if installed is not None:
                result.installed.append(installed)
            else:
                result.failed_updates[update.model_id] = error or "unknown error"

        result.finished_at = datetime.now(UTC)
        logger.info(
            f"Update install finished: {result.success_count} installed, "
            f"{result.failure_count} failed"
        )
        return result

    def _compare(self, current: ModelDescriptor, entry: CatalogEntry) -> UpdateInfo | None:
        latest = entry.semantic_version
        if latest <= current.version:
            return None

        candidate = entry.to_descriptor()
        if not candidate.supports_platform(self.platform_version):
            logger.info(
                f"Skipping '{entry.id}' {latest}: requires platform "
                f"{candidate.min_platform_version}, running {self.platform_version}"
            )
            return None

        return UpdateInfo(
            model_id=current.id,
            model_name=entry.name,
            current_version=current.version,
            new_version=latest,
            byte_size=entry.byte_size,
            candidate=candidate,
            release_date=entry.release_date,
            change_notes=entry.change_notes,
            is_security_update=entry.is_security_update,
        )

    async def _verify_loadable(self, descriptor: ModelDescriptor) -> None:
        """Load and unload the new artifact outside the cache budget.

        Raises:
            VerificationFailedError: If the loader rejects the artifact
        """
        path: Path = self._store.artifact_path(descriptor)
        loop = asyncio.get_running_loop()
        try:
            model = await loop.run_in_executor(None, self._loader.load, descriptor, path)
        except Exception as e:
            raise VerificationFailedError(
                descriptor.id, f"new artifact failed to load: {sanitize_error(e)}"
            ) from e
        await loop.run_in_executor(None, self._loader.unload, model)
