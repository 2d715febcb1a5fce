"""Local model registry: which descriptor is active for each model id.

The registry is the mapping the update coordinator swaps atomically when a
new version is installed. It is persisted as a small JSON manifest next to
the model artifacts so that a restarted process resolves the same versions.

Manifest layout:
    {"models": [{"id": "...", "version": "1.2.0", ...}, ...]}
"""

from __future__ import annotations

import json
import os
import threading
from pathlib import Path

from edgeml.core.exceptions import ModelNotRegisteredError
from edgeml.core.logging import get_logger
from edgeml.lifecycle.descriptor import ModelDescriptor

logger = get_logger(__name__)


class LocalModelRegistry:
    """Thread-safe mapping of model id to the currently active descriptor.

    Registration order is preserved so that update checks iterate models in
    a stable order.
    """

    def __init__(self, manifest_path: str | Path | None = None) -> None:
        self._models: dict[str, ModelDescriptor] = {}
        self._lock = threading.Lock()
        self.manifest_path = Path(manifest_path) if manifest_path else None

    def register(self, descriptor: ModelDescriptor) -> None:
        """Register a model id for the first time.

        Raises:
            ValueError: If the model id is already registered (use replace())
        """
        with self._lock:
            if descriptor.id in self._models:
                raise ValueError(f"Model '{descriptor.id}' is already registered")
            self._models[descriptor.id] = descriptor
        logger.debug(f"Registered model '{descriptor.id}' version {descriptor.version}")
        self._persist()

    def replace(self, descriptor: ModelDescriptor) -> ModelDescriptor | None:
        """Swap the active descriptor for ``descriptor.id``.

        Returns:
            The previously active descriptor, or None if the id was new
        """
        with self._lock:
            previous = self._models.get(descriptor.id)
            self._models[descriptor.id] = descriptor
        if previous is not None:
            logger.info(
                f"Model '{descriptor.id}' now at version {descriptor.version} "
                f"(was {previous.version})"
            )
        self._persist()
        return previous

    def unregister(self, model_id: str) -> ModelDescriptor | None:
        with self._lock:
            removed = self._models.pop(model_id, None)
        if removed is not None:
            logger.debug(f"Unregistered model '{model_id}'")
            self._persist()
        return removed

    def find(self, model_id: str) -> ModelDescriptor | None:
        with self._lock:
            return self._models.get(model_id)

    def get(self, model_id: str) -> ModelDescriptor:
        """Return the active descriptor for ``model_id``.

        Raises:
            ModelNotRegisteredError: If the id is unknown
        """
        descriptor = self.find(model_id)
        if descriptor is None:
            raise ModelNotRegisteredError(model_id)
        return descriptor

    def all(self) -> list[ModelDescriptor]:
        with self._lock:
            return list(self._models.values())

    def __contains__(self, model_id: object) -> bool:
        with self._lock:
            return model_id in self._models

    def __len__(self) -> int:
        with self._lock:
            return len(self._models)

    # -------------------------------------------------------------------------
    # Manifest persistence
    # -------------------------------------------------------------------------

    def load_manifest(self) -> int:
        """Populate the registry from the manifest file, if it exists.

        Entries already registered in memory are overwritten by the manifest.

        Returns:
            Number of descriptors loaded
        """
        if self.manifest_path is None or not self.manifest_path.exists():
            return 0

        raw = json.loads(self.manifest_path.read_text(encoding="utf-8"))
        descriptors = [ModelDescriptor.from_dict(item) for item in raw.get("models", [])]
        with self._lock:
            for descriptor in descriptors:
                self._models[descriptor.id] = descriptor
        logger.info(f"Loaded {len(descriptors)} model(s) from {self.manifest_path}")
        return len(descriptors)

    def save_manifest(self) -> None:
        """Write the manifest atomically (temp file + rename)."""
        if self.manifest_path is None:
            return
        with self._lock:
            payload = {"models": [d.to_dict() for d in self._models.values()]}
        self.manifest_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.manifest_path.with_suffix(self.manifest_path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        os.replace(tmp_path, self.manifest_path)

    def _persist(self) -> None:
        if self.manifest_path is not None:
            self.save_manifest()
