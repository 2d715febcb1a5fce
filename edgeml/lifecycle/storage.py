"""Local artifact storage with temp files and atomic commit.

Layout under the storage root:
    <root>/<model_id>/<version>.model     canonical artifacts
    <root>/.tmp/<model_id>-<version>-<nonce>.part   in-progress downloads

An artifact only ever appears at its canonical path through ``commit()``,
which is a single ``os.replace`` from the temp path. A download that fails or
is cancelled is discarded from ``.tmp`` and never becomes visible to the cache.
"""

from __future__ import annotations

import hashlib
import os
import shutil
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO

from edgeml.core.exceptions import ModelNotFoundError
from edgeml.core.logging import get_logger
from edgeml.lifecycle.descriptor import ModelDescriptor

logger = get_logger(__name__)

ARTIFACT_SUFFIX = ".model"
TEMP_DIR_NAME = ".tmp"
HASH_CHUNK_SIZE = 8192


def compute_file_hash(file_path: Path) -> str:
    """Compute SHA256 hash of a file.

    Args:
        file_path: Path to the file

    Returns:
        Hexadecimal hash string
    """
    sha256_hash = hashlib.sha256()
    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(HASH_CHUNK_SIZE), b""):
            sha256_hash.update(chunk)
    return sha256_hash.hexdigest()


class TempArtifact:
    """An in-progress artifact being written to the temp directory.

    Bytes are hashed as they are written so verification does not need a
    second pass over the file.
    """

    def __init__(self, path: Path, descriptor: ModelDescriptor) -> None:
        self.path = path
        self.descriptor = descriptor
        self.bytes_written = 0
        self._hasher = hashlib.sha256()
        self._handle: BinaryIO | None = open(path, "wb")  # noqa: SIM115

    def write(self, chunk: bytes) -> None:
        if self._handle is None:
            raise ValueError(f"Temp artifact {self.path.name} is closed")
        self._handle.write(chunk)
        self._hasher.update(chunk)
        self.bytes_written += len(chunk)

    def close(self) -> None:
        if self._handle is not None:
            self._handle.flush()
            os.fsync(self._handle.fileno())
            self._handle.close()
            self._handle = None

    @property
    def closed(self) -> bool:
        return self._handle is None

    def hexdigest(self) -> str:
        return self._hasher.hexdigest()


@dataclass(slots=True)
class StorageUsage:
    """Disk usage of committed artifacts."""

    total_bytes: int = 0
    model_count: int = 0
    per_model_bytes: dict[str, int] = field(default_factory=dict)


class LocalModelStore:
    """Filesystem capability set used by downloads, updates and the cache."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)
        self.temp_dir = self.root / TEMP_DIR_NAME
        self.root.mkdir(parents=True, exist_ok=True)
        self.temp_dir.mkdir(parents=True, exist_ok=True)

    def canonical_path(self, descriptor: ModelDescriptor) -> Path:
        return self.root / descriptor.id / f"{descriptor.version}{ARTIFACT_SUFFIX}"

    def exists(self, descriptor: ModelDescriptor) -> bool:
        return self.canonical_path(descriptor).is_file()

    def artifact_path(self, descriptor: ModelDescriptor) -> Path:
        """Return the canonical path of a committed artifact.

        Raises:
            ModelNotFoundError: If no artifact was committed for this version
        """
        path = self.canonical_path(descriptor)
        if not path.is_file():
            raise ModelNotFoundError(
                descriptor.id,
                f"No local artifact for '{descriptor.cache_key}'",
                details={"version": str(descriptor.version)},
            )
        return path

    def read_bytes(self, descriptor: ModelDescriptor) -> bytes:
        return self.artifact_path(descriptor).read_bytes()

    def open_temp(self, descriptor: ModelDescriptor) -> TempArtifact:
        """Create a fresh temp file for a download of ``descriptor``."""
        self.temp_dir.mkdir(parents=True, exist_ok=True)
        name = f"{descriptor.id}-{descriptor.version}-{uuid.uuid4().hex[:8]}.part"
        return TempArtifact(self.temp_dir / name, descriptor)

    def commit(self, temp: TempArtifact) -> Path:
        """Atomically move a finished temp artifact to its canonical path."""
        temp.close()
        target = self.canonical_path(temp.descriptor)
        target.parent.mkdir(parents=True, exist_ok=True)
        os.replace(temp.path, target)
        logger.debug(f"Committed {temp.descriptor.cache_key} ({temp.bytes_written} bytes)")
        return target

    def discard(self, temp: TempArtifact) -> None:
        """Close and remove a temp artifact; safe to call more than once."""
        try:
            temp.close()
        except OSError as e:
            logger.warning(f"Error closing temp artifact {temp.path.name}: {e}")
        temp.path.unlink(missing_ok=True)

    def delete(self, descriptor: ModelDescriptor) -> bool:
        """Delete a committed artifact.

        Returns:
            True if a file was removed
        """
        path = self.canonical_path(descriptor)
        if not path.exists():
            return False
        path.unlink()
        try:
            path.parent.rmdir()
        except OSError:
            # Other versions of the model are still present
            pass
        logger.info(f"Deleted artifact {descriptor.cache_key}")
        return True

    def usage(self) -> StorageUsage:
        """Summarize the disk usage of committed artifacts per model id."""
        usage = StorageUsage()
        for model_dir in sorted(p for p in self.root.iterdir() if p.is_dir()):
            if model_dir.name == TEMP_DIR_NAME:
                continue
            sizes = [f.stat().st_size for f in model_dir.glob(f"*{ARTIFACT_SUFFIX}")]
            if not sizes:
                continue
            usage.per_model_bytes[model_dir.name] = sum(sizes)
            usage.total_bytes += sum(sizes)
            usage.model_count += 1
        return usage

    def purge_temp(self) -> int:
        """Remove leftover temp files from interrupted downloads.

        Returns:
            Number of files removed
        """
        if not self.temp_dir.exists():
            return 0
        removed = 0
        for leftover in self.temp_dir.iterdir():
            if leftover.is_dir():
                shutil.rmtree(leftover, ignore_errors=True)
            else:
                leftover.unlink(missing_ok=True)
            removed += 1
        if removed:
            logger.info(f"Purged {removed} leftover temp artifact(s)")
        return removed
