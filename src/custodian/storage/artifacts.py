"""Artifact stores for export bundles.

The export pipeline only needs ``put``/``get``/``delete``; locations are
opaque strings issued by the store, so any blob store can stand in for
the local-file backend.

Supported backends:
- Memory (for testing)
- Local file system
"""

from __future__ import annotations

import logging
import os
import re
import tempfile
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from uuid import uuid4

from ..core.exceptions import StorageException

logger = logging.getLogger(__name__)

_LOCATION_RE = re.compile(r"^[0-9a-f]{32}(\.[a-z0-9]{1,8})?$")


class ArtifactNotFoundError(StorageException):
    """Raised when an artifact cannot be found."""

    code = "artifact_not_found"


@dataclass
class ArtifactStats:
    """Statistics for an artifact store."""

    backend_type: str
    total_artifacts: int = 0
    total_bytes: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "backend_type": self.backend_type,
            "total_artifacts": self.total_artifacts,
            "total_bytes": self.total_bytes,
        }


class ArtifactStore(ABC):
    """Abstract base class for artifact stores."""

    @property
    @abstractmethod
    def backend_type(self) -> str:
        """Type of backend (e.g., 'local', 'memory')."""

    @abstractmethod
    def put(self, data: bytes, suffix: str = "json") -> str:
        """Store bytes and return their location.

        The artifact is either fully written or not visible at all.

        Raises:
            StorageException: If storage fails
        """

    @abstractmethod
    def get(self, location: str) -> bytes:
        """Retrieve an artifact.

        Raises:
            ArtifactNotFoundError: If nothing is stored at ``location``
        """

    @abstractmethod
    def delete(self, location: str) -> bool:
        """Delete an artifact. Returns False if it was already gone."""

    @abstractmethod
    def exists(self, location: str) -> bool:
        """Check whether an artifact exists."""

    @abstractmethod
    def get_stats(self) -> ArtifactStats:
        """Get statistics for this store."""

    @staticmethod
    def _new_location(suffix: str) -> str:
        return f"{uuid4().hex}.{suffix}" if suffix else uuid4().hex


class MemoryArtifactStore(ArtifactStore):
    """In-memory artifact store. Not persistent."""

    def __init__(self):
        self._lock = threading.Lock()
        self._storage: dict[str, bytes] = {}

    @property
    def backend_type(self) -> str:
        return "memory"

    def put(self, data: bytes, suffix: str = "json") -> str:
        location = self._new_location(suffix)
        with self._lock:
            self._storage[location] = bytes(data)
        return location

    def get(self, location: str) -> bytes:
        with self._lock:
            if location not in self._storage:
                raise ArtifactNotFoundError(f"Artifact not found: {location}")
            return self._storage[location]

    def delete(self, location: str) -> bool:
        with self._lock:
            return self._storage.pop(location, None) is not None

    def exists(self, location: str) -> bool:
        with self._lock:
            return location in self._storage

    def get_stats(self) -> ArtifactStats:
        with self._lock:
            return ArtifactStats(
                backend_type="memory",
                total_artifacts=len(self._storage),
                total_bytes=sum(len(v) for v in self._storage.values()),
            )

    def clear(self) -> None:
        """Remove every artifact."""
        with self._lock:
            self._storage.clear()


class LocalFileArtifactStore(ArtifactStore):
    """Local file system artifact store.

    Artifacts are written to a temporary file in the target directory and
    renamed into place, so a crash never leaves a truncated artifact under
    a valid location.
    """

    def __init__(self, base_path: str | Path):
        self._base_path = Path(base_path)
        self._base_path.mkdir(parents=True, exist_ok=True)

    @property
    def backend_type(self) -> str:
        return "local"

    @property
    def base_path(self) -> Path:
        return self._base_path

    def _path(self, location: str) -> Path:
        if not _LOCATION_RE.match(location):
            raise ArtifactNotFoundError(f"Invalid artifact location: {location!r}")
        # First 2 chars as subdirectory for better file distribution
        return self._base_path / location[:2] / location

    def put(self, data: bytes, suffix: str = "json") -> str:
        location = self._new_location(suffix)
        path = self._path(location)
        try:
            path.parent.mkdir(exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".tmp-")
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(data)
                os.replace(tmp_name, path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise StorageException(f"Failed to write artifact: {e}") from e
        logger.debug(f"Stored artifact {location} ({len(data)} bytes)")
        return location

    def get(self, location: str) -> bytes:
        path = self._path(location)
        try:
            return path.read_bytes()
        except FileNotFoundError as e:
            raise ArtifactNotFoundError(f"Artifact not found: {location}") from e
        except OSError as e:
            raise StorageException(f"Failed to read artifact: {e}") from e

    def delete(self, location: str) -> bool:
        path = self._path(location)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StorageException(f"Failed to delete artifact: {e}") from e
        return True

    def exists(self, location: str) -> bool:
        try:
            return self._path(location).exists()
        except ArtifactNotFoundError:
            return False

    def get_stats(self) -> ArtifactStats:
        files = [p for p in self._base_path.glob("*/*") if p.is_file() and not p.name.startswith(".tmp-")]
        return ArtifactStats(
            backend_type="local",
            total_artifacts=len(files),
            total_bytes=sum(p.stat().st_size for p in files),
        )
