"""Persistence for the privacy engine: entities, repositories and artifact stores.

``PostgresRepository`` lives in ``custodian.storage.postgres`` and is not
imported here.
"""

from .artifacts import (
    ArtifactNotFoundError,
    ArtifactStats,
    ArtifactStore,
    LocalFileArtifactStore,
    MemoryArtifactStore,
)
from .models import (
    ACTIVE_DELETION_STATES,
    REQUIRED_CONSENTS,
    AuditAction,
    AuditCategory,
    AuditLogEntry,
    ConsentRecord,
    ConsentType,
    DeletionRequest,
    DeletionState,
    ExportRequest,
    ExportState,
    OwnedDataKind,
    OwnedRecord,
    RetentionPolicy,
    User,
    new_id,
)
from .repository import InMemoryRepository, Repository

__all__ = [
    # Artifacts
    "ArtifactNotFoundError",
    "ArtifactStats",
    "ArtifactStore",
    "LocalFileArtifactStore",
    "MemoryArtifactStore",
    # Models
    "ACTIVE_DELETION_STATES",
    "REQUIRED_CONSENTS",
    "AuditAction",
    "AuditCategory",
    "AuditLogEntry",
    "ConsentRecord",
    "ConsentType",
    "DeletionRequest",
    "DeletionState",
    "ExportRequest",
    "ExportState",
    "OwnedDataKind",
    "OwnedRecord",
    "RetentionPolicy",
    "User",
    "new_id",
    # Repositories
    "InMemoryRepository",
    "Repository",
]
