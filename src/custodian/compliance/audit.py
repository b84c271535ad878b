"""Privacy audit trail.

Every state-changing privacy operation writes exactly one entry through
``PrivacyAuditTrail.record``. Entries are stored in the same audit log the
Retention Enforcer sweeps, under the ``personal_data`` category unless a
caller says otherwise.

Unlike best-effort operational logging, a failed audit write propagates:
the final entry written before an account purge must exist, or the purge
does not happen.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from ..core.clock import Clock, SystemClock
from ..core.logging import REDACTED, SENSITIVE_KEYS
from ..storage.models import AuditAction, AuditCategory, AuditLogEntry, new_id
from ..storage.repository import Repository

logger = logging.getLogger(__name__)


# Credential fragments redacted from audit metadata
AUDIT_REDACTED_KEYS = SENSITIVE_KEYS - {"auth"}


def redact_metadata(data: Any) -> Any:
    """Recursively redact credential values in audit metadata.

    Unlike log sanitizing, nothing is truncated: entries are kept as evidence
    and must hold full values. Keys such as ``authorization_basis`` or
    ``author`` are not credentials and are kept.
    """
    if isinstance(data, dict):
        return {
            key: REDACTED if any(s in str(key).lower() for s in AUDIT_REDACTED_KEYS) else redact_metadata(value)
            for key, value in data.items()
        }
    if isinstance(data, list | tuple):
        return [redact_metadata(item) for item in data]
    return data


class PrivacyAuditTrail:
    """Writes and reads structured audit entries."""

    def __init__(self, repository: Repository, clock: Clock | None = None):
        self.repository = repository
        self.clock = clock or SystemClock()

    def record(
        self,
        action: AuditAction | str,
        user_id: str | None,
        metadata: dict[str, Any] | None = None,
        category: AuditCategory = AuditCategory.PERSONAL_DATA,
        ip_address: str | None = None,
    ) -> AuditLogEntry:
        """Append one entry. Credential metadata keys are redacted first.

        Raises:
            StorageException: If the entry could not be written
        """
        entry = AuditLogEntry(
            id=new_id(),
            user_id=user_id,
            category=category,
            action=str(action),
            timestamp=self.clock.now(),
            metadata=redact_metadata(metadata or {}),
            ip_address=ip_address,
        )
        self.repository.append_audit_entry(entry)
        logger.debug(f"Audit: {entry.action} category={category} user={user_id}")
        return entry

    def query(
        self,
        user_id: str | None = None,
        category: AuditCategory | None = None,
        action: AuditAction | str | None = None,
        since: datetime | None = None,
        limit: int = 100,
    ) -> list[AuditLogEntry]:
        """Query entries, newest first."""
        return self.repository.query_audit_entries(
            user_id=user_id,
            category=category,
            action=str(action) if action is not None else None,
            since=since,
            limit=limit,
        )
