"""Bulk encryption of stored sensitive fields.

Walks every user and owned record and seals the sensitive fields that are
still plaintext. With ``rotate`` it also re-seals envelopes written under a
previous key. Values already sealed under the current key are left alone,
so the migration can be re-run safely after an interruption.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from ..crypto.fields import FieldCipher
from ..storage.models import AuditAction, AuditCategory
from ..storage.repository import Repository
from .audit import PrivacyAuditTrail
from .export import SENSITIVE_OWNED_FIELDS, SENSITIVE_PROFILE_FIELDS

logger = logging.getLogger(__name__)

PROGRESS_EVERY = 100


@dataclass
class FieldMigrationResult:
    """Counts of one migration run."""

    users_scanned: int = 0
    users_updated: int = 0
    records_scanned: int = 0
    records_updated: int = 0
    fields_sealed: int = 0
    rotate: bool = False
    dry_run: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "users": {"scanned": self.users_scanned, "updated": self.users_updated},
            "records": {"scanned": self.records_scanned, "updated": self.records_updated},
            "fields_sealed": self.fields_sealed,
            "rotate": self.rotate,
            "dry_run": self.dry_run,
        }

    def __str__(self) -> str:
        mode = "rotate" if self.rotate else "encrypt"
        status = " (dry run)" if self.dry_run else ""
        return (
            f"{mode}{status}: users {self.users_updated}/{self.users_scanned}, "
            f"records {self.records_updated}/{self.records_scanned}, fields={self.fields_sealed}"
        )


class FieldMigration:
    """Seals legacy plaintext (and optionally stale envelopes) in place.

    Args:
        repository: Store holding users and owned records
        cipher: Cipher whose current key the fields end up under
        audit: Trail receiving one summary entry per real run
    """

    def __init__(self, repository: Repository, cipher: FieldCipher, audit: PrivacyAuditTrail):
        self.repository = repository
        self.cipher = cipher
        self.audit = audit

    def _seal(self, data: dict[str, Any], fields: Iterable[str], rotate: bool) -> tuple[dict[str, Any], int]:
        result = dict(data)
        sealed = 0
        for name in fields:
            value = result.get(name)
            if not isinstance(value, str):
                continue
            if not self.cipher.is_encrypted(value):
                result[name] = self.cipher.encrypt(value)
            elif rotate and not self.cipher.is_current(value):
                result[name] = self.cipher.rotate(value)
            else:
                continue
            sealed += 1
        return result, sealed

    def run(self, rotate: bool = False, dry_run: bool = False) -> FieldMigrationResult:
        """Migrate every user and owned record.

        Raises:
            IntegrityException: If a stored envelope opens under no known key
            StorageException: If a write fails; rows already written stay sealed
        """
        result = FieldMigrationResult(rotate=rotate, dry_run=dry_run)
        user_ids = self.repository.list_user_ids()
        logger.info(f"Field migration ({'rotate' if rotate else 'encrypt'}): {len(user_ids)} users")

        for user_id in user_ids:
            user = self.repository.get_user(user_id)
            if user is None:
                # Deleted while the migration was running
                continue
            result.users_scanned += 1

            profile, sealed = self._seal(
                {name: getattr(user, name) for name in SENSITIVE_PROFILE_FIELDS}, SENSITIVE_PROFILE_FIELDS, rotate
            )
            if sealed:
                result.users_updated += 1
                result.fields_sealed += sealed
                if not dry_run:
                    for name, value in profile.items():
                        setattr(user, name, value)
                    self.repository.save_user(user)

            for kind, fields in SENSITIVE_OWNED_FIELDS.items():
                for record in self.repository.list_owned_records(user_id, kind):
                    result.records_scanned += 1
                    data, sealed = self._seal(record.data, fields, rotate)
                    if not sealed:
                        continue
                    result.records_updated += 1
                    result.fields_sealed += sealed
                    if not dry_run:
                        self.repository.update_owned_record(record.id, data)

            if result.users_scanned % PROGRESS_EVERY == 0:
                logger.info(f"Field migration progress: {result.users_scanned}/{len(user_ids)} users")

        if not dry_run and result.fields_sealed:
            self.audit.record(AuditAction.FIELDS_ENCRYPTED, None, result.to_dict(), category=AuditCategory.SYSTEM)
        logger.info(f"Field migration done: {result}")
        return result
