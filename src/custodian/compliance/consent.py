"""Consent ledger.

The ledger is append-only: a revocation is a new record with
``granted=False``, never a change to history. The current posture of a
user is the latest record per consent type; reading a (user, type) pair
in ledger order reconstructs its full history.

Every write also appends one audit entry.
"""

from __future__ import annotations

import logging
from typing import Any

from ..core.clock import Clock, SystemClock
from ..core.exceptions import NotFoundError
from ..storage.models import (
    REQUIRED_CONSENTS,
    AuditAction,
    ConsentRecord,
    ConsentType,
    new_id,
)
from ..storage.repository import Repository
from .audit import PrivacyAuditTrail

logger = logging.getLogger(__name__)


class ConsentLedger:
    """Records consent grants and revocations and answers posture questions.

    Args:
        repository: Store holding the ledger
        audit: Trail receiving one entry per write
        clock: Source of record timestamps
        required: Consent types a user must currently grant
    """

    def __init__(
        self,
        repository: Repository,
        audit: PrivacyAuditTrail,
        clock: Clock | None = None,
        required: tuple[ConsentType, ...] = REQUIRED_CONSENTS,
    ):
        self.repository = repository
        self.audit = audit
        self.clock = clock or SystemClock()
        self.required = required

    def record_consent(
        self,
        user_id: str,
        consent_type: ConsentType | str,
        granted: bool,
        version: str,
        metadata: dict[str, Any] | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> ConsentRecord:
        """Append a consent record. Never updates an existing one."""
        record = ConsentRecord(
            id=new_id(),
            user_id=user_id,
            consent_type=ConsentType(consent_type),
            granted=granted,
            version=version,
            recorded_at=self.clock.now(),
            ip_address=ip_address,
            user_agent=user_agent,
            metadata=dict(metadata or {}),
        )
        self.repository.add_consent(record)
        self.audit.record(
            AuditAction.CONSENT_GRANTED if granted else AuditAction.CONSENT_REVOKED,
            user_id,
            {
                "consent_type": record.consent_type.value,
                "version": version,
                "consent_id": record.id,
            },
            ip_address=ip_address,
        )
        logger.info(f"Consent recorded: user={user_id}, type={record.consent_type}, granted={granted}")
        return record

    def revoke_consent(
        self,
        user_id: str,
        consent_type: ConsentType | str,
        metadata: dict[str, Any] | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> ConsentRecord:
        """Append a revocation under the version of the latest record.

        Raises:
            NotFoundError: If the user never recorded this consent type
        """
        consent_type = ConsentType(consent_type)
        history = self.repository.list_consents(user_id, consent_type)
        if not history:
            raise NotFoundError("Consent", f"{user_id}/{consent_type}")
        return self.record_consent(
            user_id,
            consent_type,
            granted=False,
            version=history[-1].version,
            metadata=metadata,
            ip_address=ip_address,
            user_agent=user_agent,
        )

    def current_consents(self, user_id: str) -> dict[ConsentType, ConsentRecord]:
        """Reduce the ledger to the latest record per consent type."""
        current: dict[ConsentType, ConsentRecord] = {}
        for record in self.repository.list_consents(user_id):
            current[record.consent_type] = record
        return current

    def has_consent(self, user_id: str, consent_type: ConsentType | str) -> bool:
        """True if the latest record for the type is a grant."""
        latest = self.current_consents(user_id).get(ConsentType(consent_type))
        return latest is not None and latest.granted

    def missing_required_consents(self, user_id: str) -> list[ConsentType]:
        """Required consent types the user does not currently grant."""
        current = self.current_consents(user_id)
        return [t for t in self.required if t not in current or not current[t].granted]

    def has_required_consents(self, user_id: str) -> bool:
        return not self.missing_required_consents(user_id)

    def consent_history(self, user_id: str, consent_type: ConsentType | str | None = None) -> list[ConsentRecord]:
        """Full ledger for a user, newest first."""
        wanted = ConsentType(consent_type) if consent_type is not None else None
        return list(reversed(self.repository.list_consents(user_id, wanted)))
