"""Entities persisted by the privacy engine.

All timestamps are timezone-aware UTC datetimes supplied by the engine's
clock. ``from_row`` accepts dict rows as returned by ``RealDictCursor``.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4


def new_id() -> str:
    """Generate a UUID for records."""
    return str(uuid4())


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _json_field(value: Any) -> dict[str, Any]:
    if value is None:
        return {}
    if isinstance(value, str):
        return json.loads(value)
    return dict(value)


def _str_or_none(value: Any) -> str | None:
    return str(value) if value is not None else None


# =============================================================================
# Enumerations
# =============================================================================


class DeletionState(StrEnum):
    """Lifecycle of an account deletion request."""

    PENDING = "pending"
    IN_GRACE_PERIOD = "in_grace_period"
    EXECUTED = "executed"
    CANCELLED = "cancelled"
    ERROR = "error"


ACTIVE_DELETION_STATES = frozenset({DeletionState.PENDING, DeletionState.IN_GRACE_PERIOD})


class ExportState(StrEnum):
    """Lifecycle of a data export request.

    ``EXPIRED`` is never stored; it is how a completed export whose artifact
    has lapsed is reported.
    """

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"
    EXPIRED = "expired"


class ConsentType(StrEnum):
    """Catalogue of consent types a user can grant or revoke."""

    TERMS_AND_CONDITIONS = "terms_and_conditions"
    PRIVACY_POLICY = "privacy_policy"
    PERSONAL_DATA_PROCESSING = "personal_data_processing"
    ESSENTIAL_COOKIES = "essential_cookies"
    ANALYTICS_COOKIES = "analytics_cookies"
    PERSONALIZATION_COOKIES = "personalization_cookies"
    MARKETING_COOKIES = "marketing_cookies"
    COMMERCIAL_COMMUNICATIONS = "commercial_communications"
    DIRECT_MARKETING = "direct_marketing"
    INTERNATIONAL_TRANSFER = "international_transfer"


REQUIRED_CONSENTS: tuple[ConsentType, ...] = (
    ConsentType.TERMS_AND_CONDITIONS,
    ConsentType.PRIVACY_POLICY,
    ConsentType.PERSONAL_DATA_PROCESSING,
)


class AuditCategory(StrEnum):
    """Audit categories; each has its own retention policy."""

    AUTHENTICATION = "authentication"
    AUTHORIZATION = "authorization"
    PERSONAL_DATA = "personal_data"
    FINANCIAL_DATA = "financial_data"
    INVOICING = "invoicing"
    SOCIAL_SECURITY = "social_security"
    ARTIFICIAL_INTELLIGENCE = "artificial_intelligence"
    FILES = "files"
    ADMINISTRATION = "administration"
    SECURITY = "security"
    SYSTEM = "system"
    GENERAL = "general"


class AuditAction(StrEnum):
    """Actions written to the privacy audit trail."""

    CONSENT_GRANTED = "consent_granted"
    CONSENT_REVOKED = "consent_revoked"
    DELETION_REQUESTED = "deletion_requested"
    DELETION_CONFIRMED = "deletion_confirmed"
    DELETION_CANCELLED = "deletion_cancelled"
    DELETION_EXECUTED = "deletion_executed"
    DELETION_FAILED = "deletion_failed"
    EXPORT_REQUESTED = "export_requested"
    EXPORT_COMPLETED = "export_completed"
    EXPORT_FAILED = "export_failed"
    EXPORT_DOWNLOADED = "export_downloaded"
    RETENTION_POLICY_CHANGED = "retention_policy_changed"
    RETENTION_SWEEP = "retention_sweep"
    FIELDS_ENCRYPTED = "fields_encrypted"


class OwnedDataKind(StrEnum):
    """Kinds of records a user owns besides the profile itself."""

    FINANCIAL_RECORDS = "financial_records"
    INVOICES = "invoices"
    CLIENTS = "clients"
    DOCUMENTS = "documents"
    CONVERSATIONS = "conversations"
    REMINDERS = "reminders"


# =============================================================================
# Entities
# =============================================================================


@dataclass
class User:
    """The data subject. ``document_number`` and ``phone`` are stored encrypted."""

    id: str
    email: str
    name: str
    created_at: datetime
    document_number: str | None = None
    phone: str | None = None
    attributes: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "document_number": self.document_number,
            "phone": self.phone,
            "attributes": dict(self.attributes),
            "created_at": _iso(self.created_at),
        }

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> User:
        return cls(
            id=str(row["id"]),
            email=row["email"],
            name=row["name"],
            created_at=row["created_at"],
            document_number=row.get("document_number"),
            phone=row.get("phone"),
            attributes=_json_field(row.get("attributes")),
        )


@dataclass
class OwnedRecord:
    """A record owned by a user (invoice, document, conversation, ...).

    ``data`` is an opaque payload; nested children such as conversation
    messages live inside it.
    """

    id: str
    user_id: str
    kind: OwnedDataKind
    data: dict[str, Any]
    created_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "created_at": _iso(self.created_at),
            **self.data,
        }

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> OwnedRecord:
        return cls(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            kind=OwnedDataKind(row["kind"]),
            data=_json_field(row.get("data")),
            created_at=row["created_at"],
        )


@dataclass
class ConsentRecord:
    """One append-only entry of the consent ledger."""

    id: str
    user_id: str
    consent_type: ConsentType
    granted: bool
    version: str
    recorded_at: datetime
    ip_address: str | None = None
    user_agent: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "consent_type": self.consent_type.value,
            "granted": self.granted,
            "version": self.version,
            "recorded_at": _iso(self.recorded_at),
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> ConsentRecord:
        return cls(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            consent_type=ConsentType(row["consent_type"]),
            granted=bool(row["granted"]),
            version=row["version"],
            recorded_at=row["recorded_at"],
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            metadata=_json_field(row.get("metadata")),
        )


@dataclass
class DeletionRequest:
    """Account deletion request.

    Only a hash of the confirmation token is stored. After execution
    ``user_id`` is cleared while ``user_hash`` keeps the record attributable.
    """

    id: str
    user_id: str | None
    user_hash: str
    state: DeletionState
    token_hash: str
    requested_at: datetime
    confirmed_at: datetime | None = None
    scheduled_execution_at: datetime | None = None
    cancelled_at: datetime | None = None
    executed_at: datetime | None = None
    reason: str | None = None
    error: str | None = None

    @property
    def is_active(self) -> bool:
        return self.state in ACTIVE_DELETION_STATES

    def to_dict(self) -> dict[str, Any]:
        """Serialize for API responses. The token hash is never exposed."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "state": self.state.value,
            "requested_at": _iso(self.requested_at),
            "confirmed_at": _iso(self.confirmed_at),
            "scheduled_execution_at": _iso(self.scheduled_execution_at),
            "cancelled_at": _iso(self.cancelled_at),
            "executed_at": _iso(self.executed_at),
            "reason": self.reason,
            "error": self.error,
        }

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> DeletionRequest:
        return cls(
            id=str(row["id"]),
            user_id=_str_or_none(row.get("user_id")),
            user_hash=row["user_hash"],
            state=DeletionState(row["state"]),
            token_hash=row["token_hash"],
            requested_at=row["requested_at"],
            confirmed_at=row.get("confirmed_at"),
            scheduled_execution_at=row.get("scheduled_execution_at"),
            cancelled_at=row.get("cancelled_at"),
            executed_at=row.get("executed_at"),
            reason=row.get("reason"),
            error=row.get("error"),
        )


@dataclass
class ExportRequest:
    """Data portability request and the metadata of its artifact."""

    id: str
    user_id: str
    state: ExportState
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    artifact_location: str | None = None
    artifact_size: int | None = None
    artifact_expires_at: datetime | None = None
    error: str | None = None

    def is_expired(self, now: datetime) -> bool:
        return (
            self.state == ExportState.COMPLETED
            and self.artifact_expires_at is not None
            and self.artifact_expires_at <= now
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "state": self.state.value,
            "created_at": _iso(self.created_at),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "artifact_location": self.artifact_location,
            "artifact_size": self.artifact_size,
            "artifact_expires_at": _iso(self.artifact_expires_at),
            "error": self.error,
        }

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> ExportRequest:
        return cls(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            state=ExportState(row["state"]),
            created_at=row["created_at"],
            started_at=row.get("started_at"),
            completed_at=row.get("completed_at"),
            artifact_location=row.get("artifact_location"),
            artifact_size=row.get("artifact_size"),
            artifact_expires_at=row.get("artifact_expires_at"),
            error=row.get("error"),
        )


@dataclass
class RetentionPolicy:
    """How long audit entries of one category may be kept."""

    category: AuditCategory
    retention_days: int
    description: str
    legal_basis: str | None = None
    active: bool = True
    updated_at: datetime | None = None

    def __post_init__(self) -> None:
        if self.retention_days < 1:
            raise ValueError(f"retention_days must be positive, got {self.retention_days}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "category": self.category.value,
            "retention_days": self.retention_days,
            "description": self.description,
            "legal_basis": self.legal_basis,
            "active": self.active,
            "updated_at": _iso(self.updated_at),
        }

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> RetentionPolicy:
        return cls(
            category=AuditCategory(row["category"]),
            retention_days=int(row["retention_days"]),
            description=row["description"],
            legal_basis=row.get("legal_basis"),
            active=bool(row.get("active", True)),
            updated_at=row.get("updated_at"),
        )


@dataclass
class AuditLogEntry:
    """One structured entry of the audit trail."""

    id: str
    user_id: str | None
    category: AuditCategory
    action: str
    timestamp: datetime
    metadata: dict[str, Any] = field(default_factory=dict)
    ip_address: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "category": self.category.value,
            "action": self.action,
            "timestamp": _iso(self.timestamp),
            "metadata": dict(self.metadata),
            "ip_address": self.ip_address,
        }

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> AuditLogEntry:
        return cls(
            id=str(row["id"]),
            user_id=_str_or_none(row.get("user_id")),
            category=AuditCategory(row["category"]),
            action=row["action"],
            timestamp=row["timestamp"],
            metadata=_json_field(row.get("metadata")),
            ip_address=row.get("ip_address"),
        )
