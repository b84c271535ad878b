"""Repository abstraction over the privacy engine's persistent state.

The engine never talks to a database directly. Every component receives a
``Repository`` and relies on two store-level guarantees:

- conditional transitions: ``transition_*`` only applies its changes when
  the persisted state is one of the expected states, and reports a miss by
  returning ``None`` (optimistic check-then-act)
- at most one active deletion request per user, enforced atomically by
  ``create_deletion_request``

Backends:
- Memory (tests, embedding, single-process tools)
- PostgreSQL (see ``storage.postgres``)
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import replace
from datetime import datetime
from typing import Any

from ..core.exceptions import DuplicateActiveRequest
from .models import (
    ACTIVE_DELETION_STATES,
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
)


class Repository(ABC):
    """Abstract store for users, their data and the privacy records around them."""

    # ------------------------------------------------------------------
    # Users and owned data
    # ------------------------------------------------------------------

    @abstractmethod
    def get_user(self, user_id: str) -> User | None:
        """Find a user by id."""

    @abstractmethod
    def save_user(self, user: User) -> User:
        """Create or update a user."""

    @abstractmethod
    def delete_user_cascade(self, user_id: str) -> dict[str, int]:
        """Delete a user and everything owned by it, all-or-nothing.

        Owned records, consents and export requests are removed. Deletion
        requests survive with ``user_id`` cleared. Audit entries are kept.

        Returns:
            Number of removed rows per kind

        Raises:
            StorageException: If the cascade fails; nothing is removed
        """

    @abstractmethod
    def add_owned_record(self, record: OwnedRecord) -> OwnedRecord:
        """Attach a record to its owning user."""

    @abstractmethod
    def list_owned_records(self, user_id: str, kind: OwnedDataKind | None = None) -> list[OwnedRecord]:
        """List a user's records, oldest first."""

    @abstractmethod
    def update_owned_record(self, record_id: str, data: dict[str, Any]) -> bool:
        """Replace the payload of a record. False if it does not exist."""

    @abstractmethod
    def list_user_ids(self) -> list[str]:
        """Ids of every user, oldest first."""

    # ------------------------------------------------------------------
    # Consent ledger (append-only)
    # ------------------------------------------------------------------

    @abstractmethod
    def add_consent(self, record: ConsentRecord) -> ConsentRecord:
        """Append a consent record. Records are never updated."""

    @abstractmethod
    def list_consents(self, user_id: str, consent_type: ConsentType | None = None) -> list[ConsentRecord]:
        """List consent records in ledger order (oldest first)."""

    # ------------------------------------------------------------------
    # Deletion requests
    # ------------------------------------------------------------------

    @abstractmethod
    def create_deletion_request(self, request: DeletionRequest) -> DeletionRequest:
        """Persist a new deletion request.

        Raises:
            DuplicateActiveRequest: If the user already has an active request
        """

    @abstractmethod
    def get_deletion_request(self, request_id: str) -> DeletionRequest | None:
        """Find a deletion request by id."""

    @abstractmethod
    def find_deletion_requests(
        self,
        user_id: str,
        states: Iterable[DeletionState] | None = None,
    ) -> list[DeletionRequest]:
        """List a user's deletion requests, newest first."""

    @abstractmethod
    def transition_deletion_request(
        self,
        request_id: str,
        expected_states: Iterable[DeletionState],
        **changes: Any,
    ) -> DeletionRequest | None:
        """Apply ``changes`` only if the request is in one of ``expected_states``.

        Returns:
            The updated request, or None when the guard did not match
        """

    @abstractmethod
    def list_due_deletions(self, now: datetime) -> list[DeletionRequest]:
        """Requests in grace period whose scheduled execution is at or before ``now``."""

    # ------------------------------------------------------------------
    # Export requests
    # ------------------------------------------------------------------

    @abstractmethod
    def create_export_request(self, request: ExportRequest) -> ExportRequest:
        """Persist a new export request."""

    @abstractmethod
    def get_export_request(self, request_id: str) -> ExportRequest | None:
        """Find an export request by id."""

    @abstractmethod
    def list_export_requests(self, user_id: str, limit: int | None = None) -> list[ExportRequest]:
        """List a user's export requests, newest first."""

    @abstractmethod
    def transition_export_request(
        self,
        request_id: str,
        expected_states: Iterable[ExportState],
        **changes: Any,
    ) -> ExportRequest | None:
        """Conditional update, same contract as ``transition_deletion_request``."""

    @abstractmethod
    def list_expired_exports(self, now: datetime) -> list[ExportRequest]:
        """Completed exports whose artifact expired and is still referenced."""

    @abstractmethod
    def list_exports_in_state(self, state: ExportState, limit: int | None = None) -> list[ExportRequest]:
        """Export requests in ``state``, oldest first."""

    # ------------------------------------------------------------------
    # Retention policies
    # ------------------------------------------------------------------

    @abstractmethod
    def list_retention_policies(self, active_only: bool = False) -> list[RetentionPolicy]:
        """List policies ordered by category."""

    @abstractmethod
    def get_retention_policy(self, category: AuditCategory) -> RetentionPolicy | None:
        """Find the policy of one category."""

    @abstractmethod
    def upsert_retention_policy(self, policy: RetentionPolicy, overwrite: bool = True) -> bool:
        """Create or update a policy.

        With ``overwrite=False`` an existing policy is left untouched.

        Returns:
            True if the policy was written
        """

    # ------------------------------------------------------------------
    # Audit trail
    # ------------------------------------------------------------------

    @abstractmethod
    def append_audit_entry(self, entry: AuditLogEntry) -> AuditLogEntry:
        """Append one audit entry."""

    @abstractmethod
    def query_audit_entries(
        self,
        user_id: str | None = None,
        category: AuditCategory | None = None,
        action: str | None = None,
        since: datetime | None = None,
        limit: int = 100,
    ) -> list[AuditLogEntry]:
        """Query audit entries, newest first."""

    @abstractmethod
    def count_audit_entries(self, category: AuditCategory, before: datetime | None = None) -> int:
        """Count entries of a category, optionally only those strictly older than ``before``."""

    @abstractmethod
    def delete_audit_entries(self, category: AuditCategory, before: datetime, limit: int) -> int:
        """Delete up to ``limit`` entries of ``category`` strictly older than ``before``.

        Returns:
            Number of rows deleted
        """


class InMemoryRepository(Repository):
    """Thread-safe in-memory repository.

    Records are copied on the way in and out so callers never share mutable
    state with the store.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._users: dict[str, User] = {}
        self._owned: list[OwnedRecord] = []
        self._consents: list[ConsentRecord] = []
        self._deletions: dict[str, DeletionRequest] = {}
        self._exports: dict[str, ExportRequest] = {}
        self._policies: dict[AuditCategory, RetentionPolicy] = {}
        self._audit: list[AuditLogEntry] = []

    # Users and owned data

    def get_user(self, user_id: str) -> User | None:
        with self._lock:
            user = self._users.get(user_id)
            return replace(user, attributes=dict(user.attributes)) if user else None

    def save_user(self, user: User) -> User:
        with self._lock:
            self._users[user.id] = replace(user, attributes=dict(user.attributes))
            return user

    def delete_user_cascade(self, user_id: str) -> dict[str, int]:
        with self._lock:
            if user_id not in self._users:
                return {"users": 0}
            owned = [r for r in self._owned if r.user_id == user_id]
            consents = [c for c in self._consents if c.user_id == user_id]
            exports = [e for e in self._exports.values() if e.user_id == user_id]

            self._owned = [r for r in self._owned if r.user_id != user_id]
            self._consents = [c for c in self._consents if c.user_id != user_id]
            for export in exports:
                del self._exports[export.id]
            for req in self._deletions.values():
                if req.user_id == user_id:
                    req.user_id = None
            del self._users[user_id]

            return {
                "users": 1,
                "owned_records": len(owned),
                "consents": len(consents),
                "export_requests": len(exports),
            }

    def add_owned_record(self, record: OwnedRecord) -> OwnedRecord:
        with self._lock:
            self._owned.append(replace(record, data=dict(record.data)))
            return record

    def list_owned_records(self, user_id: str, kind: OwnedDataKind | None = None) -> list[OwnedRecord]:
        with self._lock:
            records = [r for r in self._owned if r.user_id == user_id and (kind is None or r.kind == kind)]
            return [replace(r, data=dict(r.data)) for r in sorted(records, key=lambda r: r.created_at)]

    def update_owned_record(self, record_id: str, data: dict[str, Any]) -> bool:
        with self._lock:
            for i, record in enumerate(self._owned):
                if record.id == record_id:
                    self._owned[i] = replace(record, data=dict(data))
                    return True
            return False

    def list_user_ids(self) -> list[str]:
        with self._lock:
            return [u.id for u in sorted(self._users.values(), key=lambda u: u.created_at)]

    # Consent ledger

    def add_consent(self, record: ConsentRecord) -> ConsentRecord:
        with self._lock:
            self._consents.append(replace(record))
            return record

    def list_consents(self, user_id: str, consent_type: ConsentType | None = None) -> list[ConsentRecord]:
        with self._lock:
            records = [
                c
                for c in self._consents
                if c.user_id == user_id and (consent_type is None or c.consent_type == consent_type)
            ]
            # Stable sort keeps insertion order for equal timestamps
            return [replace(c) for c in sorted(records, key=lambda c: c.recorded_at)]

    # Deletion requests

    def create_deletion_request(self, request: DeletionRequest) -> DeletionRequest:
        with self._lock:
            for existing in self._deletions.values():
                if existing.user_id == request.user_id and existing.is_active:
                    raise DuplicateActiveRequest(request.user_id or "", existing.id)
            self._deletions[request.id] = replace(request)
            return request

    def get_deletion_request(self, request_id: str) -> DeletionRequest | None:
        with self._lock:
            req = self._deletions.get(request_id)
            return replace(req) if req else None

    def find_deletion_requests(
        self,
        user_id: str,
        states: Iterable[DeletionState] | None = None,
    ) -> list[DeletionRequest]:
        wanted = set(states) if states is not None else None
        with self._lock:
            found = [
                r
                for r in self._deletions.values()
                if r.user_id == user_id and (wanted is None or r.state in wanted)
            ]
            return [replace(r) for r in sorted(found, key=lambda r: r.requested_at, reverse=True)]

    def transition_deletion_request(
        self,
        request_id: str,
        expected_states: Iterable[DeletionState],
        **changes: Any,
    ) -> DeletionRequest | None:
        expected = set(expected_states)
        with self._lock:
            current = self._deletions.get(request_id)
            if current is None or current.state not in expected:
                return None
            updated = replace(current, **changes)
            self._deletions[request_id] = updated
            return replace(updated)

    def list_due_deletions(self, now: datetime) -> list[DeletionRequest]:
        with self._lock:
            due = [
                r
                for r in self._deletions.values()
                if r.state == DeletionState.IN_GRACE_PERIOD
                and r.scheduled_execution_at is not None
                and r.scheduled_execution_at <= now
            ]
            return [replace(r) for r in sorted(due, key=lambda r: r.scheduled_execution_at)]

    # Export requests

    def create_export_request(self, request: ExportRequest) -> ExportRequest:
        with self._lock:
            self._exports[request.id] = replace(request)
            return request

    def get_export_request(self, request_id: str) -> ExportRequest | None:
        with self._lock:
            req = self._exports.get(request_id)
            return replace(req) if req else None

    def list_export_requests(self, user_id: str, limit: int | None = None) -> list[ExportRequest]:
        with self._lock:
            found = sorted(
                (r for r in self._exports.values() if r.user_id == user_id),
                key=lambda r: r.created_at,
                reverse=True,
            )
            if limit is not None:
                found = found[:limit]
            return [replace(r) for r in found]

    def transition_export_request(
        self,
        request_id: str,
        expected_states: Iterable[ExportState],
        **changes: Any,
    ) -> ExportRequest | None:
        expected = set(expected_states)
        with self._lock:
            current = self._exports.get(request_id)
            if current is None or current.state not in expected:
                return None
            updated = replace(current, **changes)
            self._exports[request_id] = updated
            return replace(updated)

    def list_expired_exports(self, now: datetime) -> list[ExportRequest]:
        with self._lock:
            return [
                replace(r)
                for r in self._exports.values()
                if r.is_expired(now) and r.artifact_location is not None
            ]

    def list_exports_in_state(self, state: ExportState, limit: int | None = None) -> list[ExportRequest]:
        with self._lock:
            found = sorted((r for r in self._exports.values() if r.state == state), key=lambda r: r.created_at)
            if limit is not None:
                found = found[:limit]
            return [replace(r) for r in found]

    # Retention policies

    def list_retention_policies(self, active_only: bool = False) -> list[RetentionPolicy]:
        with self._lock:
            policies = sorted(self._policies.values(), key=lambda p: p.category.value)
            return [replace(p) for p in policies if p.active or not active_only]

    def get_retention_policy(self, category: AuditCategory) -> RetentionPolicy | None:
        with self._lock:
            policy = self._policies.get(category)
            return replace(policy) if policy else None

    def upsert_retention_policy(self, policy: RetentionPolicy, overwrite: bool = True) -> bool:
        with self._lock:
            if policy.category in self._policies and not overwrite:
                return False
            self._policies[policy.category] = replace(policy)
            return True

    # Audit trail

    def append_audit_entry(self, entry: AuditLogEntry) -> AuditLogEntry:
        with self._lock:
            self._audit.append(replace(entry, metadata=dict(entry.metadata)))
            return entry

    def query_audit_entries(
        self,
        user_id: str | None = None,
        category: AuditCategory | None = None,
        action: str | None = None,
        since: datetime | None = None,
        limit: int = 100,
    ) -> list[AuditLogEntry]:
        with self._lock:
            entries = [
                e
                for e in self._audit
                if (user_id is None or e.user_id == user_id)
                and (category is None or e.category == category)
                and (action is None or e.action == action)
                and (since is None or e.timestamp >= since)
            ]
            entries = sorted(entries, key=lambda e: e.timestamp, reverse=True)[:limit]
            return [replace(e, metadata=dict(e.metadata)) for e in entries]

    def count_audit_entries(self, category: AuditCategory, before: datetime | None = None) -> int:
        with self._lock:
            return sum(
                1 for e in self._audit if e.category == category and (before is None or e.timestamp < before)
            )

    def delete_audit_entries(self, category: AuditCategory, before: datetime, limit: int) -> int:
        with self._lock:
            doomed: set[str] = set()
            for entry in self._audit:
                if len(doomed) >= limit:
                    break
                if entry.category == category and entry.timestamp < before:
                    doomed.add(entry.id)
            self._audit = [e for e in self._audit if e.id not in doomed]
            return len(doomed)
