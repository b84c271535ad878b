"""PostgreSQL repository.

Conditional transitions are single ``UPDATE ... WHERE state = ANY(...)``
statements, and the one-active-deletion-per-user rule is backed by the
partial unique index ``uq_deletion_requests_active_user`` in schema.sql.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from contextlib import AbstractContextManager
from datetime import datetime
from enum import Enum
from typing import Any

from psycopg2 import errors as pg_errors
from psycopg2.extras import Json

from ..core.db import get_cursor
from ..core.exceptions import DuplicateActiveRequest
from .models import (
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
from .repository import Repository

logger = logging.getLogger(__name__)

CursorFactory = Callable[[], AbstractContextManager[Any]]

_DELETION_COLUMNS = frozenset(
    {
        "user_id",
        "state",
        "confirmed_at",
        "scheduled_execution_at",
        "cancelled_at",
        "executed_at",
        "reason",
        "error",
    }
)
_EXPORT_COLUMNS = frozenset(
    {
        "state",
        "started_at",
        "completed_at",
        "artifact_location",
        "artifact_size",
        "artifact_expires_at",
        "error",
    }
)


def _db_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return Json(value)
    return value


def _states(states: Iterable[Enum]) -> list[str]:
    return [s.value for s in states]


def _set_clause(changes: dict[str, Any], allowed: frozenset[str]) -> tuple[str, list[Any]]:
    unknown = set(changes) - allowed
    if unknown:
        raise ValueError(f"Cannot update columns: {sorted(unknown)}")
    # Column names come from the whitelist above, never from callers' values
    assignments = ", ".join(f"{column} = %s" for column in changes)
    return assignments, [_db_value(v) for v in changes.values()]


class PostgresRepository(Repository):
    """Repository backed by PostgreSQL through the pooled ``get_cursor``.

    Args:
        cursor_factory: Zero-argument callable returning a cursor context
            manager; one context is one transaction.
    """

    def __init__(self, cursor_factory: CursorFactory | None = None):
        self._cursor = cursor_factory or get_cursor

    # ------------------------------------------------------------------
    # Users and owned data
    # ------------------------------------------------------------------

    def get_user(self, user_id: str) -> User | None:
        with self._cursor() as cur:
            cur.execute("SELECT * FROM users WHERE id = %s", (user_id,))
            row = cur.fetchone()
            return User.from_row(row) if row else None

    def save_user(self, user: User) -> User:
        with self._cursor() as cur:
            cur.execute(
                """
                INSERT INTO users (id, email, name, document_number, phone, attributes, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (id) DO UPDATE SET
                    email = EXCLUDED.email,
                    name = EXCLUDED.name,
                    document_number = EXCLUDED.document_number,
                    phone = EXCLUDED.phone,
                    attributes = EXCLUDED.attributes
                """,
                (
                    user.id,
                    user.email,
                    user.name,
                    user.document_number,
                    user.phone,
                    Json(user.attributes),
                    user.created_at,
                ),
            )
        return user

    def delete_user_cascade(self, user_id: str) -> dict[str, int]:
        counts: dict[str, int] = {}
        with self._cursor() as cur:
            for table, key in (
                ("owned_records", "owned_records"),
                ("consent_records", "consents"),
                ("export_requests", "export_requests"),
            ):
                cur.execute(f"SELECT COUNT(*) AS count FROM {table} WHERE user_id = %s", (user_id,))
                counts[key] = cur.fetchone()["count"]
            # Foreign keys cascade owned rows and null deletion_requests.user_id
            cur.execute("DELETE FROM users WHERE id = %s", (user_id,))
            counts["users"] = cur.rowcount
        return counts

    def add_owned_record(self, record: OwnedRecord) -> OwnedRecord:
        with self._cursor() as cur:
            cur.execute(
                """
                INSERT INTO owned_records (id, user_id, kind, data, created_at)
                VALUES (%s, %s, %s, %s, %s)
                """,
                (record.id, record.user_id, record.kind.value, Json(record.data), record.created_at),
            )
        return record

    def list_owned_records(self, user_id: str, kind: OwnedDataKind | None = None) -> list[OwnedRecord]:
        sql = "SELECT * FROM owned_records WHERE user_id = %s"
        params: list[Any] = [user_id]
        if kind is not None:
            sql += " AND kind = %s"
            params.append(kind.value)
        sql += " ORDER BY created_at"
        with self._cursor() as cur:
            cur.execute(sql, params)
            return [OwnedRecord.from_row(row) for row in cur.fetchall()]

    def update_owned_record(self, record_id: str, data: dict[str, Any]) -> bool:
        with self._cursor() as cur:
            cur.execute("UPDATE owned_records SET data = %s WHERE id = %s", (Json(data), record_id))
            return cur.rowcount > 0

    def list_user_ids(self) -> list[str]:
        with self._cursor() as cur:
            cur.execute("SELECT id FROM users ORDER BY created_at")
            return [str(row["id"]) for row in cur.fetchall()]

    # ------------------------------------------------------------------
    # Consent ledger
    # ------------------------------------------------------------------

    def add_consent(self, record: ConsentRecord) -> ConsentRecord:
        with self._cursor() as cur:
            cur.execute(
                """
                INSERT INTO consent_records
                    (id, user_id, consent_type, granted, version, recorded_at, ip_address, user_agent, metadata)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    record.id,
                    record.user_id,
                    record.consent_type.value,
                    record.granted,
                    record.version,
                    record.recorded_at,
                    record.ip_address,
                    record.user_agent,
                    Json(record.metadata),
                ),
            )
        return record

    def list_consents(self, user_id: str, consent_type: ConsentType | None = None) -> list[ConsentRecord]:
        sql = "SELECT * FROM consent_records WHERE user_id = %s"
        params: list[Any] = [user_id]
        if consent_type is not None:
            sql += " AND consent_type = %s"
            params.append(consent_type.value)
        sql += " ORDER BY recorded_at, seq"
        with self._cursor() as cur:
            cur.execute(sql, params)
            return [ConsentRecord.from_row(row) for row in cur.fetchall()]

    # ------------------------------------------------------------------
    # Deletion requests
    # ------------------------------------------------------------------

    def create_deletion_request(self, request: DeletionRequest) -> DeletionRequest:
        with self._cursor() as cur:
            try:
                cur.execute(
                    """
                    INSERT INTO deletion_requests
                        (id, user_id, user_hash, state, token_hash, requested_at, reason)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        request.id,
                        request.user_id,
                        request.user_hash,
                        request.state.value,
                        request.token_hash,
                        request.requested_at,
                        request.reason,
                    ),
                )
            except pg_errors.UniqueViolation as e:
                logger.info(f"Rejected concurrent deletion request for user hash {request.user_hash}")
                raise DuplicateActiveRequest(request.user_id or "") from e
        return request

    def get_deletion_request(self, request_id: str) -> DeletionRequest | None:
        with self._cursor() as cur:
            cur.execute("SELECT * FROM deletion_requests WHERE id = %s", (request_id,))
            row = cur.fetchone()
            return DeletionRequest.from_row(row) if row else None

    def find_deletion_requests(
        self,
        user_id: str,
        states: Iterable[DeletionState] | None = None,
    ) -> list[DeletionRequest]:
        sql = "SELECT * FROM deletion_requests WHERE user_id = %s"
        params: list[Any] = [user_id]
        if states is not None:
            sql += " AND state = ANY(%s)"
            params.append(_states(states))
        sql += " ORDER BY requested_at DESC"
        with self._cursor() as cur:
            cur.execute(sql, params)
            return [DeletionRequest.from_row(row) for row in cur.fetchall()]

    def transition_deletion_request(
        self,
        request_id: str,
        expected_states: Iterable[DeletionState],
        **changes: Any,
    ) -> DeletionRequest | None:
        assignments, values = _set_clause(changes, _DELETION_COLUMNS)
        with self._cursor() as cur:
            cur.execute(
                f"UPDATE deletion_requests SET {assignments} WHERE id = %s AND state = ANY(%s) RETURNING *",
                (*values, request_id, _states(expected_states)),
            )
            row = cur.fetchone()
            return DeletionRequest.from_row(row) if row else None

    def list_due_deletions(self, now: datetime) -> list[DeletionRequest]:
        with self._cursor() as cur:
            cur.execute(
                """
                SELECT * FROM deletion_requests
                WHERE state = %s AND scheduled_execution_at <= %s
                ORDER BY scheduled_execution_at
                """,
                (DeletionState.IN_GRACE_PERIOD.value, now),
            )
            return [DeletionRequest.from_row(row) for row in cur.fetchall()]

    # ------------------------------------------------------------------
    # Export requests
    # ------------------------------------------------------------------

    def create_export_request(self, request: ExportRequest) -> ExportRequest:
        with self._cursor() as cur:
            cur.execute(
                "INSERT INTO export_requests (id, user_id, state, created_at) VALUES (%s, %s, %s, %s)",
                (request.id, request.user_id, request.state.value, request.created_at),
            )
        return request

    def get_export_request(self, request_id: str) -> ExportRequest | None:
        with self._cursor() as cur:
            cur.execute("SELECT * FROM export_requests WHERE id = %s", (request_id,))
            row = cur.fetchone()
            return ExportRequest.from_row(row) if row else None

    def list_export_requests(self, user_id: str, limit: int | None = None) -> list[ExportRequest]:
        sql = "SELECT * FROM export_requests WHERE user_id = %s ORDER BY created_at DESC"
        params: list[Any] = [user_id]
        if limit is not None:
            sql += " LIMIT %s"
            params.append(limit)
        with self._cursor() as cur:
            cur.execute(sql, params)
            return [ExportRequest.from_row(row) for row in cur.fetchall()]

    def transition_export_request(
        self,
        request_id: str,
        expected_states: Iterable[ExportState],
        **changes: Any,
    ) -> ExportRequest | None:
        assignments, values = _set_clause(changes, _EXPORT_COLUMNS)
        with self._cursor() as cur:
            cur.execute(
                f"UPDATE export_requests SET {assignments} WHERE id = %s AND state = ANY(%s) RETURNING *",
                (*values, request_id, _states(expected_states)),
            )
            row = cur.fetchone()
            return ExportRequest.from_row(row) if row else None

    def list_expired_exports(self, now: datetime) -> list[ExportRequest]:
        with self._cursor() as cur:
            cur.execute(
                """
                SELECT * FROM export_requests
                WHERE state = %s AND artifact_location IS NOT NULL AND artifact_expires_at <= %s
                ORDER BY artifact_expires_at
                """,
                (ExportState.COMPLETED.value, now),
            )
            return [ExportRequest.from_row(row) for row in cur.fetchall()]

    def list_exports_in_state(self, state: ExportState, limit: int | None = None) -> list[ExportRequest]:
        sql = "SELECT * FROM export_requests WHERE state = %s ORDER BY created_at"
        params: list[Any] = [state.value]
        if limit is not None:
            sql += " LIMIT %s"
            params.append(limit)
        with self._cursor() as cur:
            cur.execute(sql, params)
            return [ExportRequest.from_row(row) for row in cur.fetchall()]

    # ------------------------------------------------------------------
    # Retention policies
    # ------------------------------------------------------------------

    def list_retention_policies(self, active_only: bool = False) -> list[RetentionPolicy]:
        sql = "SELECT * FROM retention_policies"
        if active_only:
            sql += " WHERE active"
        sql += " ORDER BY category"
        with self._cursor() as cur:
            cur.execute(sql)
            return [RetentionPolicy.from_row(row) for row in cur.fetchall()]

    def get_retention_policy(self, category: AuditCategory) -> RetentionPolicy | None:
        with self._cursor() as cur:
            cur.execute("SELECT * FROM retention_policies WHERE category = %s", (category.value,))
            row = cur.fetchone()
            return RetentionPolicy.from_row(row) if row else None

    def upsert_retention_policy(self, policy: RetentionPolicy, overwrite: bool = True) -> bool:
        conflict = (
            """DO UPDATE SET
                retention_days = EXCLUDED.retention_days,
                description = EXCLUDED.description,
                legal_basis = EXCLUDED.legal_basis,
                active = EXCLUDED.active,
                updated_at = EXCLUDED.updated_at"""
            if overwrite
            else "DO NOTHING"
        )
        with self._cursor() as cur:
            cur.execute(
                f"""
                INSERT INTO retention_policies
                    (category, retention_days, description, legal_basis, active, updated_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                ON CONFLICT (category) {conflict}
                """,
                (
                    policy.category.value,
                    policy.retention_days,
                    policy.description,
                    policy.legal_basis,
                    policy.active,
                    policy.updated_at,
                ),
            )
            return cur.rowcount > 0

    # ------------------------------------------------------------------
    # Audit trail
    # ------------------------------------------------------------------

    def append_audit_entry(self, entry: AuditLogEntry) -> AuditLogEntry:
        with self._cursor() as cur:
            cur.execute(
                """
                INSERT INTO audit_log (id, user_id, category, action, timestamp, metadata, ip_address)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    entry.id,
                    entry.user_id,
                    entry.category.value,
                    entry.action,
                    entry.timestamp,
                    Json(entry.metadata),
                    entry.ip_address,
                ),
            )
        return entry

    def query_audit_entries(
        self,
        user_id: str | None = None,
        category: AuditCategory | None = None,
        action: str | None = None,
        since: datetime | None = None,
        limit: int = 100,
    ) -> list[AuditLogEntry]:
        conditions = []
        params: list[Any] = []
        if user_id is not None:
            conditions.append("user_id = %s")
            params.append(user_id)
        if category is not None:
            conditions.append("category = %s")
            params.append(category.value)
        if action is not None:
            conditions.append("action = %s")
            params.append(action)
        if since is not None:
            conditions.append("timestamp >= %s")
            params.append(since)

        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        params.append(limit)
        with self._cursor() as cur:
            cur.execute(f"SELECT * FROM audit_log {where} ORDER BY timestamp DESC LIMIT %s", params)
            return [AuditLogEntry.from_row(row) for row in cur.fetchall()]

    def count_audit_entries(self, category: AuditCategory, before: datetime | None = None) -> int:
        sql = "SELECT COUNT(*) AS count FROM audit_log WHERE category = %s"
        params: list[Any] = [category.value]
        if before is not None:
            sql += " AND timestamp < %s"
            params.append(before)
        with self._cursor() as cur:
            cur.execute(sql, params)
            return cur.fetchone()["count"]

    def delete_audit_entries(self, category: AuditCategory, before: datetime, limit: int) -> int:
        with self._cursor() as cur:
            cur.execute(
                """
                DELETE FROM audit_log WHERE id IN (
                    SELECT id FROM audit_log
                    WHERE category = %s AND timestamp < %s
                    ORDER BY timestamp
                    LIMIT %s
                )
                """,
                (category.value, before, limit),
            )
            return cur.rowcount
