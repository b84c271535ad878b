"""Integration tests for the PostgreSQL repository.

Skipped unless a database is reachable through CUSTODIAN_DB_* variables.
"""

from __future__ import annotations

import threading
from datetime import UTC, datetime, timedelta

import pytest

from custodian.core import db
from custodian.core.config import CoreSettings
from custodian.core.exceptions import DuplicateActiveRequest
from custodian.storage.models import (
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
from custodian.storage.postgres import PostgresRepository

pytestmark = pytest.mark.requires_postgres

NOW = datetime(2024, 3, 1, tzinfo=UTC)

TABLES = "audit_log, retention_policies, export_requests, deletion_requests, consent_records, owned_records, users"


@pytest.fixture(scope="module")
def pg_settings():
    settings = CoreSettings()
    db.init_schema(settings=settings)
    yield settings
    db.close_pool()


@pytest.fixture
def pg_repo(pg_settings):
    with db.get_cursor(pg_settings) as cur:
        cur.execute(f"TRUNCATE {TABLES}")
    return PostgresRepository(lambda: db.get_cursor(pg_settings))


@pytest.fixture
def pg_user(pg_repo):
    return pg_repo.save_user(User(id=new_id(), email="a@example.com", name="A", created_at=NOW))


def _deletion(user_id: str, state: DeletionState = DeletionState.PENDING, **kwargs) -> DeletionRequest:
    return DeletionRequest(
        id=new_id(),
        user_id=user_id,
        user_hash="h" * 32,
        state=state,
        token_hash="t" * 64,
        requested_at=kwargs.pop("requested_at", NOW),
        **kwargs,
    )


class TestPostgresUsers:
    def test_save_and_get(self, pg_repo, pg_user):
        loaded = pg_repo.get_user(pg_user.id)

        assert loaded.email == "a@example.com"
        assert loaded.created_at == NOW

    def test_cascade(self, pg_repo, pg_user):
        pg_repo.add_owned_record(OwnedRecord(new_id(), pg_user.id, OwnedDataKind.INVOICES, {"n": 1}, NOW))
        pg_repo.add_consent(ConsentRecord(new_id(), pg_user.id, ConsentType.PRIVACY_POLICY, True, "1.0", NOW))
        pg_repo.create_export_request(ExportRequest(new_id(), pg_user.id, ExportState.PENDING, NOW))
        request = pg_repo.create_deletion_request(_deletion(pg_user.id, DeletionState.EXECUTED))
        pg_repo.append_audit_entry(
            AuditLogEntry(new_id(), pg_user.id, AuditCategory.PERSONAL_DATA, "deletion_executed", NOW)
        )

        counts = pg_repo.delete_user_cascade(pg_user.id)

        assert counts == {"owned_records": 1, "consents": 1, "export_requests": 1, "users": 1}
        assert pg_repo.get_user(pg_user.id) is None
        assert pg_repo.get_deletion_request(request.id).user_id is None
        assert len(pg_repo.query_audit_entries(user_id=pg_user.id)) == 1

    def test_update_owned_record(self, pg_repo, pg_user):
        record = pg_repo.add_owned_record(OwnedRecord(new_id(), pg_user.id, OwnedDataKind.CLIENTS, {"phone": "1"}, NOW))

        assert pg_repo.update_owned_record(record.id, {"phone": "2"})
        assert pg_repo.list_owned_records(pg_user.id)[0].data == {"phone": "2"}
        assert not pg_repo.update_owned_record(new_id(), {})

    def test_list_user_ids(self, pg_repo, pg_user):
        assert pg_repo.list_user_ids() == [pg_user.id]


class TestPostgresDeletions:
    def test_unique_active_request(self, pg_repo, pg_user):
        pg_repo.create_deletion_request(_deletion(pg_user.id))

        with pytest.raises(DuplicateActiveRequest):
            pg_repo.create_deletion_request(_deletion(pg_user.id))

    def test_concurrent_creates_admit_exactly_one(self, pg_repo, pg_user):
        outcomes: list[str] = []
        barrier = threading.Barrier(4)

        def attempt():
            barrier.wait()
            try:
                pg_repo.create_deletion_request(_deletion(pg_user.id))
                outcomes.append("ok")
            except DuplicateActiveRequest:
                outcomes.append("dup")

        threads = [threading.Thread(target=attempt) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count("ok") == 1

    def test_conditional_transition(self, pg_repo, pg_user):
        request = pg_repo.create_deletion_request(_deletion(pg_user.id))

        updated = pg_repo.transition_deletion_request(
            request.id,
            [DeletionState.PENDING],
            state=DeletionState.IN_GRACE_PERIOD,
            scheduled_execution_at=NOW + timedelta(days=30),
        )
        missed = pg_repo.transition_deletion_request(request.id, [DeletionState.PENDING], state=DeletionState.CANCELLED)

        assert updated.state == DeletionState.IN_GRACE_PERIOD
        assert missed is None
        assert pg_repo.list_due_deletions(NOW + timedelta(days=30))[0].id == request.id
        assert pg_repo.list_due_deletions(NOW) == []

    def test_transition_rejects_unknown_column(self, pg_repo, pg_user):
        request = pg_repo.create_deletion_request(_deletion(pg_user.id))

        with pytest.raises(ValueError):
            pg_repo.transition_deletion_request(request.id, [DeletionState.PENDING], token_hash="x")


class TestPostgresExports:
    def test_list_in_state_oldest_first(self, pg_repo, pg_user):
        newer = ExportRequest(new_id(), pg_user.id, ExportState.PENDING, NOW + timedelta(hours=1))
        older = ExportRequest(new_id(), pg_user.id, ExportState.PENDING, NOW)
        pg_repo.create_export_request(newer)
        pg_repo.create_export_request(older)
        pg_repo.transition_export_request(newer.id, [ExportState.PENDING], state=ExportState.PROCESSING, started_at=NOW)

        assert [r.id for r in pg_repo.list_exports_in_state(ExportState.PENDING)] == [older.id]
        assert [r.id for r in pg_repo.list_exports_in_state(ExportState.PROCESSING, limit=5)] == [newer.id]


class TestPostgresAudit:
    def test_batched_delete(self, pg_repo):
        for i in range(5):
            pg_repo.append_audit_entry(
                AuditLogEntry(new_id(), None, AuditCategory.FILES, "upload", NOW - timedelta(days=i + 1))
            )

        assert pg_repo.delete_audit_entries(AuditCategory.FILES, NOW, limit=2) == 2
        assert pg_repo.count_audit_entries(AuditCategory.FILES) == 3

    def test_policy_upsert(self, pg_repo):
        assert pg_repo.upsert_retention_policy(RetentionPolicy(AuditCategory.FILES, 30, "f"), overwrite=False)
        assert not pg_repo.upsert_retention_policy(RetentionPolicy(AuditCategory.FILES, 60, "f"), overwrite=False)
        assert pg_repo.upsert_retention_policy(RetentionPolicy(AuditCategory.FILES, 90, "f"), overwrite=True)

        assert pg_repo.get_retention_policy(AuditCategory.FILES).retention_days == 90
