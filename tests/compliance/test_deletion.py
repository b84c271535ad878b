"""Tests for the account deletion workflow.

Verifies:
- Guarded state machine (request, confirm, cancel, execute)
- 30-day grace period measured from confirmation
- One active request per user
- Full purge of the user aggregate; the request and audit trail survive
- Failed purges end in ERROR and are not retried
"""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import patch

import pytest

from custodian.compliance.deletion import GRACE_PERIOD, _hash_user_id
from custodian.compliance.notifications import NotificationKind
from custodian.core.exceptions import (
    DeletionExecutionError,
    DuplicateActiveRequest,
    GracePeriodNotElapsed,
    InvalidToken,
    NoActiveRequest,
    NotFoundError,
    NotInGracePeriod,
    StorageException,
)
from custodian.storage.models import AuditAction, ConsentType, DeletionState, OwnedDataKind


@pytest.fixture
def workflow(engine):
    return engine.deletion


def _confirmed(workflow, user_id, clock):
    ticket = workflow.request(user_id)
    clock.advance(hours=1)
    return workflow.confirm(user_id, ticket.token)


# ============================================================================
# Request
# ============================================================================


class TestRequest:
    def test_creates_pending_request(self, workflow, user, clock):
        ticket = workflow.request(user.id, reason="leaving")

        assert ticket.request.state == DeletionState.PENDING
        assert ticket.request.requested_at == clock.now()
        assert ticket.request.reason == "leaving"
        assert ticket.request.user_hash == _hash_user_id(user.id)

    def test_only_token_hash_is_stored(self, workflow, repository, user):
        ticket = workflow.request(user.id)

        stored = repository.get_deletion_request(ticket.request.id)
        assert stored.token_hash != ticket.token
        assert len(stored.token_hash) == 64
        assert len(ticket.token) == 64

    def test_token_sent_through_notifier(self, workflow, notifier, user):
        ticket = workflow.request(user.id)

        [(user_id, _, payload)] = notifier.of_kind(NotificationKind.DELETION_CONFIRMATION)
        assert user_id == user.id
        assert payload["token"] == ticket.token

    def test_token_not_in_audit(self, workflow, engine, user):
        ticket = workflow.request(user.id)

        [entry] = engine.audit.query(user_id=user.id, action=AuditAction.DELETION_REQUESTED)
        assert ticket.token not in str(entry.metadata)

    def test_unknown_user(self, workflow):
        with pytest.raises(NotFoundError):
            workflow.request("ghost")

    def test_duplicate_pending(self, workflow, user):
        first = workflow.request(user.id)

        with pytest.raises(DuplicateActiveRequest) as exc_info:
            workflow.request(user.id)

        assert exc_info.value.existing_id == first.request.id

    def test_duplicate_in_grace_period(self, workflow, user, clock):
        _confirmed(workflow, user.id, clock)

        with pytest.raises(DuplicateActiveRequest):
            workflow.request(user.id)

    def test_notifier_failure_does_not_undo_request(self, workflow, notifier, user):
        with patch.object(notifier, "notify", side_effect=RuntimeError("smtp down")):
            ticket = workflow.request(user.id)

        assert workflow.status(user.id).id == ticket.request.id


# ============================================================================
# Confirm
# ============================================================================


class TestConfirm:
    def test_starts_grace_period(self, workflow, user, clock):
        ticket = workflow.request(user.id)
        clock.advance(hours=1)

        confirmed = workflow.confirm(user.id, ticket.token)

        assert confirmed.state == DeletionState.IN_GRACE_PERIOD
        assert confirmed.confirmed_at == clock.now()
        assert confirmed.scheduled_execution_at == clock.now() + GRACE_PERIOD

    def test_wrong_token(self, workflow, user):
        workflow.request(user.id)

        with pytest.raises(InvalidToken):
            workflow.confirm(user.id, "0" * 64)

    def test_token_of_another_user(self, workflow, engine, user):
        other = engine.register_user("b@example.com", "B", user_id="user-2")
        ticket = workflow.request(user.id)
        workflow.request(other.id)

        with pytest.raises(InvalidToken):
            workflow.confirm(other.id, ticket.token)

    def test_confirm_twice(self, workflow, user, clock):
        ticket = workflow.request(user.id)
        workflow.confirm(user.id, ticket.token)

        with pytest.raises(InvalidToken):
            workflow.confirm(user.id, ticket.token)

    def test_confirm_after_cancel(self, workflow, user):
        ticket = workflow.request(user.id)
        workflow.cancel(user.id)

        with pytest.raises(InvalidToken):
            workflow.confirm(user.id, ticket.token)

    def test_sends_scheduled_notice(self, workflow, notifier, user, clock):
        confirmed = _confirmed(workflow, user.id, clock)

        [(_, _, payload)] = notifier.of_kind(NotificationKind.DELETION_SCHEDULED)
        assert payload["scheduled_execution_at"] == confirmed.scheduled_execution_at.isoformat()


# ============================================================================
# Cancel
# ============================================================================


class TestCancel:
    def test_cancel_pending(self, workflow, user, clock):
        workflow.request(user.id)
        clock.advance(minutes=5)

        cancelled = workflow.cancel(user.id)

        assert cancelled.state == DeletionState.CANCELLED
        assert cancelled.cancelled_at == clock.now()
        assert workflow.status(user.id) is None

    def test_cancel_in_grace_period(self, workflow, user, clock):
        _confirmed(workflow, user.id, clock)

        assert workflow.cancel(user.id).state == DeletionState.CANCELLED
        assert workflow.pending_executions() == []

    def test_nothing_to_cancel(self, workflow, user):
        with pytest.raises(NoActiveRequest):
            workflow.cancel(user.id)

    def test_cancel_twice(self, workflow, user):
        workflow.request(user.id)
        workflow.cancel(user.id)

        with pytest.raises(NoActiveRequest):
            workflow.cancel(user.id)

    def test_new_request_after_cancel(self, workflow, user, clock):
        first = workflow.request(user.id)
        workflow.cancel(user.id)
        clock.advance(days=1)

        second = workflow.request(user.id)

        assert second.request.id != first.request.id
        assert [r.state for r in workflow.history(user.id)] == [DeletionState.PENDING, DeletionState.CANCELLED]

    def test_audited_with_previous_state(self, workflow, engine, user, clock):
        _confirmed(workflow, user.id, clock)
        workflow.cancel(user.id)

        [entry] = engine.audit.query(user_id=user.id, action=AuditAction.DELETION_CANCELLED)
        assert entry.metadata["previous_state"] == "in_grace_period"


# ============================================================================
# Execute
# ============================================================================


class TestExecute:
    def test_scenario_cancel_inside_grace_period(self, workflow, user, clock):
        """Request at T0, confirm at T0+1h, early execute at T0+20d, cancel at T0+25d."""
        t0 = clock.now()
        ticket = workflow.request(user.id)

        clock.set(t0 + timedelta(hours=1))
        confirmed = workflow.confirm(user.id, ticket.token)
        assert confirmed.state == DeletionState.IN_GRACE_PERIOD
        assert confirmed.scheduled_execution_at == t0 + timedelta(hours=1, days=30)

        clock.set(t0 + timedelta(days=20))
        with pytest.raises(GracePeriodNotElapsed):
            workflow.execute(confirmed.id)

        clock.set(t0 + timedelta(days=25))
        assert workflow.cancel(user.id).state == DeletionState.CANCELLED

        clock.set(t0 + timedelta(days=40))
        assert workflow.pending_executions() == []

    def test_not_due_before_scheduled_time(self, workflow, user, clock):
        confirmed = _confirmed(workflow, user.id, clock)
        clock.set(confirmed.scheduled_execution_at - timedelta(seconds=1))

        assert workflow.pending_executions() == []
        with pytest.raises(GracePeriodNotElapsed):
            workflow.execute(confirmed.id)
        assert workflow.status(user.id).state == DeletionState.IN_GRACE_PERIOD

    def test_purges_user_aggregate(self, workflow, engine, repository, artifacts, user, clock):
        engine.add_record(user.id, OwnedDataKind.INVOICES, {"number": "F-1"})
        engine.add_record(user.id, OwnedDataKind.CLIENTS, {"name": "C", "phone": "555"})
        engine.consent.record_consent(user.id, ConsentType.PRIVACY_POLICY, granted=True, version="1")
        export = engine.export.request(user.id)
        location = repository.get_export_request(export.id).artifact_location
        assert artifacts.exists(location)

        confirmed = _confirmed(workflow, user.id, clock)
        clock.set(confirmed.scheduled_execution_at)

        executed = workflow.execute(confirmed.id)

        assert executed.state == DeletionState.EXECUTED
        assert executed.executed_at == clock.now()
        assert executed.user_id is None
        assert repository.get_user(user.id) is None
        assert repository.list_owned_records(user.id) == []
        assert repository.list_consents(user.id) == []
        assert repository.list_export_requests(user.id) == []
        assert not artifacts.exists(location)

    def test_audit_trail_survives(self, workflow, engine, user, clock):
        confirmed = _confirmed(workflow, user.id, clock)
        clock.set(confirmed.scheduled_execution_at)

        workflow.execute(confirmed.id)

        [entry] = engine.audit.query(user_id=user.id, action=AuditAction.DELETION_EXECUTED)
        assert entry.metadata["request_id"] == confirmed.id
        assert entry.metadata["user_hash"] == _hash_user_id(user.id)

    def test_sends_completion_notice(self, workflow, notifier, user, clock):
        confirmed = _confirmed(workflow, user.id, clock)
        clock.set(confirmed.scheduled_execution_at)

        workflow.execute(confirmed.id)

        assert len(notifier.of_kind(NotificationKind.DELETION_COMPLETED)) == 1

    def test_execute_twice(self, workflow, user, clock):
        confirmed = _confirmed(workflow, user.id, clock)
        clock.set(confirmed.scheduled_execution_at)
        workflow.execute(confirmed.id)

        with pytest.raises(NotInGracePeriod) as exc_info:
            workflow.execute(confirmed.id)

        assert exc_info.value.state == "executed"

    def test_execute_pending(self, workflow, user):
        ticket = workflow.request(user.id)

        with pytest.raises(NotInGracePeriod):
            workflow.execute(ticket.request.id)

    def test_execute_unknown(self, workflow):
        with pytest.raises(NotFoundError):
            workflow.execute("missing")

    def test_user_can_register_again_after_execution(self, workflow, engine, user, clock):
        confirmed = _confirmed(workflow, user.id, clock)
        clock.set(confirmed.scheduled_execution_at)
        workflow.execute(confirmed.id)

        engine.register_user("ana@example.com", "Ana", user_id=user.id)

        assert workflow.request(user.id).request.state == DeletionState.PENDING


class TestExecuteFailure:
    """A failed purge ends in ERROR for an operator and is never retried."""

    def test_failure_marks_error(self, workflow, repository, engine, user, clock):
        confirmed = _confirmed(workflow, user.id, clock)
        clock.set(confirmed.scheduled_execution_at)

        with patch.object(repository, "delete_user_cascade", side_effect=StorageException("connection lost")):
            with pytest.raises(DeletionExecutionError) as exc_info:
                workflow.execute(confirmed.id)

        assert exc_info.value.request_id == confirmed.id
        failed = repository.get_deletion_request(confirmed.id)
        assert failed.state == DeletionState.ERROR
        assert "connection lost" in failed.error
        assert repository.get_user(user.id) is not None
        assert len(engine.audit.query(action=AuditAction.DELETION_FAILED)) == 1

    def test_failed_request_not_rescheduled(self, workflow, repository, user, clock):
        confirmed = _confirmed(workflow, user.id, clock)
        clock.set(confirmed.scheduled_execution_at)
        with patch.object(repository, "delete_user_cascade", side_effect=StorageException("boom")):
            with pytest.raises(DeletionExecutionError):
                workflow.execute(confirmed.id)

        assert workflow.pending_executions() == []
        with pytest.raises(NotInGracePeriod):
            workflow.execute(confirmed.id)

    def test_error_state_allows_new_request(self, workflow, repository, user, clock):
        confirmed = _confirmed(workflow, user.id, clock)
        clock.set(confirmed.scheduled_execution_at)
        with patch.object(repository, "delete_user_cascade", side_effect=StorageException("boom")):
            with pytest.raises(DeletionExecutionError):
                workflow.execute(confirmed.id)

        clock.advance(minutes=1)
        assert workflow.request(user.id).request.state == DeletionState.PENDING

    def test_audit_failure_prevents_purge(self, workflow, engine, repository, user, clock):
        confirmed = _confirmed(workflow, user.id, clock)
        clock.set(confirmed.scheduled_execution_at)

        with patch.object(repository, "append_audit_entry", side_effect=StorageException("audit down")):
            with pytest.raises(DeletionExecutionError):
                workflow.execute(confirmed.id)

        assert repository.get_user(user.id) is not None
        failed = repository.get_deletion_request(confirmed.id)
        assert failed.state == DeletionState.ERROR
        assert "audit down" in failed.error

    def test_cancel_racing_execution_leaves_no_executed_entry(self, workflow, engine, repository, user, clock):
        confirmed = _confirmed(workflow, user.id, clock)
        clock.set(confirmed.scheduled_execution_at)
        real_transition = repository.transition_deletion_request

        def cancel_first(request_id, expected_states, **changes):
            if changes.get("state") == DeletionState.EXECUTED:
                workflow.cancel(user.id)
            return real_transition(request_id, expected_states, **changes)

        with patch.object(repository, "transition_deletion_request", side_effect=cancel_first):
            with pytest.raises(NotInGracePeriod):
                workflow.execute(confirmed.id)

        assert repository.get_deletion_request(confirmed.id).state == DeletionState.CANCELLED
        assert repository.get_user(user.id) is not None
        assert engine.audit.query(action=AuditAction.DELETION_EXECUTED) == []


class TestQueries:
    def test_status_and_history(self, workflow, user, clock):
        assert workflow.status(user.id) is None
        assert workflow.history(user.id) == []

        ticket = workflow.request(user.id)

        assert workflow.status(user.id).id == ticket.request.id
        assert len(workflow.history(user.id)) == 1

    def test_pending_executions_lists_due_only(self, workflow, engine, user, clock):
        other = engine.register_user("b@example.com", "B", user_id="user-2")
        first = _confirmed(workflow, user.id, clock)
        clock.advance(days=10)
        _confirmed(workflow, other.id, clock)

        clock.set(first.scheduled_execution_at)

        assert [r.id for r in workflow.pending_executions()] == [first.id]
