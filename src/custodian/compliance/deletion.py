"""Account deletion workflow (right to erasure).

A deletion request moves through a guarded state machine::

    PENDING --confirm--> IN_GRACE_PERIOD --execute--> EXECUTED
       |                       |
       +------cancel-----------+--> CANCELLED
    any execution failure ---------> ERROR

Each transition re-checks the persisted state through a conditional
repository update, so concurrent callers and scheduler re-runs can never
apply a transition twice. The store additionally guarantees at most one
active (PENDING or IN_GRACE_PERIOD) request per user.

Execution claims the request before writing its audit entry, and writes
that entry before anything is destroyed, so a racing cancel leaves no
false record and the trail survives the user's removal. Deletion requests
themselves are kept with the user reference cleared.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from datetime import timedelta

from ..core.clock import Clock, SystemClock
from ..core.exceptions import (
    DeletionExecutionError,
    DuplicateActiveRequest,
    GracePeriodNotElapsed,
    InvalidToken,
    NoActiveRequest,
    NotFoundError,
    NotInGracePeriod,
    StorageException,
)
from ..crypto.fields import constant_time_equals, generate_token, hash_field
from ..storage.artifacts import ArtifactStore
from ..storage.models import (
    ACTIVE_DELETION_STATES,
    AuditAction,
    DeletionRequest,
    DeletionState,
    new_id,
)
from ..storage.repository import Repository
from .audit import PrivacyAuditTrail
from .notifications import LoggingNotifier, NotificationKind, Notifier, safe_notify

logger = logging.getLogger(__name__)

# Fixed by law, not configurable
GRACE_PERIOD = timedelta(days=30)

MAX_ERROR_LENGTH = 500


def _hash_user_id(user_id: str) -> str:
    """Hash user ID for records that must outlive the user."""
    return hashlib.sha256(user_id.encode()).hexdigest()[:32]


@dataclass
class DeletionTicket:
    """Result of a deletion request.

    ``token`` is the only copy of the plaintext confirmation token; the
    store keeps its hash.
    """

    request: DeletionRequest
    token: str


class DeletionWorkflow:
    """Drives deletion requests through their state machine.

    Args:
        repository: Store for requests and the user aggregate
        audit: Trail receiving one entry per transition
        notifier: Best-effort delivery of tokens and notices
        artifacts: Export artifact store purged on execution
        clock: Source of all timestamps
    """

    def __init__(
        self,
        repository: Repository,
        audit: PrivacyAuditTrail,
        notifier: Notifier | None = None,
        artifacts: ArtifactStore | None = None,
        clock: Clock | None = None,
    ):
        self.repository = repository
        self.audit = audit
        self.notifier = notifier or LoggingNotifier()
        self.artifacts = artifacts
        self.clock = clock or SystemClock()

    # ------------------------------------------------------------------
    # User-triggered transitions
    # ------------------------------------------------------------------

    def request(
        self,
        user_id: str,
        reason: str | None = None,
        ip_address: str | None = None,
    ) -> DeletionTicket:
        """Open a PENDING deletion request and send its confirmation token.

        Raises:
            NotFoundError: If the user does not exist
            DuplicateActiveRequest: If the user already has an active request
        """
        if self.repository.get_user(user_id) is None:
            raise NotFoundError("User", user_id)

        active = self.repository.find_deletion_requests(user_id, ACTIVE_DELETION_STATES)
        if active:
            raise DuplicateActiveRequest(user_id, active[0].id)

        token = generate_token()
        request = DeletionRequest(
            id=new_id(),
            user_id=user_id,
            user_hash=_hash_user_id(user_id),
            state=DeletionState.PENDING,
            token_hash=hash_field(token),
            requested_at=self.clock.now(),
            reason=reason,
        )
        # The store re-checks atomically; a concurrent request loses here
        self.repository.create_deletion_request(request)

        self.audit.record(
            AuditAction.DELETION_REQUESTED,
            user_id,
            {"request_id": request.id, "reason": reason},
            ip_address=ip_address,
        )
        safe_notify(
            self.notifier,
            user_id,
            NotificationKind.DELETION_CONFIRMATION,
            {"request_id": request.id, "token": token},
        )
        logger.info(f"Deletion requested: request={request.id}, user_hash={request.user_hash}")
        return DeletionTicket(request=request, token=token)

    def confirm(self, user_id: str, token: str, ip_address: str | None = None) -> DeletionRequest:
        """Confirm a PENDING request with its token and start the grace period.

        Raises:
            InvalidToken: Unless a PENDING request of this user matches the token
        """
        token_hash = hash_field(token)
        pending = self.repository.find_deletion_requests(user_id, [DeletionState.PENDING])
        match = next((r for r in pending if constant_time_equals(r.token_hash, token_hash)), None)
        if match is None:
            raise InvalidToken(user_id)

        now = self.clock.now()
        updated = self.repository.transition_deletion_request(
            match.id,
            [DeletionState.PENDING],
            state=DeletionState.IN_GRACE_PERIOD,
            confirmed_at=now,
            scheduled_execution_at=now + GRACE_PERIOD,
        )
        if updated is None:
            # Cancelled or confirmed concurrently
            raise InvalidToken(user_id)

        scheduled = updated.scheduled_execution_at.isoformat()
        self.audit.record(
            AuditAction.DELETION_CONFIRMED,
            user_id,
            {"request_id": updated.id, "scheduled_execution_at": scheduled},
            ip_address=ip_address,
        )
        safe_notify(
            self.notifier,
            user_id,
            NotificationKind.DELETION_SCHEDULED,
            {"request_id": updated.id, "scheduled_execution_at": scheduled},
        )
        logger.info(f"Deletion confirmed: request={updated.id}, scheduled={scheduled}")
        return updated

    def cancel(self, user_id: str, ip_address: str | None = None) -> DeletionRequest:
        """Cancel the user's active request.

        Raises:
            NoActiveRequest: If nothing is PENDING or IN_GRACE_PERIOD
        """
        active = self.repository.find_deletion_requests(user_id, ACTIVE_DELETION_STATES)
        if not active:
            raise NoActiveRequest(user_id)

        updated = self.repository.transition_deletion_request(
            active[0].id,
            ACTIVE_DELETION_STATES,
            state=DeletionState.CANCELLED,
            cancelled_at=self.clock.now(),
        )
        if updated is None:
            # Executed or cancelled concurrently
            raise NoActiveRequest(user_id)

        self.audit.record(
            AuditAction.DELETION_CANCELLED,
            user_id,
            {"request_id": updated.id, "previous_state": active[0].state.value},
            ip_address=ip_address,
        )
        safe_notify(self.notifier, user_id, NotificationKind.DELETION_CANCELLED, {"request_id": updated.id})
        logger.info(f"Deletion cancelled: request={updated.id}")
        return updated

    # ------------------------------------------------------------------
    # Scheduler-triggered execution
    # ------------------------------------------------------------------

    def pending_executions(self) -> list[DeletionRequest]:
        """Requests in grace period whose execution time has come."""
        return self.repository.list_due_deletions(self.clock.now())

    def execute(self, request_id: str) -> DeletionRequest:
        """Purge the user aggregate of a due request.

        Guards leave the request untouched. Once past them the operation
        either completes or marks the request ERROR for an operator; it is
        never retried automatically.

        Raises:
            NotFoundError: If the request does not exist
            NotInGracePeriod: If the request is not IN_GRACE_PERIOD
            GracePeriodNotElapsed: If the scheduled time has not come
            DeletionExecutionError: If the purge failed (request is now ERROR)
        """
        request = self.repository.get_deletion_request(request_id)
        if request is None:
            raise NotFoundError("DeletionRequest", request_id)
        if request.state != DeletionState.IN_GRACE_PERIOD:
            raise NotInGracePeriod(request_id, request.state.value)

        now = self.clock.now()
        scheduled = request.scheduled_execution_at
        if scheduled is None or now < scheduled:
            raise GracePeriodNotElapsed(request_id, scheduled.isoformat() if scheduled else None)

        # Claim first: a cancel that lands after the guard read wins
        user_id = request.user_id
        executed = self.repository.transition_deletion_request(
            request_id,
            [DeletionState.IN_GRACE_PERIOD],
            state=DeletionState.EXECUTED,
            executed_at=now,
        )
        if executed is None:
            current = self.repository.get_deletion_request(request_id)
            raise NotInGracePeriod(request_id, current.state.value if current else "missing")

        try:
            self.audit.record(
                AuditAction.DELETION_EXECUTED,
                user_id,
                {
                    "request_id": request_id,
                    "user_hash": request.user_hash,
                    "requested_at": request.requested_at.isoformat(),
                    "confirmed_at": request.confirmed_at.isoformat() if request.confirmed_at else None,
                    "reason": request.reason,
                },
            )
        except StorageException as e:
            self._mark_failed(request_id, user_id, e)
            raise DeletionExecutionError(request_id, f"audit write failed: {e}") from e

        try:
            purged_artifacts = self._purge_artifacts(user_id) if user_id else 0
            counts = self.repository.delete_user_cascade(user_id) if user_id else {}
        except Exception as e:
            self._mark_failed(request_id, user_id, e)
            raise DeletionExecutionError(request_id, str(e)) from e

        logger.info(
            f"Deletion executed: request={request_id}, user_hash={request.user_hash}, "
            f"artifacts={purged_artifacts}, removed={counts}"
        )
        if user_id:
            safe_notify(self.notifier, user_id, NotificationKind.DELETION_COMPLETED, {"request_id": request_id})
        return self.repository.get_deletion_request(request_id) or executed

    def _purge_artifacts(self, user_id: str) -> int:
        if self.artifacts is None:
            return 0
        purged = 0
        for export in self.repository.list_export_requests(user_id):
            if export.artifact_location and self.artifacts.delete(export.artifact_location):
                purged += 1
        return purged

    def _mark_failed(self, request_id: str, user_id: str | None, error: Exception) -> None:
        logger.error(f"Deletion failed: request={request_id}: {error}", exc_info=True)
        try:
            self.repository.transition_deletion_request(
                request_id,
                [DeletionState.EXECUTED],
                state=DeletionState.ERROR,
                error=str(error)[:MAX_ERROR_LENGTH],
            )
        except StorageException as mark_error:
            logger.critical(f"Could not mark deletion {request_id} as ERROR: {mark_error}")
            return
        try:
            self.audit.record(AuditAction.DELETION_FAILED, user_id, {"request_id": request_id, "error": str(error)})
        except StorageException as audit_error:
            logger.error(f"Could not audit failed deletion {request_id}: {audit_error}")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def status(self, user_id: str) -> DeletionRequest | None:
        """The user's active request, if any."""
        active = self.repository.find_deletion_requests(user_id, ACTIVE_DELETION_STATES)
        return active[0] if active else None

    def history(self, user_id: str) -> list[DeletionRequest]:
        """Every request the user made, newest first."""
        return self.repository.find_deletion_requests(user_id)
