"""Data portability exports.

An export request moves ``PENDING -> PROCESSING -> COMPLETED | ERROR``.
Processing gathers everything the user owns, opens encrypted fields so
the bundle is readable by its subject, serializes it to JSON and stores
it as an artifact that stays servable for seven days.

Processing is handed to an ``ExportWorker`` (thread pool) when one is
configured so request paths never wait on bundle generation. A failed
run never leaves an artifact referenced by the request.

The scheduler tick recovers what a lost hand-off leaves behind: PENDING
requests are processed again and PROCESSING requests older than the
deadline are marked ERROR.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from ..core.clock import Clock, SystemClock
from ..core.exceptions import (
    ArtifactExpired,
    CustodianException,
    ExportNotReady,
    ExportProcessingError,
    ExportRateLimited,
    NotFoundError,
    StorageException,
)
from ..crypto.fields import FieldCipher
from ..storage.artifacts import ArtifactStore
from ..storage.models import (
    AuditAction,
    ExportRequest,
    ExportState,
    OwnedDataKind,
    new_id,
)
from ..storage.repository import Repository
from .audit import PrivacyAuditTrail
from .notifications import LoggingNotifier, NotificationKind, Notifier, safe_notify

logger = logging.getLogger(__name__)

ARTIFACT_TTL = timedelta(days=7)
EXPORT_FORMAT_VERSION = "1.0"
PRIOR_EXPORTS_LIMIT = 10
MAX_ERROR_LENGTH = 500

# Fields stored encrypted, opened before they enter the bundle
SENSITIVE_PROFILE_FIELDS = ("document_number", "phone")
SENSITIVE_OWNED_FIELDS: dict[OwnedDataKind, tuple[str, ...]] = {
    OwnedDataKind.CLIENTS: ("document_number", "phone", "email"),
}


class ExportDeadlineExceeded(TimeoutError):
    """Gathering took longer than the configured deadline."""


@dataclass
class ExportStatus:
    """Read view of an export request.

    ``state`` is ``EXPIRED`` for a completed export whose artifact lapsed;
    the stored record still says ``COMPLETED``.
    """

    request_id: str
    state: ExportState
    created_at: datetime
    completed_at: datetime | None = None
    artifact_size: int | None = None
    artifact_expires_at: datetime | None = None
    error: str | None = None

    @property
    def available(self) -> bool:
        return self.state == ExportState.COMPLETED

    @classmethod
    def of(cls, request: ExportRequest, now: datetime) -> ExportStatus:
        state = ExportState.EXPIRED if request.is_expired(now) else request.state
        if state == ExportState.COMPLETED and request.artifact_location is None:
            state = ExportState.EXPIRED
        return cls(
            request_id=request.id,
            state=state,
            created_at=request.created_at,
            completed_at=request.completed_at,
            artifact_size=request.artifact_size,
            artifact_expires_at=request.artifact_expires_at,
            error=request.error,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "state": self.state.value,
            "available": self.available,
            "created_at": self.created_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "artifact_size": self.artifact_size,
            "artifact_expires_at": self.artifact_expires_at.isoformat() if self.artifact_expires_at else None,
            "error": self.error,
        }


def _log_task_failure(future: Future) -> None:
    if future.cancelled():
        return
    error = future.exception()
    if error is not None:
        logger.error(f"Export task failed: {error}", exc_info=error)


class ExportWorker:
    """Thread pool that runs export processing off the request path."""

    def __init__(self, max_workers: int = 2):
        if max_workers < 1:
            raise ValueError("ExportWorker needs at least one thread")
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="custodian-export")

    def submit(self, fn: Callable[..., Any], *args: Any) -> Future:
        future = self._executor.submit(fn, *args)
        future.add_done_callback(_log_task_failure)
        return future

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    def __enter__(self) -> ExportWorker:
        return self

    def __exit__(self, *exc: Any) -> None:
        self.shutdown(wait=True)


class ExportPipeline:
    """Creates, processes and serves personal data exports.

    Args:
        repository: Store for requests and the user aggregate
        cipher: Opens encrypted fields for the bundle
        artifacts: Where bundles are stored
        audit: Trail receiving request/completion/failure/download entries
        notifier: Best-effort delivery of ready/failed notices
        worker: Thread pool for processing; None processes inline
        clock: Source of all timestamps
        timeout: Deadline for gathering one bundle
        cooldown: Minimum interval between a user's exports (zero disables)
        monotonic: Timer used for the gather deadline
    """

    def __init__(
        self,
        repository: Repository,
        cipher: FieldCipher,
        artifacts: ArtifactStore,
        audit: PrivacyAuditTrail,
        notifier: Notifier | None = None,
        worker: ExportWorker | None = None,
        clock: Clock | None = None,
        timeout: timedelta = timedelta(minutes=5),
        cooldown: timedelta = timedelta(0),
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.repository = repository
        self.cipher = cipher
        self.artifacts = artifacts
        self.audit = audit
        self.notifier = notifier or LoggingNotifier()
        self.worker = worker
        self.clock = clock or SystemClock()
        self.timeout = timeout
        self.cooldown = cooldown
        self._monotonic = monotonic
        self.last_future: Future | None = None

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    def request(self, user_id: str, ip_address: str | None = None) -> ExportRequest:
        """Create a PENDING export and hand it to processing.

        With a worker the returned record is usually still PENDING; inline
        it is already COMPLETED or ERROR.

        Raises:
            NotFoundError: If the user does not exist
            ExportRateLimited: If the user is inside the cooldown window
        """
        if self.repository.get_user(user_id) is None:
            raise NotFoundError("User", user_id)

        now = self.clock.now()
        self._check_cooldown(user_id, now)

        request = ExportRequest(id=new_id(), user_id=user_id, state=ExportState.PENDING, created_at=now)
        self.repository.create_export_request(request)
        self.audit.record(AuditAction.EXPORT_REQUESTED, user_id, {"request_id": request.id}, ip_address=ip_address)
        logger.info(f"Export requested: request={request.id}, user={user_id}")

        if self.worker is not None:
            self.last_future = self.worker.submit(self._process_quietly, request.id)
            return request

        self._process_quietly(request.id)
        return self.repository.get_export_request(request.id) or request

    def _check_cooldown(self, user_id: str, now: datetime) -> None:
        if self.cooldown <= timedelta(0):
            return
        for previous in self.repository.list_export_requests(user_id, limit=PRIOR_EXPORTS_LIMIT):
            if previous.state == ExportState.ERROR:
                continue
            retry_after = previous.created_at + self.cooldown
            if retry_after > now:
                raise ExportRateLimited(user_id, retry_after.isoformat())
            return

    def _process_quietly(self, request_id: str) -> ExportRequest | None:
        """Process and leave failures to the stored ERROR state."""
        try:
            return self.process(request_id)
        except ExportProcessingError as e:
            logger.warning(f"Export {request_id} ended in ERROR: {e.message}")
            return None
        except CustodianException as e:
            # Claim failed; the request stays PENDING for the next tick
            logger.error(f"Export {request_id} not processed: [{e.code}] {e.message}", exc_info=True)
            return None

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    def process(self, request_id: str) -> ExportRequest:
        """Run one export to completion.

        Only a PENDING request is claimed; anything else is returned as is,
        which makes re-running the scheduler harmless.

        Raises:
            NotFoundError: If the request does not exist
            ExportProcessingError: If gathering, serializing or storing failed
        """
        claimed = self.repository.transition_export_request(
            request_id,
            [ExportState.PENDING],
            state=ExportState.PROCESSING,
            started_at=self.clock.now(),
        )
        if claimed is None:
            existing = self.repository.get_export_request(request_id)
            if existing is None:
                raise NotFoundError("ExportRequest", request_id)
            logger.debug(f"Export {request_id} already {existing.state}, skipping")
            return existing

        location: str | None = None
        try:
            bundle = self.gather(claimed.user_id, deadline=self._monotonic() + self.timeout.total_seconds())
            payload = json.dumps(bundle, ensure_ascii=False, indent=2, default=str).encode("utf-8")
            location = self.artifacts.put(payload, "json")
            now = self.clock.now()
            completed = self.repository.transition_export_request(
                request_id,
                [ExportState.PROCESSING],
                state=ExportState.COMPLETED,
                completed_at=now,
                artifact_location=location,
                artifact_size=len(payload),
                artifact_expires_at=now + ARTIFACT_TTL,
            )
            if completed is None:
                raise StorageException("Export request changed state during processing")
        except Exception as e:
            self._fail(claimed, location, e)
            raise ExportProcessingError(request_id, str(e)) from e

        self.audit.record(
            AuditAction.EXPORT_COMPLETED,
            completed.user_id,
            {"request_id": request_id, "artifact_size": completed.artifact_size},
        )
        safe_notify(
            self.notifier,
            completed.user_id,
            NotificationKind.EXPORT_READY,
            {"request_id": request_id, "expires_at": completed.artifact_expires_at.isoformat()},
        )
        logger.info(f"Export completed: request={request_id}, size={completed.artifact_size}")
        return completed

    def _fail(self, request: ExportRequest, location: str | None, error: Exception) -> None:
        logger.error(f"Export failed: request={request.id}: {error}", exc_info=error)
        if location is not None:
            try:
                self.artifacts.delete(location)
            except StorageException as cleanup_error:
                logger.error(f"Could not remove partial artifact {location}: {cleanup_error}")
        try:
            marked = self.repository.transition_export_request(
                request.id,
                [ExportState.PROCESSING],
                state=ExportState.ERROR,
                completed_at=self.clock.now(),
                error=str(error)[:MAX_ERROR_LENGTH],
            )
            if marked is None:
                # Already failed by the stalled-export sweep
                return
            self.audit.record(
                AuditAction.EXPORT_FAILED,
                request.user_id,
                {"request_id": request.id, "error": str(error)[:MAX_ERROR_LENGTH]},
            )
        except StorageException as mark_error:
            logger.critical(f"Could not mark export {request.id} as ERROR: {mark_error}")
            return
        safe_notify(self.notifier, request.user_id, NotificationKind.EXPORT_FAILED, {"request_id": request.id})

    def gather(self, user_id: str, deadline: float | None = None) -> dict[str, Any]:
        """Assemble the personal data bundle of a user.

        Encrypted fields are opened; the deadline is checked between sections.

        Raises:
            NotFoundError: If the user does not exist
            IntegrityException: If an encrypted field fails authentication
            ExportDeadlineExceeded: If the deadline passes
        """

        def checkpoint(section: str) -> None:
            if deadline is not None and self._monotonic() > deadline:
                raise ExportDeadlineExceeded(f"Export deadline exceeded before section '{section}'")

        checkpoint("profile")
        user = self.repository.get_user(user_id)
        if user is None:
            raise NotFoundError("User", user_id)
        bundle: dict[str, Any] = {
            "profile": self.cipher.decrypt_fields(user.to_dict(), SENSITIVE_PROFILE_FIELDS),
        }

        for kind in OwnedDataKind:
            checkpoint(kind.value)
            sensitive = SENSITIVE_OWNED_FIELDS.get(kind, ())
            bundle[kind.value] = [
                self.cipher.decrypt_fields(record.to_dict(), sensitive)
                for record in self.repository.list_owned_records(user_id, kind)
            ]

        checkpoint("consents")
        bundle["consents"] = [c.to_dict() for c in self.repository.list_consents(user_id)]

        checkpoint("exports")
        bundle["exports"] = [
            {
                "id": e.id,
                "state": e.state.value,
                "created_at": e.created_at.isoformat(),
                "completed_at": e.completed_at.isoformat() if e.completed_at else None,
            }
            for e in self.repository.list_export_requests(user_id, limit=PRIOR_EXPORTS_LIMIT)
        ]

        bundle["metadata"] = {
            "exported_at": self.clock.now().isoformat(),
            "format_version": EXPORT_FORMAT_VERSION,
            "user_id": user_id,
        }
        return bundle

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def status(self, request_id: str) -> ExportStatus:
        """Current view of a request. Pure read.

        Raises:
            NotFoundError: If the request does not exist
        """
        request = self.repository.get_export_request(request_id)
        if request is None:
            raise NotFoundError("ExportRequest", request_id)
        return ExportStatus.of(request, self.clock.now())

    def list_exports(self, user_id: str) -> list[ExportStatus]:
        now = self.clock.now()
        return [ExportStatus.of(r, now) for r in self.repository.list_export_requests(user_id)]

    def download(self, request_id: str, ip_address: str | None = None) -> bytes:
        """Serve the artifact of a completed, unexpired export.

        Raises:
            NotFoundError: If the request does not exist
            ArtifactExpired: If the artifact lifetime has passed
            ExportNotReady: If the export is not COMPLETED
        """
        request = self.repository.get_export_request(request_id)
        if request is None:
            raise NotFoundError("ExportRequest", request_id)
        now = self.clock.now()
        if request.is_expired(now):
            raise ArtifactExpired(request_id, request.artifact_expires_at.isoformat())
        if request.state != ExportState.COMPLETED or request.artifact_location is None:
            raise ExportNotReady(request_id, request.state.value)

        data = self.artifacts.get(request.artifact_location)
        self.audit.record(AuditAction.EXPORT_DOWNLOADED, request.user_id, {"request_id": request_id}, ip_address=ip_address)
        return data

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def resume_pending(self, limit: int | None = None) -> int:
        """Process PENDING requests whose hand-off never ran or failed to claim.

        Runs inline. Requests claimed concurrently are skipped by ``process``.

        Returns:
            Number of exports completed
        """
        completed = 0
        for request in self.repository.list_exports_in_state(ExportState.PENDING, limit=limit):
            result = self._process_quietly(request.id)
            if result is not None and result.state == ExportState.COMPLETED:
                completed += 1
        return completed

    def fail_stalled(self) -> int:
        """Mark ERROR every PROCESSING request started longer than the deadline ago.

        Returns:
            Number of requests failed
        """
        cutoff = self.clock.now() - self.timeout
        failed = 0
        for request in self.repository.list_exports_in_state(ExportState.PROCESSING):
            if request.started_at is None or request.started_at > cutoff:
                continue
            error = ExportDeadlineExceeded(
                f"Export still processing {self.timeout.total_seconds():.0f}s after it started at "
                f"{request.started_at.isoformat()}"
            )
            marked = self.repository.transition_export_request(
                request.id,
                [ExportState.PROCESSING],
                state=ExportState.ERROR,
                completed_at=self.clock.now(),
                error=str(error)[:MAX_ERROR_LENGTH],
            )
            if marked is None:
                continue
            self.audit.record(
                AuditAction.EXPORT_FAILED,
                request.user_id,
                {"request_id": request.id, "error": str(error)[:MAX_ERROR_LENGTH]},
            )
            safe_notify(self.notifier, request.user_id, NotificationKind.EXPORT_FAILED, {"request_id": request.id})
            logger.warning(f"Stalled export {request.id} marked ERROR")
            failed += 1
        return failed

    def purge_expired_artifacts(self) -> int:
        """Delete lapsed artifacts from the store; records are kept.

        Returns:
            Number of artifacts purged
        """
        purged = 0
        for request in self.repository.list_expired_exports(self.clock.now()):
            try:
                self.artifacts.delete(request.artifact_location)
                self.repository.transition_export_request(
                    request.id,
                    [ExportState.COMPLETED],
                    artifact_location=None,
                )
            except StorageException as e:
                logger.error(f"Could not purge artifact of export {request.id}: {e}")
                continue
            purged += 1
        if purged:
            logger.info(f"Purged {purged} expired export artifacts")
        return purged
