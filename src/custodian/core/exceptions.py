# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""Custom exception hierarchy for Custodian.

Every rejection carries a stable ``code`` for callers to branch on and a
human-readable message. Categories:

- configuration errors: fatal at startup, fail closed
- integrity errors: decryption/authentication failures, fail closed
- storage errors: repository or artifact-store failures
- state-guard violations: user-actionable, never retried automatically
"""

from __future__ import annotations

from typing import Any


class CustodianException(Exception):  # noqa: N818 - public name
    """Base exception for all Custodian errors.

    All Custodian-specific exceptions should inherit from this class.
    """

    code = "custodian_error"

    def __init__(self, message: str, details: dict | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "error": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class ConfigException(CustodianException):
    """Exception for configuration errors.

    Raised when:
    - The encryption key is missing or malformed
    - Required environment variables are missing
    - Service configuration is incomplete
    """

    code = "configuration_error"

    def __init__(self, message: str, missing_vars: list[str] | None = None):
        details = {}
        if missing_vars:
            details["missing_vars"] = missing_vars
        super().__init__(message, details)
        self.missing_vars = missing_vars or []


class IntegrityException(CustodianException):
    """Exception for tampered or malformed encrypted values.

    Never carries any part of the ciphertext or plaintext.
    """

    code = "integrity_error"


class StorageException(CustodianException):
    """Exception for repository and artifact-store failures.

    Raised when:
    - Database connection or query execution fails
    - An artifact cannot be written, read or removed
    - A transaction is rolled back
    """

    code = "storage_error"


class NotFoundError(CustodianException):
    """Exception for resource not found errors."""

    code = "not_found"

    def __init__(self, resource_type: str, resource_id: str):
        message = f"{resource_type} not found: {resource_id}"
        details = {
            "resource_type": resource_type,
            "resource_id": resource_id,
        }
        super().__init__(message, details)
        self.resource_type = resource_type
        self.resource_id = resource_id


class ConflictError(CustodianException):
    """Exception for conflict errors.

    Raised when:
    - Attempting to create a duplicate resource
    - A conditional update lost a race
    """

    code = "conflict"

    def __init__(self, message: str, existing_id: str | None = None):
        details = {}
        if existing_id:
            details["existing_id"] = existing_id
        super().__init__(message, details)
        self.existing_id = existing_id


class ValidationError(CustodianException, ValueError):
    """Exception for invalid caller input.

    Also a ``ValueError`` so callers that guard plain value errors keep working.
    """

    code = "validation_error"

    def __init__(self, message: str, field: str | None = None):
        details = {}
        if field:
            details["field"] = field
        super().__init__(message, details)
        self.field = field


# =============================================================================
# State-guard violations
# =============================================================================


class StateGuardError(CustodianException):
    """A requested transition is not allowed from the current persisted state."""

    code = "state_guard_violation"


class DuplicateActiveRequest(ConflictError, StateGuardError):  # noqa: N818
    """The user already has a non-terminal deletion request."""

    code = "duplicate_active_request"

    def __init__(self, user_id: str, existing_id: str | None = None):
        super().__init__("An active deletion request already exists for this user", existing_id)
        self.details["user_id"] = user_id
        self.user_id = user_id


class InvalidToken(StateGuardError):  # noqa: N818
    """No pending deletion request matches the supplied user and token."""

    code = "invalid_token"

    def __init__(self, user_id: str):
        super().__init__("Invalid confirmation token or no pending request", {"user_id": user_id})
        self.user_id = user_id


class NoActiveRequest(StateGuardError):  # noqa: N818
    """There is no pending or in-grace-period deletion request to cancel."""

    code = "no_active_request"

    def __init__(self, user_id: str):
        super().__init__("No active deletion request found", {"user_id": user_id})
        self.user_id = user_id


class NotInGracePeriod(StateGuardError):  # noqa: N818
    """The deletion request is not in its grace period."""

    code = "not_in_grace_period"

    def __init__(self, request_id: str, state: str):
        super().__init__(
            f"Deletion request is not in its grace period (state: {state})",
            {"request_id": request_id, "state": state},
        )
        self.request_id = request_id
        self.state = state


class GracePeriodNotElapsed(StateGuardError):  # noqa: N818
    """The grace period of the deletion request has not finished yet."""

    code = "grace_period_not_elapsed"

    def __init__(self, request_id: str, scheduled_at: str | None):
        super().__init__(
            "The grace period has not elapsed yet",
            {"request_id": request_id, "scheduled_execution_at": scheduled_at},
        )
        self.request_id = request_id
        self.scheduled_at = scheduled_at


class ExportRateLimited(StateGuardError):  # noqa: N818
    """The user requested another export inside the cooldown window."""

    code = "export_rate_limited"

    def __init__(self, user_id: str, retry_after: str):
        super().__init__(
            "An export was already requested recently",
            {"user_id": user_id, "retry_after": retry_after},
        )
        self.retry_after = retry_after


class ExportNotReady(StateGuardError):  # noqa: N818
    """The export has no servable artifact (not completed or failed)."""

    code = "export_not_ready"

    def __init__(self, request_id: str, state: str):
        super().__init__(
            f"Export is not ready for download (state: {state})",
            {"request_id": request_id, "state": state},
        )
        self.request_id = request_id
        self.state = state


class ArtifactExpired(StateGuardError):  # noqa: N818
    """The export artifact is past its expiry and can no longer be served."""

    code = "artifact_expired"

    def __init__(self, request_id: str, expired_at: str):
        super().__init__(
            "The export artifact has expired",
            {"request_id": request_id, "expired_at": expired_at},
        )
        self.request_id = request_id


# =============================================================================
# Unit-of-work failures (the request is marked ERROR)
# =============================================================================


class DeletionExecutionError(CustodianException):
    """Cascading purge failed; the request was marked ERROR for an operator."""

    code = "deletion_failed"

    def __init__(self, request_id: str, cause: str):
        super().__init__(
            f"Account deletion failed: {cause}",
            {"request_id": request_id},
        )
        self.request_id = request_id


class ExportProcessingError(CustodianException):
    """Gathering, serializing or storing the export failed."""

    code = "export_failed"

    def __init__(self, request_id: str, cause: str, details: dict[str, Any] | None = None):
        merged = {"request_id": request_id}
        merged.update(details or {})
        super().__init__(f"Export processing failed: {cause}", merged)
        self.request_id = request_id
