"""Outbound notifications (email, push).

Delivery is outside the engine; it only calls a ``Notifier``. Notification
is best-effort: ``safe_notify`` logs failures and never lets them undo the
state transition that triggered them.
"""

from __future__ import annotations

import logging
from enum import StrEnum
from typing import Any, Protocol, runtime_checkable

from ..core.logging import sanitize

logger = logging.getLogger(__name__)


class NotificationKind(StrEnum):
    """Templates the engine asks a notifier to deliver."""

    DELETION_CONFIRMATION = "deletion_confirmation"
    DELETION_SCHEDULED = "deletion_scheduled"
    DELETION_CANCELLED = "deletion_cancelled"
    DELETION_COMPLETED = "deletion_completed"
    EXPORT_READY = "export_ready"
    EXPORT_FAILED = "export_failed"


@runtime_checkable
class Notifier(Protocol):
    """Delivers a templated message to a user."""

    def notify(self, user_id: str, kind: NotificationKind, payload: dict[str, Any]) -> None: ...


class LoggingNotifier:
    """Notifier that only logs. Default when no delivery channel is wired."""

    def notify(self, user_id: str, kind: NotificationKind, payload: dict[str, Any]) -> None:
        logger.info(
            f"Notification {kind} for user {user_id}",
            extra={"extra_data": {"kind": str(kind), "payload": sanitize(payload)}},
        )


class RecordingNotifier:
    """Notifier that keeps every message in memory (tests, dry runs)."""

    def __init__(self):
        self.sent: list[tuple[str, NotificationKind, dict[str, Any]]] = []

    def notify(self, user_id: str, kind: NotificationKind, payload: dict[str, Any]) -> None:
        self.sent.append((user_id, kind, dict(payload)))

    def of_kind(self, kind: NotificationKind) -> list[tuple[str, NotificationKind, dict[str, Any]]]:
        return [m for m in self.sent if m[1] == kind]


def safe_notify(notifier: Notifier, user_id: str, kind: NotificationKind, payload: dict[str, Any]) -> bool:
    """Deliver a notification, logging instead of raising on failure.

    Returns:
        True if the notifier accepted the message
    """
    try:
        notifier.notify(user_id, kind, payload)
        return True
    except Exception as e:
        logger.warning(f"Notification {kind} for user {user_id} failed: {e}")
        return False
