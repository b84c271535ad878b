"""Privacy compliance components.

Provides:
- Consent ledger (append-only grants and revocations)
- Account deletion workflow with a fixed grace period
- Data portability exports with expiring artifacts
- Retention enforcement over the audit log
- Bulk encryption of legacy plaintext fields
- The privacy audit trail every component writes to
"""

from .audit import PrivacyAuditTrail
from .consent import ConsentLedger
from .deletion import GRACE_PERIOD, DeletionTicket, DeletionWorkflow
from .export import ARTIFACT_TTL, ExportPipeline, ExportStatus, ExportWorker
from .field_migration import FieldMigration, FieldMigrationResult
from .notifications import LoggingNotifier, NotificationKind, Notifier, RecordingNotifier, safe_notify
from .retention import DEFAULT_POLICIES, CategoryStats, RetentionEnforcer, RetentionSweepResult
from .scheduler import TickResult, run_tick

__all__ = [
    # Audit
    "PrivacyAuditTrail",
    # Consent
    "ConsentLedger",
    # Deletion
    "GRACE_PERIOD",
    "DeletionTicket",
    "DeletionWorkflow",
    # Export
    "ARTIFACT_TTL",
    "ExportPipeline",
    "ExportStatus",
    "ExportWorker",
    # Field migration
    "FieldMigration",
    "FieldMigrationResult",
    # Notifications
    "LoggingNotifier",
    "NotificationKind",
    "Notifier",
    "RecordingNotifier",
    "safe_notify",
    # Retention
    "DEFAULT_POLICIES",
    "CategoryStats",
    "RetentionEnforcer",
    "RetentionSweepResult",
    # Scheduler
    "TickResult",
    "run_tick",
]
