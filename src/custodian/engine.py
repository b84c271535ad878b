# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""Privacy engine facade.

Wires the consent ledger, deletion workflow, export pipeline and retention
enforcer over one repository, cipher, artifact store, notifier and clock.
Every collaborator is passed in explicitly; nothing here reads process
globals, so several engines with different keys can coexist (tests, key
rotation).
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import timedelta
from functools import partial
from typing import Any

from .compliance.audit import PrivacyAuditTrail
from .compliance.consent import ConsentLedger
from .compliance.deletion import DeletionWorkflow
from .compliance.export import SENSITIVE_OWNED_FIELDS, SENSITIVE_PROFILE_FIELDS, ExportPipeline, ExportWorker
from .compliance.field_migration import FieldMigration, FieldMigrationResult
from .compliance.notifications import LoggingNotifier, Notifier
from .compliance.retention import DEFAULT_BATCH_PAUSE, DEFAULT_BATCH_SIZE, RetentionEnforcer
from .core.clock import Clock, SystemClock
from .core.config import CoreSettings
from .crypto.fields import FieldCipher
from .storage.artifacts import ArtifactStore, LocalFileArtifactStore
from .storage.models import OwnedDataKind, OwnedRecord, User, new_id
from .storage.repository import Repository

logger = logging.getLogger(__name__)


class PrivacyEngine:
    """All privacy components sharing one set of collaborators.

    Attributes:
        audit: Privacy audit trail
        consent: Consent ledger
        deletion: Account deletion workflow
        export: Data export pipeline
        retention: Retention enforcer
    """

    def __init__(
        self,
        repository: Repository,
        cipher: FieldCipher,
        artifacts: ArtifactStore,
        notifier: Notifier | None = None,
        clock: Clock | None = None,
        worker: ExportWorker | None = None,
        export_timeout: timedelta = timedelta(minutes=5),
        export_cooldown: timedelta = timedelta(0),
        retention_batch_size: int = DEFAULT_BATCH_SIZE,
        retention_batch_pause: float = DEFAULT_BATCH_PAUSE,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.repository = repository
        self.cipher = cipher
        self.artifacts = artifacts
        self.notifier = notifier or LoggingNotifier()
        self.clock = clock or SystemClock()
        self.worker = worker

        self.audit = PrivacyAuditTrail(repository, self.clock)
        self.consent = ConsentLedger(repository, self.audit, self.clock)
        self.deletion = DeletionWorkflow(repository, self.audit, self.notifier, artifacts, self.clock)
        self.export = ExportPipeline(
            repository,
            cipher,
            artifacts,
            self.audit,
            notifier=self.notifier,
            worker=worker,
            clock=self.clock,
            timeout=export_timeout,
            cooldown=export_cooldown,
        )
        self.retention = RetentionEnforcer(
            repository,
            self.audit,
            self.clock,
            batch_size=retention_batch_size,
            batch_pause=retention_batch_pause,
            sleep=sleep,
        )

    @classmethod
    def from_settings(
        cls,
        settings: CoreSettings,
        repository: Repository | None = None,
        artifacts: ArtifactStore | None = None,
        notifier: Notifier | None = None,
        clock: Clock | None = None,
    ) -> PrivacyEngine:
        """Build an engine from settings.

        Defaults to PostgreSQL and the local artifact directory. The cipher
        is built first so a missing or malformed key fails before anything
        else is touched.

        Raises:
            ConfigException: If the encryption key is missing or malformed
        """
        cipher = FieldCipher.from_settings(settings)
        if repository is None:
            from .core.db import get_cursor
            from .storage.postgres import PostgresRepository

            repository = PostgresRepository(partial(get_cursor, settings))
        worker = ExportWorker(settings.export_workers) if settings.export_workers > 0 else None
        logger.info(
            f"Privacy engine using {type(repository).__name__}, "
            f"export workers={settings.export_workers}, cooldown={settings.export_cooldown_hours}h"
        )
        return cls(
            repository,
            cipher,
            artifacts or LocalFileArtifactStore(settings.artifact_dir),
            notifier=notifier,
            clock=clock,
            worker=worker,
            export_timeout=timedelta(seconds=settings.export_timeout_seconds),
            export_cooldown=timedelta(hours=settings.export_cooldown_hours),
            retention_batch_size=settings.retention_batch_size,
            retention_batch_pause=settings.retention_batch_pause_seconds,
        )

    # ------------------------------------------------------------------
    # User aggregate helpers
    # ------------------------------------------------------------------

    def register_user(
        self,
        email: str,
        name: str,
        document_number: str | None = None,
        phone: str | None = None,
        attributes: dict[str, Any] | None = None,
        user_id: str | None = None,
    ) -> User:
        """Create a user, sealing sensitive profile fields."""
        user = User(
            id=user_id or new_id(),
            email=email,
            name=name,
            created_at=self.clock.now(),
            attributes=dict(attributes or {}),
        )
        sealed = self.cipher.encrypt_fields(
            {"document_number": document_number, "phone": phone},
            SENSITIVE_PROFILE_FIELDS,
        )
        user.document_number = sealed["document_number"]
        user.phone = sealed["phone"]
        return self.repository.save_user(user)

    def add_record(self, user_id: str, kind: OwnedDataKind | str, data: dict[str, Any]) -> OwnedRecord:
        """Attach an owned record, sealing the fields its kind keeps encrypted."""
        kind = OwnedDataKind(kind)
        record = OwnedRecord(
            id=new_id(),
            user_id=user_id,
            kind=kind,
            data=self.cipher.encrypt_fields(data, SENSITIVE_OWNED_FIELDS.get(kind, ())),
            created_at=self.clock.now(),
        )
        return self.repository.add_owned_record(record)

    def encrypt_existing(self, rotate: bool = False, dry_run: bool = False) -> FieldMigrationResult:
        """Seal stored plaintext fields; with ``rotate`` also re-seal old-key envelopes."""
        return FieldMigration(self.repository, self.cipher, self.audit).run(rotate=rotate, dry_run=dry_run)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Wait for in-flight exports and release the worker pool."""
        if self.worker is not None:
            self.worker.shutdown(wait=True)
            self.worker = None
            self.export.worker = None

    def __enter__(self) -> PrivacyEngine:
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()
