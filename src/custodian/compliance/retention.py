"""Retention enforcement for audit records.

Each audit category has a policy stating how many days its entries may be
kept. ``sweep`` deletes entries strictly older than ``now - retention_days``
in bounded batches, pausing between batches to limit write load on a
live store. Categories are swept one after another.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any

from ..core.clock import Clock, SystemClock
from ..core.exceptions import NotFoundError, StorageException, ValidationError
from ..storage.models import AuditAction, AuditCategory, RetentionPolicy
from ..storage.repository import Repository
from .audit import PrivacyAuditTrail

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 1000
DEFAULT_BATCH_PAUSE = 0.1  # seconds

_FIVE_YEARS = 1825
_ONE_YEAR = 365

DEFAULT_POLICIES: tuple[RetentionPolicy, ...] = (
    RetentionPolicy(
        AuditCategory.AUTHENTICATION,
        _ONE_YEAR,
        "Login, logout and authentication events",
    ),
    RetentionPolicy(
        AuditCategory.AUTHORIZATION,
        _ONE_YEAR,
        "Permission and access control changes",
    ),
    RetentionPolicy(
        AuditCategory.PERSONAL_DATA,
        _FIVE_YEARS,
        "Access to and changes of personal data, consents, exports and deletions",
        "Ley 1581 de 2012",
    ),
    RetentionPolicy(
        AuditCategory.FINANCIAL_DATA,
        _FIVE_YEARS,
        "Financial records and income declarations",
        "Estatuto Tributario Art. 632",
    ),
    RetentionPolicy(
        AuditCategory.INVOICING,
        _FIVE_YEARS,
        "Electronic invoicing events",
        "Resolución DIAN 000042 de 2020",
    ),
    RetentionPolicy(
        AuditCategory.SOCIAL_SECURITY,
        _FIVE_YEARS,
        "Social security contribution events",
        "Ley 100 de 1993",
    ),
    RetentionPolicy(
        AuditCategory.ARTIFICIAL_INTELLIGENCE,
        _ONE_YEAR,
        "Assistant conversations and model usage",
    ),
    RetentionPolicy(
        AuditCategory.FILES,
        _ONE_YEAR,
        "Document uploads and downloads",
    ),
    RetentionPolicy(
        AuditCategory.ADMINISTRATION,
        _FIVE_YEARS,
        "Administrative actions and configuration changes",
        "ISO 27001",
    ),
    RetentionPolicy(
        AuditCategory.SECURITY,
        _FIVE_YEARS,
        "Security incidents and suspicious activity",
        "Ley 1273 de 2009",
    ),
    RetentionPolicy(
        AuditCategory.SYSTEM,
        _ONE_YEAR,
        "System operations and maintenance",
    ),
    RetentionPolicy(
        AuditCategory.GENERAL,
        _ONE_YEAR,
        "Uncategorized events",
    ),
)


def parse_category(value: AuditCategory | str) -> AuditCategory:
    """Resolve a category name.

    Raises:
        ValidationError: If ``value`` names no audit category
    """
    try:
        return AuditCategory(value)
    except ValueError:
        valid = ", ".join(c.value for c in AuditCategory)
        raise ValidationError(f"Unknown audit category '{value}' (expected one of: {valid})", "category") from None


def parse_retention_days(value: int | str) -> int:
    """Parse a positive number of days.

    Raises:
        ValidationError: If ``value`` is not a whole number of at least 1
    """
    try:
        days = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Retention days must be a whole number, got '{value}'", "retention_days") from None
    if days < 1:
        raise ValidationError(f"retention_days must be positive, got {days}", "retention_days")
    return days


@dataclass
class RetentionSweepResult:
    """Outcome of one sweep: rows removed per category and per-category failures."""

    deleted: dict[str, int] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)
    batches: int = 0
    dry_run: bool = False

    @property
    def total(self) -> int:
        return sum(self.deleted.values())

    @property
    def success(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict[str, Any]:
        return {
            "deleted": dict(self.deleted),
            "errors": dict(self.errors),
            "total": self.total,
            "batches": self.batches,
            "dry_run": self.dry_run,
        }

    def __str__(self) -> str:
        status = " (dry run)" if self.dry_run else ""
        items = ", ".join(f"{k}={v}" for k, v in self.deleted.items() if v)
        return f"retention{status}: total={self.total}" + (f", {items}" if items else "")


@dataclass
class CategoryStats:
    """Rows held vs. rows eligible for purge in one category."""

    category: str
    retention_days: int
    cutoff: datetime
    total: int
    eligible: int

    @property
    def percentage_eligible(self) -> float:
        return round(self.eligible / self.total * 100, 2) if self.total else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "category": self.category,
            "retention_days": self.retention_days,
            "cutoff": self.cutoff.isoformat(),
            "total": self.total,
            "eligible": self.eligible,
            "percentage_eligible": self.percentage_eligible,
        }


class RetentionEnforcer:
    """Applies retention policies to the audit log.

    Args:
        repository: Store holding policies and audit entries
        audit: Trail for policy changes and sweep summaries
        clock: Source of cutoffs
        batch_size: Rows deleted per batch
        batch_pause: Seconds to sleep between batches
        sleep: Sleep function (injectable for tests)
    """

    def __init__(
        self,
        repository: Repository,
        audit: PrivacyAuditTrail,
        clock: Clock | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        batch_pause: float = DEFAULT_BATCH_PAUSE,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be positive")
        self.repository = repository
        self.audit = audit
        self.clock = clock or SystemClock()
        self.batch_size = batch_size
        self.batch_pause = batch_pause
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Policies
    # ------------------------------------------------------------------

    def seed_default_policies(self) -> int:
        """Insert default policies for categories that have none.

        Existing (possibly administrator-edited) policies are left alone.

        Returns:
            Number of policies inserted
        """
        now = self.clock.now()
        inserted = 0
        for policy in DEFAULT_POLICIES:
            if self.repository.upsert_retention_policy(replace(policy, updated_at=now), overwrite=False):
                inserted += 1
        logger.info(f"Seeded {inserted} retention policies")
        return inserted

    def set_policy(
        self,
        category: AuditCategory | str,
        retention_days: int | None = None,
        description: str | None = None,
        legal_basis: str | None = None,
        active: bool | None = None,
        actor_id: str | None = None,
    ) -> RetentionPolicy:
        """Create or edit the policy of one category.

        Raises:
            NotFoundError: If the category has no policy and no description is given
            ValidationError: If the category is unknown or retention_days is not positive
        """
        category = parse_category(category)
        if retention_days is not None:
            retention_days = parse_retention_days(retention_days)
        current = self.repository.get_retention_policy(category)
        if current is None:
            if retention_days is None or description is None:
                raise NotFoundError("RetentionPolicy", category.value)
            current = RetentionPolicy(category, retention_days, description)

        updated = RetentionPolicy(
            category=category,
            retention_days=retention_days if retention_days is not None else current.retention_days,
            description=description if description is not None else current.description,
            legal_basis=legal_basis if legal_basis is not None else current.legal_basis,
            active=active if active is not None else current.active,
            updated_at=self.clock.now(),
        )
        self.repository.upsert_retention_policy(updated, overwrite=True)
        self.audit.record(
            AuditAction.RETENTION_POLICY_CHANGED,
            actor_id,
            {
                "category": category.value,
                "retention_days": updated.retention_days,
                "active": updated.active,
                "previous_retention_days": current.retention_days,
            },
            category=AuditCategory.ADMINISTRATION,
        )
        logger.info(f"Retention policy {category} set to {updated.retention_days} days (active={updated.active})")
        return updated

    def policies(self, active_only: bool = False) -> list[RetentionPolicy]:
        return self.repository.list_retention_policies(active_only=active_only)

    # ------------------------------------------------------------------
    # Enforcement
    # ------------------------------------------------------------------

    def sweep(self, dry_run: bool = False) -> RetentionSweepResult:
        """Purge audit entries older than their category's retention.

        A storage failure aborts only the failing category; batches already
        committed stay deleted and the other categories still run.

        Args:
            dry_run: Only count what would be deleted
        """
        now = self.clock.now()
        result = RetentionSweepResult(dry_run=dry_run)

        for policy in self.repository.list_retention_policies(active_only=True):
            cutoff = now - timedelta(days=policy.retention_days)
            key = policy.category.value
            result.deleted[key] = 0
            try:
                if dry_run:
                    result.deleted[key] = self.repository.count_audit_entries(policy.category, before=cutoff)
                else:
                    self._purge_category(policy.category, cutoff, result)
            except StorageException as e:
                logger.error(f"Retention sweep of {key} failed after {result.deleted[key]} rows: {e}")
                result.errors[key] = e.message

        if not dry_run and result.total:
            self.audit.record(
                AuditAction.RETENTION_SWEEP,
                None,
                {"deleted": result.deleted, "errors": result.errors},
                category=AuditCategory.SYSTEM,
            )
        logger.info(str(result))
        return result

    def _purge_category(self, category: AuditCategory, cutoff: datetime, result: RetentionSweepResult) -> None:
        # Each batch commits on its own; counts are recorded as they land
        while True:
            count = self.repository.delete_audit_entries(category, cutoff, self.batch_size)
            result.deleted[category.value] += count
            result.batches += 1
            if count < self.batch_size:
                return
            logger.debug(f"Retention {category}: batch of {count} removed, pausing")
            self._sleep(self.batch_pause)

    def stats(self) -> list[CategoryStats]:
        """Rows held vs. rows eligible per active category. Read-only."""
        now = self.clock.now()
        report = []
        for policy in self.repository.list_retention_policies(active_only=True):
            cutoff = now - timedelta(days=policy.retention_days)
            report.append(
                CategoryStats(
                    category=policy.category.value,
                    retention_days=policy.retention_days,
                    cutoff=cutoff,
                    total=self.repository.count_audit_entries(policy.category),
                    eligible=self.repository.count_audit_entries(policy.category, before=cutoff),
                )
            )
        return report
