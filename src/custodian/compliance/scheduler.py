"""Scheduler tick: the externally triggered entry point for deferred work.

One tick executes every due deletion, recovers stalled exports, purges
lapsed export artifacts and sweeps retention. Every step is idempotent,
so overlapping or repeated ticks are harmless. A failing deletion is
recorded and the tick moves on.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from ..core.exceptions import CustodianException
from ..core.logging import correlation_context
from .retention import RetentionSweepResult

if TYPE_CHECKING:
    from ..engine import PrivacyEngine

logger = logging.getLogger(__name__)


@dataclass
class TickResult:
    """Summary of one scheduler tick."""

    correlation_id: str
    deletions_succeeded: list[str] = field(default_factory=list)
    deletions_failed: dict[str, str] = field(default_factory=dict)
    exports_resumed: int = 0
    exports_stalled: int = 0
    artifacts_purged: int = 0
    retention: RetentionSweepResult | None = None

    @property
    def deletions_total(self) -> int:
        return len(self.deletions_succeeded) + len(self.deletions_failed)

    def to_dict(self) -> dict[str, Any]:
        return {
            "correlation_id": self.correlation_id,
            "deletions": {
                "succeeded": len(self.deletions_succeeded),
                "failed": len(self.deletions_failed),
                "total": self.deletions_total,
                "errors": dict(self.deletions_failed),
            },
            "exports": {"resumed": self.exports_resumed, "stalled": self.exports_stalled},
            "artifacts_purged": self.artifacts_purged,
            "retention": self.retention.to_dict() if self.retention else None,
        }


def run_tick(engine: PrivacyEngine, sweep_retention: bool = True) -> TickResult:
    """Run one scheduler tick against an engine."""
    with correlation_context() as cid:
        result = TickResult(correlation_id=cid)

        due = engine.deletion.pending_executions()
        logger.info(f"Tick: {len(due)} deletions due")
        for request in due:
            try:
                engine.deletion.execute(request.id)
            except CustodianException as e:
                # Guard misses (raced with a cancel) and failed purges alike
                logger.warning(f"Deletion {request.id} not executed: [{e.code}] {e.message}")
                result.deletions_failed[request.id] = e.code
                continue
            result.deletions_succeeded.append(request.id)

        result.exports_stalled = engine.export.fail_stalled()
        result.exports_resumed = engine.export.resume_pending()
        result.artifacts_purged = engine.export.purge_expired_artifacts()

        if sweep_retention:
            result.retention = engine.retention.sweep()

        logger.info(
            f"Tick done: deletions ok={len(result.deletions_succeeded)} "
            f"failed={len(result.deletions_failed)}, exports resumed={result.exports_resumed} "
            f"stalled={result.exports_stalled}, artifacts purged={result.artifacts_purged}"
        )
        return result
