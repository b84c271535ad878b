# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""Custodian - Privacy and data-lifecycle engine.

Custodian governs how a user's personal data is consented to, encrypted at
rest, exported on request, and permanently deleted after a mandatory grace
period, while purging audit records according to per-category retention
policies.

Architecture:
  Encryption layer (field-level AES-256-GCM envelopes)
    → Consent ledger (append-only grants and revocations)
    → Deletion workflow (token-confirmed, cancellable, 30-day grace period)
    → Export pipeline (asynchronous bundle with a 7-day artifact)
    → Retention enforcer (batched, throttled audit purges)

All components talk to an abstract repository, so the engine does not assume
a specific persistence technology. A scheduler tick (CLI: ``custodian tick``)
drives due deletions, retention sweeps and expired-artifact cleanup.
"""

__version__ = "1.0.0"

from .engine import PrivacyEngine

__all__ = ["PrivacyEngine", "__version__"]
