"""Utility functions for the Custodian CLI."""

from __future__ import annotations

from ..core.config import get_config
from ..engine import PrivacyEngine


def build_engine() -> PrivacyEngine:
    """Build an engine from the environment configuration.

    Exports requested from the CLI run inline; the command exits when done.
    """
    settings = get_config().model_copy(update={"export_workers": 0})
    return PrivacyEngine.from_settings(settings)
