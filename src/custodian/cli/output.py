# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""Output formatting for CLI commands."""

from __future__ import annotations

import json
import sys
from typing import Any


def output_result(data: Any, as_json: bool = False, text: str | None = None) -> None:
    """Print a command result.

    JSON mode pretty-prints ``data``; text mode prints ``text`` when given,
    falling back to JSON.
    """
    if as_json or text is None:
        print(json.dumps(data, indent=2, default=str))
    else:
        print(text)


def output_error(message: str, code: str | None = None) -> None:
    """Print error message to stderr."""
    prefix = f"Error [{code}]" if code else "Error"
    print(f"{prefix}: {message}", file=sys.stderr)
