# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""Scheduler tick command, meant to be run from cron or a systemd timer."""

from __future__ import annotations

import argparse

from ...compliance.scheduler import run_tick
from ..output import output_result
from ..utils import build_engine


def register(subparsers: argparse._SubParsersAction) -> None:
    """Register tick command on the CLI parser."""
    tick_parser = subparsers.add_parser("tick", help="Execute due deletions, recover and purge exports, sweep retention")
    tick_parser.add_argument("--skip-retention", action="store_true", help="Do not sweep retention this tick")
    tick_parser.add_argument("--json", action="store_true", dest="output_json", help="Output as JSON")
    tick_parser.set_defaults(func=cmd_tick)


def cmd_tick(args: argparse.Namespace) -> int:
    """Run one scheduler tick. Exit code 1 if any deletion failed."""
    with build_engine() as engine:
        result = run_tick(engine, sweep_retention=not args.skip_retention)

    lines = [
        "Tick Report",
        "=" * 50,
        f"  deletions executed: {len(result.deletions_succeeded)}",
        f"  deletions failed:   {len(result.deletions_failed)}",
    ]
    for request_id, code in result.deletions_failed.items():
        lines.append(f"    {request_id}: {code}")
    lines.append(f"  exports resumed:    {result.exports_resumed}")
    lines.append(f"  exports stalled:    {result.exports_stalled}")
    lines.append(f"  artifacts purged:   {result.artifacts_purged}")
    if result.retention is not None:
        lines.append(f"  {result.retention}")
    lines.append("=" * 50)

    output_result(result.to_dict(), as_json=args.output_json, text="\n".join(lines))
    return 1 if result.deletions_failed else 0
