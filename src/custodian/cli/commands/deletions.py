# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""Deletion request commands for operators."""

from __future__ import annotations

import argparse

from ..output import output_result
from ..utils import build_engine


def register(subparsers: argparse._SubParsersAction) -> None:
    """Register deletions command on the CLI parser."""
    del_parser = subparsers.add_parser("deletions", help="Inspect and drive account deletions")
    group = del_parser.add_mutually_exclusive_group(required=True)
    group.add_argument("--pending", action="store_true", help="List deletions due for execution")
    group.add_argument("--status", metavar="USER_ID", help="Show a user's deletion history")
    group.add_argument("--execute", metavar="REQUEST_ID", help="Execute one due deletion now")
    del_parser.add_argument("--json", action="store_true", dest="output_json", help="Output as JSON")
    del_parser.set_defaults(func=cmd_deletions)


def cmd_deletions(args: argparse.Namespace) -> int:
    """List, inspect or execute deletion requests."""
    with build_engine() as engine:
        if args.pending:
            requests = engine.deletion.pending_executions()
            text = "\n".join(f"{r.id}  due {r.scheduled_execution_at.isoformat()}" for r in requests)
            output_result(
                [r.to_dict() for r in requests],
                as_json=args.output_json,
                text=text or "No deletions due",
            )
        elif args.status:
            requests = engine.deletion.history(args.status)
            text = "\n".join(f"{r.id}  {r.state:<16} requested {r.requested_at.isoformat()}" for r in requests)
            output_result(
                [r.to_dict() for r in requests],
                as_json=args.output_json,
                text=text or "No deletion requests",
            )
        else:
            executed = engine.deletion.execute(args.execute)
            output_result(executed.to_dict(), as_json=args.output_json, text=f"Deletion {executed.id}: {executed.state}")
    return 0
