# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""Export commands for operators."""

from __future__ import annotations

import argparse

from ..output import output_result
from ..utils import build_engine


def register(subparsers: argparse._SubParsersAction) -> None:
    """Register exports command on the CLI parser."""
    exp_parser = subparsers.add_parser("exports", help="Inspect and maintain data exports")
    group = exp_parser.add_mutually_exclusive_group(required=True)
    group.add_argument("--purge-expired", action="store_true", help="Delete artifacts past their expiry")
    group.add_argument("--status", metavar="REQUEST_ID", help="Show the status of one export")
    group.add_argument("--process", metavar="REQUEST_ID", help="Process a pending export now")
    exp_parser.add_argument("--json", action="store_true", dest="output_json", help="Output as JSON")
    exp_parser.set_defaults(func=cmd_exports)


def cmd_exports(args: argparse.Namespace) -> int:
    """Purge expired artifacts, show status or process one export."""
    with build_engine() as engine:
        if args.purge_expired:
            purged = engine.export.purge_expired_artifacts()
            output_result({"purged": purged}, as_json=args.output_json, text=f"Purged {purged} expired artifacts")
        elif args.status:
            status = engine.export.status(args.status)
            output_result(status.to_dict(), as_json=args.output_json, text=f"Export {status.request_id}: {status.state}")
        else:
            request = engine.export.process(args.process)
            output_result(request.to_dict(), as_json=args.output_json, text=f"Export {request.id}: {request.state}")
    return 0
