# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""Bulk field encryption command. Back up the database before a real run."""

from __future__ import annotations

import argparse

from ..output import output_result
from ..utils import build_engine


def register(subparsers: argparse._SubParsersAction) -> None:
    """Register encrypt-existing command on the CLI parser."""
    enc_parser = subparsers.add_parser("encrypt-existing", help="Encrypt sensitive fields still stored as plaintext")
    enc_parser.add_argument(
        "--rotate",
        action="store_true",
        help="Also re-seal values written under CUSTODIAN_ENCRYPTION_PREVIOUS_KEYS",
    )
    enc_parser.add_argument("--dry-run", action="store_true", help="Only count what would change")
    enc_parser.add_argument("--json", action="store_true", dest="output_json", help="Output as JSON")
    enc_parser.set_defaults(func=cmd_encrypt_existing)


def cmd_encrypt_existing(args: argparse.Namespace) -> int:
    """Seal legacy plaintext fields of every user and owned record."""
    with build_engine() as engine:
        result = engine.encrypt_existing(rotate=args.rotate, dry_run=args.dry_run)
    output_result(result.to_dict(), as_json=args.output_json, text=str(result))
    return 0
