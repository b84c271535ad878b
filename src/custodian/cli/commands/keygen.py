"""Key generation command."""

from __future__ import annotations

import argparse

from ...crypto.fields import generate_key
from ..output import output_result


def register(subparsers: argparse._SubParsersAction) -> None:
    """Register keygen command on the CLI parser."""
    keygen_parser = subparsers.add_parser("keygen", help="Generate a new field encryption key")
    keygen_parser.add_argument("--json", action="store_true", dest="output_json", help="Output as JSON")
    keygen_parser.set_defaults(func=cmd_keygen)


def cmd_keygen(args: argparse.Namespace) -> int:
    """Print a fresh AES-256 key as hex."""
    key = generate_key()
    output_result({"encryption_key": key}, as_json=args.output_json, text=f"CUSTODIAN_ENCRYPTION_KEY={key}")
    return 0
