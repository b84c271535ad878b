"""Schema initialization command."""

from __future__ import annotations

import argparse

from ...core import db
from ..output import output_result


def register(subparsers: argparse._SubParsersAction) -> None:
    """Register init command on the CLI parser."""
    init_parser = subparsers.add_parser("init", help="Apply the database schema")
    init_parser.add_argument("--schema", help="Path to an alternative schema.sql")
    init_parser.set_defaults(func=cmd_init)


def cmd_init(args: argparse.Namespace) -> int:
    """Apply schema.sql to the configured database."""
    path = db.init_schema(args.schema)
    output_result(None, text=f"Schema applied from {path}")
    return 0
