# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""
Custodian CLI - privacy and data-lifecycle operations.

Commands:
  custodian keygen            Generate a field encryption key
  custodian init              Apply the database schema
  custodian tick              Run one scheduler tick
  custodian retention         Seed, inspect and sweep retention policies
  custodian deletions         Inspect and execute account deletions
  custodian exports           Inspect and maintain data exports
  custodian encrypt-existing  Encrypt legacy plaintext fields
"""

from __future__ import annotations

import argparse
import sys

from ..core.exceptions import ConfigException, CustodianException
from ..core.logging import configure_logging, correlation_context
from .commands import COMMAND_MODULES
from .output import output_error


def app() -> argparse.ArgumentParser:
    """Build the argument parser."""
    parser = argparse.ArgumentParser(
        prog="custodian",
        description="Privacy and data-lifecycle engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  custodian keygen                        Generate CUSTODIAN_ENCRYPTION_KEY
  custodian init                          Create tables and indexes
  custodian retention --seed              Insert default retention policies
  custodian tick                          Run from cron, e.g. every 15 minutes
  custodian retention --sweep --dry-run   Preview a retention sweep
  custodian deletions --pending           List deletions due for execution
  custodian exports --purge-expired       Remove lapsed export artifacts
  custodian encrypt-existing --dry-run    Count plaintext fields left to seal
        """,
    )
    parser.add_argument("--log-level", help="Override CUSTODIAN_LOG_LEVEL")

    subparsers = parser.add_subparsers(dest="command", required=True)
    for module in COMMAND_MODULES:
        module.register(subparsers)

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = app()
    args = parser.parse_args(argv)

    try:
        configure_logging(level=args.log_level)
        with correlation_context():
            return args.func(args)
    except ConfigException as e:
        output_error(e.message, e.code)
        for var in e.missing_vars:
            print(f"  missing: {var}", file=sys.stderr)
        return 2
    except CustodianException as e:
        output_error(e.message, e.code)
        return 1


if __name__ == "__main__":
    sys.exit(main())
