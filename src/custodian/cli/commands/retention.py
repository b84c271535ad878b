"""Retention commands: seed policies, report, sweep, edit."""

from __future__ import annotations

import argparse

from ...compliance.retention import parse_category, parse_retention_days
from ...storage.models import AuditCategory
from ..output import output_result
from ..utils import build_engine


def register(subparsers: argparse._SubParsersAction) -> None:
    """Register retention command on the CLI parser."""
    ret_parser = subparsers.add_parser("retention", help="Manage audit retention policies")
    ret_parser.add_argument("--seed", action="store_true", help="Insert default policies for missing categories")
    ret_parser.add_argument("--stats", action="store_true", help="Report rows held vs. eligible for purge")
    ret_parser.add_argument("--sweep", action="store_true", help="Purge entries past their retention")
    ret_parser.add_argument("--dry-run", action="store_true", help="With --sweep, only count")
    ret_parser.add_argument(
        "--set",
        nargs=2,
        metavar=("CATEGORY", "DAYS"),
        help=f"Set retention days of a category ({', '.join(c.value for c in AuditCategory)})",
    )
    ret_parser.add_argument("--json", action="store_true", dest="output_json", help="Output as JSON")
    ret_parser.set_defaults(func=cmd_retention)


def cmd_retention(args: argparse.Namespace) -> int:
    """Run retention operations in the order seed, set, stats, sweep."""
    if not (args.seed or args.stats or args.sweep or args.set):
        print("No operation specified. Use --seed, --set CATEGORY DAYS, --stats or --sweep [--dry-run].")
        return 1

    if args.set:
        # Reject bad input before connecting
        category, days = parse_category(args.set[0]), parse_retention_days(args.set[1])

    report: dict = {}
    lines: list[str] = []
    with build_engine() as engine:
        if args.seed:
            inserted = engine.retention.seed_default_policies()
            report["seeded"] = inserted
            lines.append(f"Seeded {inserted} policies")

        if args.set:
            policy = engine.retention.set_policy(category, retention_days=days)
            report["policy"] = policy.to_dict()
            lines.append(f"{policy.category}: {policy.retention_days} days")

        if args.stats:
            stats = engine.retention.stats()
            report["stats"] = [s.to_dict() for s in stats]
            lines.append(f"{'category':<26}{'days':>6}{'total':>10}{'eligible':>10}{'%':>8}")
            for s in stats:
                lines.append(
                    f"{s.category:<26}{s.retention_days:>6}{s.total:>10}{s.eligible:>10}{s.percentage_eligible:>8.2f}"
                )

        if args.sweep:
            result = engine.retention.sweep(dry_run=args.dry_run)
            report["sweep"] = result.to_dict()
            lines.append(str(result))
            for category, error in result.errors.items():
                lines.append(f"  {category} failed: {error}")
            if result.errors:
                output_result(report, as_json=args.output_json, text="\n".join(lines))
                return 1

    output_result(report, as_json=args.output_json, text="\n".join(lines))
    return 0
