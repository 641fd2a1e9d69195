#!/usr/bin/env python3
"""
EventScore Certification CLI

Usage:
    python -m eventscore.cli <command> [options]

Commands:
    db          Database operations (init, drop)
    certify     Certification operations (all, status)
    progress    Certification progress for a category, contest, event or judge
    reset       Delete certifications and winner sign-offs in a scope

Environment:
    DATABASE_URL    SQLAlchemy async connection string
    LOG_LEVEL       DEBUG|INFO|WARNING|ERROR
"""
import sys
import argparse
import logging
from typing import Optional

from eventscore import __version__
from eventscore.cli.db_commands import DbCommand
from eventscore.cli.certification_commands import (
    CertifyCommand, ProgressCommand, ResetCommand
)
from eventscore.rbac import Role


def setup_logging(level: str = "INFO") -> None:
    """Configure logging."""
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )


def add_actor_arguments(parser: argparse.ArgumentParser, default_role: Role) -> None:
    parser.add_argument("--tenant", "-t", required=True, help="Tenant ID")
    parser.add_argument("--user", "-u", default="cli", help="Acting user ID (default: cli)")
    parser.add_argument(
        "--role",
        default=default_role.value,
        choices=[role.value for role in Role],
        help=f"Acting role (default: {default_role.value})"
    )


def create_parser() -> argparse.ArgumentParser:
    """Create CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="eventscore",
        description="EventScore Certification CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s db init
  %(prog)s certify status --tenant acme --event 3f2c...
  %(prog)s certify all --tenant acme --event 3f2c... --role BOARD
  %(prog)s progress --tenant acme --level CONTEST --id 9a1b...
  %(prog)s reset --tenant acme --category 77d0...
        """
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}"
    )

    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)"
    )

    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without executing"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Database commands
    db_parser = subparsers.add_parser("db", help="Database operations")
    db_subparsers = db_parser.add_subparsers(dest="db_action")

    db_subparsers.add_parser("init", help="Create missing tables")

    drop_parser = db_subparsers.add_parser("drop", help="Drop every table")
    drop_parser.add_argument("--force", action="store_true", help="Skip confirmation")

    # Certification commands
    certify_parser = subparsers.add_parser("certify", help="Certification operations")
    certify_subparsers = certify_parser.add_subparsers(dest="certify_action")

    all_parser = certify_subparsers.add_parser("all", help="Certify every category of an event")
    all_parser.add_argument("--event", "-e", required=True, help="Event ID")
    add_actor_arguments(all_parser, Role.BOARD)

    status_parser = certify_subparsers.add_parser("status", help="Show event certification status")
    status_parser.add_argument("--event", "-e", required=True, help="Event ID")
    status_parser.add_argument("--json", action="store_true", help="Print raw JSON")
    add_actor_arguments(status_parser, Role.ADMIN)

    # Progress
    progress_parser = subparsers.add_parser("progress", help="Certification progress")
    progress_parser.add_argument(
        "--level",
        required=True,
        choices=["CATEGORY", "CONTEST", "EVENT", "JUDGE"],
        help="Progress scope level"
    )
    progress_parser.add_argument("--id", "-i", required=True, help="Category, contest, event or judge ID")
    add_actor_arguments(progress_parser, Role.ADMIN)

    # Reset
    reset_parser = subparsers.add_parser("reset", help="Reset certifications and winner sign-offs")
    scope = reset_parser.add_mutually_exclusive_group(required=True)
    scope.add_argument("--category", help="Category ID")
    scope.add_argument("--contest", help="Contest ID")
    scope.add_argument("--event", help="Event ID")
    scope.add_argument("--all", action="store_true", help="Every certification of the tenant")
    add_actor_arguments(reset_parser, Role.ADMIN)

    return parser


def main(args: Optional[list] = None) -> int:
    """Main entry point."""
    parser = create_parser()
    parsed = parser.parse_args(args)

    if not parsed.command:
        parser.print_help()
        return 1

    setup_logging(parsed.log_level)

    command_map = {
        "db": DbCommand,
        "certify": CertifyCommand,
        "progress": ProgressCommand,
        "reset": ResetCommand,
    }

    if parsed.command in command_map:
        handler = command_map[parsed.command](dry_run=parsed.dry_run)
        return handler.execute(parsed)

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
