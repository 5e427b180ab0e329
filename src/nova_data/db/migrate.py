#!/usr/bin/env python3
"""
Database Migration Runner

Usage:
    python -m nova_data.db.migrate                  # Run all pending migrations
    python -m nova_data.db.migrate --status         # Show migration status
    python -m nova_data.db.migrate --create NAME    # Scaffold a new migration
    python -m nova_data.db.migrate --rollback       # Show manual rollback instructions

Environment:
    DATABASE_URL / POSTGRES_* - PostgreSQL connection
    MIGRATIONS_DIR            - Migration files (default: db/migrations)
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from ..config import DatabaseConfig
from ..database.facade import DataAccessFacade
from ..errors import DataLayerError
from ..migrations import MigrationEngine
from ..models import MigrationState
from . import configure_cli_observability, shutdown_cli_observability

logger = logging.getLogger(__name__)

STATE_LABELS = {
    MigrationState.APPLIED.value: "Applied",
    MigrationState.PENDING.value: "Pending",
    MigrationState.DRIFTED.value: "Modified after apply",
}


async def run_all_migrations(engine: MigrationEngine) -> None:
    """Run all pending migrations."""
    print("=" * 60)
    print("Nova Universe Database Migration Runner")
    print("=" * 60)
    print(f"\nMigrations: {engine.migrations_dir}\n")

    applied = await engine.run_migrations()
    if not applied:
        print("No pending migrations. Database is up to date.")
        return

    for filename in applied:
        print(f"  • {filename}")
    print(f"\nApplied {len(applied)} migration(s).")


async def show_status(engine: MigrationEngine) -> None:
    """Show migration status."""
    print("=" * 60)
    print("Migration Status")
    print("=" * 60)
    print(f"\nMigrations: {engine.migrations_dir}\n")

    statuses = await engine.status()
    if not statuses:
        print("No migrations found.")
        return

    for status in statuses:
        print(f"  {status.filename}")
        line = f"      Status: {STATE_LABELS.get(status.state, status.state)}"
        if status.applied_at:
            line += f" ({status.applied_at.isoformat()})"
        print(line)


async def show_rollback(engine: MigrationEngine) -> None:
    """Point at the manual rollback file for the last applied migration."""
    print("=" * 60)
    print("Migration Rollback")
    print("=" * 60)
    print("\nWARNING: Rollback can cause data loss!")
    print("Rollbacks are never run automatically.\n")

    applied = await engine.get_applied_migrations()
    if not applied:
        print("No migrations to rollback.")
        return

    last = applied[-1].filename
    rollback_file = await engine.rollback_hint()
    if rollback_file is None:
        print(f"No rollback file found for migration {last}")
        return

    print(f"Last applied migration: {last}")
    print(f"Rollback file: {rollback_file.name}")
    print()
    print("To rollback, run the SQL manually:")
    print(f"  psql $DATABASE_URL -f {rollback_file}")


async def create(engine: MigrationEngine, name: str) -> None:
    path = await engine.create_migration(name)
    print(f"Created migration: {path}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="nova-migrate",
        description="Nova Universe Database Migration Runner",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  nova-migrate                        # Run pending migrations
  nova-migrate --status               # Show status
  nova-migrate --create add_widgets   # Scaffold a migration file
  nova-migrate --rollback             # Show rollback instructions
        """
    )
    actions = parser.add_mutually_exclusive_group()
    actions.add_argument("--status", action="store_true", help="Show migration status")
    actions.add_argument("--create", metavar="NAME", help="Create a new migration file")
    actions.add_argument("--rollback", action="store_true", help="Show rollback instructions")
    parser.add_argument("--dir", dest="migrations_dir", help="Migrations directory (default: MIGRATIONS_DIR)")
    parser.add_argument("--no-verify", action="store_true",
                        help="Skip checksum verification of applied migrations")
    return parser


async def run(args: argparse.Namespace) -> None:
    config = DatabaseConfig.from_env()
    if args.create:
        # Scaffolding needs no database connection
        engine = MigrationEngine(DataAccessFacade(config), args.migrations_dir)
        await create(engine, args.create)
        return

    # Migrations only need the relational store
    config.databases = ["postgresql"]
    db = DataAccessFacade(config)
    await db.initialize()
    try:
        engine = MigrationEngine(db, args.migrations_dir, verify_checksums=not args.no_verify)
        if args.status:
            await show_status(engine)
        elif args.rollback:
            await show_rollback(engine)
        else:
            await run_all_migrations(engine)
    finally:
        await db.close()


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_cli_observability()
    try:
        asyncio.run(run(args))
    except (DataLayerError, OSError, ValueError) as e:
        logger.error(f"Migration command failed: {e}")
        print(f"\nERROR: {e}", file=sys.stderr)
        return 1
    finally:
        shutdown_cli_observability()
    return 0


if __name__ == "__main__":
    sys.exit(main())
