#!/usr/bin/env python3
"""
Data Migration: legacy SQLite → PostgreSQL / MongoDB

Copies the legacy single-file database into the configured backends while
preserving existing rows. Re-running is safe: rows already present are
skipped.

Usage:
    python -m nova_data.db.migrate_data                       # Import SQLITE_PATH into all targets
    python -m nova_data.db.migrate_data old.sqlite --dry-run  # Preview without changes
    python -m nova_data.db.migrate_data --target postgresql   # One target only

Environment:
    SQLITE_PATH - Path to the legacy SQLite database (default: log.sqlite)
    DATABASE_URL / POSTGRES_* / MONGO_* - Target connections
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Dict, List, Optional

from ..config import DatabaseConfig
from ..database.facade import BackendKind, DataAccessFacade
from ..errors import DataLayerError
from ..migrations import MigrationEngine
from ..migrations.legacy_import import DEFAULT_TARGETS
from ..models import TableImportReport
from . import configure_cli_observability, shutdown_cli_observability

logger = logging.getLogger(__name__)


def has_errors(results: Dict[str, Dict[str, TableImportReport]]) -> bool:
    return any(report.error for tables in results.values() for report in tables.values())


def render_report(results: Dict[str, Dict[str, TableImportReport]]) -> str:
    return json.dumps(
        {
            target: {table: report.model_dump() for table, report in tables.items()}
            for target, tables in results.items()
        },
        indent=2,
    )


async def run(args: argparse.Namespace) -> Dict[str, Dict[str, TableImportReport]]:
    config = DatabaseConfig.from_env()
    targets = args.targets or list(DEFAULT_TARGETS)
    source = args.source or config.sqlite_path

    # Open only the backends the import writes to; a dry run writes nowhere
    known = {kind.value for kind in BackendKind}
    config.databases = [] if args.dry_run else [t for t in targets if t in known and t != "sqlite"]

    db = DataAccessFacade(config)
    await db.initialize()
    try:
        engine = MigrationEngine(db)
        return await engine.migrate_from_sqlite(
            source,
            target_databases=targets,
            dry_run=args.dry_run,
            force=args.force,
        )
    finally:
        await db.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="nova-migrate-data",
        description="Migrate data from the legacy SQLite database",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("source", nargs="?", help="SQLite database path (default: SQLITE_PATH)")
    parser.add_argument(
        "--target",
        dest="targets",
        action="append",
        metavar="BACKEND",
        help="Target backend, repeatable (default: postgresql and mongodb)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Preview migration without making changes",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Clear destination tables before importing",
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_cli_observability()
    try:
        results = asyncio.run(run(args))
    except (DataLayerError, OSError) as e:
        logger.error(f"Data migration failed: {e}")
        print(f"\nERROR: {e}", file=sys.stderr)
        return 1
    finally:
        shutdown_cli_observability()

    print(render_report(results))
    if has_errors(results):
        print("\nSome tables had errors. Review the report above.", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
