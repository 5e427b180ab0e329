"""
Schema Migration Engine

Applies versioned SQL files from the migrations directory in ascending
filename order and records each one in the _migrations ledger.

Usage:
    db = await get_data_access()
    engine = MigrationEngine(db)

    applied = await engine.run_migrations()
    path = await engine.create_migration("add_kiosk_location")

Each file runs in its own transaction together with its ledger insert, so a
file is either fully applied and recorded or not applied at all. A whole run
holds a session-level advisory lock, so concurrent runners serialize.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import re
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

from ..database.facade import DataAccessFacade
from ..errors import ChecksumMismatchError, MigrationError
from ..models import LedgerEntry, MigrationState, MigrationStatus, TableImportReport
from ..observability import create_span, record_counter, record_histogram
from .baseline import BASELINE_NAME, render_baseline
from .legacy_import import DEFAULT_TARGETS, LegacyImporter

logger = logging.getLogger(__name__)

LEDGER_TABLE = "_migrations"

LEDGER_DDL = f"""
CREATE TABLE IF NOT EXISTS {LEDGER_TABLE} (
    id SERIAL PRIMARY KEY,
    filename VARCHAR(255) NOT NULL UNIQUE,
    checksum VARCHAR(64) NOT NULL,
    applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
)
"""

LEDGER_INSERT_SQL = f"INSERT INTO {LEDGER_TABLE} (filename, checksum) VALUES ($1, $2)"
LEDGER_SELECT_SQL = f"SELECT filename, checksum, applied_at FROM {LEDGER_TABLE} ORDER BY id"

# Fixed key shared by every runner of this schema
MIGRATION_LOCK_KEY = 4_815_162_342
LOCK_SQL = "SELECT pg_advisory_lock($1)"
UNLOCK_SQL = "SELECT pg_advisory_unlock($1)"

FILENAME_PATTERN = re.compile(r"^\d{14}_[a-z0-9_]+\.sql$")
STATEMENT_DELIMITER = ";"

SCAFFOLD_TEMPLATE = """-- Migration: {name}
-- Created: {created}

-- Write the forward migration below. Statements are separated by semicolons
-- and the whole file runs in one transaction.
--
-- CREATE TABLE IF NOT EXISTS example (
--   id SERIAL PRIMARY KEY,
--   name VARCHAR(255) NOT NULL
-- );

-- Manual rollback, if needed, goes in a sibling file named
-- {stem}_rollback.sql
"""


def compute_checksum(content: str) -> str:
    """SHA-256 hex digest of a migration file's text."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def _is_executable(chunk: str) -> bool:
    for line in chunk.splitlines():
        stripped = line.strip()
        if stripped and not stripped.startswith("--"):
            return True
    return False


def split_statements(sql: str) -> List[str]:
    """
    Split a migration file into statements on ';'.

    Chunks holding only whitespace and '--' comment lines are dropped. The
    split is textual, so semicolons inside string literals or function
    bodies are not supported.
    """
    return [
        chunk.strip()
        for chunk in sql.split(STATEMENT_DELIMITER)
        if _is_executable(chunk)
    ]


def slugify(name: str) -> str:
    """Lowercase name with runs of non-alphanumerics collapsed to '_'."""
    return re.sub(r"[^a-z0-9]+", "_", name.lower()).strip("_")


class MigrationEngine:
    """Forward-only migration runner over the facade's relational backend."""

    def __init__(
        self,
        db: DataAccessFacade,
        migrations_dir: Optional[Union[str, Path]] = None,
        *,
        verify_checksums: bool = True,
    ):
        self.db = db
        self.migrations_dir = Path(migrations_dir or db.config.migrations_dir)
        self.verify_checksums = verify_checksums

    # =========================================================================
    # Running
    # =========================================================================

    async def run_migrations(self) -> List[str]:
        """
        Apply every pending migration in filename order.

        Returns:
            Filenames applied by this run (empty when up to date)

        Raises:
            ChecksumMismatchError: an applied file changed on disk; nothing
                is applied.
            MigrationError: a statement failed; earlier files of this run
                stay applied, the failing file and later ones stay pending.
        """
        applied_now: List[str] = []

        async with self.db.session() as session:
            await session.execute(LOCK_SQL, MIGRATION_LOCK_KEY)
            try:
                await self.ensure_ledger(session)
                files = await self._discover_files()
                ledger = {entry.filename: entry for entry in await self.get_applied_migrations(session)}

                if self.verify_checksums:
                    await self._verify_checksums(ledger, files)

                pending = [f for f in files if f not in ledger]
                if not pending:
                    logger.info("No pending migrations. Database is up to date.")
                    return applied_now

                logger.info(f"Found {len(pending)} pending migration(s)")
                self._warn_out_of_order(pending, ledger)
                for filename in pending:
                    await self.run_migration(filename, session=session)
                    applied_now.append(filename)
            finally:
                try:
                    await session.execute(UNLOCK_SQL, MIGRATION_LOCK_KEY)
                except Exception as e:
                    logger.error(f"Could not release migration lock: {e}")

        logger.info(f"Database migrations completed: {len(applied_now)} applied")
        return applied_now

    @staticmethod
    def _warn_out_of_order(pending: List[str], ledger: Dict[str, LedgerEntry]) -> List[str]:
        """Log pending files that sort before the newest applied one; they are still applied."""
        latest = max(ledger, default=None)
        late = [f for f in pending if latest is not None and f < latest]
        if late:
            logger.warning(
                "Applying %d migration(s) older than the last applied file %s, "
                "ledger order will differ from filename order: %s",
                len(late), latest, ", ".join(late),
            )
        return late

    async def run_migration(self, filename: str, session: Any = None) -> LedgerEntry:
        """
        Apply one migration file and record it in the ledger, atomically.

        Args:
            filename: File name inside the migrations directory
            session: Connection to run on; a pooled one is used when omitted

        Raises:
            MigrationError: chained to the driver error of the failing statement
        """
        sql = await self._read(filename)
        checksum = compute_checksum(sql)
        statements = split_statements(sql)

        async def apply(tx) -> None:
            for index, statement in enumerate(statements):
                try:
                    await tx.execute(statement)
                except Exception as e:
                    raise MigrationError(filename, index, statement, str(e)) from e
            await tx.execute(LEDGER_INSERT_SQL, filename, checksum)

        executor = session if session is not None else self.db
        logger.info(f"Running migration: {filename} ({MigrationState.APPLYING.value})")
        start = time.perf_counter()
        with create_span("db.migration", {"migration.filename": filename}):
            try:
                await executor.transaction(apply)
            except Exception as e:
                logger.error(f"Migration {filename} {MigrationState.FAILED.value}: {e}")
                raise

        duration = time.perf_counter() - start
        record_histogram("migration_duration_seconds", duration, {"migration.filename": filename})
        record_counter("migrations_applied_total", 1)
        logger.info(
            "Migration %s %s in %.1fms", filename, MigrationState.APPLIED.value, duration * 1000,
            extra={"duration_ms": round(duration * 1000, 2)},
        )
        return LedgerEntry(filename=filename, checksum=checksum)

    async def ensure_ledger(self, executor: Any = None) -> None:
        """Create the ledger table if it does not exist."""
        await (executor or self.db).execute(LEDGER_DDL)

    async def get_applied_migrations(self, executor: Any = None) -> List[LedgerEntry]:
        """Ledger rows in the order they were applied."""
        rows = await (executor or self.db).query(LEDGER_SELECT_SQL)
        return [LedgerEntry(**row) for row in rows]

    # =========================================================================
    # Files
    # =========================================================================

    def list_migration_files(self) -> List[str]:
        """Sorted migration filenames on disk, rollback files excluded."""
        if not self.migrations_dir.is_dir():
            return []
        files = sorted(
            p.name for p in self.migrations_dir.glob("*.sql")
            if p.is_file() and "rollback" not in p.name.lower()
        )
        for name in files:
            if not FILENAME_PATTERN.match(name):
                logger.warning(
                    f"Migration {name} does not follow the YYYYMMDDHHMMSS_name.sql convention"
                )
        return files

    async def _discover_files(self) -> List[str]:
        if not self.migrations_dir.is_dir():
            logger.warning(
                f"Migrations directory {self.migrations_dir} not found, writing baseline migration"
            )
            await self._write_new_file(BASELINE_NAME, render_baseline())
        return self.list_migration_files()

    async def _read(self, filename: str) -> str:
        path = self.migrations_dir / filename
        return await asyncio.to_thread(path.read_text, encoding="utf-8")

    async def _verify_checksums(self, ledger: Dict[str, LedgerEntry], files: Sequence[str]) -> None:
        on_disk = set(files)
        for filename, entry in ledger.items():
            if filename not in on_disk:
                logger.warning(f"Applied migration {filename} is missing from {self.migrations_dir}")
                continue
            actual = compute_checksum(await self._read(filename))
            if actual != entry.checksum:
                raise ChecksumMismatchError(filename, entry.checksum, actual)

    async def create_migration(self, name: str) -> Path:
        """
        Scaffold a new, empty migration file.

        The ledger is not touched. An existing file is never overwritten.

        Raises:
            ValueError: name has no alphanumeric characters
            FileExistsError: a file with the generated name already exists
        """
        path = await self._write_new_file(name, None)
        logger.info(f"Created migration: {path}")
        return path

    async def _write_new_file(self, name: str, content: Optional[str]) -> Path:
        slug = slugify(name)
        if not slug:
            raise ValueError(f"Migration name {name!r} has no usable characters")

        now = datetime.now(timezone.utc)
        stem = f"{now.strftime('%Y%m%d%H%M%S')}_{slug}"
        path = self.migrations_dir / f"{stem}.sql"
        if content is None:
            content = SCAFFOLD_TEMPLATE.format(name=slug, created=now.isoformat(), stem=stem)

        def write() -> None:
            self.migrations_dir.mkdir(parents=True, exist_ok=True)
            with open(path, "x", encoding="utf-8") as f:
                f.write(content)

        await asyncio.to_thread(write)
        return path

    # =========================================================================
    # Reporting
    # =========================================================================

    async def status(self) -> List[MigrationStatus]:
        """State of every migration on disk or in the ledger."""
        await self.ensure_ledger()
        ledger = {entry.filename: entry for entry in await self.get_applied_migrations()}
        files = self.list_migration_files()

        statuses = []
        for filename in sorted(set(files) | set(ledger)):
            entry = ledger.get(filename)
            if entry is None:
                statuses.append(MigrationStatus(filename=filename, state=MigrationState.PENDING))
                continue
            state = MigrationState.APPLIED
            if filename in files and compute_checksum(await self._read(filename)) != entry.checksum:
                state = MigrationState.DRIFTED
            statuses.append(MigrationStatus(
                filename=filename,
                state=state,
                checksum=entry.checksum,
                applied_at=entry.applied_at,
            ))
        return statuses

    async def rollback_hint(self) -> Optional[Path]:
        """Manual rollback file for the last applied migration, if one exists."""
        await self.ensure_ledger()
        ledger = await self.get_applied_migrations()
        if not ledger:
            return None
        prefix = ledger[-1].filename.split("_")[0]
        candidates = sorted(self.migrations_dir.glob(f"{prefix}_*rollback*.sql"))
        return candidates[0] if candidates else None

    # =========================================================================
    # Legacy import
    # =========================================================================

    async def migrate_from_sqlite(
        self,
        source_path: Union[str, Path, None] = None,
        *,
        target_databases: Sequence[str] = DEFAULT_TARGETS,
        dry_run: bool = False,
        force: bool = False,
    ) -> Dict[str, Dict[str, TableImportReport]]:
        """Import the legacy SQLite database. See LegacyImporter."""
        importer = LegacyImporter(self.db)
        return await importer.migrate_from_sqlite(
            source_path or self.db.config.sqlite_path,
            target_databases=target_databases,
            dry_run=dry_run,
            force=force,
        )
