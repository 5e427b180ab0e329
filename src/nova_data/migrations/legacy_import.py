"""
Legacy Data Import: SQLite → PostgreSQL / MongoDB

Copies the tables of the old single-file database into the configured
targets. Safe to re-run: rows that already exist are skipped.

Every table is imported in isolation. A failure is recorded on that table's
report and the remaining tables still run; migrate_from_sqlite itself only
raises when the source file is missing.
"""

from __future__ import annotations

import json
import logging
import re
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import aiosqlite

from ..database.facade import DataAccessFacade
from ..errors import ImportTableError
from ..models import TableImportReport
from ..observability import record_counter

logger = logging.getLogger(__name__)

# Dependency order: parents before the tables that reference them
RELATIONAL_TABLES = (
    "users",
    "roles",
    "permissions",
    "user_roles",
    "role_permissions",
    "passkeys",
    "logs",
    "config",
    "kiosks",
    "feedback",
    "notifications",
    "directory_integrations",
    "assets",
    "kiosk_activations",
    "sso_configurations",
    "admin_pins",
)

DOCUMENT_TABLES = ("logs", "feedback", "notifications")

# Tables whose rows the baseline deletes by ON DELETE CASCADE when the parent is cleared
CASCADE_CHILDREN = {
    "users": ("user_roles", "passkeys"),
    "roles": ("user_roles", "role_permissions"),
    "permissions": ("role_permissions",),
}

DEFAULT_TARGETS = ("postgresql", "mongodb")

IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

DESTINATION_COLUMNS_SQL = """
SELECT column_name, data_type
FROM information_schema.columns
WHERE table_schema = current_schema() AND table_name = $1
ORDER BY ordinal_position
"""

RESYNC_SEQUENCE_SQL = (
    "SELECT setval(pg_get_serial_sequence($1, 'id'), "
    "(SELECT COALESCE(MAX(id), 0) + 1 FROM {table}), false)"
)

INTEGER_TYPES = ("smallint", "integer", "bigint", "serial", "bigserial", "int")
TRUE_STRINGS = {"1", "true", "t", "yes", "y", "on"}

# Same namespace for every run so document ids are stable across re-runs
DOCUMENT_ID_NAMESPACE = uuid.uuid5(uuid.NAMESPACE_URL, "nova-universe:legacy-import")


def _quote(identifier: str) -> str:
    if not IDENTIFIER.match(identifier):
        raise ValueError(f"Unsafe identifier: {identifier!r}")
    return f'"{identifier}"'


def _snake_case(name: str) -> str:
    return re.sub(r"(?<=[a-z0-9])([A-Z])", r"_\1", name).lower()


def _rows_affected(status: str) -> int:
    """Row count from a command status such as 'INSERT 0 1'."""
    last = (status or "").rsplit(" ", 1)[-1]
    return int(last) if last.isdigit() else 0


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse ISO text (or epoch seconds/milliseconds) to an aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)):
        seconds = value / 1000 if value > 1e11 else value
        dt = datetime.fromtimestamp(seconds, tz=timezone.utc)
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def coerce_value(value: Any, data_type: str) -> Any:
    """
    Convert a SQLite value to what the driver expects for data_type.

    SQLite stores booleans as 0/1, timestamps as text and JSON as text;
    PostgreSQL wants real booleans, datetimes and valid JSON.
    """
    if value is None:
        return None
    kind = data_type.lower()

    if kind.startswith("bool"):
        if isinstance(value, str):
            return value.strip().lower() in TRUE_STRINGS
        return bool(value)

    if kind in INTEGER_TYPES or kind.startswith("int"):
        return int(value)

    if kind in ("real", "double precision") or kind.startswith("float"):
        return float(value)

    if kind.startswith("numeric") or kind.startswith("decimal"):
        return Decimal(str(value))

    if kind.startswith("timestamp") or kind == "date":
        dt = parse_timestamp(value)
        if dt is None:
            return None
        if kind == "date":
            return dt.date()
        if "with time zone" in kind:
            return dt
        # timestamp without time zone takes naive UTC
        return dt.replace(tzinfo=None)

    if kind in ("json", "jsonb"):
        if isinstance(value, (dict, list)):
            return json.dumps(value)
        try:
            json.loads(value)
            return value
        except (TypeError, ValueError):
            return json.dumps(value)

    if kind in ("text", "character varying", "character", "varchar", "char") and not isinstance(value, str):
        if isinstance(value, bytes):
            return value.decode("utf-8", errors="replace")
        return str(value)

    return value


class LegacyImporter:
    """Imports the legacy SQLite database through the data access facade."""

    def __init__(self, db: DataAccessFacade):
        self.db = db

    async def migrate_from_sqlite(
        self,
        source_path: Union[str, Path],
        *,
        target_databases: Sequence[str] = DEFAULT_TARGETS,
        dry_run: bool = False,
        force: bool = False,
    ) -> Dict[str, Dict[str, TableImportReport]]:
        """
        Import every allow-listed table into each target.

        Args:
            source_path: Path to the legacy SQLite file
            target_databases: "postgresql" and/or "mongodb"
            dry_run: Count source rows only, write nothing
            force: Clear each destination table before importing into it

        Returns:
            {target: {table: TableImportReport}}

        Raises:
            FileNotFoundError: source_path does not exist
        """
        path = Path(source_path)
        if not path.is_file():
            raise FileNotFoundError(f"SQLite database not found: {path}")

        logger.info(
            "Importing legacy data from %s into %s%s",
            path, ", ".join(target_databases), " [DRY RUN]" if dry_run else "",
        )

        results: Dict[str, Dict[str, TableImportReport]] = {}
        uri = path.resolve().as_uri() + "?mode=ro"
        async with aiosqlite.connect(uri, uri=True) as source:
            source.row_factory = aiosqlite.Row
            for target in target_databases:
                if target == "postgresql":
                    tables = RELATIONAL_TABLES
                elif target == "mongodb":
                    tables = DOCUMENT_TABLES
                else:
                    logger.error(f"Unsupported import target: {target}")
                    results[target] = {
                        "_target": TableImportReport(error=f"Unsupported import target '{target}'")
                    }
                    continue

                results[target] = {}
                for table in tables:
                    results[target][table] = await self._import_table(
                        source, table, target, dry_run=dry_run, force=force
                    )

        self._log_summary(results, dry_run)
        return results

    async def _import_table(
        self,
        source: aiosqlite.Connection,
        table: str,
        target: str,
        *,
        dry_run: bool,
        force: bool,
    ) -> TableImportReport:
        try:
            if not await self._source_has_table(source, table):
                message = f"Table {table} not found in SQLite, skipping"
                logger.warning(message)
                return TableImportReport(warnings=[message])

            rows = await self._read_rows(source, table)
            logger.info(f"Migrating {table} → {target}: {len(rows)} rows")

            if dry_run:
                logger.info(f"[DRY RUN] Would migrate {len(rows)} rows from {table}")
                return TableImportReport(records_processed=len(rows), dry_run=True)

            if target == "postgresql":
                report = await self._import_relational(table, rows, force)
                if force and rows:
                    report.warnings.extend(await self._cascade_warnings(source, table))
            else:
                report = await self._import_documents(source, table, rows, force)

            record_counter("legacy_rows_imported_total", report.records_inserted,
                           {"target": target, "table": table})
            return report

        except Exception as e:
            error = e if isinstance(e, ImportTableError) else ImportTableError(table, str(e))
            logger.error(f"{error} (target: {target})")
            return TableImportReport(error=error.reason)

    async def _cascade_warnings(self, source: aiosqlite.Connection, table: str) -> List[str]:
        """Warn about child rows a forced DELETE cascaded away that the source cannot restore."""
        warnings = []
        for child in CASCADE_CHILDREN.get(table, ()):
            if not await self._source_has_table(source, child):
                message = (
                    f"Forced re-import of {table} cascaded into {child}, "
                    f"which is not in the SQLite source; its rows were not restored"
                )
                logger.warning(message)
                warnings.append(message)
        return warnings

    async def _source_has_table(self, source: aiosqlite.Connection, table: str) -> bool:
        async with source.execute(
            "SELECT name FROM sqlite_master WHERE type = 'table' AND name = ?", (table,)
        ) as cursor:
            return await cursor.fetchone() is not None

    async def _read_rows(self, source: aiosqlite.Connection, table: str) -> List[Dict[str, Any]]:
        async with source.execute(f"SELECT * FROM {_quote(table)}") as cursor:
            rows = await cursor.fetchall()
        return [dict(row) for row in rows]

    # =========================================================================
    # Relational target
    # =========================================================================

    async def _destination_columns(self, table: str) -> Dict[str, Tuple[str, str]]:
        """Destination columns keyed by lowercased name: (name, data_type)."""
        rows = await self.db.query(DESTINATION_COLUMNS_SQL, table)
        return {row["column_name"].lower(): (row["column_name"], row["data_type"]) for row in rows}

    def _map_columns(
        self,
        table: str,
        source_columns: Sequence[str],
        destination: Dict[str, Tuple[str, str]],
    ) -> Tuple[List[Tuple[str, str, str]], List[str]]:
        """Pair source columns with destination columns; unmatched ones become warnings."""
        mapping: List[Tuple[str, str, str]] = []
        warnings: List[str] = []
        used = set()
        for column in source_columns:
            if not IDENTIFIER.match(column):
                raise ImportTableError(table, f"unsafe column name {column!r}")
            match = destination.get(column.lower()) or destination.get(_snake_case(column))
            if match is None or match[0] in used:
                warnings.append(f"Column {table}.{column} has no destination column, dropped")
                continue
            used.add(match[0])
            mapping.append((column, match[0], match[1]))
        return mapping, warnings

    async def _import_relational(
        self,
        table: str,
        rows: List[Dict[str, Any]],
        force: bool,
    ) -> TableImportReport:
        report = TableImportReport(records_processed=len(rows))
        if not rows:
            return report

        destination = await self._destination_columns(table)
        if not destination:
            raise ImportTableError(table, "destination table does not exist")

        mapping, warnings = self._map_columns(table, list(rows[0].keys()), destination)
        for warning in warnings:
            logger.warning(warning)
        report.warnings.extend(warnings)
        if not mapping:
            raise ImportTableError(table, "no source columns match the destination table")

        columns = ", ".join(_quote(dest) for _, dest, _ in mapping)
        placeholders = ", ".join(f"${i}" for i in range(1, len(mapping) + 1))
        insert_sql = (
            f"INSERT INTO {_quote(table)} ({columns}) VALUES ({placeholders}) "
            "ON CONFLICT DO NOTHING"
        )
        id_type = destination.get("id", (None, ""))[1].lower()
        resync = id_type in INTEGER_TYPES

        async def load(tx) -> int:
            if force:
                await tx.execute(f"DELETE FROM {_quote(table)}")
            inserted = 0
            for row in rows:
                values = [coerce_value(row.get(src), dtype) for src, _, dtype in mapping]
                inserted += _rows_affected(await tx.execute(insert_sql, *values))
            if resync:
                await tx.execute(RESYNC_SEQUENCE_SQL.format(table=_quote(table)), table)
            return inserted

        inserted = await self.db.transaction(load)
        report.records_inserted = inserted
        report.records_skipped = len(rows) - inserted
        return report

    # =========================================================================
    # Document target
    # =========================================================================

    async def _primary_key(self, source: aiosqlite.Connection, table: str) -> List[str]:
        async with source.execute(f"PRAGMA table_info({_quote(table)})") as cursor:
            info = await cursor.fetchall()
        keyed = sorted((row["pk"], row["name"]) for row in info if row["pk"])
        return [name for _, name in keyed]

    @staticmethod
    def document_id(table: str, row: Dict[str, Any], primary_key: Sequence[str]) -> str:
        """Deterministic _id for a legacy row."""
        if primary_key:
            material = "|".join(str(row.get(column)) for column in primary_key)
        else:
            material = json.dumps(row, sort_keys=True, default=str)
        return str(uuid.uuid5(DOCUMENT_ID_NAMESPACE, f"{table}:{material}"))

    async def _import_documents(
        self,
        source: aiosqlite.Connection,
        table: str,
        rows: List[Dict[str, Any]],
        force: bool,
    ) -> TableImportReport:
        report = TableImportReport(records_processed=len(rows))
        if not rows:
            return report

        primary_key = await self._primary_key(source, table)
        if force:
            await self.db.delete_documents(table, {})

        inserted = 0
        for row in rows:
            key = self.document_id(table, row, primary_key)
            if await self.db.upsert_document(table, key, row):
                inserted += 1
        report.records_inserted = inserted
        report.records_skipped = len(rows) - inserted
        return report

    def _log_summary(self, results: Dict[str, Dict[str, TableImportReport]], dry_run: bool) -> None:
        reports = [report for tables in results.values() for report in tables.values()]
        processed = sum(r.records_processed for r in reports)
        inserted = sum(r.records_inserted for r in reports)
        skipped = sum(r.records_skipped for r in reports)
        errors = sum(1 for r in reports if r.error)
        logger.info(
            "Legacy import %s: processed=%d inserted=%d skipped=%d errors=%d",
            "dry run finished" if dry_run else "finished", processed, inserted, skipped, errors,
        )
