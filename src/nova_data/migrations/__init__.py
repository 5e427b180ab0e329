"""
Schema migrations and the legacy SQLite importer.
"""

from .engine import (
    MigrationEngine,
    compute_checksum,
    split_statements,
    LEDGER_TABLE,
)
from .legacy_import import (
    LegacyImporter,
    RELATIONAL_TABLES,
    DOCUMENT_TABLES,
)

__all__ = [
    "MigrationEngine",
    "compute_checksum",
    "split_statements",
    "LEDGER_TABLE",
    "LegacyImporter",
    "RELATIONAL_TABLES",
    "DOCUMENT_TABLES",
]
