"""
Data Layer Exceptions

Every error raised by the data layer derives from DataLayerError so callers
can catch the whole family at a request boundary.
"""

from typing import Optional


class DataLayerError(Exception):
    """Base exception for data layer errors."""


class ConfigurationError(DataLayerError):
    """Invalid or missing configuration."""


class BackendNotConfiguredError(ConfigurationError):
    """
    A backend was used that was never selected in DATABASES.

    Raised at first use so misconfiguration surfaces at the call site
    instead of as a None dereference further down.
    """

    def __init__(self, kind: str):
        self.kind = kind
        super().__init__(
            f"Backend '{kind}' is not configured. Add it to DATABASES to enable it."
        )


class ChecksumMismatchError(ConfigurationError):
    """An applied migration file no longer matches its ledger checksum."""

    def __init__(self, filename: str, expected: str, actual: str):
        self.filename = filename
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Migration {filename} was modified after being applied "
            f"(ledger checksum {expected[:12]}..., file checksum {actual[:12]}...)"
        )


class BackendConnectionError(DataLayerError, ConnectionError):
    """A pool or client could not be established."""

    def __init__(self, kind: str, message: str):
        self.kind = kind
        super().__init__(f"{kind}: {message}")


class BackendUnavailableError(BackendConnectionError):
    """A selected backend failed to initialize and cannot serve calls."""

    def __init__(self, kind: str):
        super().__init__(kind, "backend failed to initialize and is unavailable")


class StatementError(DataLayerError):
    """A single statement failed."""


class MigrationError(StatementError):
    """
    A statement inside a migration file failed.

    The whole file was rolled back and no ledger row was written, so a
    rerun retries the file from scratch.
    """

    def __init__(
        self,
        filename: str,
        statement_index: int,
        statement: str,
        reason: Optional[str] = None,
    ):
        self.filename = filename
        self.statement_index = statement_index
        self.statement = statement
        preview = " ".join(statement.split())[:120]
        message = f"Migration {filename} failed at statement {statement_index + 1}: {preview}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)


class TransactionError(DataLayerError):
    """BEGIN or COMMIT itself failed."""


class ImportTableError(DataLayerError):
    """One table of a legacy import failed."""

    def __init__(self, table: str, reason: str):
        self.table = table
        self.reason = reason
        super().__init__(f"Import of table '{table}' failed: {reason}")
