"""
Data Layer Models

Report and record shapes returned by the managers and the migration engine.
"""

import traceback
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _utcnow() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(timezone.utc)


class HealthReport(BaseModel):
    """Health of one backend."""

    healthy: bool
    response_time_ms: float
    detail: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None


class LogEntry(BaseModel):
    """
    Base for the best-effort records written to the document store.

    Callers pass ids straight from relational rows (SERIAL integers) and
    arbitrary detail payloads, so both are normalized instead of rejected.
    """

    details: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=_utcnow)

    @field_validator("details", mode="before")
    @classmethod
    def ensure_dict(cls, v: Any) -> Dict[str, Any]:
        if v is None:
            return {}
        if isinstance(v, dict):
            return v
        return {"value": v}

    @field_validator("actor_id", "user_id", mode="before", check_fields=False)
    @classmethod
    def ids_as_text(cls, v: Any) -> Optional[str]:
        return None if v is None else str(v)


class AuditEntry(LogEntry):
    """Append-only audit record."""

    action: str
    actor_id: str
    ip: str = "unknown"
    source: str = "nova-universe"


class SystemLogEntry(LogEntry):
    level: str
    message: str
    source: str


class UserActivityEntry(LogEntry):
    user_id: str
    action: str
    source: str = "nova-universe"


class PerformanceEntry(LogEntry):
    service: str
    endpoint: str
    duration_ms: float


class ErrorLogEntry(LogEntry):
    """An application error; ``error`` holds the exception's name, message and traceback."""

    level: str
    message: str
    source: str
    error: Dict[str, Optional[str]] = Field(default_factory=dict)

    @staticmethod
    def describe(exc: Optional[BaseException]) -> Dict[str, Optional[str]]:
        if exc is None:
            return {}
        return {
            "name": type(exc).__name__,
            "message": str(exc),
            "traceback": "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
        }


class ApiUsageEntry(LogEntry):
    endpoint: str
    method: str
    user_id: Optional[str] = None
    duration_ms: Optional[float] = None


class SearchEntry(LogEntry):
    query: str
    user_id: Optional[str] = None
    results: Optional[int] = None
    duration_ms: Optional[float] = None


class MigrationState(str, Enum):
    """Lifecycle of a migration file."""
    PENDING = "pending"
    APPLYING = "applying"
    APPLIED = "applied"
    FAILED = "failed"
    DRIFTED = "drifted"  # Applied, but the file changed since


class LedgerEntry(BaseModel):
    """A row of the _migrations ledger."""

    filename: str
    checksum: str
    applied_at: Optional[datetime] = None


class MigrationStatus(BaseModel):
    """Status of one migration as reported by MigrationEngine.status()."""

    model_config = ConfigDict(use_enum_values=True)

    filename: str
    state: MigrationState
    checksum: Optional[str] = None
    applied_at: Optional[datetime] = None


class TableImportReport(BaseModel):
    """Outcome of importing one legacy table into one target."""

    records_processed: int = 0
    records_inserted: int = 0
    records_skipped: int = 0
    dry_run: bool = False
    error: Optional[str] = None
    warnings: List[str] = Field(default_factory=list)
