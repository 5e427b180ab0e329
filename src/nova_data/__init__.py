"""
Nova Data

Unified async access to the relational and document stores, plus the
schema migration engine and the legacy SQLite importer.
"""

from .database import (
    BackendKind,
    DataAccessFacade,
    get_data_access,
    close_data_access,
)
from .migrations import MigrationEngine

__all__ = [
    "BackendKind",
    "DataAccessFacade",
    "get_data_access",
    "close_data_access",
    "MigrationEngine",
]

__version__ = "1.0.0"
