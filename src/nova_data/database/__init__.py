"""
Database access layer.

Usage:
    from nova_data.database import get_data_access

    db = await get_data_access()
    rows = await db.query("SELECT * FROM users WHERE id = $1", user_id)
"""

from .pool import ConnectionPoolManager, PooledConnection
from .documents import DocumentStoreManager
from .facade import (
    BackendKind,
    DataAccessFacade,
    get_data_access,
    close_data_access,
)

__all__ = [
    "BackendKind",
    "ConnectionPoolManager",
    "PooledConnection",
    "DocumentStoreManager",
    "DataAccessFacade",
    "get_data_access",
    "close_data_access",
]
