"""Database adapters and connection pooling."""

from schemafleet.db_opt.connection_pool import (
    ConnectionPool,
    PoolStats,
)
from schemafleet.db_opt.db_adapter import (
    DatabaseAdapter,
    MySQLAdapter,
    SQLiteAdapter,
)

__all__ = [
    # Adapters
    "DatabaseAdapter",
    "SQLiteAdapter",
    "MySQLAdapter",
    # Connection pooling
    "ConnectionPool",
    "PoolStats",
]
