"""
Database Adapter Abstraction Layer.

Provides a unified interface over the two engines schema-fleet talks to:
the SQLite catalog (schema definitions, history, locks, tenants) and the
MySQL tenant/baseline databases that migrations run against.

Classes:
- DatabaseAdapter: Abstract base class defining the database interface
- SQLiteAdapter: SQLite implementation (catalog store, thread-safe)
- MySQLAdapter: MySQL implementation over PyMySQL
"""

import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from collections.abc import Generator
from contextlib import contextmanager
from typing import Any

import pymysql
import pymysql.cursors

logger = logging.getLogger(__name__)


class DatabaseAdapter(ABC):
    """
    Abstract base class for database adapters.

    All adapters must implement execute, executemany, fetchone, fetchall,
    transaction, ping and close. Rows support access by column name.
    """

    @abstractmethod
    def execute(self, sql: str, params: tuple | None = None) -> Any:
        """Execute SQL statement and return cursor."""
        pass

    @abstractmethod
    def executemany(self, sql: str, params_list: list[tuple]) -> None:
        """Execute SQL statement multiple times with different parameters."""
        pass

    @abstractmethod
    def fetchone(self, sql: str, params: tuple | None = None) -> Any | None:
        """Execute SQL and fetch single row."""
        pass

    @abstractmethod
    def fetchall(self, sql: str, params: tuple | None = None) -> list[Any]:
        """Execute SQL and fetch all rows."""
        pass

    @abstractmethod
    @contextmanager
    def transaction(self) -> Generator[None, None, None]:
        """Context manager for database transactions."""
        pass

    @abstractmethod
    def ping(self) -> bool:
        """Return True if the connection is usable."""
        pass

    @abstractmethod
    def close(self) -> None:
        pass


class SQLiteAdapter(DatabaseAdapter):
    """
    SQLite database adapter.

    One connection shared by every worker thread; all access is serialized
    through a re-entrant lock so a transaction block is atomic with respect
    to other threads. The connection runs in autocommit mode and
    transaction() issues explicit BEGIN IMMEDIATE / COMMIT.
    """

    def __init__(self, db_path: str, timeout: float = 30.0):
        """
        Initialize SQLite adapter.

        Args:
            db_path: Path to SQLite database file (":memory:" allowed)
            timeout: Seconds to wait on a locked database file
        """
        self.db_path = db_path
        self.timeout = timeout
        self.conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()
        self._connect()

    def _connect(self) -> None:
        """Create database connection with proper configuration."""
        try:
            self.conn = sqlite3.connect(
                self.db_path,
                timeout=self.timeout,
                isolation_level=None,
                check_same_thread=False,
            )
            self.conn.row_factory = sqlite3.Row
            self.conn.execute("PRAGMA foreign_keys=ON")
            if self.db_path != ":memory:":
                self.conn.execute("PRAGMA journal_mode=WAL")
            logger.debug(f"SQLiteAdapter connected to {self.db_path}")
        except sqlite3.Error as e:
            logger.error(f"SQLiteAdapter connection failed: {e}")
            raise

    def _require_conn(self) -> sqlite3.Connection:
        if self.conn is None:
            logger.error("SQLiteAdapter: connection is None")
            raise RuntimeError("Database connection not initialized")
        return self.conn

    def execute(self, sql: str, params: tuple | None = None) -> sqlite3.Cursor:
        """
        Execute SQL statement.

        Args:
            sql: SQL statement
            params: Query parameters (tuple)

        Returns:
            sqlite3.Cursor object
        """
        conn = self._require_conn()
        with self._lock:
            try:
                if params is None:
                    return conn.execute(sql)
                return conn.execute(sql, params)
            except sqlite3.Error as e:
                logger.error(f"SQLiteAdapter.execute failed: {e}")
                raise

    def executemany(self, sql: str, params_list: list[tuple]) -> None:
        conn = self._require_conn()
        with self._lock:
            try:
                conn.executemany(sql, params_list)
            except sqlite3.Error as e:
                logger.error(f"SQLiteAdapter.executemany failed: {e}")
                raise

    def fetchone(self, sql: str, params: tuple | None = None) -> sqlite3.Row | None:
        with self._lock:
            return self.execute(sql, params).fetchone()

    def fetchall(self, sql: str, params: tuple | None = None) -> list[sqlite3.Row]:
        with self._lock:
            return self.execute(sql, params).fetchall()

    @contextmanager
    def transaction(self) -> Generator[None, None, None]:
        """
        Context manager for transactions.

        Commits on success, rolls back on exception. Holds the adapter lock
        for the whole block.
        """
        conn = self._require_conn()
        with self._lock:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield
            except BaseException as e:
                logger.error(f"SQLiteAdapter.transaction error: {e}")
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    def ping(self) -> bool:
        try:
            self.execute("SELECT 1")
            return True
        except (sqlite3.Error, RuntimeError):
            return False

    def close(self) -> None:
        """Close database connection."""
        with self._lock:
            if self.conn is not None:
                try:
                    self.conn.close()
                    self.conn = None
                    logger.debug("SQLiteAdapter connection closed")
                except sqlite3.Error as e:
                    logger.error(f"SQLiteAdapter.close failed: {e}")
                    raise

    def __enter__(self) -> "SQLiteAdapter":
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()


class MySQLAdapter(DatabaseAdapter):
    """
    MySQL database adapter over PyMySQL.

    Rows come back as dicts. DDL auto-commits in MySQL, so the connection
    runs with autocommit on; read_timeout bounds every statement.
    """

    def __init__(
        self,
        host: str,
        port: int,
        user: str,
        password: str,
        database: str,
        connect_timeout: int = 10,
        statement_timeout: float | None = 60.0,
        create_database: bool = False,
    ):
        """
        Initialize MySQL adapter.

        Args:
            host, port, user, password, database: Connection parameters
            connect_timeout: Seconds allowed for the TCP/auth handshake
            statement_timeout: Seconds allowed for any single statement
            create_database: Create the database (utf8mb4) when missing
        """
        self.host = host
        self.port = port
        self.database = database
        self.conn: pymysql.connections.Connection | None = None
        try:
            self.conn = pymysql.connect(
                host=host,
                port=port,
                user=user,
                password=password,
                database=None if create_database else database,
                connect_timeout=connect_timeout,
                read_timeout=int(statement_timeout) if statement_timeout else None,
                write_timeout=int(statement_timeout) if statement_timeout else None,
                charset="utf8mb4",
                autocommit=True,
                cursorclass=pymysql.cursors.DictCursor,
            )
            if create_database:
                self._ensure_database()
            logger.debug(f"MySQLAdapter connected to {host}:{port}/{database}")
        except pymysql.MySQLError as e:
            logger.error(f"MySQLAdapter connection to {host}:{port}/{database} failed: {e}")
            raise

    def _ensure_database(self) -> None:
        with self.conn.cursor() as cursor:
            cursor.execute(
                "SELECT SCHEMA_NAME FROM INFORMATION_SCHEMA.SCHEMATA WHERE SCHEMA_NAME = %s",
                (self.database,),
            )
            if cursor.fetchone() is None:
                cursor.execute(
                    f"CREATE DATABASE `{self.database}` "
                    "CHARACTER SET utf8mb4 COLLATE utf8mb4_unicode_ci"
                )
                logger.info(f"MySQLAdapter created database {self.database}")
        self.conn.select_db(self.database)

    def _require_conn(self) -> pymysql.connections.Connection:
        if self.conn is None:
            raise RuntimeError("MySQL connection not established")
        return self.conn

    def execute(self, sql: str, params: tuple | None = None) -> Any:
        cursor = self._require_conn().cursor()
        cursor.execute(sql, params)
        return cursor

    def executemany(self, sql: str, params_list: list[tuple]) -> None:
        with self._require_conn().cursor() as cursor:
            cursor.executemany(sql, params_list)

    def fetchone(self, sql: str, params: tuple | None = None) -> dict | None:
        with self._require_conn().cursor() as cursor:
            cursor.execute(sql, params)
            return cursor.fetchone()

    def fetchall(self, sql: str, params: tuple | None = None) -> list[dict]:
        with self._require_conn().cursor() as cursor:
            cursor.execute(sql, params)
            return list(cursor.fetchall())

    @contextmanager
    def transaction(self) -> Generator[None, None, None]:
        """Context manager for transactions (DDL inside still auto-commits)."""
        conn = self._require_conn()
        conn.begin()
        try:
            yield
        except BaseException:
            conn.rollback()
            raise
        conn.commit()

    def ping(self) -> bool:
        if self.conn is None:
            return False
        try:
            self.conn.ping(reconnect=False)
            return True
        except pymysql.MySQLError as e:
            logger.warning(f"MySQLAdapter ping failed for {self.host}/{self.database}: {e}")
            return False

    def close(self) -> None:
        if self.conn is not None:
            try:
                self.conn.close()
            except pymysql.MySQLError as e:
                logger.warning(f"MySQLAdapter.close failed: {e}")
            self.conn = None
            logger.debug("MySQLAdapter connection closed")
