"""
Connection Pooling for Database Adapters.

Provides thread-safe connection pooling for tenant and baseline databases.

Features:
- Configurable pool size (default 5)
- Connection health checks on checkout
- Idle connections closed after a timeout
- Pool statistics tracking
- Thread-safe operations with a Condition

Classes:
- PoolStats: Statistics for pool health
- ConnectionPool: Thread-safe connection pool manager
"""

import logging
import threading
import time
from collections.abc import Callable, Generator
from contextlib import contextmanager
from dataclasses import dataclass

from schemafleet.db_opt.db_adapter import DatabaseAdapter

logger = logging.getLogger(__name__)


@dataclass
class PoolStats:
    """Statistics for connection pool health."""

    active_connections: int
    idle_connections: int
    total_connections: int
    max_pool_size: int
    wait_time_ms: float = 0.0
    checkout_count: int = 0
    release_count: int = 0
    discarded_count: int = 0

    def to_dict(self) -> dict:
        """Convert stats to dictionary."""
        return {
            "active_connections": self.active_connections,
            "idle_connections": self.idle_connections,
            "total_connections": self.total_connections,
            "max_pool_size": self.max_pool_size,
            "wait_time_ms": round(self.wait_time_ms, 2),
            "checkout_count": self.checkout_count,
            "release_count": self.release_count,
            "discarded_count": self.discarded_count,
        }


class ConnectionPool:
    """
    Thread-safe connection pool manager.

    Manages a pool of database connections, handling checkout/release,
    health checks, idle expiry and statistics.
    """

    def __init__(
        self,
        adapter_factory: Callable[[], DatabaseAdapter],
        max_size: int = 5,
        idle_timeout: float = 300.0,
        max_wait: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize connection pool.

        Args:
            adapter_factory: Callable that opens a new DatabaseAdapter
            max_size: Maximum number of connections in pool
            idle_timeout: Seconds an idle connection is kept before closing
            max_wait: Seconds to wait for a free connection before failing
        """
        self.adapter_factory = adapter_factory
        self.max_size = max_size
        self.idle_timeout = idle_timeout
        self.max_wait = max_wait
        self._clock = clock

        self._cond = threading.Condition()
        self._idle: list[tuple[DatabaseAdapter, float]] = []
        self._active: set[DatabaseAdapter] = set()
        self._opening = 0

        self.checkout_count = 0
        self.release_count = 0
        self.discarded_count = 0
        self.total_wait_time_ms = 0.0

    def get_connection(self) -> DatabaseAdapter:
        """
        Get a connection from the pool.

        Returns a healthy idle connection if available, opens a new one if
        under max_size, or waits for one to be released.

        Raises:
            TimeoutError: If no connection frees up within max_wait
            Any error raised by adapter_factory when opening a connection
        """
        start_time = time.monotonic()

        while True:
            candidate = None
            with self._cond:
                self._expire_idle_locked()
                while (
                    not self._idle
                    and len(self._active) + self._opening >= self.max_size
                ):
                    remaining = self.max_wait - (time.monotonic() - start_time)
                    if remaining <= 0:
                        logger.error(
                            f"ConnectionPool.get_connection: exceeded max wait time ({self.max_wait}s)"
                        )
                        raise TimeoutError(f"Could not obtain connection within {self.max_wait}s")
                    self._cond.wait(timeout=remaining)

                if self._idle:
                    candidate, _ = self._idle.pop()
                self._opening += 1

            # Health check and connect happen outside the lock
            try:
                if candidate is not None and not self._is_healthy(candidate):
                    logger.warning("ConnectionPool: unhealthy connection discarded")
                    self._close_connection(candidate)
                    with self._cond:
                        self.discarded_count += 1
                    candidate = None
                if candidate is None:
                    candidate = self.adapter_factory()
            except BaseException:
                with self._cond:
                    self._opening -= 1
                    self._cond.notify()
                raise

            with self._cond:
                self._opening -= 1
                self._active.add(candidate)
                self.checkout_count += 1
                self.total_wait_time_ms += (time.monotonic() - start_time) * 1000
                logger.debug(
                    f"ConnectionPool: checked out connection "
                    f"(active={len(self._active)}, idle={len(self._idle)})"
                )
            return candidate

    def release_connection(self, conn: DatabaseAdapter) -> None:
        """
        Return a connection to the pool.

        Raises:
            RuntimeError: If connection not in active set
        """
        healthy = self._is_healthy(conn)
        with self._cond:
            if conn not in self._active:
                logger.error("ConnectionPool.release_connection: connection not in active set")
                raise RuntimeError("Connection not in active pool")

            self._active.remove(conn)
            if healthy:
                self._idle.append((conn, self._clock()))
            else:
                self.discarded_count += 1
            self.release_count += 1
            self._cond.notify()

        if not healthy:
            logger.warning("ConnectionPool: unhealthy connection not returned to pool")
            self._close_connection(conn)

    @contextmanager
    def connection(self) -> Generator[DatabaseAdapter, None, None]:
        """Borrow a connection for the duration of a with-block."""
        conn = self.get_connection()
        try:
            yield conn
        finally:
            self.release_connection(conn)

    def close_idle(self) -> int:
        """Close idle connections older than idle_timeout. Returns how many closed."""
        with self._cond:
            expired = self._expire_idle_locked()
        return expired

    def _expire_idle_locked(self) -> int:
        now = self._clock()
        keep: list[tuple[DatabaseAdapter, float]] = []
        expired: list[DatabaseAdapter] = []
        for conn, since in self._idle:
            if now - since >= self.idle_timeout:
                expired.append(conn)
            else:
                keep.append((conn, since))
        self._idle = keep
        for conn in expired:
            self._close_connection(conn)
        if expired:
            logger.debug(f"ConnectionPool: closed {len(expired)} idle connection(s)")
        return len(expired)

    def pool_stats(self) -> PoolStats:
        """Get current pool statistics."""
        with self._cond:
            avg_wait = (
                self.total_wait_time_ms / self.checkout_count if self.checkout_count > 0 else 0.0
            )
            return PoolStats(
                active_connections=len(self._active),
                idle_connections=len(self._idle),
                total_connections=len(self._active) + len(self._idle),
                max_pool_size=self.max_size,
                wait_time_ms=avg_wait,
                checkout_count=self.checkout_count,
                release_count=self.release_count,
                discarded_count=self.discarded_count,
            )

    def close_all(self) -> None:
        """Close all connections in the pool."""
        with self._cond:
            for conn in self._active:
                self._close_connection(conn)
            for conn, _ in self._idle:
                self._close_connection(conn)
            self._active.clear()
            self._idle.clear()
            self._cond.notify_all()
            logger.debug("ConnectionPool: all connections closed")

    def _is_healthy(self, conn: DatabaseAdapter) -> bool:
        try:
            return conn.ping()
        except Exception as e:
            logger.warning(f"ConnectionPool: health check failed: {e}")
            return False

    def _close_connection(self, conn: DatabaseAdapter) -> None:
        try:
            conn.close()
            logger.debug("ConnectionPool: connection closed")
        except Exception as e:
            logger.error(f"ConnectionPool: error closing connection: {e}")
