"""
Per-(tenant, physical table) migration locks.

A lock is a row in migration_locks keyed by (tenant_id, physical_table_name).
Acquisition is one conditional upsert: the row is written if absent, expired,
or already ours, and left alone otherwise. There is no read-then-write
window, so two processes sharing the catalog can never both win.

Owner ids look like "<instance>:<pid>:<request id>[:<suffix>]". Everything
before the first ':' is the process identity family that
cleanup_all_on_startup() wipes.
"""

import logging
import os
import time
from collections.abc import Callable, Generator
from contextlib import contextmanager

from schemafleet import config
from schemafleet.db_opt.db_adapter import DatabaseAdapter
from schemafleet.errors import LockHeld
from schemafleet.models import LockRecord
from schemafleet.observability.context import get_request_id

logger = logging.getLogger(__name__)


class LockLease:
    """A held lock, as yielded by LockManager.held()."""

    def __init__(self, manager: "LockManager", tenant_id: str, table: str, owner_id: str, ttl: float):
        self.manager = manager
        self.tenant_id = tenant_id
        self.table = table
        self.owner_id = owner_id
        self.ttl = ttl
        self._renewed_at = time.monotonic()

    def renew_if_due(self) -> bool:
        """
        Extend the lock once more than half the TTL has elapsed since the
        last (re)acquisition. Returns True if a renewal happened.

        Raises:
            LockHeld: the lock expired and was taken by someone else
        """
        if time.monotonic() - self._renewed_at <= self.ttl / 2:
            return False
        if not self.manager.renew(self.tenant_id, self.table, self.owner_id, self.ttl):
            current = self.manager.owner_of(self.tenant_id, self.table)
            raise LockHeld(self.tenant_id, self.table, current)
        self._renewed_at = time.monotonic()
        return True


class LockManager:
    def __init__(
        self,
        adapter: DatabaseAdapter,
        instance: str = config.INSTANCE_IDENTITY,
        default_ttl: float = config.LOCK_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        if ":" in instance:
            raise ValueError(f"instance identity must not contain ':' ({instance!r})")
        self.adapter = adapter
        self.instance = instance
        self.default_ttl = default_ttl
        self._clock = clock

    def owner_id(self, request_id: str | None = None, suffix: str | None = None) -> str:
        """Owner id for this process and the current (or given) request."""
        owner = f"{self.instance}:{os.getpid()}:{request_id or get_request_id() or 'local'}"
        return f"{owner}:{suffix}" if suffix else owner

    def acquire(self, tenant_id: str, table: str, owner_id: str, ttl: float | None = None) -> LockRecord:
        """
        Take the lock for (tenant_id, table).

        An expired record, or one already held by owner_id, is replaced.

        Raises:
            LockHeld: an unexpired record exists with a different owner
        """
        ttl = self.default_ttl if ttl is None else ttl
        now = self._clock()
        expires_at = now + ttl
        cursor = self.adapter.execute(
            """
            INSERT INTO migration_locks (tenant_id, physical_table_name, owner_id, acquired_at, expires_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(tenant_id, physical_table_name) DO UPDATE SET
                owner_id = excluded.owner_id,
                acquired_at = excluded.acquired_at,
                expires_at = excluded.expires_at
            WHERE migration_locks.expires_at <= ? OR migration_locks.owner_id = excluded.owner_id
            """,
            (tenant_id, table, owner_id, now, expires_at, now),
        )
        if cursor.rowcount == 0:
            current = self.owner_of(tenant_id, table)
            logger.info(f"Lock on {tenant_id}/{table} held by {current}; {owner_id} backs off")
            raise LockHeld(tenant_id, table, current)

        logger.debug(f"Lock acquired: {tenant_id}/{table} by {owner_id} (ttl={ttl}s)")
        return LockRecord(tenant_id, table, owner_id, now, expires_at)

    def release(self, tenant_id: str, table: str, owner_id: str) -> bool:
        """Remove the lock if owner_id holds it. A mismatch is logged, not raised."""
        cursor = self.adapter.execute(
            "DELETE FROM migration_locks "
            "WHERE tenant_id = ? AND physical_table_name = ? AND owner_id = ?",
            (tenant_id, table, owner_id),
        )
        if cursor.rowcount == 0:
            logger.warning(
                f"Lock release ignored: {tenant_id}/{table} not held by {owner_id} "
                f"(current owner: {self.owner_of(tenant_id, table)})"
            )
            return False
        logger.debug(f"Lock released: {tenant_id}/{table} by {owner_id}")
        return True

    def renew(self, tenant_id: str, table: str, owner_id: str, ttl: float | None = None) -> bool:
        ttl = self.default_ttl if ttl is None else ttl
        cursor = self.adapter.execute(
            "UPDATE migration_locks SET expires_at = ? "
            "WHERE tenant_id = ? AND physical_table_name = ? AND owner_id = ?",
            (self._clock() + ttl, tenant_id, table, owner_id),
        )
        return cursor.rowcount > 0

    @contextmanager
    def held(
        self, tenant_id: str, table: str, owner_id: str, ttl: float | None = None
    ) -> Generator[LockLease, None, None]:
        """
        Scoped lock: acquired on entry, released on every exit path.

        Raises:
            LockHeld: on entry, if another owner holds the lock
        """
        ttl = self.default_ttl if ttl is None else ttl
        self.acquire(tenant_id, table, owner_id, ttl)
        try:
            yield LockLease(self, tenant_id, table, owner_id, ttl)
        finally:
            self.release(tenant_id, table, owner_id)

    def owner_of(self, tenant_id: str, table: str) -> str | None:
        row = self.adapter.fetchone(
            "SELECT owner_id FROM migration_locks WHERE tenant_id = ? AND physical_table_name = ?",
            (tenant_id, table),
        )
        return row["owner_id"] if row else None

    def cleanup_orphans(self) -> int:
        """Delete expired records. Returns how many were removed."""
        cursor = self.adapter.execute(
            "DELETE FROM migration_locks WHERE expires_at <= ?", (self._clock(),)
        )
        if cursor.rowcount:
            logger.info(f"Removed {cursor.rowcount} expired migration lock(s)")
        return cursor.rowcount

    def cleanup_all_on_startup(self) -> int:
        """
        Delete every lock owned by this process identity family, expired or
        not. Only valid at startup, when no other process of the same
        identity can be running.
        """
        prefix = f"{self.instance}:"
        cursor = self.adapter.execute(
            "DELETE FROM migration_locks WHERE substr(owner_id, 1, ?) = ?",
            (len(prefix), prefix),
        )
        if cursor.rowcount:
            logger.warning(f"Startup: removed {cursor.rowcount} lock(s) left by {self.instance}")
        return cursor.rowcount

    def active_locks(self) -> list[LockRecord]:
        rows = self.adapter.fetchall(
            "SELECT * FROM migration_locks WHERE expires_at > ? ORDER BY tenant_id, physical_table_name",
            (self._clock(),),
        )
        return [
            LockRecord(
                tenant_id=row["tenant_id"],
                physical_table_name=row["physical_table_name"],
                owner_id=row["owner_id"],
                acquired_at=row["acquired_at"],
                expires_at=row["expires_at"],
            )
            for row in rows
        ]

    def force_release(self, tenant_id: str, table: str) -> bool:
        """Remove a lock regardless of owner (operator action on a zombie lock)."""
        previous = self.owner_of(tenant_id, table)
        cursor = self.adapter.execute(
            "DELETE FROM migration_locks WHERE tenant_id = ? AND physical_table_name = ?",
            (tenant_id, table),
        )
        if cursor.rowcount:
            logger.warning(f"Lock on {tenant_id}/{table} force-released (owner was {previous})")
        return cursor.rowcount > 0
