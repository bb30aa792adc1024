"""
Connection Registry — (tenant, role) to pooled connection.

One ConnectionPool per (tenant_id, database_role), created lazily; the
baseline databases get their own pools under the pseudo-tenant "baseline".
Connections are health-checked on checkout and closed after the idle
timeout (see ConnectionPool).
"""

import logging
import threading
from collections.abc import Callable, Generator
from contextlib import contextmanager
from functools import partial

import pymysql

from schemafleet import config
from schemafleet.db_opt.connection_pool import ConnectionPool
from schemafleet.db_opt.db_adapter import DatabaseAdapter, MySQLAdapter
from schemafleet.errors import ConnectionFailed
from schemafleet.models import DatabaseRole
from schemafleet.target import TargetDatabase
from schemafleet.tenants import DatabaseParams, Tenant, TenantDirectory

logger = logging.getLogger(__name__)

BASELINE_TENANT = "baseline"

AdapterFactory = Callable[[DatabaseParams, bool], DatabaseAdapter]


def baseline_params_from_config() -> DatabaseParams:
    return DatabaseParams(
        host=config.BASELINE_HOST,
        port=config.BASELINE_PORT,
        user=config.BASELINE_USER,
        password=config.BASELINE_PASSWORD,
        database=config.BASELINE_DATABASE,
    )


def mysql_adapter_factory(
    connect_timeout: int = config.CONNECT_TIMEOUT_SECONDS,
    statement_timeout: float = config.STATEMENT_TIMEOUT_SECONDS,
) -> AdapterFactory:
    def open_adapter(params: DatabaseParams, create_database: bool) -> DatabaseAdapter:
        return MySQLAdapter(
            host=params.host,
            port=params.port,
            user=params.user,
            password=params.password,
            database=params.database,
            connect_timeout=connect_timeout,
            statement_timeout=statement_timeout,
            create_database=create_database,
        )

    return open_adapter


class ConnectionRegistry:
    def __init__(
        self,
        tenants: TenantDirectory,
        baseline: DatabaseParams | None = None,
        adapter_factory: AdapterFactory | None = None,
        pool_size: int = config.POOL_SIZE,
        idle_timeout: float = config.POOL_IDLE_TIMEOUT_SECONDS,
        store_query: str = config.STORE_QUERY,
        create_databases: bool = True,
    ):
        """
        Args:
            baseline: Main-role baseline parameters; other roles use
                `<database>_<role>` on the same server.
            adapter_factory: Opens one connection; defaults to MySQL.
            create_databases: Create missing tenant databases on connect.
        """
        self.tenants = tenants
        self.baseline_params = baseline or baseline_params_from_config()
        self.adapter_factory = adapter_factory or mysql_adapter_factory()
        self.pool_size = pool_size
        self.idle_timeout = idle_timeout
        self.store_query = store_query
        self.create_databases = create_databases
        self._pools: dict[tuple[str, str], ConnectionPool] = {}
        self._lock = threading.Lock()

    def _pool(self, tenant_id: str, role: DatabaseRole, params: DatabaseParams, create: bool) -> ConnectionPool:
        key = (tenant_id, str(role))
        with self._lock:
            pool = self._pools.get(key)
            if pool is None:
                pool = ConnectionPool(
                    partial(self.adapter_factory, params, create),
                    max_size=self.pool_size,
                    idle_timeout=self.idle_timeout,
                )
                self._pools[key] = pool
                logger.debug(f"Registry: new pool for {tenant_id}/{role} ({params.describe()})")
            return pool

    def _resolve(self, tenant: Tenant | str) -> Tenant:
        if isinstance(tenant, Tenant):
            return tenant
        found = self.tenants.get(tenant)
        if found is None:
            raise ConnectionFailed(tenant, "main", "unknown tenant")
        return found

    @contextmanager
    def _borrow(self, tenant_id: str, role: DatabaseRole, pool: ConnectionPool) -> Generator[DatabaseAdapter, None, None]:
        try:
            conn = pool.get_connection()
        except (pymysql.MySQLError, OSError, TimeoutError) as e:
            logger.warning(f"Registry: cannot connect to {tenant_id}/{role}: {e}")
            raise ConnectionFailed(tenant_id, str(role), str(e)) from e
        try:
            yield conn
        finally:
            pool.release_connection(conn)

    @contextmanager
    def target(self, tenant: Tenant | str, role: DatabaseRole | str) -> Generator[TargetDatabase, None, None]:
        """
        Borrow a connection to one tenant database.

        Raises:
            ConnectionFailed: the database cannot be reached
        """
        tenant = self._resolve(tenant)
        role = DatabaseRole(role)
        pool = self._pool(tenant.tenant_id, role, tenant.params(role), self.create_databases)
        with self._borrow(tenant.tenant_id, role, pool) as conn:
            if role is DatabaseRole.MAIN:
                stores = partial(self._query_stores, tenant.tenant_id, conn)
            else:
                stores = partial(self.list_stores, tenant)
            yield TargetDatabase(conn, tenant.tenant_id, str(role), stores=stores)

    @contextmanager
    def baseline(self, role: DatabaseRole | str = DatabaseRole.MAIN) -> Generator[TargetDatabase, None, None]:
        """Borrow a connection to the baseline database of *role*."""
        role = DatabaseRole(role)
        params = self.baseline_params
        if role is not DatabaseRole.MAIN:
            params = DatabaseParams(
                host=params.host,
                port=params.port,
                user=params.user,
                password=params.password,
                database=f"{params.database}_{role}",
            )
        pool = self._pool(BASELINE_TENANT, role, params, False)
        with self._borrow(BASELINE_TENANT, role, pool) as conn:
            yield TargetDatabase(conn, BASELINE_TENANT, str(role))

    def list_stores(self, tenant: Tenant | str) -> list[str]:
        """Active store ids of a tenant, read from its main database."""
        tenant = self._resolve(tenant)
        pool = self._pool(tenant.tenant_id, DatabaseRole.MAIN, tenant.main, self.create_databases)
        with self._borrow(tenant.tenant_id, DatabaseRole.MAIN, pool) as conn:
            return self._query_stores(tenant.tenant_id, conn)

    def _query_stores(self, tenant_id: str, conn: DatabaseAdapter) -> list[str]:
        try:
            rows = conn.fetchall(self.store_query)
        except pymysql.MySQLError as e:
            raise ConnectionFailed(tenant_id, "main", f"store query failed: {e}") from e
        stores = []
        for row in rows:
            value = row["store_id"] if "store_id" in row else next(iter(row.values()))
            stores.append(str(value))
        return stores

    def close_idle(self) -> int:
        with self._lock:
            pools = list(self._pools.values())
        return sum(pool.close_idle() for pool in pools)

    def close_all(self) -> None:
        with self._lock:
            pools = list(self._pools.values())
            self._pools.clear()
        for pool in pools:
            pool.close_all()

    def stats(self) -> dict[str, dict]:
        with self._lock:
            items = list(self._pools.items())
        return {f"{tenant}/{role}": pool.pool_stats().to_dict() for (tenant, role), pool in items}
