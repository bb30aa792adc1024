"""
Tenant directory.

Tenants live in the catalog's `tenants` table. Each has connection
parameters for the main database; the log/order/static databases inherit
any unset field from main, and their database name defaults to
`<main_db>_<role>`.
"""

import logging
from dataclasses import dataclass, field, replace

from schemafleet.db_opt.db_adapter import DatabaseAdapter
from schemafleet.declaration import validate_identifier
from schemafleet.models import DatabaseRole

logger = logging.getLogger(__name__)

_SECONDARY_ROLES = (DatabaseRole.LOG, DatabaseRole.ORDER, DatabaseRole.STATIC)


@dataclass(frozen=True)
class DatabaseParams:
    host: str
    port: int
    user: str
    password: str
    database: str

    def describe(self) -> str:
        """host:port/database, without credentials."""
        return f"{self.host}:{self.port}/{self.database}"


@dataclass(frozen=True)
class Tenant:
    tenant_id: str
    name: str | None
    main: DatabaseParams
    overrides: dict[str, dict] = field(default_factory=dict, compare=False)

    def params(self, role: DatabaseRole | str) -> DatabaseParams:
        """Connection parameters for *role*, with main-database inheritance."""
        role = DatabaseRole(role)
        if role is DatabaseRole.MAIN:
            return self.main
        override = {k: v for k, v in self.overrides.get(str(role), {}).items() if v not in (None, "")}
        override.setdefault("database", f"{self.main.database}_{role}")
        return replace(self.main, **override)


def _row_to_tenant(row) -> Tenant:
    main = DatabaseParams(
        host=row["db_host"],
        port=int(row["db_port"]),
        user=row["db_user"],
        password=row["db_password"],
        database=row["db_name"],
    )
    overrides: dict[str, dict] = {}
    for role in _SECONDARY_ROLES:
        prefix = f"{role}_db_"
        overrides[str(role)] = {
            "host": row[prefix + "host"],
            "port": int(row[prefix + "port"]) if row[prefix + "port"] is not None else None,
            "user": row[prefix + "user"],
            "password": row[prefix + "password"],
            "database": row[prefix + "name"],
        }
    return Tenant(tenant_id=row["tenant_id"], name=row["name"], main=main, overrides=overrides)


class TenantDirectory:
    """Reads and maintains the tenant set in the catalog database."""

    def __init__(self, adapter: DatabaseAdapter):
        self.adapter = adapter

    def active_tenants(self) -> list[Tenant]:
        rows = self.adapter.fetchall("SELECT * FROM tenants WHERE status = 1 ORDER BY tenant_id")
        return [_row_to_tenant(row) for row in rows]

    def get(self, tenant_id: str) -> Tenant | None:
        row = self.adapter.fetchone("SELECT * FROM tenants WHERE tenant_id = ?", (tenant_id,))
        return _row_to_tenant(row) if row else None

    def register(
        self,
        tenant_id: str,
        main: DatabaseParams,
        name: str | None = None,
        overrides: dict[str, DatabaseParams | dict] | None = None,
    ) -> Tenant:
        """
        Insert or replace a tenant (status = 1).

        Args:
            overrides: Optional per-role parameters for log/order/static.
                Missing fields fall back to the main database.
        """
        validate_identifier(main.database)
        columns = ["tenant_id", "name", "status", "db_host", "db_port", "db_user", "db_password", "db_name"]
        values: list = [tenant_id, name, 1, main.host, main.port, main.user, main.password, main.database]

        role_overrides: dict[str, dict] = {}
        for role, params in (overrides or {}).items():
            role = DatabaseRole(role)
            if role is DatabaseRole.MAIN:
                continue
            if isinstance(params, DatabaseParams):
                params = {
                    "host": params.host,
                    "port": params.port,
                    "user": params.user,
                    "password": params.password,
                    "database": params.database,
                }
            role_overrides[str(role)] = dict(params)
            for key, value in params.items():
                column = "name" if key == "database" else key
                columns.append(f"{role}_db_{column}")
                values.append(value)

        placeholders = ", ".join("?" for _ in columns)
        self.adapter.execute(
            f"INSERT OR REPLACE INTO tenants ({', '.join(columns)}) VALUES ({placeholders})",  # nosec B608
            tuple(values),
        )
        logger.info(f"Registered tenant {tenant_id} ({main.describe()})")
        return Tenant(tenant_id=tenant_id, name=name, main=main, overrides=role_overrides)

    def deactivate(self, tenant_id: str) -> bool:
        cursor = self.adapter.execute("UPDATE tenants SET status = 0 WHERE tenant_id = ?", (tenant_id,))
        if cursor.rowcount:
            logger.info(f"Deactivated tenant {tenant_id}")
        return cursor.rowcount > 0
