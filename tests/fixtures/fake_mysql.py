"""
In-memory stand-in for the tenant and baseline MySQL servers.

FakeServer keeps tables as ColumnSpec/IndexSpec lists and applies planned
DDLStatements structurally, so scenario tests can run the real planner,
expander, lock manager and executor without a database server.

FakeRegistry exposes the slice of ConnectionRegistry the executor and the
detector use (target, baseline, list_stores, close_all).
"""

import threading
from collections.abc import Callable, Generator
from contextlib import contextmanager
from dataclasses import dataclass, field, replace

from schemafleet.declaration import ColumnSpec, Declaration, IndexSpec, ObservedSchema
from schemafleet.errors import ConnectionFailed, DDLFailed, DetectorIntrospectionFailed
from schemafleet.models import DatabaseRole
from schemafleet.planner import DDLOperation, DDLStatement
from schemafleet.tenants import Tenant


@dataclass
class FakeTable:
    columns: list[ColumnSpec] = field(default_factory=list)
    indexes: list[IndexSpec] = field(default_factory=list)

    @classmethod
    def from_declaration(cls, declaration: Declaration) -> "FakeTable":
        return cls(columns=list(declaration.columns), indexes=list(declaration.indexes))

    def position(self, name: str) -> int | None:
        for i, col in enumerate(self.columns):
            if col.name.lower() == name.lower():
                return i
        return None


class FakeServer:
    """Databases by name; each database maps table name -> FakeTable."""

    def __init__(self):
        self.databases: dict[str, dict[str, FakeTable]] = {}
        self.stores: dict[str, list[str]] = {}
        self.unreachable: set[str] = set()
        self.fail_when: Callable[[str, DDLStatement], str | None] | None = None
        self.before_execute: Callable[[str, DDLStatement], None] | None = None
        self.executed: list[tuple[str, str]] = []
        self.lock = threading.RLock()

    def database(self, name: str) -> dict[str, FakeTable]:
        with self.lock:
            return self.databases.setdefault(name, {})

    def create_table(self, database: str, declaration: Declaration, name: str | None = None) -> None:
        with self.lock:
            self.database(database)[name or declaration.table_name] = FakeTable.from_declaration(declaration)

    def drop_table(self, database: str, name: str) -> None:
        with self.lock:
            self.database(database).pop(name, None)

    def tables(self, database: str) -> list[str]:
        with self.lock:
            return sorted(self.database(database))

    def table(self, database: str, name: str) -> FakeTable | None:
        with self.lock:
            return self.database(database).get(name)

    def apply(self, database: str, statement: DDLStatement) -> None:
        if self.before_execute is not None:
            self.before_execute(database, statement)
        with self.lock:
            if self.fail_when is not None:
                error = self.fail_when(database, statement)
                if error:
                    raise DDLFailed(statement.sql, error)
            tables = self.database(database)
            op = statement.operation
            existing = tables.get(statement.table)

            if op is DDLOperation.CREATE_TABLE:
                if existing is not None:
                    raise DDLFailed(statement.sql, f"(1050) Table '{statement.table}' already exists")
                tables[statement.table] = FakeTable.from_declaration(statement.declaration)
            elif existing is None:
                raise DDLFailed(statement.sql, f"(1146) Table '{statement.table}' doesn't exist")
            elif op is DDLOperation.DROP_TABLE:
                del tables[statement.table]
            elif op is DDLOperation.ADD_COLUMN:
                if existing.position(statement.column.name) is not None:
                    raise DDLFailed(statement.sql, f"(1060) Duplicate column name '{statement.column.name}'")
                column = replace(statement.column, primary_key=False)
                if statement.after is None:
                    existing.columns.insert(0, column)
                else:
                    existing.columns.insert(existing.position(statement.after) + 1, column)
            elif op is DDLOperation.MODIFY_COLUMN:
                index = existing.position(statement.column.name)
                keep_pk = existing.columns[index].primary_key
                existing.columns[index] = replace(statement.column, primary_key=keep_pk)
            elif op is DDLOperation.ADD_INDEX:
                if any(i.name.lower() == statement.index.name.lower() for i in existing.indexes):
                    raise DDLFailed(statement.sql, f"(1061) Duplicate key name '{statement.index.name}'")
                existing.indexes.append(statement.index)
            elif op is DDLOperation.DROP_INDEX:
                existing.indexes = [i for i in existing.indexes if i.name.lower() != statement.index_name.lower()]
            self.executed.append((database, statement.sql))


class FakeTarget:
    """Duck-typed TargetDatabase over one FakeServer database."""

    def __init__(self, server: FakeServer, database: str, tenant_id: str, role: str, stores=None):
        self.server = server
        self.database = database
        self.tenant_id = tenant_id
        self.database_role = role
        self._stores = stores

    def list_tables(self) -> list[str]:
        return self.server.tables(self.database)

    def table_exists(self, name: str) -> bool:
        return self.server.table(self.database, name) is not None

    def observe(self, name: str, strict: bool = False) -> ObservedSchema:
        with self.server.lock:
            table = self.server.table(self.database, name)
            if table is None:
                return ObservedSchema.missing(name)
            if strict:
                for col in table.columns:
                    if col.type == "ENUM":
                        raise DetectorIntrospectionFailed(col.name, "column type ENUM is not supported")
            return ObservedSchema(
                table_name=name,
                exists=True,
                columns=tuple(table.columns),
                indexes=tuple(table.indexes),
            )

    def execute(self, statement: DDLStatement) -> float:
        self.server.apply(self.database, statement)
        return 0.1

    def list_stores(self) -> list[str]:
        return list(self._stores()) if self._stores else []


class FakeRegistry:
    def __init__(self, server: FakeServer, baseline_database: str = "baseline"):
        self.server = server
        self.baseline_database = baseline_database
        self.closed = False

    def _check(self, tenant_id: str, role: str, database: str) -> None:
        if database in self.server.unreachable:
            raise ConnectionFailed(tenant_id, role, f"(2003) Can't connect to MySQL server for '{database}'")

    @contextmanager
    def target(self, tenant: Tenant, role: DatabaseRole | str) -> Generator[FakeTarget, None, None]:
        role = DatabaseRole(role)
        database = tenant.params(role).database
        self._check(tenant.tenant_id, str(role), database)
        yield FakeTarget(
            self.server,
            database,
            tenant.tenant_id,
            str(role),
            stores=lambda: self.list_stores(tenant),
        )

    @contextmanager
    def baseline(self, role: DatabaseRole | str = DatabaseRole.MAIN) -> Generator[FakeTarget, None, None]:
        role = DatabaseRole(role)
        database = self.baseline_database if role is DatabaseRole.MAIN else f"{self.baseline_database}_{role}"
        self._check("baseline", str(role), database)
        yield FakeTarget(self.server, database, "baseline", str(role))

    def list_stores(self, tenant: Tenant) -> list[str]:
        self._check(tenant.tenant_id, "main", tenant.main.database)
        return list(self.server.stores.get(tenant.tenant_id, []))

    def close_all(self) -> None:
        self.closed = True
