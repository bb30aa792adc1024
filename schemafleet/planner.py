"""
Diff Planner — DDL from (declared Declaration, observed live table).

plan() is pure: it reads nothing and executes nothing. The executor feeds it
an ObservedSchema read from the target and runs the statements in order.

Upgrade plans only ever add or reshape; columns and indexes present live
but absent from the declaration are left in place. Statement order:

  1. ADD COLUMN   (declaration order, each AFTER its declared predecessor)
  2. ADD INDEX    (indexes missing by name)
  3. MODIFY COLUMN (columns whose attributes differ)
  4. DROP INDEX + ADD INDEX pairs (indexes whose fields or uniqueness differ)

Applying a plan and re-planning against the result yields an empty plan.
"""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from enum import StrEnum

from schemafleet.declaration import (
    CURRENT_TIMESTAMP,
    CURRENT_TIMESTAMP_ON_UPDATE,
    DEFAULT_TOKENS,
    NULL_TOKEN,
    NUMERIC_TYPES,
    STRING_TYPES,
    ColumnSpec,
    Declaration,
    IndexSpec,
    ObservedSchema,
    validate_identifier,
)


class StatementKind(StrEnum):
    CREATE = "CREATE"
    ALTER = "ALTER"
    INDEX = "INDEX"
    DROP = "DROP"


class DDLOperation(StrEnum):
    CREATE_TABLE = "create_table"
    DROP_TABLE = "drop_table"
    ADD_COLUMN = "add_column"
    MODIFY_COLUMN = "modify_column"
    ADD_INDEX = "add_index"
    DROP_INDEX = "drop_index"

    @property
    def kind(self) -> StatementKind:
        return _KIND_BY_OPERATION[self]


_KIND_BY_OPERATION = {
    DDLOperation.CREATE_TABLE: StatementKind.CREATE,
    DDLOperation.DROP_TABLE: StatementKind.DROP,
    DDLOperation.ADD_COLUMN: StatementKind.ALTER,
    DDLOperation.MODIFY_COLUMN: StatementKind.ALTER,
    DDLOperation.ADD_INDEX: StatementKind.INDEX,
    DDLOperation.DROP_INDEX: StatementKind.INDEX,
}


@dataclass(frozen=True)
class DDLStatement:
    """
    One planned statement.

    Besides the SQL text it carries the structured operation, so a test
    double can apply it without parsing SQL. For ADD_COLUMN, after=None
    means FIRST.
    """

    operation: DDLOperation
    table: str
    sql: str
    column: ColumnSpec | None = None
    after: str | None = None
    index: IndexSpec | None = None
    index_name: str | None = None
    declaration: Declaration | None = None

    @property
    def kind(self) -> StatementKind:
        return self.operation.kind

    def __str__(self) -> str:
        return self.sql


# ============================================================
# Rendering
# ============================================================


def quote_identifier(name: str) -> str:
    return f"`{validate_identifier(name)}`"


def quote_literal(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace("'", "''")
    return f"'{escaped}'"


def render_type(col: ColumnSpec) -> str:
    sql = col.type
    if col.type in STRING_TYPES and col.length is not None:
        sql += f"({col.length})"
    elif col.type == "DECIMAL" and col.precision is not None:
        sql += f"({col.precision},{col.scale or 0})"
    if col.unsigned and col.type in NUMERIC_TYPES:
        sql += " UNSIGNED"
    return sql


def render_default(value: str) -> str:
    if value in DEFAULT_TOKENS:
        return value
    return quote_literal(value)


def render_column(col: ColumnSpec) -> str:
    """Column definition as used by CREATE TABLE, ADD COLUMN and MODIFY COLUMN."""
    parts = [quote_identifier(col.name), render_type(col)]
    parts.append("NULL" if col.allow_null else "NOT NULL")
    if col.default_value is not None and not (col.default_value == NULL_TOKEN and not col.allow_null):
        parts.append(f"DEFAULT {render_default(col.default_value)}")
    if col.auto_increment:
        parts.append("AUTO_INCREMENT")
    if col.comment:
        parts.append(f"COMMENT {quote_literal(col.comment)}")
    return " ".join(parts)


def render_index_fields(fields: tuple[str, ...]) -> str:
    return ", ".join(quote_identifier(f) for f in fields)


def create_table_sql(declaration: Declaration, table: str) -> str:
    lines = [f"  {render_column(col)}" for col in declaration.columns]
    if declaration.primary_key:
        lines.append(f"  PRIMARY KEY ({render_index_fields(declaration.primary_key)})")
    for idx in declaration.indexes:
        prefix = "UNIQUE KEY" if idx.unique else "KEY"
        lines.append(f"  {prefix} {quote_identifier(idx.name)} ({render_index_fields(idx.fields)})")
    body = ",\n".join(lines)
    return (
        f"CREATE TABLE {quote_identifier(table)} (\n{body}\n) "
        "ENGINE=InnoDB DEFAULT CHARSET=utf8mb4"
    )


# ============================================================
# Comparison
# ============================================================


def _normalized_default(col: ColumnSpec) -> str | None:
    value = col.default_value
    if value is None or value == NULL_TOKEN:
        return None
    if value in (CURRENT_TIMESTAMP, CURRENT_TIMESTAMP_ON_UPDATE):
        return value
    if col.type in NUMERIC_TYPES:
        try:
            return str(Decimal(value).normalize())
        except InvalidOperation:
            return value
    return value


def column_signature(col: ColumnSpec) -> tuple:
    """The attributes MODIFY COLUMN can change, in comparable form."""
    length = None
    if col.type in STRING_TYPES:
        length = col.length if col.length is not None else (1 if col.type == "CHAR" else None)
    decimal = None
    if col.type == "DECIMAL":
        decimal = (col.precision if col.precision is not None else 10, col.scale or 0)
    return (
        col.type,
        length,
        decimal,
        col.allow_null,
        _normalized_default(col),
        col.comment or "",
        col.unsigned if col.type in NUMERIC_TYPES else False,
        col.auto_increment,
    )


def column_differs(declared: ColumnSpec, observed: ColumnSpec) -> bool:
    return column_signature(declared) != column_signature(observed)


def index_signature(idx: IndexSpec) -> tuple:
    return (tuple(f.lower() for f in idx.fields), idx.unique)


def index_differs(declared: IndexSpec, observed: IndexSpec) -> bool:
    return index_signature(declared) != index_signature(observed)


# ============================================================
# Planning
# ============================================================


def plan(
    declaration: Declaration,
    observed: ObservedSchema,
    physical_table: str | None = None,
) -> list[DDLStatement]:
    """
    Compute the ordered DDL that brings *physical_table* to *declaration*.

    Returns an empty list when nothing needs doing (including DROP of a
    table that does not exist).
    """
    table = physical_table or observed.table_name

    if declaration.is_drop:
        if not observed.exists:
            return []
        return [
            DDLStatement(
                operation=DDLOperation.DROP_TABLE,
                table=table,
                sql=f"DROP TABLE {quote_identifier(table)}",
            )
        ]

    if not observed.exists:
        return [
            DDLStatement(
                operation=DDLOperation.CREATE_TABLE,
                table=table,
                sql=create_table_sql(declaration, table),
                declaration=declaration,
            )
        ]

    return _plan_upgrade(declaration, observed, table)


def _plan_upgrade(declaration: Declaration, observed: ObservedSchema, table: str) -> list[DDLStatement]:
    target = quote_identifier(table)
    adds: list[DDLStatement] = []
    index_adds: list[DDLStatement] = []
    modifies: list[DDLStatement] = []
    index_rebuilds: list[DDLStatement] = []

    previous: ColumnSpec | None = None
    for col in declaration.columns:
        live = observed.column(col.name)
        if live is None:
            position = f"AFTER {quote_identifier(previous.name)}" if previous else "FIRST"
            adds.append(
                DDLStatement(
                    operation=DDLOperation.ADD_COLUMN,
                    table=table,
                    sql=f"ALTER TABLE {target} ADD COLUMN {render_column(col)} {position}",
                    column=col,
                    after=previous.name if previous else None,
                )
            )
        elif column_differs(col, live):
            modifies.append(
                DDLStatement(
                    operation=DDLOperation.MODIFY_COLUMN,
                    table=table,
                    sql=f"ALTER TABLE {target} MODIFY COLUMN {render_column(col)}",
                    column=col,
                )
            )
        previous = col

    for idx in declaration.indexes:
        live_idx = observed.index(idx.name)
        if live_idx is None:
            index_adds.append(_add_index(table, idx))
        elif index_differs(idx, live_idx):
            index_rebuilds.append(
                DDLStatement(
                    operation=DDLOperation.DROP_INDEX,
                    table=table,
                    sql=f"ALTER TABLE {target} DROP INDEX {quote_identifier(live_idx.name)}",
                    index_name=live_idx.name,
                )
            )
            index_rebuilds.append(_add_index(table, idx))

    return adds + index_adds + modifies + index_rebuilds


def _add_index(table: str, idx: IndexSpec) -> DDLStatement:
    unique = "UNIQUE " if idx.unique else ""
    return DDLStatement(
        operation=DDLOperation.ADD_INDEX,
        table=table,
        sql=(
            f"ALTER TABLE {quote_identifier(table)} ADD {unique}INDEX "
            f"{quote_identifier(idx.name)} ({render_index_fields(idx.fields)})"
        ),
        index=idx,
    )


# ============================================================
# Change descriptions (detector)
# ============================================================


def describe_changes(current: Declaration, proposed: Declaration) -> list[str]:
    """
    Human-readable differences between two declarations of the same table.

    Column order is ignored; an empty list means the declarations are
    equivalent.
    """
    if current.is_drop != proposed.is_drop:
        return ["table dropped"] if proposed.is_drop else ["table re-created"]
    if proposed.is_drop:
        return []

    changes: list[str] = []
    for col in proposed.columns:
        before = current.column(col.name)
        if before is None:
            changes.append(f"added column {col.name} {render_type(col)}")
        elif column_differs(before, col) or before.primary_key != col.primary_key:
            changes.append(f"changed column {col.name}: {render_column(before)} -> {render_column(col)}")
    for col in current.columns:
        if proposed.column(col.name) is None:
            changes.append(f"removed column {col.name}")

    for idx in proposed.indexes:
        before_idx = current.index(idx.name)
        if before_idx is None:
            changes.append(f"added index {idx.name} ({', '.join(idx.fields)})")
        elif index_differs(before_idx, idx):
            changes.append(f"changed index {idx.name}")
    for idx in current.indexes:
        if proposed.index(idx.name) is None:
            changes.append(f"removed index {idx.name}")
    return changes
