"""
Live view of one tenant (or baseline) database over a borrowed connection.

Reads the live schema through information_schema and normalizes it into the
declaration vocabulary (ColumnSpec/IndexSpec), so a table created from a
declaration observes as equal to that declaration.
"""

import logging
import re
import time
from collections.abc import Callable
from typing import Any

import pymysql

from schemafleet.db_opt.db_adapter import DatabaseAdapter
from schemafleet.declaration import (
    CANONICAL_TYPES,
    CURRENT_TIMESTAMP,
    CURRENT_TIMESTAMP_ON_UPDATE,
    NUMERIC_TYPES,
    STRING_TYPES,
    ColumnSpec,
    IndexSpec,
    ObservedSchema,
    normalize_default,
)
from schemafleet.errors import ConnectionFailed, DDLFailed, DetectorIntrospectionFailed
from schemafleet.planner import DDLStatement

logger = logging.getLogger(__name__)

_COLUMNS_SQL = """
    SELECT COLUMN_NAME AS column_name,
           DATA_TYPE AS data_type,
           COLUMN_TYPE AS column_type,
           CHARACTER_MAXIMUM_LENGTH AS char_length,
           NUMERIC_PRECISION AS numeric_precision,
           NUMERIC_SCALE AS numeric_scale,
           IS_NULLABLE AS is_nullable,
           COLUMN_DEFAULT AS column_default,
           EXTRA AS extra,
           COLUMN_COMMENT AS column_comment
    FROM information_schema.COLUMNS
    WHERE TABLE_SCHEMA = DATABASE() AND TABLE_NAME = %s
    ORDER BY ORDINAL_POSITION
"""

_INDEXES_SQL = """
    SELECT INDEX_NAME AS index_name,
           NON_UNIQUE AS non_unique,
           COLUMN_NAME AS column_name
    FROM information_schema.STATISTICS
    WHERE TABLE_SCHEMA = DATABASE() AND TABLE_NAME = %s
    ORDER BY INDEX_NAME, SEQ_IN_INDEX
"""

_TABLES_SQL = """
    SELECT TABLE_NAME AS table_name
    FROM information_schema.TABLES
    WHERE TABLE_SCHEMA = DATABASE() AND TABLE_TYPE = 'BASE TABLE'
    ORDER BY TABLE_NAME
"""

_CURRENT_TIMESTAMP_RE = re.compile(r"^current_timestamp(\(\d*\))?$", re.IGNORECASE)


def _normalize_information_schema_default(raw: Any, extra: str) -> str | None:
    if raw is None:
        return None
    text = str(raw)
    # MariaDB reports an explicit NULL default as the string NULL
    if text.upper() == "NULL":
        return None
    if _CURRENT_TIMESTAMP_RE.match(text.strip()):
        if "on update current_timestamp" in extra:
            return CURRENT_TIMESTAMP_ON_UPDATE
        return CURRENT_TIMESTAMP
    # MariaDB quotes literal defaults
    if len(text) >= 2 and text[0] == "'" and text[-1] == "'":
        text = text[1:-1].replace("''", "'")
    return normalize_default(text)


def column_from_information_schema(row: dict, primary_key: bool = False, strict: bool = False) -> ColumnSpec:
    """
    Normalize one information_schema.COLUMNS row.

    Args:
        strict: Raise DetectorIntrospectionFailed for a type outside the
            canonical list instead of carrying it through upper-cased.
    """
    name = row["column_name"]
    col_type = str(row["data_type"]).upper()
    if col_type not in CANONICAL_TYPES and strict:
        raise DetectorIntrospectionFailed(name, f"column type {col_type} is not supported")

    column_type = str(row.get("column_type") or "").lower()
    extra = str(row.get("extra") or "").lower()

    length = None
    if col_type in STRING_TYPES and row.get("char_length") is not None:
        length = int(row["char_length"])
    precision = scale = None
    if col_type == "DECIMAL":
        precision = int(row["numeric_precision"]) if row.get("numeric_precision") is not None else None
        scale = int(row["numeric_scale"]) if row.get("numeric_scale") is not None else None

    comment = row.get("column_comment")
    return ColumnSpec(
        name=name,
        type=col_type,
        length=length,
        precision=precision,
        scale=scale,
        allow_null=str(row["is_nullable"]).upper() == "YES",
        default_value=_normalize_information_schema_default(row.get("column_default"), extra),
        comment=comment or None,
        auto_increment="auto_increment" in extra,
        primary_key=primary_key,
        unsigned=col_type in NUMERIC_TYPES and "unsigned" in column_type,
    )


def indexes_from_information_schema(rows: list[dict]) -> tuple[tuple[str, ...], list[IndexSpec]]:
    """Group STATISTICS rows into (primary key fields, secondary indexes)."""
    grouped: dict[str, list[str]] = {}
    unique: dict[str, bool] = {}
    for row in rows:
        name = row["index_name"]
        grouped.setdefault(name, []).append(row["column_name"])
        unique[name] = int(row["non_unique"]) == 0
    primary = tuple(grouped.pop("PRIMARY", ()))
    indexes = [IndexSpec(name=name, fields=tuple(fields), unique=unique[name]) for name, fields in grouped.items()]
    return primary, indexes


class TargetDatabase:
    """
    Schema operations against one database.

    Read failures (list_tables, observe) surface as ConnectionFailed; a
    rejected DDL statement surfaces as DDLFailed.
    """

    def __init__(
        self,
        adapter: DatabaseAdapter,
        tenant_id: str,
        database_role: str,
        stores: Callable[[], list[str]] | None = None,
    ):
        self.adapter = adapter
        self.tenant_id = tenant_id
        self.database_role = database_role
        self._stores = stores

    def _query(self, sql: str, params: tuple | None = None) -> list[dict]:
        try:
            return self.adapter.fetchall(sql, params)
        except pymysql.MySQLError as e:
            raise ConnectionFailed(self.tenant_id, self.database_role, str(e)) from e

    def list_tables(self) -> list[str]:
        return [row["table_name"] for row in self._query(_TABLES_SQL)]

    def table_exists(self, name: str) -> bool:
        rows = self._query(
            "SELECT 1 AS present FROM information_schema.TABLES "
            "WHERE TABLE_SCHEMA = DATABASE() AND TABLE_NAME = %s LIMIT 1",
            (name,),
        )
        return bool(rows)

    def observe(self, name: str, strict: bool = False) -> ObservedSchema:
        column_rows = self._query(_COLUMNS_SQL, (name,))
        if not column_rows:
            return ObservedSchema.missing(name)
        primary, indexes = indexes_from_information_schema(self._query(_INDEXES_SQL, (name,)))
        primary_lower = {f.lower() for f in primary}
        columns = tuple(
            column_from_information_schema(row, row["column_name"].lower() in primary_lower, strict)
            for row in column_rows
        )
        return ObservedSchema(table_name=name, exists=True, columns=columns, indexes=tuple(indexes))

    def execute(self, statement: DDLStatement) -> float:
        """Run one statement; returns its duration in milliseconds."""
        started = time.monotonic()
        try:
            cursor = self.adapter.execute(statement.sql)
            cursor.close()
        except pymysql.MySQLError as e:
            logger.warning(f"DDL rejected on {self.tenant_id}/{statement.table}: {e}")
            raise DDLFailed(statement.sql, str(e)) from e
        return (time.monotonic() - started) * 1000

    def list_stores(self) -> list[str]:
        if self._stores is None:
            return []
        return [str(s) for s in self._stores()]
