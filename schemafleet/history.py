"""
Append-only record of every DDL attempt against a tenant table.

Rows are never updated or deleted by schema-fleet. Within one target the
executor appends in statement order, so id order is statement order.
"""

import logging

from schemafleet.db_opt.db_adapter import DatabaseAdapter
from schemafleet.models import HistoryEntry, Outcome

logger = logging.getLogger(__name__)

_COLUMNS = (
    "batch_id",
    "tenant_id",
    "database_role",
    "physical_table_name",
    "schema_id",
    "schema_version",
    "statement_kind",
    "sql_text",
    "outcome",
    "error_message",
    "started_at",
    "finished_at",
    "duration_ms",
)


def _row_to_entry(row) -> HistoryEntry:
    return HistoryEntry(
        id=row["id"],
        batch_id=row["batch_id"],
        tenant_id=row["tenant_id"],
        database_role=row["database_role"],
        physical_table_name=row["physical_table_name"],
        schema_id=row["schema_id"],
        schema_version=row["schema_version"],
        statement_kind=row["statement_kind"],
        sql_text=row["sql_text"],
        outcome=Outcome(row["outcome"]),
        error_message=row["error_message"],
        started_at=row["started_at"],
        finished_at=row["finished_at"],
        duration_ms=row["duration_ms"],
    )


class HistoryLog:
    def __init__(self, adapter: DatabaseAdapter):
        self.adapter = adapter

    def record(self, entry: HistoryEntry) -> int:
        """Append one entry and return its id."""
        values = (
            entry.batch_id,
            entry.tenant_id,
            str(entry.database_role),
            entry.physical_table_name,
            entry.schema_id,
            entry.schema_version,
            entry.statement_kind,
            entry.sql_text,
            str(entry.outcome),
            entry.error_message,
            entry.started_at,
            entry.finished_at,
            entry.duration_ms,
        )
        placeholders = ", ".join("?" for _ in _COLUMNS)
        cursor = self.adapter.execute(
            f"INSERT INTO migration_history ({', '.join(_COLUMNS)}) VALUES ({placeholders})",  # nosec B608
            values,
        )
        entry.id = cursor.lastrowid
        logger.debug(
            f"History: {entry.outcome} {entry.tenant_id}/{entry.physical_table_name} "
            f"v{entry.schema_version} #{entry.id}"
        )
        return entry.id

    def for_target(self, tenant_id: str, physical_table_name: str) -> list[HistoryEntry]:
        rows = self.adapter.fetchall(
            "SELECT * FROM migration_history WHERE tenant_id = ? AND physical_table_name = ? ORDER BY id",
            (tenant_id, physical_table_name),
        )
        return [_row_to_entry(row) for row in rows]

    def for_batch(self, batch_id: str) -> list[HistoryEntry]:
        rows = self.adapter.fetchall(
            "SELECT * FROM migration_history WHERE batch_id = ? ORDER BY id", (batch_id,)
        )
        return [_row_to_entry(row) for row in rows]

    def recent(self, limit: int = 100) -> list[HistoryEntry]:
        """Newest entries first."""
        rows = self.adapter.fetchall(
            "SELECT * FROM migration_history ORDER BY id DESC LIMIT ?", (limit,)
        )
        return [_row_to_entry(row) for row in rows]
