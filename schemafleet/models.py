"""
Shared vocabulary: enums and the catalog-side records.

Declarations (columns, indexes) live in schemafleet.declaration; this module
holds the rows the catalog, history log and lock manager persist.
"""

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from schemafleet.declaration import Declaration
from schemafleet.versions import SchemaVersion


class DatabaseRole(StrEnum):
    MAIN = "main"
    LOG = "log"
    ORDER = "order"
    STATIC = "static"


class PartitionType(StrEnum):
    NONE = "none"
    TIME = "time"
    STORE = "store"


class Outcome(StrEnum):
    SUCCESS = "success"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class SchemaDefinition:
    """One version of one logical table for one database role."""

    id: int
    table_name: str
    database_role: DatabaseRole
    partition_type: PartitionType
    schema_version: SchemaVersion
    declaration: Declaration
    upgrade_notes: str | None = None
    is_active: bool = True
    created_at: str | None = None
    changes_detected: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "table_name": self.table_name,
            "database_type": str(self.database_role),
            "partition_type": str(self.partition_type),
            "schema_version": str(self.schema_version),
            "schema_definition": self.declaration.to_json(),
            "upgrade_notes": self.upgrade_notes,
            "is_active": self.is_active,
            "created_at": self.created_at,
            "changes_detected": list(self.changes_detected),
        }


@dataclass
class HistoryEntry:
    """One DDL attempt (or skip) against one physical table."""

    tenant_id: str
    database_role: str
    physical_table_name: str
    schema_version: str
    outcome: Outcome
    sql_text: str = ""
    statement_kind: str | None = None
    error_message: str | None = None
    schema_id: int | None = None
    batch_id: str | None = None
    started_at: str | None = None
    finished_at: str | None = None
    duration_ms: float | None = None
    id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "batch_id": self.batch_id,
            "tenant_id": self.tenant_id,
            "database_type": self.database_role,
            "physical_table_name": self.physical_table_name,
            "schema_id": self.schema_id,
            "schema_version": self.schema_version,
            "statement_kind": self.statement_kind,
            "sql_text": self.sql_text,
            "outcome": str(self.outcome),
            "error_message": self.error_message,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "duration_ms": self.duration_ms,
        }


@dataclass(frozen=True)
class LockRecord:
    tenant_id: str
    physical_table_name: str
    owner_id: str
    acquired_at: float
    expires_at: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "physical_table_name": self.physical_table_name,
            "owner_id": self.owner_id,
            "acquired_at": self.acquired_at,
            "expires_at": self.expires_at,
        }
