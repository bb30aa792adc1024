"""
Schema Catalog — versioned table definitions.

Identity of a definition is (table_name, database_role, schema_version).
At most one row per (table_name, database_role) is active; versions for the
same pair strictly increase. Superseding the active row and inserting its
successor happen in one transaction.
"""

import json
import logging
from datetime import UTC, datetime

from schemafleet.db_opt.db_adapter import DatabaseAdapter
from schemafleet.declaration import Declaration, parse_declaration
from schemafleet.errors import InvalidDeclaration, NoSuchBaseline, NoSuchSchema, VersionNotMonotonic
from schemafleet.models import DatabaseRole, PartitionType, SchemaDefinition
from schemafleet.versions import SchemaVersion

logger = logging.getLogger(__name__)

_ORDER_BY_VERSION = "version_major DESC, version_minor DESC, version_patch DESC"


def _now() -> str:
    return datetime.now(UTC).isoformat()


def _row_to_definition(row) -> SchemaDefinition:
    changes = row["changes_detected"]
    return SchemaDefinition(
        id=row["id"],
        table_name=row["table_name"],
        database_role=DatabaseRole(row["database_role"]),
        partition_type=PartitionType(row["partition_type"]),
        schema_version=SchemaVersion(row["version_major"], row["version_minor"], row["version_patch"]),
        declaration=parse_declaration(row["definition"]),
        upgrade_notes=row["upgrade_notes"],
        is_active=bool(row["is_active"]),
        created_at=row["created_at"],
        changes_detected=json.loads(changes) if changes else [],
    )


class SchemaCatalog:
    """Persists SchemaDefinition rows in the catalog database."""

    def __init__(self, adapter: DatabaseAdapter):
        self.adapter = adapter

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_initial_version(
        self,
        declaration: Declaration,
        version: SchemaVersion | str,
        database_role: DatabaseRole | str = DatabaseRole.MAIN,
        partition_type: PartitionType | str = PartitionType.NONE,
        upgrade_notes: str | None = None,
        changes_detected: list[str] | None = None,
    ) -> SchemaDefinition:
        """
        Create the first (or a re-seeded) definition for a table.

        When versions already exist for (table_name, role) the new one must
        exceed all of them; it then supersedes the active row.

        Raises:
            VersionNotMonotonic: version <= an existing version
        """
        version = SchemaVersion.parse(version)
        role = DatabaseRole(database_role)
        partition_type = PartitionType(partition_type)

        with self.adapter.transaction():
            self._check_monotonic(declaration.table_name, role, version)
            new_id = self._insert(
                declaration, version, role, partition_type, upgrade_notes, changes_detected
            )

        logger.info(
            f"Catalog: created {declaration.table_name} ({role}) v{version} as #{new_id}"
        )
        return self.get(new_id)

    def upgrade(
        self,
        prev_id: int,
        new_declaration: Declaration,
        new_version: SchemaVersion | str,
        upgrade_notes: str | None = None,
        changes_detected: list[str] | None = None,
    ) -> SchemaDefinition:
        """
        Append a new version after prev_id and make it the active one.

        The partition type and role are inherited from prev_id.

        Raises:
            NoSuchBaseline: prev_id does not exist
            InvalidDeclaration: the declaration names a different table
            VersionNotMonotonic: new_version <= the highest existing version
        """
        new_version = SchemaVersion.parse(new_version)

        with self.adapter.transaction():
            row = self.adapter.fetchone("SELECT * FROM schema_definitions WHERE id = ?", (prev_id,))
            if row is None:
                raise NoSuchBaseline(prev_id)
            if new_declaration.table_name != row["table_name"]:
                raise InvalidDeclaration(
                    [
                        f"tableName {new_declaration.table_name!r} does not match "
                        f"baseline table {row['table_name']!r}"
                    ]
                )
            role = DatabaseRole(row["database_role"])
            self._check_monotonic(row["table_name"], role, new_version)
            new_id = self._insert(
                new_declaration,
                new_version,
                role,
                PartitionType(row["partition_type"]),
                upgrade_notes,
                changes_detected,
            )

        logger.info(
            f"Catalog: upgraded {row['table_name']} ({role}) "
            f"#{prev_id} v{row['schema_version']} -> #{new_id} v{new_version}"
        )
        return self.get(new_id)

    def _check_monotonic(self, table_name: str, role: DatabaseRole, version: SchemaVersion) -> None:
        current = self._max_version(table_name, role)
        if current is not None and version <= current:
            raise VersionNotMonotonic(table_name, str(role), str(version), str(current))

    def _max_version(self, table_name: str, role: DatabaseRole) -> SchemaVersion | None:
        row = self.adapter.fetchone(
            "SELECT version_major, version_minor, version_patch FROM schema_definitions "
            f"WHERE table_name = ? AND database_role = ? ORDER BY {_ORDER_BY_VERSION} LIMIT 1",  # nosec B608
            (table_name, str(role)),
        )
        if row is None:
            return None
        return SchemaVersion(row["version_major"], row["version_minor"], row["version_patch"])

    def _insert(
        self,
        declaration: Declaration,
        version: SchemaVersion,
        role: DatabaseRole,
        partition_type: PartitionType,
        upgrade_notes: str | None,
        changes_detected: list[str] | None,
    ) -> int:
        """Deactivate the current row and insert the new active one. Caller holds the transaction."""
        now = _now()
        self.adapter.execute(
            "UPDATE schema_definitions SET is_active = 0, updated_at = ? "
            "WHERE table_name = ? AND database_role = ? AND is_active = 1",
            (now, declaration.table_name, str(role)),
        )
        cursor = self.adapter.execute(
            """
            INSERT INTO schema_definitions (
                table_name, database_role, partition_type, schema_version,
                version_major, version_minor, version_patch, definition,
                upgrade_notes, changes_detected, is_active, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1, ?, ?)
            """,
            (
                declaration.table_name,
                str(role),
                str(partition_type),
                str(version),
                version.major,
                version.minor,
                version.patch,
                declaration.to_json(),
                upgrade_notes,
                json.dumps(changes_detected) if changes_detected else None,
                now,
                now,
            ),
        )
        return cursor.lastrowid

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, schema_id: int) -> SchemaDefinition:
        row = self.adapter.fetchone("SELECT * FROM schema_definitions WHERE id = ?", (schema_id,))
        if row is None:
            raise NoSuchSchema(schema_id)
        return _row_to_definition(row)

    def get_active(self, table_name: str, database_role: DatabaseRole | str) -> SchemaDefinition | None:
        row = self.adapter.fetchone(
            "SELECT * FROM schema_definitions "
            "WHERE table_name = ? AND database_role = ? AND is_active = 1",
            (table_name, str(DatabaseRole(database_role))),
        )
        return _row_to_definition(row) if row else None

    def find(
        self,
        table_name: str,
        database_role: DatabaseRole | str,
        partition_type: PartitionType | str | None = None,
        version: SchemaVersion | str | None = None,
    ) -> SchemaDefinition:
        """
        Resolve a selector to one definition: the given version, or the
        active one when version is None.

        Raises:
            NoSuchSchema: nothing matches
        """
        role = DatabaseRole(database_role)
        sql = "SELECT * FROM schema_definitions WHERE table_name = ? AND database_role = ?"
        params: list = [table_name, str(role)]
        if partition_type is not None:
            sql += " AND partition_type = ?"
            params.append(str(PartitionType(partition_type)))
        if version is not None:
            v = SchemaVersion.parse(version)
            sql += " AND version_major = ? AND version_minor = ? AND version_patch = ?"
            params.extend([v.major, v.minor, v.patch])
        else:
            sql += " AND is_active = 1"

        row = self.adapter.fetchone(sql, tuple(params))
        if row is None:
            label = f"{table_name} ({role})" + (f" v{version}" if version is not None else "")
            raise NoSuchSchema(label)
        return _row_to_definition(row)

    def history(self, table_name: str, database_role: DatabaseRole | str) -> list[SchemaDefinition]:
        """All versions for (table_name, role): active first, then newest to oldest."""
        rows = self.adapter.fetchall(
            "SELECT * FROM schema_definitions WHERE table_name = ? AND database_role = ? "
            f"ORDER BY is_active DESC, {_ORDER_BY_VERSION}",  # nosec B608
            (table_name, str(DatabaseRole(database_role))),
        )
        return [_row_to_definition(row) for row in rows]

    def list_all_active(self, database_role: DatabaseRole | str | None = None) -> list[SchemaDefinition]:
        if database_role is None:
            rows = self.adapter.fetchall(
                "SELECT * FROM schema_definitions WHERE is_active = 1 ORDER BY database_role, table_name"
            )
        else:
            rows = self.adapter.fetchall(
                "SELECT * FROM schema_definitions WHERE is_active = 1 AND database_role = ? "
                "ORDER BY table_name",
                (str(DatabaseRole(database_role)),),
            )
        return [_row_to_definition(row) for row in rows]

    def latest_version(self, table_name: str, database_role: DatabaseRole | str) -> SchemaVersion | None:
        """Highest version ever stored for (table_name, role), active or not."""
        return self._max_version(table_name, DatabaseRole(database_role))
