"""
Baseline detector: reconcile the baseline databases back into the catalog.

For every database role the detector reads that role's baseline database,
observes each table, and compares it with the active definition:

  in baseline, no definition          -> new definition 1.0.0
  in baseline, definition differs     -> bump(version) with the observed shape
  definition active, not in baseline  -> bump(version) with action DROP
  identical                           -> nothing

Children of partitioned definitions (<t>_store_<id>, <t>_YYYY_MM, ...) are
attributed to their parent; the parent's shape is read from its most recent
child when the parent itself has no template table.

A role whose baseline cannot be read is skipped entirely, so an outage never
turns into DROP proposals.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any

from schemafleet.catalog import SchemaCatalog
from schemafleet.connections import ConnectionRegistry
from schemafleet.declaration import (
    Declaration,
    ObservedSchema,
    TimeInterval,
    parse_declaration,
    validate_identifier,
)
from schemafleet.errors import (
    CatalogError,
    ConnectionFailed,
    DetectorIntrospectionFailed,
    InvalidDeclaration,
)
from schemafleet.models import DatabaseRole, PartitionType, SchemaDefinition
from schemafleet.partitions import partition_pattern
from schemafleet.planner import describe_changes
from schemafleet.versions import INITIAL_VERSION, SchemaVersion

logger = logging.getLogger(__name__)


@dataclass
class Proposal:
    table_name: str
    database_role: DatabaseRole
    partition_type: PartitionType
    new_version: SchemaVersion
    declaration: Declaration
    changes: list[str]
    current_version: SchemaVersion | None = None
    prev_id: int | None = None

    @property
    def kind(self) -> str:
        if self.prev_id is None:
            return "create"
        return "drop" if self.declaration.is_drop else "upgrade"

    @property
    def upgrade_notes(self) -> str:
        return "Detected from baseline: " + "; ".join(self.changes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "table_name": self.table_name,
            "database_type": str(self.database_role),
            "partition_type": str(self.partition_type),
            "kind": self.kind,
            "current_version": str(self.current_version) if self.current_version else None,
            "new_version": str(self.new_version),
            "prev_id": self.prev_id,
            "changes": list(self.changes),
            "upgrade_notes": self.upgrade_notes,
            "schema_definition": self.declaration.to_json(),
        }


@dataclass
class DetectionReport:
    proposals: list[Proposal] = field(default_factory=list)
    errors: list[dict[str, str]] = field(default_factory=list)
    summary: dict[str, dict[str, int]] = field(default_factory=dict)

    @property
    def new_tables(self) -> list[Proposal]:
        return [p for p in self.proposals if p.kind == "create"]

    @property
    def deleted_tables(self) -> list[Proposal]:
        return [p for p in self.proposals if p.kind == "drop"]

    def to_dict(self) -> dict[str, Any]:
        return {
            "proposals": [p.to_dict() for p in self.proposals],
            "new_tables": [p.table_name for p in self.new_tables],
            "deleted_tables": [p.table_name for p in self.deleted_tables],
            "summary": self.summary,
            "errors": list(self.errors),
        }


@dataclass
class SaveReport:
    detection: DetectionReport
    saved: list[SchemaDefinition] = field(default_factory=list)
    failed: list[dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "detection": self.detection.to_dict(),
            "saved": [d.to_dict() for d in self.saved],
            "failed": list(self.failed),
        }


class SchemaDetector:
    def __init__(
        self,
        catalog: SchemaCatalog,
        registry: ConnectionRegistry,
        roles: tuple[DatabaseRole, ...] = tuple(DatabaseRole),
    ):
        self.catalog = catalog
        self.registry = registry
        self.roles = roles

    def detect_all(self) -> DetectionReport:
        """Dry run: compute proposals for every role without saving anything."""
        report = DetectionReport()
        for role in self.roles:
            try:
                self._detect_role(role, report)
            except ConnectionFailed as e:
                failure = DetectorIntrospectionFailed(f"<baseline {role}>", str(e))
                logger.warning(f"Detector: skipping role {role}: {failure}")
                report.errors.append({"database_type": str(role), "table_name": "", "error": str(failure)})
        logger.info(
            f"Detector: {len(report.proposals)} proposal(s), {len(report.errors)} error(s)"
        )
        return report

    def detect_and_save(self) -> SaveReport:
        """Detect, then persist each proposal through the catalog."""
        result = SaveReport(detection=self.detect_all())
        for proposal in result.detection.proposals:
            try:
                saved = self.save_proposal(proposal)
            except (CatalogError, InvalidDeclaration) as e:
                logger.error(f"Detector: could not save {proposal.table_name} ({proposal.database_role}): {e}")
                result.failed.append(
                    {
                        "table_name": proposal.table_name,
                        "database_type": str(proposal.database_role),
                        "error": str(e),
                    }
                )
                continue
            result.saved.append(saved)
        logger.info(f"Detector: saved {len(result.saved)}, failed {len(result.failed)}")
        return result

    def detect_table(self, table_name: str, role: DatabaseRole | str = DatabaseRole.MAIN) -> Proposal | None:
        """
        Compare one logical table of one role with its baseline.

        Same rules as detect_all, restricted to *table_name*. Returns None
        when the catalog already matches (or neither side knows the table).

        Raises:
            ConnectionFailed: the role's baseline cannot be reached
            DetectorIntrospectionFailed: the baseline table cannot be read
            InvalidDeclaration: the baseline table uses unsupported types
        """
        role = DatabaseRole(role)
        validate_identifier(table_name)
        definition = next((d for d in self.catalog.list_all_active(role) if d.table_name == table_name), None)
        active = {table_name: definition} if definition else {}

        with self.registry.baseline(role) as db:
            physical = self._attribute(db.list_tables(), active).get(table_name)
            snapshot = db.observe(physical, strict=True) if physical else None

        if snapshot is None or not snapshot.exists:
            if definition is None or definition.declaration.is_drop:
                logger.info(f"Detector: {role}/{table_name} is in neither the baseline nor the catalog")
                return None
            return self._drop_proposal(role, definition)
        return self._compare(role, table_name, snapshot, definition)

    def baseline_tables(self, role: DatabaseRole | str = DatabaseRole.MAIN) -> list[dict[str, str]]:
        """Physical tables of a role's baseline, each with the logical table it belongs to."""
        role = DatabaseRole(role)
        active = {d.table_name: d for d in self.catalog.list_all_active(role)}
        patterns = self._child_patterns(active)
        with self.registry.baseline(role) as db:
            tables = db.list_tables()
        return [
            {"table_name": table, "logical_table": self._parent_of(table, active, patterns) or table}
            for table in tables
        ]

    def save_proposal(self, proposal: Proposal) -> SchemaDefinition:
        """Persist one proposal as a new catalog version."""
        if proposal.prev_id is None:
            return self.catalog.create_initial_version(
                proposal.declaration,
                proposal.new_version,
                proposal.database_role,
                proposal.partition_type,
                upgrade_notes=proposal.upgrade_notes,
                changes_detected=proposal.changes,
            )
        return self.catalog.upgrade(
            proposal.prev_id,
            proposal.declaration,
            proposal.new_version,
            upgrade_notes=proposal.upgrade_notes,
            changes_detected=proposal.changes,
        )

    # ------------------------------------------------------------------

    def _detect_role(self, role: DatabaseRole, report: DetectionReport) -> None:
        active = {d.table_name: d for d in self.catalog.list_all_active(role)}
        stats = {"tables": 0, "new": 0, "changed": 0, "dropped": 0, "errors": 0}

        with self.registry.baseline(role) as db:
            tables = db.list_tables()
            stats["tables"] = len(tables)
            sources = self._attribute(tables, active)

            observed: dict[str, ObservedSchema] = {}
            present: set[str] = set()
            for logical, physical in sources.items():
                present.add(logical)
                try:
                    snapshot = db.observe(physical, strict=True)
                    if not snapshot.exists:
                        raise DetectorIntrospectionFailed(physical, "table vanished during detection")
                except DetectorIntrospectionFailed as e:
                    logger.warning(f"Detector: {role}/{physical}: {e}")
                    report.errors.append({"database_type": str(role), "table_name": physical, "error": str(e)})
                    stats["errors"] += 1
                    continue
                observed[logical] = snapshot

        for logical, snapshot in observed.items():
            try:
                proposal = self._compare(role, logical, snapshot, active.get(logical))
            except InvalidDeclaration as e:
                logger.warning(f"Detector: {role}/{logical} cannot be expressed as a declaration: {e}")
                report.errors.append({"database_type": str(role), "table_name": logical, "error": str(e)})
                stats["errors"] += 1
                continue
            if proposal is None:
                continue
            report.proposals.append(proposal)
            stats["new" if proposal.kind == "create" else "changed"] += 1

        for name, definition in active.items():
            if name in present or definition.declaration.is_drop:
                continue
            report.proposals.append(self._drop_proposal(role, definition))
            stats["dropped"] += 1

        report.summary[str(role)] = stats

    @staticmethod
    def _child_patterns(active: dict[str, SchemaDefinition]) -> list[tuple[str, re.Pattern]]:
        return [
            (name, partition_pattern(name, d.partition_type, d.declaration.time_interval))
            for name, d in active.items()
            if d.partition_type is not PartitionType.NONE
        ]

    @staticmethod
    def _parent_of(
        table: str, active: dict[str, SchemaDefinition], patterns: list[tuple[str, re.Pattern]]
    ) -> str | None:
        if table in active:
            return None
        return next((name for name, pattern in patterns if pattern.match(table)), None)

    @classmethod
    def _attribute(cls, tables: list[str], active: dict[str, SchemaDefinition]) -> dict[str, str]:
        """
        Map logical table name -> physical table to observe.

        An exact table name wins; otherwise a partitioned definition is read
        from its most recent child (highest name).
        """
        patterns = cls._child_patterns(active)
        table_set = set(tables)
        sources: dict[str, str] = {}
        children: dict[str, list[str]] = {}
        for table in tables:
            parent = cls._parent_of(table, active, patterns)
            if parent is None:
                sources[table] = table
            elif parent not in table_set:
                children.setdefault(parent, []).append(table)
        for parent, names in children.items():
            sources[parent] = max(names)
        return sources

    def _compare(
        self,
        role: DatabaseRole,
        logical: str,
        snapshot: ObservedSchema,
        definition: SchemaDefinition | None,
    ) -> Proposal | None:
        """Raises InvalidDeclaration when the observed table cannot be declared."""
        interval = definition.declaration.time_interval if definition else TimeInterval.MONTH
        # Round-trip so a proposal is always storable and re-readable
        declaration = parse_declaration(snapshot.to_declaration(logical, interval).to_dict())

        if definition is None:
            latest = self.catalog.latest_version(logical, role)
            return Proposal(
                table_name=logical,
                database_role=role,
                partition_type=PartitionType.NONE,
                new_version=latest.bump() if latest else INITIAL_VERSION,
                declaration=declaration,
                changes=["new table"],
            )

        changes = describe_changes(definition.declaration, declaration)
        if not changes:
            return None
        return Proposal(
            table_name=logical,
            database_role=role,
            partition_type=definition.partition_type,
            new_version=self._next_version(definition),
            declaration=declaration,
            changes=changes,
            current_version=definition.schema_version,
            prev_id=definition.id,
        )

    def _drop_proposal(self, role: DatabaseRole, definition: SchemaDefinition) -> Proposal:
        return Proposal(
            table_name=definition.table_name,
            database_role=role,
            partition_type=definition.partition_type,
            new_version=self._next_version(definition),
            declaration=Declaration.drop(definition.table_name, definition.declaration.time_interval),
            changes=["table dropped"],
            current_version=definition.schema_version,
            prev_id=definition.id,
        )

    def _next_version(self, definition: SchemaDefinition) -> SchemaVersion:
        latest = self.catalog.latest_version(definition.table_name, definition.database_role)
        return max(latest or definition.schema_version, definition.schema_version).bump()
