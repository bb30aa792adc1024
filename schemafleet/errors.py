"""
Exception hierarchy for schema-fleet.

Catalog errors fail fast to the caller. Per-target errors (LockHeld,
ConnectionFailed, DDLFailed) are raised inside one target's migration and
converted by the executor into history entries; they never abort a run.
"""


class SchemaFleetError(Exception):
    """Base class for all schema-fleet errors."""


# ============================================================
# Ingestion
# ============================================================


class InvalidDeclaration(SchemaFleetError):
    """A schema definition failed structural validation."""

    def __init__(self, problems: list[str]):
        self.problems = list(problems)
        super().__init__("invalid declaration: " + "; ".join(self.problems))


class InvalidVersion(SchemaFleetError):
    """A schema version is not a dotted triple of integers."""

    def __init__(self, value: object):
        self.value = value
        super().__init__(f"invalid schema version {value!r}: expected MAJOR.MINOR.PATCH")


# ============================================================
# Catalog
# ============================================================


class CatalogError(SchemaFleetError):
    """A catalog invariant was violated."""


class VersionNotMonotonic(CatalogError):
    def __init__(self, table_name: str, database_role: str, requested: str, current: str):
        self.table_name = table_name
        self.database_role = database_role
        self.requested = requested
        self.current = current
        super().__init__(
            f"version {requested} for {table_name} ({database_role}) "
            f"must be greater than {current}"
        )


class NoSuchSchema(CatalogError):
    def __init__(self, reference: object):
        self.reference = reference
        super().__init__(f"schema definition not found: {reference}")


class NoSuchBaseline(CatalogError):
    def __init__(self, prev_id: int):
        self.prev_id = prev_id
        super().__init__(f"baseline schema definition {prev_id} does not exist")


class InactiveSchema(CatalogError):
    def __init__(self, schema_id: int):
        self.schema_id = schema_id
        super().__init__(f"schema definition {schema_id} is not the active version")


# ============================================================
# Execution
# ============================================================


class LockHeld(SchemaFleetError):
    def __init__(self, tenant_id: str, table_name: str, owner_id: str | None):
        self.tenant_id = tenant_id
        self.table_name = table_name
        self.owner_id = owner_id
        super().__init__(f"{tenant_id}/{table_name} is locked by {owner_id or 'another owner'}")


class ConnectionFailed(SchemaFleetError):
    def __init__(self, tenant_id: str, database_role: str, reason: str):
        self.tenant_id = tenant_id
        self.database_role = database_role
        self.reason = reason
        super().__init__(f"cannot reach {database_role} database of {tenant_id}: {reason}")


class DDLFailed(SchemaFleetError):
    def __init__(self, statement: str, engine_error: str):
        self.statement = statement
        self.engine_error = engine_error
        super().__init__(f"{engine_error} (statement: {statement})")


class DetectorIntrospectionFailed(SchemaFleetError):
    def __init__(self, table_name: str, reason: str):
        self.table_name = table_name
        self.reason = reason
        super().__init__(f"cannot introspect {table_name}: {reason}")


# ============================================================
# Log retention
# ============================================================


class CleanupInProgress(SchemaFleetError):
    """A log retention run was requested while another is still running."""

    def __init__(self):
        super().__init__("log retention cleanup is already running")
