"""
Fan-Out Executor — apply schema definitions across every tenant.

One invocation is one batch. The dispatcher thread enumerates tenants and
expands each definition into physical tables; every (tenant, role, table)
target then runs on the worker pool:

    lock -> observe -> plan -> execute statements in order -> history -> unlock

A target's failure (lock contention, unreachable tenant, rejected DDL) is
recorded and never stops other targets. Cancellation stops new targets and
new statements; statements already running finish.
"""

import contextvars
import logging
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from schemafleet import config
from schemafleet.catalog import SchemaCatalog
from schemafleet.connections import ConnectionRegistry
from schemafleet.errors import ConnectionFailed, DDLFailed, InactiveSchema, LockHeld
from schemafleet.history import HistoryLog
from schemafleet.locks import LockLease, LockManager
from schemafleet.models import DatabaseRole, HistoryEntry, Outcome, PartitionType, SchemaDefinition
from schemafleet.partitions import PartitionExpander
from schemafleet.planner import plan
from schemafleet.tenants import Tenant, TenantDirectory
from schemafleet.versions import SchemaVersion

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(UTC).isoformat()


def lock_name(database_role: DatabaseRole | str, physical_table: str) -> str:
    """Lock key for a physical table; qualified by role since roles are separate databases."""
    return f"{database_role}.{physical_table}"


class CancellationToken:
    """Cooperative cancellation signal shared with the worker threads."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass(frozen=True)
class SchemaSelector:
    """Alternative to a schema id: (table, role[, partition type][, version])."""

    table_name: str
    database_role: DatabaseRole | str = DatabaseRole.MAIN
    partition_type: PartitionType | str | None = None
    schema_version: SchemaVersion | str | None = None


@dataclass
class TargetResult:
    tenant_id: str
    database_role: str
    physical_table_name: str
    schema_id: int
    schema_version: str
    outcome: Outcome
    statements_executed: int = 0
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "database_type": self.database_role,
            "physical_table_name": self.physical_table_name,
            "schema_id": self.schema_id,
            "schema_version": self.schema_version,
            "outcome": str(self.outcome),
            "statements_executed": self.statements_executed,
            "error": self.error,
        }


@dataclass
class ExecutionSummary:
    batch_id: str
    schema_ids: list[int]
    results: list[TargetResult] = field(default_factory=list)
    cancelled: bool = False

    def _count(self, outcome: Outcome) -> int:
        return sum(1 for r in self.results if r.outcome is outcome)

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def succeeded(self) -> int:
        return self._count(Outcome.SUCCESS)

    @property
    def failed(self) -> int:
        return self._count(Outcome.FAILED)

    @property
    def skipped(self) -> int:
        return self._count(Outcome.SKIPPED)

    def to_dict(self) -> dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "schema_ids": list(self.schema_ids),
            "total": self.total,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "cancelled": self.cancelled,
            "results": [r.to_dict() for r in self.results],
        }


@dataclass(frozen=True)
class _Target:
    definition: SchemaDefinition
    tenant: Tenant
    physical_table: str


class FanOutExecutor:
    def __init__(
        self,
        catalog: SchemaCatalog,
        tenants: TenantDirectory,
        registry: ConnectionRegistry,
        locks: LockManager,
        history: HistoryLog,
        expander: PartitionExpander | None = None,
        workers: int = config.WORKER_COUNT,
        lock_ttl: float = config.LOCK_TTL_SECONDS,
    ):
        if workers < 1:
            raise ValueError("workers must be >= 1")
        self.catalog = catalog
        self.tenants = tenants
        self.registry = registry
        self.locks = locks
        self.history = history
        self.expander = expander or PartitionExpander()
        self.workers = workers
        self.lock_ttl = lock_ttl

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def execute_one(
        self,
        schema: int | SchemaSelector,
        allow_inactive: bool = False,
        cancel: CancellationToken | None = None,
    ) -> ExecutionSummary:
        """
        Fan out one schema definition to every active tenant.

        Raises:
            NoSuchSchema: the id or selector matches nothing
            InactiveSchema: the definition is superseded and allow_inactive is False
        """
        definition = self.resolve(schema)
        if not definition.is_active and not allow_inactive:
            raise InactiveSchema(definition.id)
        return self._run([definition], cancel or CancellationToken())

    def execute_all(self, cancel: CancellationToken | None = None) -> ExecutionSummary:
        """Fan out every active schema definition in one batch."""
        return self._run(self.catalog.list_all_active(), cancel or CancellationToken())

    def resolve(self, schema: int | SchemaSelector) -> SchemaDefinition:
        if isinstance(schema, SchemaSelector):
            return self.catalog.find(
                schema.table_name,
                schema.database_role,
                schema.partition_type,
                schema.schema_version,
            )
        return self.catalog.get(schema)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _run(self, definitions: list[SchemaDefinition], cancel: CancellationToken) -> ExecutionSummary:
        batch_id = f"batch-{uuid.uuid4().hex[:12]}"
        owner_id = self.locks.owner_id(suffix=batch_id)
        summary = ExecutionSummary(batch_id=batch_id, schema_ids=[d.id for d in definitions])
        tenants = self.tenants.active_tenants()

        logger.info(
            f"Batch {batch_id}: {len(definitions)} definition(s) x {len(tenants)} tenant(s), "
            f"workers={self.workers}"
        )

        futures: list[tuple[_Target, Future]] = []
        seen: set[tuple[str, str, str]] = set()
        with ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="schemafleet-exec") as pool:
            for definition in definitions:
                for tenant in tenants:
                    if cancel.cancelled:
                        break
                    tables = self._expand(definition, tenant, batch_id, summary)
                    for table in tables:
                        key = (tenant.tenant_id, str(definition.database_role), table)
                        if key in seen:
                            logger.warning(f"Batch {batch_id}: duplicate target {key} ignored")
                            continue
                        seen.add(key)
                        target = _Target(definition, tenant, table)
                        ctx = contextvars.copy_context()
                        futures.append(
                            (target, pool.submit(ctx.run, self._migrate, target, batch_id, owner_id, cancel))
                        )

            for target, future in futures:
                try:
                    summary.results.append(future.result())
                except Exception as e:
                    logger.exception(
                        f"Batch {batch_id}: unexpected error on "
                        f"{target.tenant.tenant_id}/{target.physical_table}"
                    )
                    self._record(target, batch_id, Outcome.FAILED, error=str(e))
                    summary.results.append(self._result(target, Outcome.FAILED, error=str(e)))

        summary.cancelled = cancel.cancelled
        logger.info(
            f"Batch {batch_id} done: total={summary.total} succeeded={summary.succeeded} "
            f"failed={summary.failed} skipped={summary.skipped}"
            + (" (cancelled)" if summary.cancelled else "")
        )
        return summary

    def _expand(
        self, definition: SchemaDefinition, tenant: Tenant, batch_id: str, summary: ExecutionSummary
    ) -> list[str]:
        """Physical tables of one definition on one tenant; an unreachable tenant is recorded as failed."""
        needs_listing = definition.partition_type is PartitionType.STORE or (
            definition.partition_type is PartitionType.TIME and definition.declaration.is_drop
        )
        if not needs_listing:
            return self.expander.expand(definition.declaration, definition.partition_type, _NoListing())
        try:
            with self.registry.target(tenant, definition.database_role) as db:
                return self.expander.expand(definition.declaration, definition.partition_type, db)
        except ConnectionFailed as e:
            target = _Target(definition, tenant, definition.table_name)
            logger.warning(f"Batch {batch_id}: cannot expand {definition.table_name} on {tenant.tenant_id}: {e}")
            self._record(target, batch_id, Outcome.FAILED, error=str(e))
            summary.results.append(self._result(target, Outcome.FAILED, error=str(e)))
            return []

    # ------------------------------------------------------------------
    # Per-target work (worker threads)
    # ------------------------------------------------------------------

    def _migrate(self, target: _Target, batch_id: str, owner_id: str, cancel: CancellationToken) -> TargetResult:
        if cancel.cancelled:
            return self._result(target, Outcome.SKIPPED, error="cancelled")

        tenant_id = target.tenant.tenant_id
        lock = lock_name(target.definition.database_role, target.physical_table)
        try:
            with self.locks.held(tenant_id, lock, owner_id, self.lock_ttl) as lease:
                return self._apply(target, batch_id, lease, cancel)
        except LockHeld as e:
            self._record(target, batch_id, Outcome.SKIPPED, error=str(e))
            return self._result(target, Outcome.SKIPPED, error=str(e))

    def _apply(
        self, target: _Target, batch_id: str, lease: LockLease, cancel: CancellationToken
    ) -> TargetResult:
        definition = target.definition
        table = target.physical_table
        executed = 0
        try:
            with self.registry.target(target.tenant, definition.database_role) as db:
                statements = plan(definition.declaration, db.observe(table), table)
                if not statements:
                    reason = "table does not exist" if definition.declaration.is_drop else "already up to date"
                    self._record(target, batch_id, Outcome.SKIPPED, error=reason)
                    return self._result(target, Outcome.SKIPPED, error=reason)

                for statement in statements:
                    if cancel.cancelled and executed == 0:
                        self._record(target, batch_id, Outcome.SKIPPED, error="cancelled")
                        return self._result(target, Outcome.SKIPPED, error="cancelled")
                    if cancel.cancelled:
                        # Partially applied; the next run plans the remainder
                        reason = f"cancelled after {executed} of {len(statements)} statement(s)"
                        self._record(target, batch_id, Outcome.FAILED, error=reason)
                        return self._result(target, Outcome.FAILED, executed, reason)
                    lease.renew_if_due()
                    started = _now()
                    try:
                        duration_ms = db.execute(statement)
                    except DDLFailed as e:
                        self._record(
                            target,
                            batch_id,
                            Outcome.FAILED,
                            sql=statement.sql,
                            kind=str(statement.kind),
                            error=e.engine_error,
                            started_at=started,
                        )
                        return self._result(target, Outcome.FAILED, executed, e.engine_error)
                    self._record(
                        target,
                        batch_id,
                        Outcome.SUCCESS,
                        sql=statement.sql,
                        kind=str(statement.kind),
                        started_at=started,
                        duration_ms=duration_ms,
                    )
                    executed += 1
        except ConnectionFailed as e:
            self._record(target, batch_id, Outcome.FAILED, error=str(e))
            return self._result(target, Outcome.FAILED, executed, str(e))
        except LockHeld as e:
            error = f"lock lost mid-plan: {e}"
            self._record(target, batch_id, Outcome.FAILED, error=error)
            return self._result(target, Outcome.FAILED, executed, error)

        logger.info(f"Migrated {target.tenant.tenant_id}/{table}: {executed} statement(s)")
        return self._result(target, Outcome.SUCCESS, executed)

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    def _record(
        self,
        target: _Target,
        batch_id: str,
        outcome: Outcome,
        sql: str = "",
        kind: str | None = None,
        error: str | None = None,
        started_at: str | None = None,
        duration_ms: float | None = None,
    ) -> int:
        finished = _now()
        return self.history.record(
            HistoryEntry(
                batch_id=batch_id,
                tenant_id=target.tenant.tenant_id,
                database_role=str(target.definition.database_role),
                physical_table_name=target.physical_table,
                schema_id=target.definition.id,
                schema_version=str(target.definition.schema_version),
                statement_kind=kind,
                sql_text=sql,
                outcome=outcome,
                error_message=error,
                started_at=started_at or finished,
                finished_at=finished,
                duration_ms=duration_ms,
            )
        )

    @staticmethod
    def _result(
        target: _Target, outcome: Outcome, statements_executed: int = 0, error: str | None = None
    ) -> TargetResult:
        return TargetResult(
            tenant_id=target.tenant.tenant_id,
            database_role=str(target.definition.database_role),
            physical_table_name=target.physical_table,
            schema_id=target.definition.id,
            schema_version=str(target.definition.schema_version),
            outcome=outcome,
            statements_executed=statements_executed,
            error=error,
        )


class _NoListing:
    """PartitionSource for expansions that need nothing from the tenant."""

    def list_tables(self) -> list[str]:
        return []

    def list_stores(self) -> list[str]:
        return []
