"""
Log Retention — drop expired time partitions of log-role tables.

For every active log-role definition partitioned by time, and every active
tenant, the children older than the retention window for the definition's
interval are dropped:

  day    -> older than RETENTION_DAYS days
  month  -> older than RETENTION_MONTHS * 30 days
  year   -> older than RETENTION_YEARS * 365 days

Age is measured from the first day of the period the child covers. Each
drop takes the same per-table migration lock the executor uses and is
written to the migration history. After the drops the definitions are
re-executed so the current and forward periods exist.
"""

import logging
import threading
import uuid
from collections.abc import Callable
from dataclasses import asdict, dataclass, field, replace
from datetime import UTC, date, datetime
from typing import Any

from schemafleet import config
from schemafleet.catalog import SchemaCatalog
from schemafleet.connections import ConnectionRegistry
from schemafleet.declaration import Declaration, ObservedSchema, TimeInterval
from schemafleet.errors import CleanupInProgress, ConnectionFailed, DDLFailed, LockHeld
from schemafleet.executor import FanOutExecutor, lock_name
from schemafleet.history import HistoryLog
from schemafleet.locks import LockManager
from schemafleet.models import DatabaseRole, HistoryEntry, Outcome, PartitionType, SchemaDefinition
from schemafleet.partitions import period_start
from schemafleet.planner import plan
from schemafleet.tenants import Tenant, TenantDirectory

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetentionRules:
    day: int = config.RETENTION_DAYS
    month: int = config.RETENTION_MONTHS
    year: int = config.RETENTION_YEARS

    def __post_init__(self):
        for name, value in asdict(self).items():
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise ValueError(f"retention {name} must be a positive integer (got {value!r})")

    def retention_days(self, interval: TimeInterval) -> int:
        if interval is TimeInterval.DAY:
            return self.day
        if interval is TimeInterval.YEAR:
            return self.year * 365
        return self.month * 30

    def describe(self) -> dict[str, str]:
        return {
            "day": f"daily tables kept {self.day} day(s)",
            "month": f"monthly tables kept {self.month} month(s)",
            "year": f"yearly tables kept {self.year} year(s)",
        }

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass
class RetentionReport:
    batch_id: str
    started_at: str
    finished_at: str | None = None
    definitions: int = 0
    tenants: int = 0
    dropped: list[dict[str, str]] = field(default_factory=list)
    skipped: list[dict[str, str]] = field(default_factory=list)
    errors: list[dict[str, str]] = field(default_factory=list)
    forward_batches: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "definitions": self.definitions,
            "tenants": self.tenants,
            "dropped": list(self.dropped),
            "skipped": list(self.skipped),
            "errors": list(self.errors),
            "forward_batches": list(self.forward_batches),
        }


def expired_partitions(
    definition: SchemaDefinition, tables: list[str], today: date, rules: RetentionRules
) -> list[str]:
    """Children of *definition* among *tables* whose period is past retention, oldest first."""
    interval = definition.declaration.time_interval
    limit = rules.retention_days(interval)
    expired = []
    for table in sorted(tables):
        start = period_start(definition.table_name, table, interval)
        if start is not None and (today - start).days > limit:
            expired.append(table)
    return expired


class LogRetention:
    def __init__(
        self,
        catalog: SchemaCatalog,
        tenants: TenantDirectory,
        registry: ConnectionRegistry,
        locks: LockManager,
        history: HistoryLog,
        executor: FanOutExecutor | None = None,
        rules: RetentionRules | None = None,
        today: Callable[[], date] = date.today,
        lock_ttl: float = config.LOCK_TTL_SECONDS,
    ):
        self.catalog = catalog
        self.tenants = tenants
        self.registry = registry
        self.locks = locks
        self.history = history
        self.executor = executor
        self.rules = rules or RetentionRules()
        self.lock_ttl = lock_ttl
        self.last_run: RetentionReport | None = None
        self._today = today
        self._running = threading.Lock()

    @property
    def running(self) -> bool:
        return self._running.locked()

    def update_rules(self, **changes: int) -> RetentionRules:
        """
        Replace some of the retention windows.

        Raises:
            ValueError: an unknown key, or a value that is not a positive integer
        """
        unknown = set(changes) - {"day", "month", "year"}
        if unknown:
            raise ValueError(f"unknown retention rule(s): {sorted(unknown)}")
        self.rules = replace(self.rules, **changes)
        logger.info(f"Retention rules updated: {self.rules.to_dict()}")
        return self.rules

    def status(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "rules": self.rules.to_dict(),
            "description": self.rules.describe(),
            "schedule": config.CLEANUP_CRON,
            "last_run": self.last_run.to_dict() if self.last_run else None,
        }

    def run(self) -> RetentionReport:
        """
        One retention pass over every tenant.

        Raises:
            CleanupInProgress: another pass is running in this process
        """
        if not self._running.acquire(blocking=False):
            raise CleanupInProgress()
        try:
            report = self._run()
        finally:
            self._running.release()
        self.last_run = report
        return report

    def _run(self) -> RetentionReport:
        batch_id = f"cleanup-{uuid.uuid4().hex[:12]}"
        owner_id = self.locks.owner_id(suffix=batch_id)
        report = RetentionReport(batch_id=batch_id, started_at=datetime.now(UTC).isoformat())
        today = self._today()

        definitions = [
            d
            for d in self.catalog.list_all_active(DatabaseRole.LOG)
            if d.partition_type is PartitionType.TIME and not d.declaration.is_drop
        ]
        tenants = self.tenants.active_tenants() if definitions else []
        report.definitions = len(definitions)
        report.tenants = len(tenants)
        logger.info(
            f"Retention {batch_id}: {len(definitions)} log definition(s) x {len(tenants)} tenant(s), "
            f"rules={self.rules.to_dict()}"
        )

        for tenant in tenants:
            for definition in definitions:
                self._clean(tenant, definition, batch_id, owner_id, today, report)

        if self.executor is not None:
            for definition in definitions:
                summary = self.executor.execute_one(definition.id)
                report.forward_batches.append(summary.batch_id)

        report.finished_at = datetime.now(UTC).isoformat()
        logger.info(
            f"Retention {batch_id} done: dropped={len(report.dropped)} "
            f"skipped={len(report.skipped)} errors={len(report.errors)}"
        )
        return report

    def _clean(
        self,
        tenant: Tenant,
        definition: SchemaDefinition,
        batch_id: str,
        owner_id: str,
        today: date,
        report: RetentionReport,
    ) -> None:
        try:
            with self.registry.target(tenant, DatabaseRole.LOG) as db:
                for table in expired_partitions(definition, db.list_tables(), today, self.rules):
                    self._drop(db, tenant, definition, table, batch_id, owner_id, report)
        except ConnectionFailed as e:
            logger.warning(f"Retention {batch_id}: {tenant.tenant_id}/{definition.table_name}: {e}")
            report.errors.append(
                {"tenant_id": tenant.tenant_id, "table_name": definition.table_name, "error": str(e)}
            )

    def _drop(
        self,
        db,
        tenant: Tenant,
        definition: SchemaDefinition,
        table: str,
        batch_id: str,
        owner_id: str,
        report: RetentionReport,
    ) -> None:
        statement = plan(Declaration.drop(table), ObservedSchema(table_name=table, exists=True), table)[0]
        target = {"tenant_id": tenant.tenant_id, "table_name": table}
        try:
            with self.locks.held(tenant.tenant_id, lock_name(DatabaseRole.LOG, table), owner_id, self.lock_ttl):
                started = datetime.now(UTC).isoformat()
                try:
                    duration_ms = db.execute(statement)
                except DDLFailed as e:
                    self._record(
                        tenant, definition, table, batch_id, Outcome.FAILED, statement, started, error=e.engine_error
                    )
                    report.errors.append({**target, "error": e.engine_error})
                    return
                self._record(
                    tenant, definition, table, batch_id, Outcome.SUCCESS, statement, started, duration_ms=duration_ms
                )
        except LockHeld as e:
            self._record(tenant, definition, table, batch_id, Outcome.SKIPPED, error=str(e))
            report.skipped.append({**target, "reason": str(e)})
            return
        logger.info(f"Retention {batch_id}: dropped {tenant.tenant_id}/{table}")
        report.dropped.append(target)

    def _record(
        self,
        tenant: Tenant,
        definition: SchemaDefinition,
        table: str,
        batch_id: str,
        outcome: Outcome,
        statement=None,
        started_at: str | None = None,
        error: str | None = None,
        duration_ms: float | None = None,
    ) -> None:
        finished = datetime.now(UTC).isoformat()
        self.history.record(
            HistoryEntry(
                batch_id=batch_id,
                tenant_id=tenant.tenant_id,
                database_role=str(DatabaseRole.LOG),
                physical_table_name=table,
                schema_id=definition.id,
                schema_version=str(definition.schema_version),
                statement_kind=str(statement.kind) if statement else None,
                sql_text=statement.sql if statement else "",
                outcome=outcome,
                error_message=error,
                started_at=started_at or finished,
                finished_at=finished,
                duration_ms=duration_ms,
            )
        )
