"""
Tests for the fan-out executor.

Runs the real catalog, lock manager, history log, planner and expander
against FakeServer tenant databases.

Tests cover:
- First rollout to every tenant (CREATE) and idempotent re-runs
- Upgrades producing one history entry per statement
- Store and time partitions, including DROP of existing children
- Lock contention between concurrent batches, and a lease lost mid-plan
- A rejected statement stops that target only; unexpected worker errors
- Unreachable tenants
- Cancellation, including a partially applied target
- A baseline-detected DROP rolled out to tenants with and without the table
- Selector resolution and inactive definitions
"""

import threading
import time
from datetime import date

import pytest

from schemafleet.declaration import parse_declaration
from schemafleet.errors import InactiveSchema, NoSuchSchema
from schemafleet.executor import CancellationToken, ExecutionSummary, SchemaSelector, lock_name
from schemafleet.models import Outcome, PartitionType
from schemafleet.observability import RequestContext
from schemafleet.partitions import PartitionExpander
from tests.fixtures import declaration, tenant_params

USER_INFO_V1 = [
    {"name": "id", "type": "INT", "primaryKey": True, "autoIncrement": True},
    {"name": "name", "type": "VARCHAR", "length": 100},
]


@pytest.fixture
def three_tenants(services):
    for tenant_id in ("t1", "t2", "t3"):
        services.tenants.register(tenant_id, tenant_params(f"tenant_{tenant_id}"))
    return ["t1", "t2", "t3"]


def outcomes(summary: ExecutionSummary) -> dict[tuple[str, str], Outcome]:
    return {(r.tenant_id, r.physical_table_name): r.outcome for r in summary.results}


def declaration_drop(table_name):
    return parse_declaration({"tableName": table_name, "action": "DROP"})


class TestFirstRollout:
    """A new table reaches every tenant exactly once."""

    def test_creates_table_on_every_tenant(self, services, fake_server, three_tenants):
        v1 = services.catalog.create_initial_version(declaration("user_info", USER_INFO_V1), "1.0.0")
        summary = services.executor.execute_one(v1.id)

        assert summary.total == 3
        assert summary.succeeded == 3
        for tenant_id in three_tenants:
            assert fake_server.tables(f"tenant_{tenant_id}") == ["user_info"]
            entries = services.history.for_target(tenant_id, "user_info")
            assert len(entries) == 1
            assert entries[0].outcome is Outcome.SUCCESS
            assert entries[0].statement_kind == "CREATE"
            assert entries[0].sql_text.startswith("CREATE TABLE `user_info`")
            assert entries[0].batch_id == summary.batch_id
            assert entries[0].schema_id == v1.id

    def test_rerun_is_skipped_as_up_to_date(self, services, fake_server, three_tenants):
        v1 = services.catalog.create_initial_version(declaration("user_info", USER_INFO_V1), "1.0.0")
        services.executor.execute_one(v1.id)
        executed_before = len(fake_server.executed)

        summary = services.executor.execute_one(v1.id)
        assert summary.skipped == 3
        assert len(fake_server.executed) == executed_before
        assert {r.error for r in summary.results} == {"already up to date"}

    def test_no_locks_left_behind(self, services, three_tenants):
        v1 = services.catalog.create_initial_version(declaration("user_info", USER_INFO_V1), "1.0.0")
        services.executor.execute_one(v1.id)
        assert services.locks.active_locks() == []

    def test_no_tenants_is_an_empty_batch(self, services):
        v1 = services.catalog.create_initial_version(declaration("user_info", USER_INFO_V1), "1.0.0")
        summary = services.executor.execute_one(v1.id)
        assert summary.total == 0
        assert summary.schema_ids == [v1.id]


class TestUpgrade:
    """An upgrade is applied as ordered ALTER statements, one history entry each."""

    def test_add_column_and_index(self, services, fake_server, three_tenants):
        v1 = services.catalog.create_initial_version(declaration("user_info", USER_INFO_V1), "1.0.0")
        services.executor.execute_one(v1.id)

        v2 = services.catalog.upgrade(
            v1.id,
            declaration(
                "user_info",
                USER_INFO_V1 + [{"name": "email", "type": "VARCHAR", "length": 255}],
                [{"name": "idx_email", "fields": ["email"], "unique": True}],
            ),
            "1.1.0",
        )
        summary = services.executor.execute_one(v2.id)
        assert summary.succeeded == 3
        assert all(r.statements_executed == 2 for r in summary.results)

        entries = [e for e in services.history.for_target("t2", "user_info") if e.batch_id == summary.batch_id]
        assert [e.sql_text for e in entries] == [
            "ALTER TABLE `user_info` ADD COLUMN `email` VARCHAR(255) NULL AFTER `name`",
            "ALTER TABLE `user_info` ADD UNIQUE INDEX `idx_email` (`email`)",
        ]
        assert [e.statement_kind for e in entries] == ["ALTER", "INDEX"]
        table = fake_server.table("tenant_t2", "user_info")
        assert [c.name for c in table.columns] == ["id", "name", "email"]

    def test_superseded_version_needs_allow_inactive(self, services, three_tenants):
        v1 = services.catalog.create_initial_version(declaration("user_info", USER_INFO_V1), "1.0.0")
        services.catalog.upgrade(v1.id, declaration("user_info", USER_INFO_V1), "1.0.1")
        with pytest.raises(InactiveSchema):
            services.executor.execute_one(v1.id)
        summary = services.executor.execute_one(v1.id, allow_inactive=True)
        assert summary.succeeded == 3


class TestStorePartitions:
    """Store-partitioned tables expand per tenant store list."""

    def test_one_table_per_store(self, services, fake_server):
        services.tenants.register("t1", tenant_params("tenant_t1"))
        services.tenants.register("t2", tenant_params("tenant_t2"))
        fake_server.stores = {"t1": ["1", "2"], "t2": ["5"]}
        v1 = services.catalog.create_initial_version(
            declaration("orders", [{"name": "id", "type": "BIGINT", "primaryKey": True}]),
            "1.0.0",
            partition_type=PartitionType.STORE,
        )
        summary = services.executor.execute_one(v1.id)

        assert sorted(outcomes(summary)) == [
            ("t1", "orders_store_1"),
            ("t1", "orders_store_2"),
            ("t2", "orders_store_5"),
        ]
        assert fake_server.tables("tenant_t1") == ["orders_store_1", "orders_store_2"]
        assert fake_server.tables("tenant_t2") == ["orders_store_5"]

    def test_drop_removes_existing_children_only(self, services, fake_server):
        services.tenants.register("t1", tenant_params("tenant_t1"))
        fake_server.stores = {"t1": ["1", "2", "3"]}
        decl = declaration("orders", [{"name": "id", "type": "BIGINT", "primaryKey": True}])
        fake_server.create_table("tenant_t1", decl, "orders_store_1")
        fake_server.create_table("tenant_t1", decl, "orders_store_2")
        fake_server.create_table("tenant_t1", decl, "orders_archive")

        v1 = services.catalog.create_initial_version(decl, "1.0.0", partition_type="store")
        v2 = services.catalog.upgrade(v1.id, declaration_drop("orders"), "2.0.0")
        summary = services.executor.execute_one(v2.id)

        assert sorted(outcomes(summary)) == [("t1", "orders_store_1"), ("t1", "orders_store_2")]
        assert fake_server.tables("tenant_t1") == ["orders_archive"]


class TestTimePartitions:
    def test_current_and_forward_months(self, services, fake_server):
        services.executor.expander = PartitionExpander(forward_periods=2, today=lambda: date(2026, 12, 3))
        services.tenants.register("t1", tenant_params("tenant_t1"))
        v1 = services.catalog.create_initial_version(
            declaration("event_log", [{"name": "id", "type": "BIGINT"}]),
            "1.0.0",
            partition_type=PartitionType.TIME,
        )
        summary = services.executor.execute_one(v1.id)
        assert summary.succeeded == 3
        assert fake_server.tables("tenant_t1") == ["event_log_2026_12", "event_log_2027_01", "event_log_2027_02"]


class TestLockContention:
    """Two concurrent batches never both migrate the same target."""

    def test_concurrent_batch_skips_locked_target(self, services, fake_server):
        services.tenants.register("t1", tenant_params("tenant_t1"))
        v1 = services.catalog.create_initial_version(declaration("user_info", USER_INFO_V1), "1.0.0")

        first_holds_lock = threading.Event()
        second_done = threading.Event()

        def block_first_batch(database, statement):
            if not first_holds_lock.is_set():
                first_holds_lock.set()
                assert second_done.wait(timeout=5)

        fake_server.before_execute = block_first_batch
        results = {}

        def run_first():
            results["first"] = services.executor.execute_one(v1.id)

        worker = threading.Thread(target=run_first)
        worker.start()
        assert first_holds_lock.wait(timeout=5)

        held = services.locks.active_locks()
        assert [lock.physical_table_name for lock in held] == [lock_name("main", "user_info")]

        results["second"] = services.executor.execute_one(v1.id)
        second_done.set()
        worker.join(timeout=5)

        first, second = results["first"], results["second"]
        assert first.succeeded == 1
        assert second.skipped == 1
        assert "locked by" in second.results[0].error

        entries = services.history.for_target("t1", "user_info")
        assert sorted(e.outcome for e in entries) == [Outcome.SKIPPED, Outcome.SUCCESS]
        assert [e.batch_id for e in entries if e.outcome is Outcome.SUCCESS] == [first.batch_id]
        assert len([sql for db, sql in fake_server.executed if sql.startswith("CREATE TABLE")]) == 1

    def test_foreign_lock_skips_target(self, services, fake_server):
        services.tenants.register("t1", tenant_params("tenant_t1"))
        services.tenants.register("t2", tenant_params("tenant_t2"))
        services.locks.acquire("t1", lock_name("main", "user_info"), "other-host/schemafleet:1:req-x")
        v1 = services.catalog.create_initial_version(declaration("user_info", USER_INFO_V1), "1.0.0")

        summary = services.executor.execute_one(v1.id)
        assert outcomes(summary) == {("t1", "user_info"): Outcome.SKIPPED, ("t2", "user_info"): Outcome.SUCCESS}
        assert fake_server.tables("tenant_t1") == []

    def test_lock_lost_between_statements_fails_target(self, services, fake_server):
        """An expired lease taken over by another owner stops the plan before the next statement."""
        services.tenants.register("t1", tenant_params("tenant_t1"))
        v1 = services.catalog.create_initial_version(declaration("user_info", USER_INFO_V1), "1.0.0")
        services.executor.execute_one(v1.id)
        v2 = services.catalog.upgrade(
            v1.id,
            declaration("user_info", USER_INFO_V1 + [{"name": "a", "type": "INT"}, {"name": "b", "type": "INT"}]),
            "1.1.0",
        )
        key = lock_name("main", "user_info")
        thief = "other-host/schemafleet:9:req-thief"

        def expire_and_steal(database, statement):
            if services.locks.owner_of("t1", key) != thief:
                time.sleep(0.3)
                services.locks.acquire("t1", key, thief)

        services.executor.lock_ttl = 0.2
        fake_server.before_execute = expire_and_steal
        summary = services.executor.execute_one(v2.id)

        result = summary.results[0]
        assert result.outcome is Outcome.FAILED
        assert result.statements_executed == 1
        assert result.error.startswith("lock lost mid-plan:")
        assert thief in result.error
        assert [c.name for c in fake_server.table("tenant_t1", "user_info").columns] == ["id", "name", "a"]

        entries = [e for e in services.history.for_target("t1", "user_info") if e.batch_id == summary.batch_id]
        assert [e.outcome for e in entries] == [Outcome.SUCCESS, Outcome.FAILED]
        assert [lock.owner_id for lock in services.locks.active_locks()] == [thief]


class TestPartialFailure:
    """A rejected statement stops its target; other targets continue."""

    def test_mid_plan_failure(self, services, fake_server):
        services.tenants.register("t1", tenant_params("tenant_t1"))
        user_v1 = services.catalog.create_initial_version(declaration("user_info", USER_INFO_V1), "1.0.0")
        orders = services.catalog.create_initial_version(
            declaration("orders", [{"name": "id", "type": "BIGINT", "primaryKey": True}]), "1.0.0"
        )
        services.executor.execute_all()

        services.catalog.upgrade(
            user_v1.id,
            declaration(
                "user_info",
                [
                    USER_INFO_V1[0],
                    {"name": "name", "type": "INT"},
                    {"name": "email", "type": "VARCHAR", "length": 255},
                ],
                [{"name": "idx_email", "fields": ["email"]}],
            ),
            "1.1.0",
        )
        services.catalog.upgrade(
            orders.id,
            declaration(
                "orders",
                [{"name": "id", "type": "BIGINT", "primaryKey": True}, {"name": "total", "type": "DECIMAL", "precision": 12, "scale": 2}],
            ),
            "1.1.0",
        )

        def reject_modify(database, statement):
            if statement.table == "user_info" and statement.kind == "ALTER" and "MODIFY" in statement.sql:
                return "(1366) Incorrect integer value for column 'name'"
            return None

        fake_server.fail_when = reject_modify
        summary = services.executor.execute_all()

        assert outcomes(summary) == {("t1", "user_info"): Outcome.FAILED, ("t1", "orders"): Outcome.SUCCESS}
        failed = next(r for r in summary.results if r.physical_table_name == "user_info")
        assert failed.statements_executed == 2
        assert "Incorrect integer value" in failed.error

        entries = [e for e in services.history.for_target("t1", "user_info") if e.batch_id == summary.batch_id]
        assert [(e.outcome, e.statement_kind) for e in entries] == [
            (Outcome.SUCCESS, "ALTER"),
            (Outcome.SUCCESS, "INDEX"),
            (Outcome.FAILED, "ALTER"),
        ]
        assert "MODIFY COLUMN `name` INT" in entries[-1].sql_text
        assert entries[-1].error_message == "(1366) Incorrect integer value for column 'name'"
        assert [c.name for c in fake_server.table("tenant_t1", "orders").columns] == ["id", "total"]
        assert services.locks.active_locks() == []

    def test_unexpected_worker_error_is_recorded(self, services, fake_server, three_tenants, monkeypatch):
        v1 = services.catalog.create_initial_version(declaration("user_info", USER_INFO_V1), "1.0.0")

        def broken_plan(declaration, observed, table):
            raise RuntimeError("planner blew up")

        monkeypatch.setattr("schemafleet.executor.plan", broken_plan)
        summary = services.executor.execute_one(v1.id)

        assert summary.failed == 3
        assert {r.error for r in summary.results} == {"planner blew up"}
        for tenant_id in three_tenants:
            entries = services.history.for_target(tenant_id, "user_info")
            assert [(e.outcome, e.error_message) for e in entries] == [(Outcome.FAILED, "planner blew up")]
            assert entries[0].batch_id == summary.batch_id
        assert services.locks.active_locks() == []


class TestUnreachableTenant:
    def test_unreachable_tenant_fails_others_succeed(self, services, fake_server, three_tenants):
        fake_server.unreachable.add("tenant_t2")
        v1 = services.catalog.create_initial_version(declaration("user_info", USER_INFO_V1), "1.0.0")
        summary = services.executor.execute_one(v1.id)

        assert outcomes(summary) == {
            ("t1", "user_info"): Outcome.SUCCESS,
            ("t2", "user_info"): Outcome.FAILED,
            ("t3", "user_info"): Outcome.SUCCESS,
        }
        entries = services.history.for_target("t2", "user_info")
        assert entries[0].outcome is Outcome.FAILED
        assert "cannot reach main database of t2" in entries[0].error_message

    def test_unreachable_store_enumeration(self, services, fake_server):
        services.tenants.register("t1", tenant_params("tenant_t1"))
        services.tenants.register("t2", tenant_params("tenant_t2"))
        fake_server.stores = {"t1": ["1"], "t2": ["1"]}
        fake_server.unreachable.add("tenant_t1")
        v1 = services.catalog.create_initial_version(
            declaration("orders", [{"name": "id", "type": "INT"}]), "1.0.0", partition_type="store"
        )
        summary = services.executor.execute_one(v1.id)
        assert outcomes(summary) == {("t1", "orders"): Outcome.FAILED, ("t2", "orders_store_1"): Outcome.SUCCESS}


class TestCancellation:
    def test_cancel_before_start(self, services, fake_server, three_tenants):
        v1 = services.catalog.create_initial_version(declaration("user_info", USER_INFO_V1), "1.0.0")
        token = CancellationToken()
        token.cancel()
        summary = services.executor.execute_one(v1.id, cancel=token)
        assert summary.cancelled
        assert summary.total == 0
        assert fake_server.executed == []

    def test_cancel_between_statements(self, services, fake_server):
        services.tenants.register("t1", tenant_params("tenant_t1"))
        v1 = services.catalog.create_initial_version(declaration("user_info", USER_INFO_V1), "1.0.0")
        services.executor.execute_one(v1.id)
        v2 = services.catalog.upgrade(
            v1.id,
            declaration(
                "user_info",
                USER_INFO_V1 + [{"name": "a", "type": "INT"}, {"name": "b", "type": "INT"}],
            ),
            "1.1.0",
        )
        token = CancellationToken()

        def cancel_after_first(database, statement):
            token.cancel()

        fake_server.before_execute = cancel_after_first
        summary = services.executor.execute_one(v2.id, cancel=token)

        assert summary.cancelled
        result = summary.results[0]
        assert result.outcome is Outcome.FAILED
        assert result.statements_executed == 1
        assert result.error == "cancelled after 1 of 2 statement(s)"
        assert [c.name for c in fake_server.table("tenant_t1", "user_info").columns] == ["id", "name", "a"]

        entries = [e for e in services.history.for_target("t1", "user_info") if e.batch_id == summary.batch_id]
        assert [e.outcome for e in entries] == [Outcome.SUCCESS, Outcome.FAILED]
        assert entries[-1].error_message == "cancelled after 1 of 2 statement(s)"

    def test_rerun_after_cancel_applies_the_rest(self, services, fake_server):
        services.tenants.register("t1", tenant_params("tenant_t1"))
        v1 = services.catalog.create_initial_version(declaration("user_info", USER_INFO_V1), "1.0.0")
        services.executor.execute_one(v1.id)
        v2 = services.catalog.upgrade(
            v1.id,
            declaration("user_info", USER_INFO_V1 + [{"name": "a", "type": "INT"}, {"name": "b", "type": "INT"}]),
            "1.1.0",
        )
        token = CancellationToken()
        fake_server.before_execute = lambda database, statement: token.cancel()
        services.executor.execute_one(v2.id, cancel=token)

        fake_server.before_execute = None
        summary = services.executor.execute_one(v2.id)
        assert summary.results[0].outcome is Outcome.SUCCESS
        assert summary.results[0].statements_executed == 1
        assert [c.name for c in fake_server.table("tenant_t1", "user_info").columns] == ["id", "name", "a", "b"]


class TestDetectedDrop:
    """A table removed from the baseline is detected, saved as DROP and rolled out."""

    def test_drop_skips_tenants_without_the_table(self, services, fake_server, three_tenants):
        v1 = services.catalog.create_initial_version(declaration("legacy", [{"name": "a", "type": "INT"}]), "1.0.0")
        services.executor.execute_one(v1.id)
        fake_server.drop_table("tenant_t2", "legacy")

        saved = services.detector.detect_and_save()
        assert [d.table_name for d in saved.saved] == ["legacy"]
        drop = saved.saved[0]
        assert drop.declaration.is_drop
        assert str(drop.schema_version) == "1.0.1"

        summary = services.executor.execute_one(drop.id)
        assert outcomes(summary) == {
            ("t1", "legacy"): Outcome.SUCCESS,
            ("t2", "legacy"): Outcome.SKIPPED,
            ("t3", "legacy"): Outcome.SUCCESS,
        }
        skipped = next(r for r in summary.results if r.tenant_id == "t2")
        assert skipped.error == "table does not exist"
        for tenant_id in three_tenants:
            assert fake_server.tables(f"tenant_{tenant_id}") == []

        entries = [e for e in services.history.for_target("t1", "legacy") if e.batch_id == summary.batch_id]
        assert [(e.outcome, e.statement_kind) for e in entries] == [(Outcome.SUCCESS, "DROP")]
        t2_entries = [e for e in services.history.for_target("t2", "legacy") if e.batch_id == summary.batch_id]
        assert [(e.outcome, e.error_message) for e in t2_entries] == [(Outcome.SKIPPED, "table does not exist")]


class TestResolution:
    def test_selector(self, services, three_tenants):
        services.catalog.create_initial_version(declaration("user_info", USER_INFO_V1), "1.0.0")
        summary = services.executor.execute_one(SchemaSelector("user_info", "main"))
        assert summary.succeeded == 3

    def test_selector_no_match(self, services):
        with pytest.raises(NoSuchSchema):
            services.executor.execute_one(SchemaSelector("nope"))

    def test_unknown_id(self, services):
        with pytest.raises(NoSuchSchema):
            services.executor.execute_one(12345)

    def test_request_id_in_lock_owner(self, services, fake_server):
        services.tenants.register("t1", tenant_params("tenant_t1"))
        v1 = services.catalog.create_initial_version(declaration("user_info", USER_INFO_V1), "1.0.0")
        owners = []
        fake_server.before_execute = lambda database, statement: owners.extend(
            lock.owner_id for lock in services.locks.active_locks()
        )
        with RequestContext(request_id="req-feedface"):
            summary = services.executor.execute_one(v1.id)
        assert len(owners) == 1
        assert owners[0].startswith("test-host/schemafleet:")
        assert owners[0].endswith(f":req-feedface:{summary.batch_id}")

    def test_summary_to_dict(self, services, three_tenants):
        v1 = services.catalog.create_initial_version(declaration("user_info", USER_INFO_V1), "1.0.0")
        data = services.executor.execute_one(v1.id).to_dict()
        assert data["total"] == 3
        assert data["succeeded"] == 3
        assert {r["outcome"] for r in data["results"]} == {"success"}