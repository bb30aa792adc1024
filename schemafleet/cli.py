"""schema-fleet command line."""

import argparse
import json
import sys

from schemafleet import config
from schemafleet.errors import SchemaFleetError
from schemafleet.models import DatabaseRole
from schemafleet.observability import RequestContext, configure_logging
from schemafleet.services import Services, build_services
from schemafleet.tenants import DatabaseParams


def _print_summary(summary) -> None:
    print(
        f"Batch {summary.batch_id}: {summary.total} target(s), "
        f"{summary.succeeded} succeeded, {summary.failed} failed, {summary.skipped} skipped"
        + (" (cancelled)" if summary.cancelled else "")
    )
    for result in summary.results:
        line = f"  [{result.outcome}] {result.tenant_id}/{result.physical_table_name}"
        if result.statements_executed:
            line += f" ({result.statements_executed} statement(s))"
        if result.error:
            line += f": {result.error}"
        print(line)


def cmd_init(args, services: Services):
    """Create the catalog database and its tables."""
    print(f"Catalog ready: {services.catalog_db.db_path}")
    return 0


def cmd_serve(args, services: Services):
    """Run the HTTP API."""
    import uvicorn

    from schemafleet.api import create_app

    uvicorn.run(create_app(services), host=args.host, port=args.port, log_config=None)
    return 0


def cmd_execute(args, services: Services):
    summary = services.executor.execute_one(args.schema_id, allow_inactive=args.allow_inactive)
    if args.json:
        print(json.dumps(summary.to_dict(), indent=2))
    else:
        _print_summary(summary)
    return 1 if summary.failed else 0


def cmd_execute_all(args, services: Services):
    summary = services.executor.execute_all()
    if args.json:
        print(json.dumps(summary.to_dict(), indent=2))
    else:
        _print_summary(summary)
    return 1 if summary.failed else 0


def _print_proposal(proposal) -> None:
    current = proposal.current_version or "-"
    print(
        f"  [{proposal.kind}] {proposal.table_name} ({proposal.database_role}) "
        f"{current} -> {proposal.new_version}: {'; '.join(proposal.changes)}"
    )


def cmd_detect_table(args, services: Services):
    try:
        proposal = services.detector.detect_table(args.table, args.role)
    except ValueError as e:
        print(f"error: {e}", file=sys.stderr)
        return 2
    saved = services.detector.save_proposal(proposal) if proposal and args.save else None
    if args.json:
        data = {
            "table_name": args.table,
            "database_type": args.role,
            "changed": proposal is not None,
            "proposal": proposal.to_dict() if proposal else None,
            "saved": saved.to_dict() if saved else None,
        }
        print(json.dumps(data, indent=2))
        return 0
    if proposal is None:
        print(f"{args.table} ({args.role}) matches the baseline")
        return 0
    _print_proposal(proposal)
    if saved is not None:
        print(f"Saved {saved.table_name} {saved.schema_version} (id {saved.id})")
    return 0


def cmd_detect(args, services: Services):
    if args.table:
        return cmd_detect_table(args, services)
    if args.save:
        result = services.detector.detect_and_save()
        report = result.detection
    else:
        result = None
        report = services.detector.detect_all()

    if args.json:
        print(json.dumps((result or report).to_dict(), indent=2))
        return 0

    if not report.proposals:
        print("Catalog matches the baseline")
    for proposal in report.proposals:
        _print_proposal(proposal)
    for error in report.errors:
        print(f"  [error] {error['database_type']} {error['table_name']}: {error['error']}")
    if result is not None:
        print(f"Saved {len(result.saved)} definition(s), {len(result.failed)} failed")
        for failure in result.failed:
            print(f"  [failed] {failure['table_name']} ({failure['database_type']}): {failure['error']}")
    return 0


def cmd_baseline_tables(args, services: Services):
    tables = services.detector.baseline_tables(args.role)
    if not tables:
        print(f"No tables in the {args.role} baseline")
    for item in tables:
        line = f"  {item['table_name']}"
        if item["logical_table"] != item["table_name"]:
            line += f" -> {item['logical_table']}"
        print(line)
    return 0


def cmd_cleanup_logs(args, services: Services):
    """Drop expired time partitions of log tables, then re-create forward ones."""
    changes = {k: v for k, v in (("day", args.days), ("month", args.months), ("year", args.years)) if v is not None}
    if changes:
        try:
            services.retention.update_rules(**changes)
        except ValueError as e:
            print(f"error: {e}", file=sys.stderr)
            return 2
    report = services.retention.run()
    if args.json:
        print(json.dumps(report.to_dict(), indent=2))
        return 1 if report.errors else 0

    print(
        f"Cleanup {report.batch_id}: {report.definitions} log definition(s), {report.tenants} tenant(s), "
        f"{len(report.dropped)} dropped, {len(report.skipped)} skipped, {len(report.errors)} error(s)"
    )
    for item in report.dropped:
        print(f"  [dropped] {item['tenant_id']}/{item['table_name']}")
    for item in report.skipped:
        print(f"  [skipped] {item['tenant_id']}/{item['table_name']}: {item['reason']}")
    for item in report.errors:
        print(f"  [error] {item['tenant_id']}/{item['table_name']}: {item['error']}")
    return 1 if report.errors else 0


def cmd_locks(args, services: Services):
    if args.cleanup:
        removed = services.locks.cleanup_orphans()
        print(f"Removed {removed} expired lock(s)")
    locks = services.locks.active_locks()
    if not locks:
        print("No active locks")
    for lock in locks:
        print(f"  {lock.tenant_id}/{lock.physical_table_name} owner={lock.owner_id} expires_at={lock.expires_at:.0f}")
    return 0


def cmd_history(args, services: Services):
    entries = services.history.for_batch(args.batch) if args.batch else services.history.recent(args.limit)
    for entry in entries:
        line = (
            f"  #{entry.id} {entry.finished_at} [{entry.outcome}] {entry.tenant_id}/"
            f"{entry.physical_table_name} v{entry.schema_version}"
        )
        if entry.sql_text:
            line += f" :: {entry.sql_text.splitlines()[0]}"
        if entry.error_message:
            line += f" ({entry.error_message})"
        print(line)
    if not entries:
        print("No history")
    return 0


def cmd_tenant_add(args, services: Services):
    tenant = services.tenants.register(
        args.tenant_id,
        DatabaseParams(args.host, args.port, args.user, args.password, args.database),
        name=args.name,
    )
    print(f"Registered tenant {tenant.tenant_id} ({tenant.main.describe()})")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="schemafleet", description="Multi-tenant schema migration orchestrator")
    parser.add_argument("--catalog", help="Catalog SQLite file (default: SCHEMAFLEET_CATALOG_DB)")
    parser.add_argument("--log-level", default=config.LOG_LEVEL)
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("init", help="Create/converge the catalog database")

    p = subparsers.add_parser("serve", help="Run the HTTP API")
    p.add_argument("--host", default=config.API_HOST)
    p.add_argument("--port", type=int, default=config.API_PORT)

    p = subparsers.add_parser("execute", help="Fan out one schema definition")
    p.add_argument("schema_id", type=int)
    p.add_argument("--allow-inactive", action="store_true", help="Execute a superseded version")
    p.add_argument("--json", action="store_true")

    p = subparsers.add_parser("execute-all", help="Fan out every active schema definition")
    p.add_argument("--json", action="store_true")

    p = subparsers.add_parser("detect", help="Compare baseline databases with the catalog")
    p.add_argument("--save", action="store_true", help="Persist the proposals")
    p.add_argument("--table", help="Only this logical table")
    p.add_argument("--role", default="main", choices=[str(r) for r in DatabaseRole], help="Role of --table")
    p.add_argument("--json", action="store_true")

    p = subparsers.add_parser("baseline-tables", help="List the tables of one role's baseline")
    p.add_argument("--role", default="main", choices=[str(r) for r in DatabaseRole])

    p = subparsers.add_parser("cleanup-logs", help="Drop expired log-table partitions")
    p.add_argument("--days", type=int, help="Keep daily tables this many days")
    p.add_argument("--months", type=int, help="Keep monthly tables this many months")
    p.add_argument("--years", type=int, help="Keep yearly tables this many years")
    p.add_argument("--json", action="store_true")

    p = subparsers.add_parser("locks", help="List active migration locks")
    p.add_argument("--cleanup", action="store_true", help="Remove expired locks first")

    p = subparsers.add_parser("history", help="Show migration history")
    p.add_argument("--batch", help="Only entries of this batch id")
    p.add_argument("--limit", type=int, default=50)

    p = subparsers.add_parser("tenant-add", help="Register or update a tenant")
    p.add_argument("tenant_id")
    p.add_argument("--name")
    p.add_argument("--host", default="127.0.0.1")
    p.add_argument("--port", type=int, default=3306)
    p.add_argument("--user", default="root")
    p.add_argument("--password", default="")
    p.add_argument("--database", required=True, help="Main database name")

    return parser


COMMANDS = {
    "init": cmd_init,
    "serve": cmd_serve,
    "execute": cmd_execute,
    "execute-all": cmd_execute_all,
    "detect": cmd_detect,
    "baseline-tables": cmd_baseline_tables,
    "cleanup-logs": cmd_cleanup_logs,
    "locks": cmd_locks,
    "history": cmd_history,
    "tenant-add": cmd_tenant_add,
}


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level, config.LOG_JSON)

    services = build_services(catalog_path=args.catalog)
    try:
        if args.command == "serve":
            return cmd_serve(args, services)
        with RequestContext():
            return COMMANDS[args.command](args, services)
    except SchemaFleetError as e:
        print(f"error: {e}", file=sys.stderr)
        return 2
    finally:
        services.close()


if __name__ == "__main__":
    sys.exit(main())
