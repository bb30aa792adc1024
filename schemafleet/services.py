"""
Service wiring.

One Services value owns the catalog connection, the tenant pools and every
component built on them. The HTTP app and the CLI both receive it
explicitly; nothing reaches for a module-level singleton.
"""

import logging
from dataclasses import dataclass

from schemafleet import config, paths
from schemafleet.catalog import SchemaCatalog
from schemafleet.catalog_store import open_catalog
from schemafleet.connections import AdapterFactory, ConnectionRegistry
from schemafleet.db_opt.db_adapter import DatabaseAdapter
from schemafleet.detector import SchemaDetector
from schemafleet.executor import FanOutExecutor
from schemafleet.history import HistoryLog
from schemafleet.locks import LockManager
from schemafleet.partitions import PartitionExpander
from schemafleet.retention import LogRetention
from schemafleet.tenants import DatabaseParams, TenantDirectory

logger = logging.getLogger(__name__)


@dataclass
class Services:
    catalog_db: DatabaseAdapter
    catalog: SchemaCatalog
    tenants: TenantDirectory
    history: HistoryLog
    locks: LockManager
    registry: ConnectionRegistry
    executor: FanOutExecutor
    detector: SchemaDetector
    retention: LogRetention

    def startup(self) -> int:
        """Clear locks left by a previous run of this instance. Returns how many."""
        return self.locks.cleanup_all_on_startup()

    def close(self) -> None:
        self.registry.close_all()
        self.catalog_db.close()


def build_services(
    catalog_path: str | None = None,
    baseline: DatabaseParams | None = None,
    adapter_factory: AdapterFactory | None = None,
    registry: ConnectionRegistry | None = None,
    workers: int = config.WORKER_COUNT,
    lock_ttl: float = config.LOCK_TTL_SECONDS,
    forward_periods: int = config.FORWARD_PERIODS,
    instance: str = config.INSTANCE_IDENTITY,
) -> Services:
    """
    Open the catalog (converging its tables) and wire every component.

    Args:
        catalog_path: SQLite file; defaults to paths.catalog_db_path()
        registry: Prebuilt registry (tests pass a fake); otherwise one is
            built from baseline/adapter_factory
    """
    path = catalog_path or str(paths.catalog_db_path())
    catalog_db = open_catalog(path)

    tenants = TenantDirectory(catalog_db)
    catalog = SchemaCatalog(catalog_db)
    history = HistoryLog(catalog_db)
    locks = LockManager(catalog_db, instance=instance, default_ttl=lock_ttl)
    if registry is None:
        registry = ConnectionRegistry(tenants, baseline=baseline, adapter_factory=adapter_factory)

    executor = FanOutExecutor(
        catalog,
        tenants,
        registry,
        locks,
        history,
        expander=PartitionExpander(forward_periods=forward_periods),
        workers=workers,
        lock_ttl=lock_ttl,
    )
    detector = SchemaDetector(catalog, registry)
    retention = LogRetention(catalog, tenants, registry, locks, history, executor=executor, lock_ttl=lock_ttl)
    logger.debug(f"Services ready (catalog={path}, workers={workers})")
    return Services(
        catalog_db=catalog_db,
        catalog=catalog,
        tenants=tenants,
        history=history,
        locks=locks,
        registry=registry,
        executor=executor,
        detector=detector,
        retention=retention,
    )
