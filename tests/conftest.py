"""
Test configuration: repo root on sys.path, determinism guards and shared fixtures.

Enforces determinism by blocking the live catalog database and any real MySQL
connection. Tests build their catalog under tmp_path and talk to tenants
through tests.fixtures.FakeServer.

IMPORTANT: The sqlite3 guard is installed per test (autouse) so it also catches
paths resolved lazily by schemafleet.paths.
"""

import sqlite3
import sys
from pathlib import Path

import pymysql
import pytest

# Add repo root to sys.path so tests can import schemafleet.* and tests.fixtures
REPO_ROOT = Path(__file__).parent.parent
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from schemafleet.catalog import SchemaCatalog  # noqa: E402
from schemafleet.catalog_store import open_catalog  # noqa: E402
from schemafleet.history import HistoryLog  # noqa: E402
from schemafleet.locks import LockManager  # noqa: E402
from schemafleet.services import build_services  # noqa: E402
from schemafleet.tenants import TenantDirectory  # noqa: E402
from tests.fixtures import FakeRegistry, FakeServer  # noqa: E402

# =============================================================================
# DETERMINISM GUARD: Block live catalog and MySQL access
# =============================================================================

HOME_CATALOG_ABSOLUTE = Path.home() / ".schemafleet" / "data" / "catalog.db"

_FORBIDDEN_DB_PATTERNS = [
    str(HOME_CATALOG_ABSOLUTE),
    ".schemafleet/data/catalog.db",
]

_original_sqlite_connect = sqlite3.connect


def _is_forbidden_path(path_str: str) -> bool:
    """Check if a path string matches any forbidden live catalog pattern."""
    if not path_str:
        return False
    return any(pattern in path_str for pattern in _FORBIDDEN_DB_PATTERNS)


def _guarded_sqlite_connect(database, *args, **kwargs):
    """Intercept sqlite3.connect to block the live catalog."""
    db_str = str(database)
    if _is_forbidden_path(db_str):
        raise RuntimeError(
            f"DETERMINISM VIOLATION: Test attempted to open the live catalog at {database}.\n"
            "Tests must use the catalog_db fixture (a tmp_path catalog)."
        )
    return _original_sqlite_connect(database, *args, **kwargs)


def _blocked_mysql_connect(*args, **kwargs):
    raise RuntimeError(
        "DETERMINISM VIOLATION: Test attempted a real MySQL connection "
        f"(host={kwargs.get('host')!r}, database={kwargs.get('database')!r}).\n"
        "Tests must use tests.fixtures.FakeRegistry or a fake adapter factory."
    )


@pytest.fixture(autouse=True)
def guard_live_db_access(monkeypatch, tmp_path):
    """Automatically guard all tests against live catalog and MySQL access."""
    monkeypatch.setattr(sqlite3, "connect", _guarded_sqlite_connect)
    monkeypatch.setattr(pymysql, "connect", _blocked_mysql_connect)
    monkeypatch.setenv("SCHEMAFLEET_HOME", str(tmp_path / "home"))
    monkeypatch.delenv("SCHEMAFLEET_CATALOG_DB", raising=False)


# =============================================================================
# CATALOG FIXTURES
# =============================================================================


@pytest.fixture
def catalog_db(tmp_path):
    """Converged catalog database in tmp_path."""
    adapter = open_catalog(str(tmp_path / "catalog.db"))
    yield adapter
    adapter.close()


@pytest.fixture
def catalog(catalog_db):
    return SchemaCatalog(catalog_db)


@pytest.fixture
def history(catalog_db):
    return HistoryLog(catalog_db)


@pytest.fixture
def tenants(catalog_db):
    return TenantDirectory(catalog_db)


@pytest.fixture
def locks(catalog_db):
    return LockManager(catalog_db, instance="test-host/schemafleet", default_ttl=60)


# =============================================================================
# FAKE TENANT SERVERS
# =============================================================================


@pytest.fixture
def fake_server():
    return FakeServer()


@pytest.fixture
def services(tmp_path, fake_server):
    """Fully wired Services over a tmp_path catalog and the fake server."""
    services = build_services(
        catalog_path=str(tmp_path / "services.db"),
        registry=FakeRegistry(fake_server),
        workers=4,
        lock_ttl=60,
        forward_periods=2,
        instance="test-host/schemafleet",
    )
    yield services
    services.close()
