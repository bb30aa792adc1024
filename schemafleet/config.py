"""
Centralized configuration for schema-fleet.

All values that vary by deployment belong here.
Override via environment variables (prefix SCHEMAFLEET_).
"""

import os
import socket

# ============================================================
# Baseline database (the template the detector reads)
# ============================================================

BASELINE_HOST: str = os.environ.get("SCHEMAFLEET_BASELINE_HOST", "127.0.0.1")
BASELINE_PORT: int = int(os.environ.get("SCHEMAFLEET_BASELINE_PORT", "3306"))
BASELINE_USER: str = os.environ.get("SCHEMAFLEET_BASELINE_USER", "root")
BASELINE_PASSWORD: str = os.environ.get("SCHEMAFLEET_BASELINE_PASSWORD", "")
BASELINE_DATABASE: str = os.environ.get("SCHEMAFLEET_BASELINE_DATABASE", "baseline")
"""Database name of the main-role baseline; other roles use <name>_<role>."""

# ============================================================
# Fan-out executor
# ============================================================

WORKER_COUNT: int = int(os.environ.get("SCHEMAFLEET_WORKERS", "8"))
"""Maximum targets migrated in parallel within one invocation."""

LOCK_TTL_SECONDS: int = int(os.environ.get("SCHEMAFLEET_LOCK_TTL", "600"))

STATEMENT_TIMEOUT_SECONDS: float = float(os.environ.get("SCHEMAFLEET_STATEMENT_TIMEOUT", "60"))

FORWARD_PERIODS: int = int(os.environ.get("SCHEMAFLEET_FORWARD_PERIODS", "2"))
"""Time partitions created ahead of the current period."""

INSTANCE_IDENTITY: str = os.environ.get(
    "SCHEMAFLEET_INSTANCE", f"{socket.gethostname()}/schemafleet"
)
"""Process identity family; locks owned by it are wiped at startup."""

# ============================================================
# Tenant connections
# ============================================================

POOL_SIZE: int = int(os.environ.get("SCHEMAFLEET_POOL_SIZE", "5"))

POOL_IDLE_TIMEOUT_SECONDS: float = float(os.environ.get("SCHEMAFLEET_POOL_IDLE_TIMEOUT", "300"))

CONNECT_TIMEOUT_SECONDS: int = int(os.environ.get("SCHEMAFLEET_CONNECT_TIMEOUT", "10"))

STORE_QUERY: str = os.environ.get(
    "SCHEMAFLEET_STORE_QUERY", "SELECT store_id FROM store WHERE status = 1"
)
"""Query run on a tenant's main database to enumerate its stores."""

# ============================================================
# Schedules (consumed by the external job runner)
# ============================================================

DETECT_CRON: str = os.environ.get("SCHEMAFLEET_DETECT_CRON", "0 2 * * *")
CLEANUP_CRON: str = os.environ.get("SCHEMAFLEET_CLEANUP_CRON", "0 3 * * *")
"""Log retention (schemafleet cleanup-logs); see the RETENTION_* values below."""

# ============================================================
# Log retention (time-partitioned tables of the log role)
# ============================================================

RETENTION_DAYS: int = int(os.environ.get("SCHEMAFLEET_RETENTION_DAYS", "30"))
"""Daily partitions older than this many days are dropped."""

RETENTION_MONTHS: int = int(os.environ.get("SCHEMAFLEET_RETENTION_MONTHS", "3"))

RETENTION_YEARS: int = int(os.environ.get("SCHEMAFLEET_RETENTION_YEARS", "3"))

# ============================================================
# Logging / HTTP
# ============================================================

LOG_LEVEL: str = os.environ.get("SCHEMAFLEET_LOG_LEVEL", "INFO")

_log_json = os.environ.get("SCHEMAFLEET_LOG_JSON", "").strip().lower()
LOG_JSON: bool | None = None if not _log_json else _log_json in ("1", "true", "yes")
"""None means auto-detect (JSON when stderr is not a TTY)."""

API_HOST: str = os.environ.get("SCHEMAFLEET_API_HOST", "127.0.0.1")
API_PORT: int = int(os.environ.get("SCHEMAFLEET_API_PORT", "8420"))
