"""
Catalog Store — declarative schema of the catalog database, plus convergence.

The catalog database holds schema-fleet's own state:

  schema_definitions  — versioned table definitions (owned by SchemaCatalog)
  migration_history   — append-only DDL attempts (owned by HistoryLog)
  migration_locks     — per-(tenant, table) locks (owned by LockManager)
  tenants             — tenant directory and per-role connection params

converge(adapter) adds whatever is missing (tables, columns, indexes) and
never drops anything, so an older catalog file upgrades in place.
"""

import logging
import re
import sqlite3
from collections import OrderedDict

from schemafleet.db_opt.db_adapter import SQLiteAdapter

logger = logging.getLogger(__name__)

# =============================================================================
# Table Definitions
#
# Format: TABLES[name] = {"columns": [(col_name, col_ddl), ...]}
# =============================================================================

TABLES: dict[str, dict] = OrderedDict()

TABLES["schema_definitions"] = {
    "columns": [
        ("id", "INTEGER PRIMARY KEY AUTOINCREMENT"),
        ("table_name", "TEXT NOT NULL"),
        ("database_role", "TEXT NOT NULL DEFAULT 'main'"),
        ("partition_type", "TEXT NOT NULL DEFAULT 'none'"),
        ("schema_version", "TEXT NOT NULL"),
        ("version_major", "INTEGER NOT NULL"),
        ("version_minor", "INTEGER NOT NULL"),
        ("version_patch", "INTEGER NOT NULL"),
        ("definition", "TEXT NOT NULL"),
        ("upgrade_notes", "TEXT"),
        ("changes_detected", "TEXT"),
        ("is_active", "INTEGER NOT NULL DEFAULT 1"),
        ("created_at", "TEXT NOT NULL"),
        ("updated_at", "TEXT NOT NULL"),
    ],
}

TABLES["migration_history"] = {
    "columns": [
        ("id", "INTEGER PRIMARY KEY AUTOINCREMENT"),
        ("batch_id", "TEXT"),
        ("tenant_id", "TEXT NOT NULL"),
        ("database_role", "TEXT NOT NULL"),
        ("physical_table_name", "TEXT NOT NULL"),
        ("schema_id", "INTEGER"),
        ("schema_version", "TEXT NOT NULL"),
        ("statement_kind", "TEXT"),
        ("sql_text", "TEXT NOT NULL DEFAULT ''"),
        ("outcome", "TEXT NOT NULL"),
        ("error_message", "TEXT"),
        ("started_at", "TEXT"),
        ("finished_at", "TEXT"),
        ("duration_ms", "REAL"),
    ],
}

TABLES["migration_locks"] = {
    "columns": [
        ("tenant_id", "TEXT NOT NULL"),
        ("physical_table_name", "TEXT NOT NULL"),
        ("owner_id", "TEXT NOT NULL"),
        ("acquired_at", "REAL NOT NULL"),
        ("expires_at", "REAL NOT NULL"),
    ],
    "primary_key": ("tenant_id", "physical_table_name"),
}

TABLES["tenants"] = {
    "columns": [
        ("tenant_id", "TEXT PRIMARY KEY"),
        ("name", "TEXT"),
        ("status", "INTEGER NOT NULL DEFAULT 1"),
        ("db_host", "TEXT NOT NULL DEFAULT '127.0.0.1'"),
        ("db_port", "INTEGER NOT NULL DEFAULT 3306"),
        ("db_user", "TEXT NOT NULL DEFAULT 'root'"),
        ("db_password", "TEXT NOT NULL DEFAULT ''"),
        ("db_name", "TEXT NOT NULL"),
        ("log_db_host", "TEXT"),
        ("log_db_port", "INTEGER"),
        ("log_db_user", "TEXT"),
        ("log_db_password", "TEXT"),
        ("log_db_name", "TEXT"),
        ("order_db_host", "TEXT"),
        ("order_db_port", "INTEGER"),
        ("order_db_user", "TEXT"),
        ("order_db_password", "TEXT"),
        ("order_db_name", "TEXT"),
        ("static_db_host", "TEXT"),
        ("static_db_port", "INTEGER"),
        ("static_db_user", "TEXT"),
        ("static_db_password", "TEXT"),
        ("static_db_name", "TEXT"),
        ("created_at", "TEXT NOT NULL DEFAULT (datetime('now'))"),
    ],
}

# (index_name, table, columns, unique)
INDEXES: list[tuple[str, str, str, bool]] = [
    ("idx_schema_definitions_lookup", "schema_definitions", "table_name, database_role, is_active", False),
    ("idx_schema_definitions_version", "schema_definitions",
     "table_name, database_role, version_major, version_minor, version_patch", True),
    ("idx_migration_history_target", "migration_history", "tenant_id, physical_table_name", False),
    ("idx_migration_history_batch", "migration_history", "batch_id", False),
    ("idx_migration_locks_owner", "migration_locks", "owner_id", False),
]


# ────────────────────────────────────────────────────────────
# ALTER TABLE column-safety
# ────────────────────────────────────────────────────────────

# Clauses that are valid in CREATE TABLE but not in ALTER TABLE ADD COLUMN
_STRIP_PATTERNS = [
    re.compile(r"\bPRIMARY\s+KEY\b", re.IGNORECASE),
    re.compile(r"\bAUTOINCREMENT\b", re.IGNORECASE),
    re.compile(r"\bUNIQUE\b", re.IGNORECASE),
]


def make_alter_safe(col_def: str) -> str:
    """
    Transform a CREATE TABLE column definition into one safe for
    ALTER TABLE ADD COLUMN.

    SQLite refuses PRIMARY KEY, AUTOINCREMENT and UNIQUE on added columns,
    requires a DEFAULT alongside NOT NULL, and rejects expression defaults.
    """
    safe = col_def
    for pattern in _STRIP_PATTERNS:
        safe = pattern.sub("", safe)
    safe = re.sub(r"DEFAULT\s*\(.*\)", "DEFAULT ''", safe, flags=re.IGNORECASE)
    safe = re.sub(r"\s{2,}", " ", safe).strip()

    has_not_null = re.search(r"\bNOT\s+NULL\b", safe, re.IGNORECASE)
    has_default = re.search(r"\bDEFAULT\b", safe, re.IGNORECASE)
    if has_not_null and not has_default:
        safe = safe + " DEFAULT ''"
    return safe


def _build_create_sql(table_name: str, table_def: dict) -> str:
    parts = [f"    {col_name} {col_ddl}" for col_name, col_ddl in table_def["columns"]]
    if table_def.get("primary_key"):
        parts.append(f"    PRIMARY KEY ({', '.join(table_def['primary_key'])})")
    body = ",\n".join(parts)
    return f"CREATE TABLE IF NOT EXISTS [{table_name}] (\n{body}\n)"


def _existing_tables(adapter: SQLiteAdapter) -> set[str]:
    rows = adapter.fetchall("SELECT name FROM sqlite_master WHERE type = 'table'")
    return {row[0] for row in rows}


def _existing_columns(adapter: SQLiteAdapter, table: str) -> set[str]:
    rows = adapter.fetchall(f"PRAGMA table_info([{table}])")  # nosec B608
    return {row[1] for row in rows}


def _existing_indexes(adapter: SQLiteAdapter) -> set[str]:
    rows = adapter.fetchall(
        "SELECT name FROM sqlite_master WHERE type = 'index' AND name NOT LIKE 'sqlite_%'"
    )
    return {row[0] for row in rows}


def converge(adapter: SQLiteAdapter) -> dict:
    """
    Converge the catalog database to match TABLES / INDEXES.

    Returns a results dict for logging. Errors propagate: a catalog that
    cannot be brought up to shape must stop startup.
    """
    results: dict[str, list[str]] = {
        "tables_created": [],
        "columns_added": [],
        "indexes_created": [],
    }

    existing = _existing_tables(adapter)
    for table_name, table_def in TABLES.items():
        if table_name not in existing:
            adapter.execute(_build_create_sql(table_name, table_def))
            results["tables_created"].append(table_name)
            logger.info("catalog_store: created table %s", table_name)
            continue

        have = _existing_columns(adapter, table_name)
        for col_name, col_ddl in table_def["columns"]:
            if col_name in have:
                continue
            adapter.execute(
                f"ALTER TABLE [{table_name}] ADD COLUMN [{col_name}] {make_alter_safe(col_ddl)}"  # nosec B608
            )
            results["columns_added"].append(f"{table_name}.{col_name}")
            logger.info("catalog_store: added column %s.%s", table_name, col_name)

    have_indexes = _existing_indexes(adapter)
    for idx_name, idx_table, idx_cols, unique in INDEXES:
        if idx_name in have_indexes:
            continue
        unique_sql = "UNIQUE " if unique else ""
        adapter.execute(
            f"CREATE {unique_sql}INDEX IF NOT EXISTS [{idx_name}] ON [{idx_table}]({idx_cols})"  # nosec B608
        )
        results["indexes_created"].append(idx_name)

    return results


def open_catalog(db_path: str) -> SQLiteAdapter:
    """Open (creating if needed) and converge the catalog database."""
    adapter = SQLiteAdapter(db_path)
    try:
        results = converge(adapter)
    except sqlite3.Error:
        adapter.close()
        raise
    if any(results.values()):
        logger.info("catalog_store: converged %s", db_path)
    return adapter
