from __future__ import annotations

import os
from pathlib import Path

APP_ENV_HOME = "SCHEMAFLEET_HOME"
APP_ENV_CATALOG_DB = "SCHEMAFLEET_CATALOG_DB"


def app_home() -> Path:
    """
    User-writable home for schema-fleet.
    Override with SCHEMAFLEET_HOME.
    """
    if os.environ.get(APP_ENV_HOME):
        return Path(os.environ[APP_ENV_HOME]).expanduser().resolve()
    return (Path.home() / ".schemafleet").resolve()


def data_dir() -> Path:
    d = app_home() / "data"
    d.mkdir(parents=True, exist_ok=True)
    return d


def catalog_db_path() -> Path:
    """
    Canonical catalog DB path.

    Resolution order:
    1. SCHEMAFLEET_CATALOG_DB env var (explicit override)
    2. ~/.schemafleet/data/catalog.db (default)
    """
    if os.environ.get(APP_ENV_CATALOG_DB):
        return Path(os.environ[APP_ENV_CATALOG_DB]).expanduser().resolve()
    return data_dir() / "catalog.db"
