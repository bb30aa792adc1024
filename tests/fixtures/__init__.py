"""
Test fixtures for deterministic testing.

This module provides:
- fake_mysql: in-memory tenant/baseline databases (FakeServer) and a
  registry over them (FakeRegistry), so no test reaches a MySQL server
- declarations: small declaration builders shared by the suites
"""

from .fake_mysql import FakeRegistry, FakeServer, FakeTable, FakeTarget

__all__ = ["FakeRegistry", "FakeServer", "FakeTable", "FakeTarget", "declaration", "tenant_params"]


def declaration(table_name: str, columns: list[dict], indexes: list[dict] | None = None, **extra):
    """Parsed Declaration from column/index dicts in schema-definition JSON form."""
    from schemafleet.declaration import parse_declaration

    data = {"tableName": table_name, "columns": columns, "indexes": indexes or []}
    data.update(extra)
    return parse_declaration(data)


def tenant_params(database: str):
    """DatabaseParams pointing at a FakeServer database."""
    from schemafleet.tenants import DatabaseParams

    return DatabaseParams(host="fake", port=3306, user="root", password="", database=database)
