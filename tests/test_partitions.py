"""
Tests for the partition expander.

Tests cover:
- none: the logical name unchanged
- time: current period plus forward periods, per interval, across year ends
- store: one table per store id, unsafe ids skipped
- DROP: only existing tables matching the partition pattern
- period_start: the first day a time child covers, parsed from its suffix
"""

from datetime import date

import pytest

from schemafleet.declaration import TimeInterval, parse_declaration
from schemafleet.models import PartitionType
from schemafleet.partitions import (
    PartitionExpander,
    partition_pattern,
    period_start,
    period_suffix,
    time_partition_names,
)
from tests.fixtures import declaration


class StubSource:
    def __init__(self, tables=(), stores=()):
        self.tables = list(tables)
        self.stores = list(stores)
        self.calls = []

    def list_tables(self):
        self.calls.append("list_tables")
        return self.tables

    def list_stores(self):
        self.calls.append("list_stores")
        return self.stores


ORDERS = declaration("orders", [{"name": "id", "type": "BIGINT", "primaryKey": True}])


@pytest.fixture
def expander():
    return PartitionExpander(forward_periods=2, today=lambda: date(2026, 11, 15))


class TestExpandNone:
    def test_returns_logical_name(self, expander):
        source = StubSource()
        assert expander.expand(ORDERS, PartitionType.NONE, source) == ["orders"]
        assert source.calls == []


class TestExpandTime:
    def test_monthly_crosses_year_end(self, expander):
        assert expander.expand(ORDERS, PartitionType.TIME, StubSource()) == [
            "orders_2026_11",
            "orders_2026_12",
            "orders_2027_01",
        ]

    def test_daily(self, expander):
        decl = declaration("events", [{"name": "id", "type": "INT"}], timeInterval="day")
        assert expander.expand(decl, "time", StubSource()) == [
            "events_2026_11_15",
            "events_2026_11_16",
            "events_2026_11_17",
        ]

    def test_yearly(self, expander):
        decl = declaration("archive", [{"name": "id", "type": "INT"}], timeInterval="year")
        assert expander.expand(decl, "time", StubSource()) == ["archive_2026", "archive_2027", "archive_2028"]

    def test_zero_forward_periods(self):
        expander = PartitionExpander(forward_periods=0, today=lambda: date(2026, 1, 31))
        assert expander.expand(ORDERS, PartitionType.TIME, StubSource()) == ["orders_2026_01"]

    def test_month_end_clamps_day(self):
        names = time_partition_names("t", TimeInterval.MONTH, date(2026, 1, 31), 2)
        assert names == ["t_2026_01", "t_2026_02", "t_2026_03"]

    def test_negative_forward_periods_rejected(self):
        with pytest.raises(ValueError):
            PartitionExpander(forward_periods=-1)

    def test_period_suffix(self):
        assert period_suffix(date(2026, 3, 5), TimeInterval.DAY) == "_2026_03_05"
        assert period_suffix(date(2026, 3, 5), TimeInterval.MONTH) == "_2026_03"
        assert period_suffix(date(2026, 3, 5), TimeInterval.YEAR) == "_2026"


class TestExpandStore:
    def test_one_table_per_store(self, expander):
        source = StubSource(stores=["1", "2", "10"])
        assert expander.expand(ORDERS, PartitionType.STORE, source) == [
            "orders_store_1",
            "orders_store_2",
            "orders_store_10",
        ]

    def test_no_stores_no_tables(self, expander):
        assert expander.expand(ORDERS, PartitionType.STORE, StubSource()) == []

    def test_unsafe_and_duplicate_store_ids_skipped(self, expander):
        source = StubSource(stores=["1", "1", "2; DROP TABLE x", 3])
        assert expander.expand(ORDERS, PartitionType.STORE, source) == ["orders_store_1", "orders_store_3"]


class TestExpandDrop:
    def test_time_drop_matches_existing_children_only(self, expander):
        decl = parse_declaration({"tableName": "orders", "action": "DROP"})
        source = StubSource(
            tables=["orders", "orders_2025_12", "orders_2026_01", "orders_archive", "orders_2026_01_01", "other_2026_01"]
        )
        assert expander.expand(decl, PartitionType.TIME, source) == ["orders_2025_12", "orders_2026_01"]
        assert source.calls == ["list_tables"]

    def test_store_drop_matches_existing_children_only(self, expander):
        decl = parse_declaration({"tableName": "orders", "action": "DROP"})
        source = StubSource(tables=["orders_store_2", "orders_store_1", "orders_storefront"], stores=["9"])
        assert expander.expand(decl, PartitionType.STORE, source) == ["orders_store_1", "orders_store_2"]
        assert "list_stores" not in source.calls

    def test_none_drop_is_logical_name(self, expander):
        decl = parse_declaration({"tableName": "orders", "action": "DROP"})
        assert expander.expand(decl, PartitionType.NONE, StubSource()) == ["orders"]


class TestPartitionPattern:
    def test_none_has_no_pattern(self):
        assert partition_pattern("t", PartitionType.NONE) is None

    def test_table_name_is_escaped(self):
        pattern = partition_pattern("a_b", PartitionType.TIME)
        assert pattern.match("a_b_2026_01")
        assert not pattern.match("aXb_2026_01")

    def test_source_errors_propagate(self, expander):
        class Broken(StubSource):
            def list_stores(self):
                raise RuntimeError("unreachable")

        with pytest.raises(RuntimeError):
            expander.expand(ORDERS, PartitionType.STORE, Broken())


class TestPeriodStart:
    @pytest.mark.parametrize(
        "physical,interval,expected",
        [
            ("events_2026_09_16", TimeInterval.DAY, date(2026, 9, 16)),
            ("events_2026_06", TimeInterval.MONTH, date(2026, 6, 1)),
            ("events_2023", TimeInterval.YEAR, date(2023, 1, 1)),
        ],
    )
    def test_parses_suffix(self, physical, interval, expected):
        assert period_start("events", physical, interval) == expected

    def test_other_interval_is_not_a_child(self):
        assert period_start("events", "events_2026_06", TimeInterval.DAY) is None

    def test_other_table_is_not_a_child(self):
        assert period_start("events", "events_archive_2026_06", TimeInterval.MONTH) is None
        assert period_start("events", "events", TimeInterval.MONTH) is None

    def test_impossible_dates(self):
        assert period_start("events", "events_2026_13", TimeInterval.MONTH) is None
        assert period_start("events", "events_2026_02_30", TimeInterval.DAY) is None
