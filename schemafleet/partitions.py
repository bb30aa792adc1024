"""
Expansion of a logical table name into physical table names.

  none   -> [table]
  time   -> CREATE/UPGRADE: current period + N forward periods
            DROP: existing tables matching <table>_YYYY_MM (or _YYYY_MM_DD, _YYYY)
  store  -> CREATE/UPGRADE: <table>_store_<id> for each of the tenant's stores
            DROP: existing tables matching <table>_store_<id>

For DROP the expander only ever returns tables it has seen in the target.
"""

import calendar
import logging
import re
from collections.abc import Callable, Iterable
from datetime import date, datetime
from typing import Protocol

from schemafleet import config
from schemafleet.declaration import Declaration, TimeInterval, validate_identifier
from schemafleet.models import PartitionType

logger = logging.getLogger(__name__)

_TIME_SUFFIX = {
    TimeInterval.DAY: r"_\d{4}_\d{2}_\d{2}",
    TimeInterval.MONTH: r"_\d{4}_\d{2}",
    TimeInterval.YEAR: r"_\d{4}",
}
_STORE_SUFFIX = r"_store_[0-9A-Za-z]+"


class PartitionSource(Protocol):
    """What the expander needs from a tenant's database."""

    def list_tables(self) -> list[str]: ...

    def list_stores(self) -> list[str]: ...


def partition_pattern(
    table_name: str,
    partition_type: PartitionType | str,
    time_interval: TimeInterval = TimeInterval.MONTH,
) -> re.Pattern | None:
    """Regex matching the physical children of a partitioned table (None for 'none')."""
    partition_type = PartitionType(partition_type)
    if partition_type is PartitionType.NONE:
        return None
    base = re.escape(table_name)
    if partition_type is PartitionType.TIME:
        return re.compile(f"^{base}{_TIME_SUFFIX[time_interval]}$")
    return re.compile(f"^{base}{_STORE_SUFFIX}$")


def period_suffix(day: date, interval: TimeInterval) -> str:
    return day.strftime(_SUFFIX_FORMAT[interval])


_SUFFIX_FORMAT = {
    TimeInterval.DAY: "_%Y_%m_%d",
    TimeInterval.MONTH: "_%Y_%m",
    TimeInterval.YEAR: "_%Y",
}


def period_start(table_name: str, physical_table: str, interval: TimeInterval) -> date | None:
    """
    First day of the period a time partition covers, parsed from its suffix.

    None when *physical_table* is not a child of *table_name* at *interval*.
    """
    pattern = partition_pattern(table_name, PartitionType.TIME, interval)
    if not pattern.match(physical_table):
        return None
    try:
        return datetime.strptime(physical_table[len(table_name) :], _SUFFIX_FORMAT[interval]).date()
    except ValueError:
        # Matches the shape but not the calendar, e.g. _2026_13
        return None


def _add_periods(day: date, interval: TimeInterval, count: int) -> date:
    if interval is TimeInterval.DAY:
        return date.fromordinal(day.toordinal() + count)
    if interval is TimeInterval.YEAR:
        return date(day.year + count, 1, 1)
    month_index = day.year * 12 + (day.month - 1) + count
    year, month = divmod(month_index, 12)
    return date(year, month + 1, min(day.day, calendar.monthrange(year, month + 1)[1]))


def time_partition_names(
    table_name: str, interval: TimeInterval, today: date, forward_periods: int
) -> list[str]:
    """The current period followed by forward_periods future ones, oldest first."""
    return [
        table_name + period_suffix(_add_periods(today, interval, offset), interval)
        for offset in range(forward_periods + 1)
    ]


class PartitionExpander:
    def __init__(
        self,
        forward_periods: int = config.FORWARD_PERIODS,
        today: Callable[[], date] = date.today,
    ):
        if forward_periods < 0:
            raise ValueError("forward_periods must be >= 0")
        self.forward_periods = forward_periods
        self._today = today

    def expand(
        self,
        declaration: Declaration,
        partition_type: PartitionType | str,
        source: PartitionSource,
    ) -> list[str]:
        """
        Physical table names for one tenant.

        Errors raised by *source* (e.g. ConnectionFailed) propagate.
        """
        table = validate_identifier(declaration.table_name)
        partition_type = PartitionType(partition_type)

        if partition_type is PartitionType.NONE:
            return [table]

        if declaration.is_drop:
            pattern = partition_pattern(table, partition_type, declaration.time_interval)
            return self._matching(pattern, source.list_tables())

        if partition_type is PartitionType.TIME:
            return time_partition_names(
                table, declaration.time_interval, self._today(), self.forward_periods
            )

        names = []
        for store_id in source.list_stores():
            store = str(store_id)
            if not re.fullmatch(r"[0-9A-Za-z]+", store):
                logger.warning(f"Skipping store id {store!r} for {table}: not a safe table suffix")
                continue
            names.append(f"{table}_store_{store}")
        return list(dict.fromkeys(names))

    @staticmethod
    def _matching(pattern: re.Pattern, tables: Iterable[str]) -> list[str]:
        return sorted(t for t in tables if pattern.match(t))
