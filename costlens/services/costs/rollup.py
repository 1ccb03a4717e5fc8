"""
Canonical cost roll-up.

Every grouping of cost data (daily rebuild from line items, monthly rebuild from
daily aggregates, the anomaly detector's line-item fallback, cost summaries and
recommendation rules) goes through `rollup`, parameterized by how a row is keyed
and which measures are summed.
"""

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, Hashable, Iterable, Mapping, Optional

UNKNOWN = "unknown"

Measure = Callable[[Any], Any]


def rollup(
    rows: Iterable[Any],
    key: Callable[[Any], Hashable],
    measures: Mapping[str, Measure],
) -> Dict[Hashable, Dict[str, Any]]:
    """
    Group rows by `key(row)` and sum each measure per group.

    Missing measure values count as 0. Each bucket also carries `count`, the
    number of rows in the group. Groups keep first-seen order.
    """
    groups: Dict[Hashable, Dict[str, Any]] = {}
    for row in rows:
        group_key = key(row)
        bucket = groups.get(group_key)
        if bucket is None:
            bucket = {name: Decimal("0") for name in measures}
            bucket["count"] = 0
            groups[group_key] = bucket
        for name, measure in measures.items():
            value = measure(row)
            if value is not None:
                bucket[name] += value if isinstance(value, Decimal) else Decimal(str(value))
        bucket["count"] += 1
    return groups


def utc_day(value: Optional[datetime]) -> Optional[date]:
    """Calendar day in UTC. Naive datetimes are read back from SQLite and are already UTC."""
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.date()


def month_start(day: date) -> date:
    return day.replace(day=1)


def previous_day(day: date) -> date:
    return day - timedelta(days=1)


def previous_month(day: date) -> date:
    return (day.replace(day=1) - timedelta(days=1)).replace(day=1)


def dimension(value: Optional[str]) -> str:
    return value or UNKNOWN
