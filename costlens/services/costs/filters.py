"""
Cost query filters.

One frozen value object turns the optional (window, account, service, region)
selection into SQLAlchemy clauses for either data source, so every reader
applies the user partition and date bounds the same way.
"""

import uuid
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, List, Optional

from sqlalchemy import ColumnElement

from costlens.core.ownership import require_user_id
from costlens.models.aggregate import Aggregate, AggregationType
from costlens.models.billing import LineItem


def _as_datetime(value: date) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def _as_date(value: date) -> date:
    if isinstance(value, datetime):
        return value.astimezone(timezone.utc).date() if value.tzinfo else value.date()
    return value


@dataclass(frozen=True)
class CostFilter:
    """
    Selection over one user's cost data.

    Bounds are inclusive. A plain `date` end bound covers that whole day; a
    `datetime` bound is used as-is against line item timestamps.
    """
    user_id: Any
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    account_id: Optional[str] = None
    service: Optional[str] = None
    region: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "user_id", require_user_id(self.user_id))

    @property
    def owner(self) -> uuid.UUID:
        return self.user_id

    def line_item_clauses(self) -> List[ColumnElement[bool]]:
        clauses: List[ColumnElement[bool]] = [LineItem.user_id == self.user_id]
        if self.start_date is not None:
            clauses.append(LineItem.usage_start_date >= _as_datetime(self.start_date))
        if self.end_date is not None:
            if isinstance(self.end_date, datetime):
                clauses.append(LineItem.usage_start_date <= _as_datetime(self.end_date))
            else:
                next_day = _as_datetime(self.end_date + timedelta(days=1))
                clauses.append(LineItem.usage_start_date < next_day)
        if self.account_id:
            clauses.append(LineItem.account_id == self.account_id)
        if self.service:
            clauses.append(LineItem.service == self.service)
        if self.region:
            clauses.append(LineItem.region == self.region)
        return clauses

    def aggregate_clauses(self, aggregation_type: str = AggregationType.DAILY.value) -> List[ColumnElement[bool]]:
        clauses: List[ColumnElement[bool]] = [
            Aggregate.user_id == self.user_id,
            Aggregate.aggregation_type == AggregationType(aggregation_type).value,
        ]
        if self.start_date is not None:
            clauses.append(Aggregate.date >= _as_date(self.start_date))
        if self.end_date is not None:
            clauses.append(Aggregate.date <= _as_date(self.end_date))
        if self.account_id:
            clauses.append(Aggregate.account_id == self.account_id)
        if self.service:
            clauses.append(Aggregate.service == self.service)
        if self.region:
            clauses.append(Aggregate.region == self.region)
        return clauses
