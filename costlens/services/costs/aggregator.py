"""
Aggregation Engine

Rebuilds a user's daily and monthly cost aggregates from scratch:
daily rows roll up billing line items, monthly rows roll up the daily rows.
Each rebuild deletes the user's partition for that aggregation type and
bulk-inserts the new set inside a savepoint. If the insert still collides
with leftover rows (a concurrent writer outside this process), each row is
upserted on the dimension key instead.
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, Hashable, List, Optional
import uuid

import structlog
from sqlalchemy import delete, insert, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from costlens.core.locks import KeyedLock, aggregation_locks
from costlens.core.ops_metrics import AGGREGATION_DURATION
from costlens.core.ownership import require_user_id
from costlens.db.inserts import batched, upsert_rows
from costlens.models.aggregate import Aggregate, AggregationType
from costlens.models.billing import LineItem
from costlens.schemas.costs import CostBreakdownItem, CostSummary, CostTimePoint, CostTotals
from costlens.services.costs.filters import CostFilter
from costlens.services.costs.rollup import (
    dimension,
    month_start,
    previous_day,
    previous_month,
    rollup,
    utc_day,
)

logger = structlog.get_logger()

DIMENSION_COLUMNS = ["user_id", "date", "account_id", "service", "region", "aggregation_type"]
UPSERT_COLUMNS = [
    "total_cost",
    "total_usage_quantity",
    "line_item_count",
    "previous_period_cost",
    "cost_variance",
    "cost_variance_percent",
    "computed_at",
    "updated_at",
]


def _trend(cost: Decimal, previous: Optional[Decimal]) -> Dict[str, Any]:
    if previous is None:
        return {"previous_period_cost": None, "cost_variance": None, "cost_variance_percent": None}
    variance = cost - previous
    percent = float(variance / previous * 100) if previous != 0 else None
    return {"previous_period_cost": previous, "cost_variance": variance, "cost_variance_percent": percent}


class AggregationService:
    def __init__(self, db: AsyncSession, locks: Optional[KeyedLock] = None):
        self.db = db
        self.locks = locks or aggregation_locks

    async def rebuild_aggregates(self, user_id: Any) -> Dict[str, int]:
        """
        Rebuild daily then monthly aggregates for one user.

        Serialized per user: a second rebuild for the same user waits for the
        first to finish instead of interleaving its delete and insert.
        """
        user_id = require_user_id(user_id)
        async with self.locks.hold(user_id):
            daily = await self.rebuild_daily_aggregates(user_id)
            monthly = await self.rebuild_monthly_aggregates(user_id)

        logger.info("aggregation_complete", user_id=str(user_id), daily=daily, monthly=monthly)
        return {"daily": daily, "monthly": monthly}

    async def rebuild_daily_aggregates(self, user_id: Any) -> int:
        user_id = require_user_id(user_id)
        with AGGREGATION_DURATION.labels(aggregation_type="daily").time():
            result = await self.db.execute(
                select(
                    LineItem.usage_start_date,
                    LineItem.ingestion_date,
                    LineItem.account_id,
                    LineItem.service,
                    LineItem.region,
                    LineItem.cost,
                    LineItem.usage_quantity_normalized,
                ).where(LineItem.user_id == user_id)
            )
            items = result.all()

            groups = rollup(
                items,
                key=lambda r: (
                    utc_day(r.usage_start_date or r.ingestion_date),
                    dimension(r.account_id),
                    dimension(r.service),
                    dimension(r.region),
                ),
                measures={
                    "total_cost": lambda r: r.cost,
                    "total_usage_quantity": lambda r: r.usage_quantity_normalized,
                },
            )
            values = self._build_values(
                user_id,
                AggregationType.DAILY,
                groups,
                line_item_count=lambda bucket: bucket["count"],
                previous_period=previous_day,
            )
            written = await self._replace(user_id, AggregationType.DAILY, values)

        logger.info("daily_aggregates_rebuilt", user_id=str(user_id), line_items=len(items), aggregates=written)
        return written

    async def rebuild_monthly_aggregates(self, user_id: Any) -> int:
        user_id = require_user_id(user_id)
        with AGGREGATION_DURATION.labels(aggregation_type="monthly").time():
            # Upserted rows keep their ids, so reload instead of trusting the identity map
            result = await self.db.execute(
                select(Aggregate)
                .where(
                    Aggregate.user_id == user_id,
                    Aggregate.aggregation_type == AggregationType.DAILY.value,
                )
                .execution_options(populate_existing=True)
            )
            daily_rows = result.scalars().all()

            groups = rollup(
                daily_rows,
                key=lambda r: (month_start(r.date), r.account_id, r.service, r.region),
                measures={
                    "total_cost": lambda r: r.total_cost,
                    "total_usage_quantity": lambda r: r.total_usage_quantity,
                    "line_item_count": lambda r: r.line_item_count,
                },
            )
            values = self._build_values(
                user_id,
                AggregationType.MONTHLY,
                groups,
                line_item_count=lambda bucket: bucket["line_item_count"],
                previous_period=previous_month,
            )
            written = await self._replace(user_id, AggregationType.MONTHLY, values)

        logger.info("monthly_aggregates_rebuilt", user_id=str(user_id), daily_rows=len(daily_rows), aggregates=written)
        return written

    def _build_values(
        self,
        user_id: uuid.UUID,
        aggregation_type: AggregationType,
        groups: Dict[Hashable, Dict[str, Any]],
        line_item_count: Callable[[Dict[str, Any]], Any],
        previous_period: Callable[[date], date],
    ) -> List[Dict[str, Any]]:
        now = datetime.now(timezone.utc)
        values = []
        for (period, account_id, service, region), bucket in groups.items():
            previous = groups.get((previous_period(period), account_id, service, region))
            values.append({
                "id": uuid.uuid4(),
                "user_id": user_id,
                "date": period,
                "account_id": account_id,
                "service": service,
                "region": region,
                "aggregation_type": aggregation_type.value,
                "total_cost": bucket["total_cost"],
                "total_usage_quantity": bucket["total_usage_quantity"],
                "line_item_count": int(line_item_count(bucket)),
                **_trend(bucket["total_cost"], previous["total_cost"] if previous else None),
                "computed_at": now,
                "created_at": now,
                "updated_at": now,
            })
        return values

    async def _delete_aggregates(self, user_id: uuid.UUID, aggregation_type: AggregationType) -> int:
        result = await self.db.execute(
            delete(Aggregate).where(
                Aggregate.user_id == user_id,
                Aggregate.aggregation_type == aggregation_type.value,
            )
        )
        return result.rowcount or 0

    async def _replace(
        self,
        user_id: uuid.UUID,
        aggregation_type: AggregationType,
        values: List[Dict[str, Any]],
    ) -> int:
        """Swap the user's aggregates of one type for `values` and commit."""
        deleted = await self._delete_aggregates(user_id, aggregation_type)
        logger.debug("aggregates_deleted", user_id=str(user_id), aggregation_type=aggregation_type.value, count=deleted)

        if values:
            try:
                async with self.db.begin_nested():
                    for batch in batched(values):
                        await self.db.execute(insert(Aggregate).values(batch))
            except IntegrityError:
                logger.warning(
                    "aggregate_insert_conflict_upserting",
                    user_id=str(user_id),
                    aggregation_type=aggregation_type.value,
                    rows=len(values),
                )
                await upsert_rows(self.db, Aggregate, values, DIMENSION_COLUMNS, UPSERT_COLUMNS)

        await self.db.commit()
        return len(values)


class CostSummaryService:
    """Read-side cost views built from aggregates, with a line-item fallback."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_summary(
        self,
        cost_filter: CostFilter,
        aggregation_type: str = AggregationType.DAILY.value,
    ) -> CostSummary:
        aggregation_type = AggregationType(aggregation_type)

        result = await self.db.execute(
            select(Aggregate).where(*cost_filter.aggregate_clauses(aggregation_type.value))
        )
        rows = result.scalars().all()

        if rows:
            source = "aggregates"
            period = lambda r: r.date
            measures = {
                "cost": lambda r: r.total_cost,
                "usage": lambda r: r.total_usage_quantity,
                "line_item_count": lambda r: r.line_item_count,
            }
        else:
            result = await self.db.execute(select(LineItem).where(*cost_filter.line_item_clauses()))
            rows = result.scalars().all()
            source = "line_items"
            if aggregation_type is AggregationType.MONTHLY:
                period = lambda r: month_start(utc_day(r.usage_start_date or r.ingestion_date))
            else:
                period = lambda r: utc_day(r.usage_start_date or r.ingestion_date)
            measures = {
                "cost": lambda r: r.cost,
                "usage": lambda r: r.usage_quantity_normalized,
                "line_item_count": lambda r: 1,
            }

        totals = rollup(rows, key=lambda r: "total", measures=measures).get("total")

        def breakdown(key: Callable[[Any], str]) -> List[CostBreakdownItem]:
            items = [
                CostBreakdownItem(
                    key=group_key,
                    cost=bucket["cost"],
                    usage=bucket["usage"],
                    line_item_count=int(bucket["line_item_count"]),
                )
                for group_key, bucket in rollup(rows, key=key, measures=measures).items()
            ]
            return sorted(items, key=lambda item: item.cost, reverse=True)

        time_series = [
            CostTimePoint(
                date=day,
                cost=bucket["cost"],
                usage=bucket["usage"],
                line_item_count=int(bucket["line_item_count"]),
            )
            for day, bucket in sorted(rollup(rows, key=period, measures=measures).items())
        ]

        summary = CostSummary(
            source=source,
            totals=CostTotals(
                cost=totals["cost"],
                usage=totals["usage"],
                line_item_count=int(totals["line_item_count"]),
            ) if totals else CostTotals(),
            by_service=breakdown(lambda r: dimension(r.service)),
            by_account=breakdown(lambda r: dimension(r.account_id)),
            by_region=breakdown(lambda r: dimension(r.region)),
            time_series=time_series,
        )
        logger.debug("cost_summary_built", user_id=str(cost_filter.user_id), source=source, rows=len(rows))
        return summary
