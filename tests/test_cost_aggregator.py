"""
Tests for AggregationService and CostSummaryService.

Covers:
- Daily totals equal the underlying line items
- Monthly totals equal the sum of their days
- Trend fields against the previous period
- Conflict fallback to per-row upserts
- User isolation
"""

import asyncio
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from costlens.core.exceptions import UserRequiredError
from costlens.core.locks import KeyedLock
from costlens.models.aggregate import Aggregate, AggregationType
from costlens.models.billing import LineItem
from costlens.services.costs.aggregator import AggregationService, CostSummaryService
from costlens.services.costs.filters import CostFilter

from factories import make_line_item


def at(day: int, month: int = 1, hour: int = 12) -> datetime:
    return datetime(2024, month, day, hour, tzinfo=timezone.utc)


async def seed(db, user_id):
    db.add_all([
        make_line_item(user_id, at(15), "1.25"),
        make_line_item(user_id, at(15, hour=18), "2.50"),
        make_line_item(user_id, at(16), "4.00"),
        make_line_item(user_id, at(16), "0.75", service="Amazon Simple Storage Service", region="us-west-2"),
        make_line_item(user_id, at(3, month=2), "10.00"),
    ])
    await db.commit()


async def aggregates(db, user_id, aggregation_type):
    result = await db.execute(
        select(Aggregate)
        .where(Aggregate.user_id == user_id, Aggregate.aggregation_type == aggregation_type.value)
        .order_by(Aggregate.date, Aggregate.service)
        .execution_options(populate_existing=True)
    )
    return result.scalars().all()


@pytest.mark.asyncio
async def test_daily_totals_match_line_items(db, user_id):
    await seed(db, user_id)

    written = await AggregationService(db).rebuild_daily_aggregates(user_id)

    rows = await aggregates(db, user_id, AggregationType.DAILY)
    assert written == len(rows) == 4
    by_key = {(row.date, row.service): row for row in rows}
    ec2_15 = by_key[(date(2024, 1, 15), "Amazon Elastic Compute Cloud")]
    assert ec2_15.total_cost == Decimal("3.75")
    assert ec2_15.line_item_count == 2
    assert ec2_15.total_usage_quantity == Decimal("2")

    line_total = (
        await db.execute(select(func.sum(LineItem.cost)).where(LineItem.user_id == user_id))
    ).scalar()
    assert sum(row.total_cost for row in rows) == Decimal(str(line_total))


@pytest.mark.asyncio
async def test_monthly_totals_equal_sum_of_days(db, user_id):
    await seed(db, user_id)

    counts = await AggregationService(db).rebuild_aggregates(user_id)

    assert counts == {"daily": 4, "monthly": 3}
    daily = await aggregates(db, user_id, AggregationType.DAILY)
    monthly = await aggregates(db, user_id, AggregationType.MONTHLY)
    for month_row in monthly:
        assert month_row.date.day == 1
        days = [
            row for row in daily
            if row.date.replace(day=1) == month_row.date
            and (row.account_id, row.service, row.region)
            == (month_row.account_id, month_row.service, month_row.region)
        ]
        assert month_row.total_cost == sum(row.total_cost for row in days)
        assert month_row.line_item_count == sum(row.line_item_count for row in days)


@pytest.mark.asyncio
async def test_trend_fields_compare_with_previous_period(db, user_id):
    await seed(db, user_id)

    await AggregationService(db).rebuild_aggregates(user_id)

    daily = {
        (row.date, row.service): row
        for row in await aggregates(db, user_id, AggregationType.DAILY)
    }
    first = daily[(date(2024, 1, 15), "Amazon Elastic Compute Cloud")]
    second = daily[(date(2024, 1, 16), "Amazon Elastic Compute Cloud")]
    assert first.previous_period_cost is None
    assert second.previous_period_cost == Decimal("3.75")
    assert second.cost_variance == Decimal("0.25")
    assert second.cost_variance_percent == pytest.approx(6.6667, rel=1e-3)

    monthly = {
        (row.date, row.service): row
        for row in await aggregates(db, user_id, AggregationType.MONTHLY)
    }
    february = monthly[(date(2024, 2, 1), "Amazon Elastic Compute Cloud")]
    assert february.previous_period_cost == Decimal("7.75")
    assert february.cost_variance == Decimal("2.25")


@pytest.mark.asyncio
async def test_rebuild_is_repeatable(db, user_id):
    await seed(db, user_id)
    service = AggregationService(db)

    await service.rebuild_aggregates(user_id)
    first = [(row.date, row.service, row.total_cost) for row in await aggregates(db, user_id, AggregationType.DAILY)]
    await service.rebuild_aggregates(user_id)
    second = [(row.date, row.service, row.total_cost) for row in await aggregates(db, user_id, AggregationType.DAILY)]

    assert first == second


@pytest.mark.asyncio
async def test_conflicting_rows_fall_back_to_upsert(db, user_id, monkeypatch):
    """If stale rows survive the delete, the insert conflicts and each row is upserted instead."""
    await seed(db, user_id)
    service = AggregationService(db)
    await service.rebuild_aggregates(user_id)

    db.add(make_line_item(user_id, at(15), "6.25"))
    await db.commit()

    async def keep_rows(user_id, aggregation_type):
        return 0

    monkeypatch.setattr(service, "_delete_aggregates", keep_rows)
    counts = await service.rebuild_aggregates(user_id)

    assert counts == {"daily": 4, "monthly": 3}
    daily = await aggregates(db, user_id, AggregationType.DAILY)
    assert len(daily) == 4
    jan_15 = next(
        row for row in daily
        if row.date == date(2024, 1, 15) and row.service == "Amazon Elastic Compute Cloud"
    )
    assert jan_15.total_cost == Decimal("10.00")
    assert jan_15.line_item_count == 3


@pytest.mark.asyncio
async def test_user_without_line_items_has_no_aggregates(db, user_id):
    counts = await AggregationService(db).rebuild_aggregates(user_id)

    assert counts == {"daily": 0, "monthly": 0}
    assert await aggregates(db, user_id, AggregationType.DAILY) == []


@pytest.mark.asyncio
async def test_rebuild_only_touches_own_user(db, user_id):
    other = uuid.uuid4()
    await seed(db, user_id)
    await seed(db, other)
    service = AggregationService(db)
    await service.rebuild_aggregates(user_id)
    await service.rebuild_aggregates(other)

    # Removing the user's data and rebuilding must leave the other user's rows alone
    for item in (await db.execute(select(LineItem).where(LineItem.user_id == user_id))).scalars().all():
        await db.delete(item)
    await db.commit()
    await service.rebuild_aggregates(user_id)

    assert await aggregates(db, user_id, AggregationType.DAILY) == []
    assert len(await aggregates(db, other, AggregationType.DAILY)) == 4


@pytest.mark.asyncio
async def test_missing_dimensions_are_grouped_as_unknown(db, user_id):
    db.add(make_line_item(user_id, at(20), "1.00", region=None))
    db.add(make_line_item(user_id, None, "2.00", region=None, ingestion_date=at(20, hour=3)))
    await db.commit()

    await AggregationService(db).rebuild_daily_aggregates(user_id)

    rows = await aggregates(db, user_id, AggregationType.DAILY)
    assert len(rows) == 1
    assert rows[0].region == "unknown"
    assert rows[0].total_cost == Decimal("3.00")


@pytest.mark.asyncio
async def test_rebuild_requires_user(db):
    with pytest.raises(UserRequiredError):
        await AggregationService(db).rebuild_aggregates(None)


@pytest.mark.asyncio
async def test_rebuilds_for_same_user_are_serialized(db, user_id):
    locks = KeyedLock()
    service = AggregationService(db, locks=locks)
    active = 0
    peak = 0

    async def rebuild_daily(uid):
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0.01)
        active -= 1
        return 0

    async def rebuild_monthly(uid):
        return 0

    service.rebuild_daily_aggregates = rebuild_daily
    service.rebuild_monthly_aggregates = rebuild_monthly

    await asyncio.gather(service.rebuild_aggregates(user_id), service.rebuild_aggregates(user_id))

    assert peak == 1
    assert not locks.is_locked(user_id)


class TestCostSummary:
    @pytest.mark.asyncio
    async def test_summary_from_aggregates(self, db, user_id):
        await seed(db, user_id)
        await AggregationService(db).rebuild_aggregates(user_id)

        summary = await CostSummaryService(db).get_summary(
            CostFilter(user_id=user_id, start_date=date(2024, 1, 1), end_date=date(2024, 1, 31))
        )

        assert summary.source == "aggregates"
        assert summary.totals.cost == Decimal("8.50")
        assert summary.totals.line_item_count == 4
        assert [item.key for item in summary.by_service] == [
            "Amazon Elastic Compute Cloud",
            "Amazon Simple Storage Service",
        ]
        assert [item.key for item in summary.by_region] == ["us-east-1", "us-west-2"]
        assert [point.date for point in summary.time_series] == [date(2024, 1, 15), date(2024, 1, 16)]

    @pytest.mark.asyncio
    async def test_summary_falls_back_to_line_items(self, db, user_id):
        await seed(db, user_id)

        summary = await CostSummaryService(db).get_summary(
            CostFilter(user_id=user_id, service="Amazon Elastic Compute Cloud"),
            aggregation_type="monthly",
        )

        assert summary.source == "line_items"
        assert summary.totals.cost == Decimal("17.75")
        assert [point.date for point in summary.time_series] == [date(2024, 1, 1), date(2024, 2, 1)]
        assert [point.cost for point in summary.time_series] == [Decimal("7.75"), Decimal("10.00")]

    @pytest.mark.asyncio
    async def test_empty_summary(self, db, user_id):
        summary = await CostSummaryService(db).get_summary(CostFilter(user_id=user_id))

        assert summary.source == "line_items"
        assert summary.totals.cost == Decimal("0")
        assert summary.by_service == []
        assert summary.time_series == []
