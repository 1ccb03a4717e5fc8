"""
Cost Anomaly Detector

Flags daily cost outliers with a population z-score per
(account, service, region) group over a lookback window.

Data source is the user's daily aggregates. When none exist in the window
(aggregation has not run yet) the detector falls back to line items summed
per calendar day, with every dimension treated as "all".
"""

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from costlens.core.config import Settings, get_settings
from costlens.core.exceptions import ResourceNotFoundError
from costlens.core.ops_metrics import ANOMALIES_DETECTED
from costlens.core.ownership import coerce_uuid, require_user_id
from costlens.models.aggregate import Aggregate, AggregationType
from costlens.models.anomaly import Anomaly, AnomalySeverity, AnomalyType
from costlens.models.billing import LineItem
from costlens.services.costs.filters import CostFilter
from costlens.services.costs.rollup import rollup, utc_day

logger = structlog.get_logger()

ALL = "all"


@dataclass
class CostPoint:
    date: date
    cost: float
    account_id: Optional[str] = None
    service: Optional[str] = None
    region: Optional[str] = None

    @property
    def group_key(self) -> Tuple[str, str, str]:
        return (self.account_id or ALL, self.service or ALL, self.region or ALL)


def classify_severity(z_score: float) -> AnomalySeverity:
    if z_score > 4:
        return AnomalySeverity.CRITICAL
    if z_score > 3:
        return AnomalySeverity.HIGH
    return AnomalySeverity.MEDIUM


def _money(value: float) -> Decimal:
    return Decimal(str(round(float(value), 8)))


class AnomalyDetector:
    def __init__(self, db: AsyncSession, settings: Optional[Settings] = None):
        self.db = db
        self.settings = settings or get_settings()

    async def detect(
        self,
        user_id: Any,
        account_id: Optional[str] = None,
        service: Optional[str] = None,
        lookback_days: Optional[int] = None,
        threshold: Optional[float] = None,
    ) -> List[Anomaly]:
        """
        Detect and persist anomalies for one user.

        Returns an empty list when the window holds fewer than
        ANOMALY_MIN_DATA_POINTS points. Nothing is written in that case.
        """
        user_id = require_user_id(user_id)
        if lookback_days is None:
            lookback_days = self.settings.ANOMALY_LOOKBACK_DAYS
        if lookback_days < 1:
            raise ValueError(f"lookback_days must be positive, got {lookback_days}")
        threshold = threshold if threshold is not None else self.settings.ANOMALY_Z_SCORE_THRESHOLD

        now = datetime.now(timezone.utc)
        window = CostFilter(
            user_id=user_id,
            start_date=now - timedelta(days=lookback_days),
            end_date=now,
            account_id=account_id,
            service=service,
        )

        points, source = await self._load_points(window)
        if len(points) < self.settings.ANOMALY_MIN_DATA_POINTS:
            logger.info(
                "anomaly_detection_insufficient_data",
                user_id=str(user_id),
                points=len(points),
                required=self.settings.ANOMALY_MIN_DATA_POINTS,
            )
            return []

        anomalies = self._score(user_id, points, threshold, now)
        if not anomalies:
            logger.info("anomaly_detection_complete", user_id=str(user_id), source=source, points=len(points), anomalies=0)
            return []

        self.db.add_all(anomalies)
        await self.db.commit()
        for anomaly in anomalies:
            ANOMALIES_DETECTED.labels(severity=anomaly.severity).inc()

        await self._annotate_line_items(user_id, anomalies)

        logger.info(
            "anomaly_detection_complete",
            user_id=str(user_id),
            source=source,
            points=len(points),
            anomalies=len(anomalies),
        )
        return anomalies

    async def _load_points(self, window: CostFilter) -> Tuple[List[CostPoint], str]:
        result = await self.db.execute(
            select(Aggregate)
            .where(*window.aggregate_clauses(AggregationType.DAILY.value))
            .order_by(Aggregate.date)
            .execution_options(populate_existing=True)
        )
        aggregates = result.scalars().all()
        if aggregates:
            return [
                CostPoint(
                    date=row.date,
                    cost=float(row.total_cost or 0),
                    account_id=row.account_id,
                    service=row.service,
                    region=row.region,
                )
                for row in aggregates
            ], "aggregates"

        result = await self.db.execute(
            select(LineItem.usage_start_date, LineItem.ingestion_date, LineItem.cost).where(
                *window.line_item_clauses()
            )
        )
        by_day = rollup(
            result.all(),
            key=lambda r: utc_day(r.usage_start_date or r.ingestion_date),
            measures={"cost": lambda r: r.cost},
        )
        return [
            CostPoint(date=day, cost=float(bucket["cost"]))
            for day, bucket in sorted(by_day.items())
        ], "line_items"

    def _score(
        self,
        user_id: Any,
        points: List[CostPoint],
        threshold: float,
        detected_at: datetime,
    ) -> List[Anomaly]:
        groups: Dict[Tuple[str, str, str], List[CostPoint]] = {}
        for point in points:
            groups.setdefault(point.group_key, []).append(point)

        anomalies: List[Anomaly] = []
        for (account, service, region), group in groups.items():
            costs = np.array([p.cost for p in group], dtype=float)
            mean = float(np.mean(costs))
            std = float(np.std(costs, ddof=0))
            if std == 0 or not np.isfinite(std):
                continue

            for point in group:
                z_score = abs(point.cost - mean) / std
                if z_score <= threshold:
                    continue

                anomaly_type = AnomalyType.SPIKE if point.cost > mean else AnomalyType.DROP
                variance = point.cost - mean
                anomalies.append(Anomaly(
                    user_id=user_id,
                    type=anomaly_type.value,
                    severity=classify_severity(z_score).value,
                    account_id=None if account == ALL else account,
                    service=None if service == ALL else service,
                    region=None if region == ALL else region,
                    date=point.date,
                    detected_at=detected_at,
                    cost=_money(point.cost),
                    expected_cost=_money(mean),
                    variance=_money(variance),
                    variance_percent=(variance / mean * 100) if mean != 0 else None,
                    z_score=z_score,
                    description=(
                        f"Cost {anomaly_type.value} detected: ${point.cost:.2f} "
                        f"vs expected ${mean:.2f} (z-score: {z_score:.2f})"
                    ),
                    acknowledged=False,
                ))
        return anomalies

    async def _annotate_line_items(self, user_id: Any, anomalies: List[Anomaly]) -> None:
        """
        Mark up to ANOMALY_MAX_FLAGGED_LINE_ITEMS line items per anomaly.

        Advisory only: a failure is logged and rolled back, and the anomaly
        rows committed before this step stay in place.
        """
        limit = self.settings.ANOMALY_MAX_FLAGGED_LINE_ITEMS
        flagged = 0
        try:
            for anomaly in anomalies:
                day_start = datetime.combine(anomaly.date, time.min, tzinfo=timezone.utc)
                clauses = [
                    LineItem.user_id == user_id,
                    LineItem.usage_start_date >= day_start,
                    LineItem.usage_start_date < day_start + timedelta(days=1),
                ]
                for column, value in (
                    (LineItem.account_id, anomaly.account_id),
                    (LineItem.service, anomaly.service),
                    (LineItem.region, anomaly.region),
                ):
                    clauses.append(column == value if value is not None else column.is_not(None))

                result = await self.db.execute(select(LineItem.id).where(*clauses).limit(limit))
                ids = result.scalars().all()
                if not ids:
                    continue

                await self.db.execute(
                    update(LineItem)
                    .where(LineItem.id.in_(ids))
                    .values(is_anomaly=True, anomaly_score=anomaly.z_score)
                    .execution_options(synchronize_session=False)
                )
                flagged += len(ids)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            for anomaly in anomalies:
                await self.db.refresh(anomaly)
            logger.warning("anomaly_annotation_failed", user_id=str(user_id), error=str(e))
            return

        logger.debug("anomaly_line_items_flagged", user_id=str(user_id), count=flagged)

    async def acknowledge(self, anomaly_id: Any, user_id: Any, acknowledged_by: Optional[str] = None) -> Anomaly:
        """Record that a user has seen an anomaly. Scoped to the user's own anomalies."""
        user_id = require_user_id(user_id)
        anomaly_uuid = coerce_uuid(anomaly_id)

        anomaly = None
        if anomaly_uuid is not None:
            result = await self.db.execute(
                select(Anomaly).where(Anomaly.id == anomaly_uuid, Anomaly.user_id == user_id)
            )
            anomaly = result.scalar_one_or_none()
        if anomaly is None:
            raise ResourceNotFoundError("Anomaly not found", details={"anomaly_id": str(anomaly_id)})

        anomaly.acknowledged = True
        anomaly.acknowledged_by = acknowledged_by
        anomaly.acknowledged_at = datetime.now(timezone.utc)
        await self.db.commit()

        logger.info("anomaly_acknowledged", anomaly_id=str(anomaly.id), user_id=str(user_id))
        return anomaly
