"""
Recommendation Engine

Runs every registered rule over one user's recent cost data and persists the
candidates in a single bulk insert. Runs are append-only: repeated runs add
new rows rather than deduplicating against earlier ones.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from costlens.core.config import Settings, get_settings
from costlens.core.exceptions import ResourceNotFoundError
from costlens.core.ops_metrics import RECOMMENDATION_RULE_FAILURES, RECOMMENDATIONS_GENERATED
from costlens.core.ownership import coerce_uuid, require_user_id
from costlens.models.aggregate import Aggregate, AggregationType
from costlens.models.billing import LineItem
from costlens.models.recommendation import Recommendation, RecommendationStatus
from costlens.schemas.costs import RecommendationCandidate
from costlens.services.costs.filters import CostFilter
from costlens.services.recommendations.base import RecommendationRule, RuleContext
from costlens.services.recommendations.rules import (
    IdleResourceRule,
    ReservedInstanceRule,
    RightsizingRule,
    StorageTieringRule,
    UnattachedElasticIpRule,
    UnattachedVolumeRule,
)

logger = structlog.get_logger()


def default_rules() -> List[RecommendationRule]:
    return [
        RightsizingRule(),
        ReservedInstanceRule(),
        UnattachedVolumeRule(),
        UnattachedElasticIpRule(),
        StorageTieringRule(),
        IdleResourceRule(),
    ]


class RecommendationEngine:
    """
    Usage:
        engine = RecommendationEngine(db)
        recommendations = await engine.generate(user_id, lookback_days=30)
    """

    def __init__(
        self,
        db: AsyncSession,
        settings: Optional[Settings] = None,
        rules: Optional[List[RecommendationRule]] = None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.rules = rules if rules is not None else default_rules()

    async def generate(
        self,
        user_id: Any,
        account_id: Optional[str] = None,
        lookback_days: Optional[int] = None,
    ) -> List[Recommendation]:
        user_id = require_user_id(user_id)
        if lookback_days is None:
            lookback_days = self.settings.RECOMMENDATION_LOOKBACK_DAYS
        if lookback_days < 1:
            raise ValueError(f"lookback_days must be positive, got {lookback_days}")

        context = await self._load_context(user_id, account_id, lookback_days)

        candidates: List[RecommendationCandidate] = []
        for rule in self.rules:
            try:
                produced = rule.evaluate(context)
            except Exception as e:
                RECOMMENDATION_RULE_FAILURES.labels(rule=rule.rule_type).inc()
                logger.error("recommendation_rule_failed", rule=rule.rule_type, user_id=str(user_id), error=str(e))
                continue
            logger.debug("recommendation_rule_evaluated", rule=rule.rule_type, candidates=len(produced))
            candidates.extend(produced)

        generated_at = datetime.now(timezone.utc)
        recommendations = [self._to_model(user_id, candidate, generated_at) for candidate in candidates]
        if recommendations:
            self.db.add_all(recommendations)
            await self.db.commit()
            for rec in recommendations:
                RECOMMENDATIONS_GENERATED.labels(type=rec.type).inc()

        logger.info(
            "recommendations_generated",
            user_id=str(user_id),
            count=len(recommendations),
            line_items=len(context.line_items),
            lookback_days=lookback_days,
        )
        return recommendations

    async def _load_context(self, user_id, account_id: Optional[str], lookback_days: int) -> RuleContext:
        window_end = datetime.now(timezone.utc)
        window_start = window_end - timedelta(days=lookback_days)
        window = CostFilter(user_id=user_id, start_date=window_start, end_date=window_end, account_id=account_id)

        line_items = (
            await self.db.execute(select(LineItem).where(*window.line_item_clauses()))
        ).scalars().all()

        daily = (
            await self.db.execute(
                select(Aggregate)
                .where(*window.aggregate_clauses(AggregationType.DAILY.value))
                .order_by(Aggregate.date)
                .execution_options(populate_existing=True)
            )
        ).scalars().all()

        # Monthly rows are dated on the 1st, so widen the start to the window's first month
        monthly_window = CostFilter(
            user_id=user_id,
            start_date=window_start.date().replace(day=1),
            end_date=window_end.date(),
            account_id=account_id,
        )
        monthly = (
            await self.db.execute(
                select(Aggregate)
                .where(*monthly_window.aggregate_clauses(AggregationType.MONTHLY.value))
                .order_by(Aggregate.date)
                .execution_options(populate_existing=True)
            )
        ).scalars().all()

        return RuleContext(
            user_id=user_id,
            window_start=window_start,
            window_end=window_end,
            account_id=account_id,
            line_items=line_items,
            daily_aggregates=daily,
            monthly_aggregates=monthly,
        )

    @staticmethod
    def _to_model(user_id, candidate: RecommendationCandidate, generated_at: datetime) -> Recommendation:
        return Recommendation(
            user_id=user_id,
            type=candidate.type,
            priority=candidate.priority,
            account_id=candidate.account_id,
            service=candidate.service,
            region=candidate.region,
            resource_id=candidate.resource_id,
            title=candidate.title,
            description=candidate.description,
            current_cost=candidate.current_cost,
            estimated_savings=candidate.estimated_savings,
            estimated_savings_percent=candidate.estimated_savings_percent,
            implementation_effort=candidate.implementation_effort,
            action_items=list(candidate.action_items),
            details=dict(candidate.metadata),
            status=RecommendationStatus.PENDING.value,
            generated_at=generated_at,
        )

    async def update_status(
        self,
        recommendation_id: Any,
        user_id: Any,
        status: str,
        implemented_by: Optional[str] = None,
    ) -> Recommendation:
        """
        Persist a status change made outside the engine.

        Raises:
            ValueError: status is not a known RecommendationStatus.
            ResourceNotFoundError: the id is unknown or belongs to another user.
        """
        user_id = require_user_id(user_id)
        new_status = RecommendationStatus(status)

        rec_uuid = coerce_uuid(recommendation_id)
        recommendation = None
        if rec_uuid is not None:
            result = await self.db.execute(
                select(Recommendation).where(Recommendation.id == rec_uuid, Recommendation.user_id == user_id)
            )
            recommendation = result.scalar_one_or_none()
        if recommendation is None:
            raise ResourceNotFoundError(
                "Recommendation not found",
                details={"recommendation_id": str(recommendation_id)},
            )

        recommendation.status = new_status.value
        if new_status is RecommendationStatus.IMPLEMENTED:
            recommendation.implemented_at = datetime.now(timezone.utc)
            recommendation.implemented_by = implemented_by
        await self.db.commit()

        logger.info(
            "recommendation_status_updated",
            recommendation_id=str(recommendation.id),
            user_id=str(user_id),
            status=new_status.value,
        )
        return recommendation
