from decimal import Decimal
from typing import List

from costlens.models.recommendation import (
    ImplementationEffort,
    RecommendationPriority,
    RecommendationType,
)
from costlens.schemas.costs import RecommendationCandidate
from costlens.services.costs.rollup import rollup
from costlens.services.recommendations.base import RecommendationRule, RuleContext

# Days under $1 per day before a service/region counts as idle
MIN_IDLE_DAYS = 7
IDLE_DAILY_COST = Decimal("1")


class IdleResourceRule(RecommendationRule):
    @property
    def rule_type(self) -> str:
        return RecommendationType.IDLE_RESOURCE_CLEANUP.value

    def evaluate(self, context: RuleContext) -> List[RecommendationCandidate]:
        idle_days = [
            row for row in context.daily_aggregates
            if 0 < (row.total_cost or 0) < IDLE_DAILY_COST
        ]
        groups = rollup(
            idle_days,
            key=lambda row: (row.account_id, row.service, row.region),
            measures={"total_cost": lambda row: row.total_cost},
        )

        candidates = []
        for (account_id, service, region), bucket in groups.items():
            days = bucket["count"]
            if days < MIN_IDLE_DAYS:
                continue
            total = bucket["total_cost"]
            candidates.append(RecommendationCandidate(
                type=self.rule_type,
                priority=RecommendationPriority.MEDIUM.value,
                account_id=account_id,
                service=service,
                region=region,
                title=f"Idle {service} resources detected",
                description=f"{service} resources in {region} have been idle for {days} days.",
                current_cost=total,
                estimated_savings=total,
                estimated_savings_percent=100,
                implementation_effort=ImplementationEffort.LOW.value,
                action_items=[
                    "Review resource usage",
                    "Stop or terminate idle resources",
                    "Set up automated cleanup policies",
                ],
                metadata={"days": days, "region": region},
            ))
        return candidates
