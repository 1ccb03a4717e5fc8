from decimal import Decimal
from typing import List
import re

from costlens.models.recommendation import (
    ImplementationEffort,
    RecommendationPriority,
    RecommendationType,
)
from costlens.schemas.costs import RecommendationCandidate
from costlens.services.costs.rollup import rollup
from costlens.services.recommendations.base import (
    OBJECT_STORAGE_PATTERN,
    RecommendationRule,
    RuleContext,
    matches,
)

VOLUME_USAGE_PATTERN = re.compile(r"VolumeUsage", re.IGNORECASE)


class UnattachedVolumeRule(RecommendationRule):
    """A volume billed only a few dollars over the window is likely detached."""

    MAX_TOTAL_COST = Decimal("5")

    @property
    def rule_type(self) -> str:
        return RecommendationType.UNATTACHED_EBS.value

    def evaluate(self, context: RuleContext) -> List[RecommendationCandidate]:
        volumes = [item for item in context.line_items if matches(VOLUME_USAGE_PATTERN, item.usage_type)]
        groups = rollup(
            volumes,
            key=lambda item: (item.account_id, item.resource_id),
            measures={"total_cost": lambda item: item.cost},
        )

        candidates = []
        for (account_id, resource_id), bucket in groups.items():
            total = bucket["total_cost"]
            if not (0 < total < self.MAX_TOTAL_COST):
                continue
            candidates.append(RecommendationCandidate(
                type=self.rule_type,
                priority=RecommendationPriority.MEDIUM.value,
                account_id=account_id,
                service="EBS",
                resource_id=resource_id,
                title="Potential unattached EBS volume",
                description=f"EBS volume {resource_id} has minimal cost. Verify if it's attached to an instance.",
                current_cost=total,
                estimated_savings=total,
                estimated_savings_percent=100,
                implementation_effort=ImplementationEffort.LOW.value,
                action_items=[
                    "Verify volume attachment status",
                    "Delete unattached volumes",
                    "Create snapshot before deletion if needed",
                ],
                metadata={"resourceId": resource_id},
            ))
        return candidates


class StorageTieringRule(RecommendationRule):
    MIN_TOTAL_COST = Decimal("50")
    SAVINGS_RATE = Decimal("0.5")

    @property
    def rule_type(self) -> str:
        return RecommendationType.STORAGE_TIERING.value

    def evaluate(self, context: RuleContext) -> List[RecommendationCandidate]:
        objects = [item for item in context.line_items if matches(OBJECT_STORAGE_PATTERN, item.service)]
        groups = rollup(
            objects,
            key=lambda item: (item.account_id, item.usage_type),
            measures={
                "total_cost": lambda item: item.cost,
                "total_usage": lambda item: item.usage_quantity_normalized,
            },
        )

        candidates = []
        for (account_id, usage_type), bucket in groups.items():
            total = bucket["total_cost"]
            if not usage_type or "Standard" not in usage_type or total <= self.MIN_TOTAL_COST:
                continue
            candidates.append(RecommendationCandidate(
                type=self.rule_type,
                priority=RecommendationPriority.MEDIUM.value,
                account_id=account_id,
                service="S3",
                title="S3 Storage Tiering Opportunity",
                description=(
                    f"Consider moving {usage_type} data to Infrequent Access or Glacier for cost savings."
                ),
                current_cost=total,
                estimated_savings=total * self.SAVINGS_RATE,
                estimated_savings_percent=50,
                implementation_effort=ImplementationEffort.MEDIUM.value,
                action_items=[
                    "Analyze data access patterns",
                    "Configure S3 Lifecycle policies",
                    "Move infrequently accessed data to IA",
                    "Archive old data to Glacier",
                ],
                metadata={"usageType": usage_type, "totalUsage": float(bucket["total_usage"])},
            ))
        return candidates
