from decimal import Decimal
from typing import Dict, List, Tuple
import re

import numpy as np

from costlens.models.recommendation import (
    ImplementationEffort,
    RecommendationPriority,
    RecommendationType,
)
from costlens.schemas.costs import RecommendationCandidate
from costlens.services.costs.rollup import UNKNOWN, rollup
from costlens.services.recommendations.base import (
    COMPUTE_PRODUCT_CODE_PATTERN,
    COMPUTE_SERVICE_PATTERN,
    RecommendationRule,
    RuleContext,
    matches,
)

BOX_USAGE_PATTERN = re.compile(r"BoxUsage", re.IGNORECASE)
ELASTIC_IP_PATTERN = re.compile(r"ElasticIP", re.IGNORECASE)

MAX_RESOURCE_IDS = 10


class RightsizingRule(RecommendationRule):
    """Many cheap on-demand instances of one type suggest a smaller size would do."""

    MIN_TOTAL_COST = Decimal("10")
    MAX_AVERAGE_COST = Decimal("50")
    SAVINGS_RATE = Decimal("0.3")

    @property
    def rule_type(self) -> str:
        return RecommendationType.RIGHTSIZING.value

    def evaluate(self, context: RuleContext) -> List[RecommendationCandidate]:
        instances = [
            item for item in context.line_items
            if (
                matches(COMPUTE_SERVICE_PATTERN, item.service, item.product_name)
                or matches(COMPUTE_PRODUCT_CODE_PATTERN, item.product_code)
            )
            and matches(BOX_USAGE_PATTERN, item.usage_type)
        ]

        def key(item) -> Tuple[str, str]:
            return (item.account_id, item.usage_type or UNKNOWN)

        groups = rollup(instances, key=key, measures={"total_cost": lambda i: i.cost})
        resource_ids: Dict[Tuple[str, str], List[str]] = {}
        for item in instances:
            ids = resource_ids.setdefault(key(item), [])
            if item.resource_id and item.resource_id not in ids:
                ids.append(item.resource_id)

        candidates = []
        for (account_id, instance_type), bucket in groups.items():
            total, count = bucket["total_cost"], bucket["count"]
            if total <= self.MIN_TOTAL_COST or count <= 1:
                continue
            if total / count >= self.MAX_AVERAGE_COST:
                continue
            candidates.append(RecommendationCandidate(
                type=self.rule_type,
                priority=RecommendationPriority.MEDIUM.value,
                account_id=account_id,
                service="EC2",
                title=f"Rightsize {instance_type} instances",
                description=f"{count} instances of type {instance_type} with low average cost. Consider downsizing.",
                current_cost=total,
                estimated_savings=total * self.SAVINGS_RATE,
                estimated_savings_percent=30,
                implementation_effort=ImplementationEffort.MEDIUM.value,
                action_items=[
                    "Review instance utilization metrics",
                    "Consider switching to smaller instance types",
                    "Evaluate spot instances for non-critical workloads",
                ],
                metadata={
                    "instanceType": instance_type,
                    "instanceCount": count,
                    "resourceIds": resource_ids[(account_id, instance_type)][:MAX_RESOURCE_IDS],
                },
            ))
        return candidates


class ReservedInstanceRule(RecommendationRule):
    """Stable, substantial monthly compute spend is a fit for a commitment discount."""

    MIN_MONTHLY_COST = 500.0
    MAX_COEFFICIENT_OF_VARIATION = 0.2
    SAVINGS_RATE = Decimal("0.5")

    @property
    def rule_type(self) -> str:
        return RecommendationType.RESERVED_INSTANCE.value

    def evaluate(self, context: RuleContext) -> List[RecommendationCandidate]:
        compute_months = [
            row for row in context.monthly_aggregates
            if matches(COMPUTE_SERVICE_PATTERN, row.service)
        ]
        # One sample per (account, month), summed across regions
        monthly = rollup(
            compute_months,
            key=lambda row: (row.account_id, row.date),
            measures={"total_cost": lambda row: row.total_cost},
        )
        by_account: Dict[str, List[float]] = {}
        for (account_id, _month), bucket in monthly.items():
            by_account.setdefault(account_id, []).append(float(bucket["total_cost"]))

        candidates = []
        for account_id, costs in by_account.items():
            series = np.array(costs, dtype=float)
            mean = float(np.mean(series))
            if mean <= 0:
                continue
            cv = float(np.std(series, ddof=0)) / mean
            if mean <= self.MIN_MONTHLY_COST or cv >= self.MAX_COEFFICIENT_OF_VARIATION:
                continue

            avg_cost = Decimal(str(round(mean, 8)))
            candidates.append(RecommendationCandidate(
                type=self.rule_type,
                priority=RecommendationPriority.HIGH.value,
                account_id=account_id,
                service="EC2",
                title="Consider Reserved Instances",
                description=(
                    f"Consistent monthly EC2 spend of ${mean:.2f}. "
                    "Reserved Instances could save up to 72%."
                ),
                current_cost=avg_cost,
                estimated_savings=avg_cost * self.SAVINGS_RATE,
                estimated_savings_percent=50,
                implementation_effort=ImplementationEffort.LOW.value,
                action_items=[
                    "Analyze instance usage patterns",
                    "Purchase 1-year or 3-year Reserved Instances",
                    "Consider Savings Plans for flexibility",
                ],
                metadata={
                    "avgMonthlyCost": round(mean, 2),
                    "coefficientOfVariation": round(cv, 4),
                    "months": len(costs),
                },
            ))
        return candidates


class UnattachedElasticIpRule(RecommendationRule):
    @property
    def rule_type(self) -> str:
        return RecommendationType.UNATTACHED_EIP.value

    def evaluate(self, context: RuleContext) -> List[RecommendationCandidate]:
        addresses = [
            item for item in context.line_items
            if matches(COMPUTE_SERVICE_PATTERN, item.service) and matches(ELASTIC_IP_PATTERN, item.usage_type)
        ]
        groups = rollup(
            addresses,
            key=lambda item: (item.account_id, item.resource_id),
            measures={"total_cost": lambda item: item.cost},
        )

        candidates = []
        for (account_id, resource_id), bucket in groups.items():
            total = bucket["total_cost"]
            if total <= 0:
                continue
            candidates.append(RecommendationCandidate(
                type=self.rule_type,
                priority=RecommendationPriority.LOW.value,
                account_id=account_id,
                service="EC2",
                resource_id=resource_id,
                title="Elastic IP charges",
                description=f"Elastic IP {resource_id} is incurring charges. Release if not in use.",
                current_cost=total,
                estimated_savings=total,
                estimated_savings_percent=100,
                implementation_effort=ImplementationEffort.LOW.value,
                action_items=[
                    "Verify Elastic IP is attached to a running instance",
                    "Release unattached Elastic IPs",
                ],
                metadata={"resourceId": resource_id},
            ))
        return candidates
