import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Sequence
import uuid

from costlens.models.aggregate import Aggregate
from costlens.models.billing import LineItem
from costlens.schemas.costs import RecommendationCandidate

COMPUTE_SERVICE_PATTERN = re.compile(r"EC2|Elastic Compute Cloud", re.IGNORECASE)
COMPUTE_PRODUCT_CODE_PATTERN = re.compile(r"AmazonEC2", re.IGNORECASE)
OBJECT_STORAGE_PATTERN = re.compile(r"S3|Simple Storage Service", re.IGNORECASE)


def matches(pattern: re.Pattern, *values: Optional[str]) -> bool:
    """True if any non-empty value matches the pattern anywhere."""
    return any(value and pattern.search(value) for value in values)


@dataclass
class RuleContext:
    """
    Everything the rules read, loaded once per engine run.

    All rows belong to `user_id` and respect the optional account filter.
    """
    user_id: uuid.UUID
    window_start: datetime
    window_end: datetime
    account_id: Optional[str] = None
    line_items: Sequence[LineItem] = field(default_factory=list)
    daily_aggregates: Sequence[Aggregate] = field(default_factory=list)
    monthly_aggregates: Sequence[Aggregate] = field(default_factory=list)


class RecommendationRule(ABC):
    """
    Abstract base class for cost optimization rules.
    Each rule inspects the shared context and proposes zero or more recommendations.
    """

    @property
    @abstractmethod
    def rule_type(self) -> str:
        """
        The recommendation type this rule produces (e.g., 'unattached_ebs').
        Used for logging and metrics labels.
        """
        pass

    @abstractmethod
    def evaluate(self, context: RuleContext) -> List[RecommendationCandidate]:
        """
        Evaluate the rule.

        Must be deterministic: the same context yields the same candidates in
        the same order.
        """
        pass
