"""
Cost Pipeline Result Schemas
"""

from datetime import date
from decimal import Decimal
from typing import List, Optional, Dict, Any
from pydantic import BaseModel, Field


class IngestionResult(BaseModel):
    """Outcome of processing one CSV file."""
    processed: int = 0
    skipped: int = 0
    total: int = 0


class RecommendationCandidate(BaseModel):
    """Rule output before persistence."""
    type: str
    priority: str
    title: str
    description: str
    account_id: Optional[str] = None
    service: Optional[str] = None
    region: Optional[str] = None
    resource_id: Optional[str] = None
    current_cost: Decimal = Decimal("0")
    estimated_savings: Decimal = Decimal("0")
    estimated_savings_percent: float = 0.0
    implementation_effort: str = "medium"
    action_items: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class CostBreakdownItem(BaseModel):
    """One bucket of a cost summary breakdown (service, account or region)."""
    key: str
    cost: Decimal
    usage: Decimal = Decimal("0")
    line_item_count: int = 0


class CostTimePoint(BaseModel):
    date: date
    cost: Decimal
    usage: Decimal = Decimal("0")
    line_item_count: int = 0


class CostTotals(BaseModel):
    cost: Decimal = Decimal("0")
    usage: Decimal = Decimal("0")
    line_item_count: int = 0


class CostSummary(BaseModel):
    """Totals, breakdowns and time series for a filtered cost view."""
    source: str  # "aggregates" or "line_items"
    totals: CostTotals
    by_service: List[CostBreakdownItem] = Field(default_factory=list)
    by_account: List[CostBreakdownItem] = Field(default_factory=list)
    by_region: List[CostBreakdownItem] = Field(default_factory=list)
    time_series: List[CostTimePoint] = Field(default_factory=list)
