"""
Cost Optimization Recommendations

Produced by the rule engine. Status transitions happen outside the
engine (a user acting on the advice) and are persisted through
RecommendationEngine.update_status.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import String, Text, Float, Numeric, DateTime, JSON, Uuid
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.dialects.postgresql import JSONB

from costlens.db.base import Base


class RecommendationType(str, Enum):
    RIGHTSIZING = "rightsizing"
    RESERVED_INSTANCE = "reserved_instance"
    SAVINGS_PLAN = "savings_plan"
    STORAGE_TIERING = "storage_tiering"
    IDLE_RESOURCE_CLEANUP = "idle_resource_cleanup"
    DATA_TRANSFER_OPTIMIZATION = "data_transfer_optimization"
    UNATTACHED_EBS = "unattached_ebs"
    UNATTACHED_EIP = "unattached_eip"


class RecommendationPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ImplementationEffort(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class RecommendationStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    IMPLEMENTED = "implemented"
    DISMISSED = "dismissed"


class Recommendation(Base):
    __tablename__ = "recommendations"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)

    type: Mapped[str] = mapped_column(String(40), nullable=False, index=True)
    priority: Mapped[str] = mapped_column(String(10), nullable=False)

    account_id: Mapped[str | None] = mapped_column(String, nullable=True)
    service: Mapped[str | None] = mapped_column(String, nullable=True)
    region: Mapped[str | None] = mapped_column(String, nullable=True)
    resource_id: Mapped[str | None] = mapped_column(String, nullable=True)

    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)

    current_cost: Mapped[Decimal] = mapped_column(Numeric(18, 8), default=Decimal("0"))
    estimated_savings: Mapped[Decimal] = mapped_column(Numeric(18, 8), default=Decimal("0"))
    estimated_savings_percent: Mapped[float] = mapped_column(Float, default=0.0)
    implementation_effort: Mapped[str] = mapped_column(String(10), default=ImplementationEffort.MEDIUM.value)

    action_items: Mapped[list] = mapped_column(JSON().with_variant(JSONB, "postgresql"), default=list)
    # "metadata" is reserved on declarative classes
    details: Mapped[dict] = mapped_column("metadata", JSON().with_variant(JSONB, "postgresql"), default=dict)

    status: Mapped[str] = mapped_column(String(20), default=RecommendationStatus.PENDING.value, index=True)
    generated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    implemented_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    implemented_by: Mapped[str | None] = mapped_column(String(255), nullable=True)

    def __repr__(self) -> str:
        return f"<Recommendation {self.type} {self.title!r} ({self.status})>"
