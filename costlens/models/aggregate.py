import uuid
from datetime import date as date_type, datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import String, Integer, Float, Numeric, Date, DateTime, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from costlens.db.base import Base


class AggregationType(str, Enum):
    DAILY = "daily"
    MONTHLY = "monthly"


class Aggregate(Base):
    """
    Pre-computed cost roll-up for one (day or month, account, service, region).

    Monthly rows use the first day of the month as `date`.
    """
    __tablename__ = "aggregates"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)

    date: Mapped[date_type] = mapped_column(Date, nullable=False, index=True)
    account_id: Mapped[str] = mapped_column(String, nullable=False)
    service: Mapped[str] = mapped_column(String, nullable=False)
    region: Mapped[str] = mapped_column(String, nullable=False)
    aggregation_type: Mapped[str] = mapped_column(String(10), nullable=False)

    total_cost: Mapped[Decimal] = mapped_column(Numeric(18, 8), default=Decimal("0"))
    total_usage_quantity: Mapped[Decimal] = mapped_column(Numeric(18, 8), default=Decimal("0"))
    line_item_count: Mapped[int] = mapped_column(Integer, default=0)

    # Trend against the preceding period for the same dimensions
    previous_period_cost: Mapped[Decimal | None] = mapped_column(Numeric(18, 8), nullable=True)
    cost_variance: Mapped[Decimal | None] = mapped_column(Numeric(18, 8), nullable=True)
    cost_variance_percent: Mapped[float | None] = mapped_column(Float, nullable=True)

    computed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "user_id", "date", "account_id", "service", "region", "aggregation_type",
            name="uix_aggregate_dimensions",
        ),
    )
