"""
Cost anomalies flagged by the z-score detector.
"""

import uuid
from datetime import date as date_type, datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import String, Text, Boolean, Float, Numeric, Date, DateTime, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from costlens.db.base import Base


class AnomalyType(str, Enum):
    SPIKE = "spike"
    DROP = "drop"
    UNUSUAL_PATTERN = "unusual_pattern"


class AnomalySeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class Anomaly(Base):
    __tablename__ = "anomalies"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)

    type: Mapped[str] = mapped_column(String(20), nullable=False)
    severity: Mapped[str] = mapped_column(String(10), nullable=False)

    # NULL means the anomaly spans all values of the dimension
    account_id: Mapped[str | None] = mapped_column(String, nullable=True)
    service: Mapped[str | None] = mapped_column(String, nullable=True)
    region: Mapped[str | None] = mapped_column(String, nullable=True)

    date: Mapped[date_type] = mapped_column(Date, nullable=False, index=True)
    detected_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    cost: Mapped[Decimal] = mapped_column(Numeric(18, 8), nullable=False)
    expected_cost: Mapped[Decimal] = mapped_column(Numeric(18, 8), nullable=False)
    variance: Mapped[Decimal] = mapped_column(Numeric(18, 8), nullable=False)
    variance_percent: Mapped[float | None] = mapped_column(Float, nullable=True)
    z_score: Mapped[float] = mapped_column(Float, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)

    acknowledged: Mapped[bool] = mapped_column(Boolean, default=False)
    acknowledged_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    acknowledged_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<Anomaly {self.type}/{self.severity} {self.date} z={self.z_score:.2f}>"
