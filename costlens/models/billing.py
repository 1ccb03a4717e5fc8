"""
Billing line items ingested from AWS Cost and Usage Report CSV exports.

Each row keeps the raw CUR fields next to the normalized dimensions
(account, service, region, cost) that aggregation and analysis read.
"""

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import String, Boolean, Float, ForeignKey, Numeric, DateTime, UniqueConstraint, Index, JSON, Uuid
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.dialects.postgresql import JSONB

from costlens.db.base import Base


class LineItem(Base):
    __tablename__ = "billing_line_items"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)

    # Raw CUR fields
    invoice_id: Mapped[str | None] = mapped_column(String, nullable=True)
    payer_account_id: Mapped[str | None] = mapped_column(String, nullable=True)
    linked_account_id: Mapped[str | None] = mapped_column(String, nullable=True)
    record_type: Mapped[str | None] = mapped_column(String, nullable=True)
    product_name: Mapped[str | None] = mapped_column(String, nullable=True)
    product_code: Mapped[str | None] = mapped_column(String, nullable=True)
    usage_type: Mapped[str | None] = mapped_column(String, nullable=True)
    operation: Mapped[str | None] = mapped_column(String, nullable=True)
    availability_zone: Mapped[str | None] = mapped_column(String, nullable=True)
    reserved_instance: Mapped[str | None] = mapped_column(String, nullable=True)
    item_description: Mapped[str | None] = mapped_column(String, nullable=True)
    resource_id: Mapped[str | None] = mapped_column(String, nullable=True)
    usage_start_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    usage_end_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    usage_quantity: Mapped[Decimal | None] = mapped_column(Numeric(18, 8), nullable=True)
    blended_rate: Mapped[Decimal | None] = mapped_column(Numeric(18, 8), nullable=True)
    blended_cost: Mapped[Decimal | None] = mapped_column(Numeric(18, 8), nullable=True)
    unblended_rate: Mapped[Decimal | None] = mapped_column(Numeric(18, 8), nullable=True)
    unblended_cost: Mapped[Decimal | None] = mapped_column(Numeric(18, 8), nullable=True)
    currency: Mapped[str] = mapped_column(String(8), default="USD")

    # Normalized dimensions
    account_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    service: Mapped[str] = mapped_column(String, nullable=False, index=True)
    region: Mapped[str | None] = mapped_column(String, nullable=True)
    cost: Mapped[Decimal] = mapped_column(Numeric(18, 8), nullable=False)
    usage_quantity_normalized: Mapped[Decimal] = mapped_column(Numeric(18, 8), default=Decimal("0"))
    tags: Mapped[dict] = mapped_column(JSON().with_variant(JSONB, "postgresql"), default=dict)

    # Lineage
    ingestion_job_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("ingestion_jobs.id", ondelete="SET NULL"), nullable=True, index=True
    )
    ingestion_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    # SHA-256 of the mapped CUR values; re-ingesting the same row conflicts here
    fingerprint: Mapped[str] = mapped_column(String(64), nullable=False)

    # Set by the anomaly detector
    is_anomaly: Mapped[bool] = mapped_column(Boolean, default=False)
    anomaly_score: Mapped[float | None] = mapped_column(Float, nullable=True)

    __table_args__ = (
        UniqueConstraint("user_id", "fingerprint", name="uix_line_item_fingerprint"),
        Index("ix_line_items_user_usage_start", "user_id", "usage_start_date"),
    )

    def __repr__(self) -> str:
        return f"<LineItem {self.account_id}/{self.service} {self.cost}>"
