"""
Database Models

Relational home of the aggregation engine:

Fact Tables:
- SalesEventRecord: Raw sales lifecycle events, the engine's history source

Aggregate Tables:
- SalesAggregateRecord: One row per (seller, product | none, granularity,
  period) bucket, keyed by the deterministic document id
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    JSON,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONDocument = JSON().with_variant(JSONB(), "postgresql")


# =============================================================================
# FACT TABLES
# =============================================================================

class SalesEventRecord(Base):
    """
    Sales Event Fact Table

    Grain: one lifecycle event for one product line of an order. Rows are
    append-only; the aggregation engine only reads them.
    """
    __tablename__ = "fact_sales_events"

    event_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    seller_id: Mapped[str] = mapped_column(String(100), nullable=False)
    product_id: Mapped[Optional[str]] = mapped_column(String(100))
    product_name: Mapped[str] = mapped_column(String(500), default="")

    event_type: Mapped[str] = mapped_column(String(20), nullable=False)
    channel: Mapped[str] = mapped_column(String(50), nullable=False)

    # Measures, unrounded; cents are applied only to aggregate documents
    quantity: Mapped[int] = mapped_column(Integer, default=0)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(18, 6), default=0)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    net_revenue: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)

    event_timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    # Audit
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_fact_sales_events_seller_ts", "seller_id", "event_timestamp"),
        Index("ix_fact_sales_events_product", "product_id"),
    )


# =============================================================================
# AGGREGATE TABLES
# =============================================================================

class SalesAggregateRecord(Base):
    """
    Sales Aggregate Table

    Pre-computed rollups for seller dashboards. Scalar measures are
    denormalized for querying; ``document`` holds the complete aggregate as
    written by the flush scheduler and is what reads return.
    """
    __tablename__ = "agg_sales"

    document_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    seller_id: Mapped[str] = mapped_column(String(100), nullable=False)
    product_id: Mapped[Optional[str]] = mapped_column(String(100))
    granularity: Mapped[str] = mapped_column(String(10), nullable=False)
    period_key: Mapped[str] = mapped_column(String(10), nullable=False)
    period_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    period_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    # Metrics
    total_revenue: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=0)
    net_revenue: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=0)
    total_orders: Mapped[int] = mapped_column(Integer, default=0)
    total_quantity: Mapped[int] = mapped_column(Integer, default=0)
    average_order_value: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)

    document: Mapped[dict] = mapped_column(JSONDocument, nullable=False)

    last_updated: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_agg_sales_seller_period", "seller_id", "granularity", "period_key"),
        Index("ix_agg_sales_period_end", "period_end"),
    )
