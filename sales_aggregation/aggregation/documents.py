"""
Aggregate Documents

Builds the persisted SalesAggregate document from a metrics snapshot. This is
the persistence boundary: monetary values are rounded to two decimals here
and nowhere earlier.
"""

import hashlib
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from .metrics import AggregateMetrics
from .periods import Granularity, PeriodKey

PROCESSING_VERSION = "1.0"
DATA_COMPLETENESS_FULL = 100.0

_CENT = Decimal("0.01")


def round_money(value: Decimal) -> Decimal:
    """Round half-up to two decimals"""
    return value.quantize(_CENT, rounding=ROUND_HALF_UP)


def aggregate_document_id(
    seller_id: str,
    product_id: Optional[str],
    granularity: Granularity,
    period_key: str,
) -> str:
    """
    Deterministic document id for a bucket identity.

    The identity parts are hashed so that ids containing separators can
    never collide; retried upserts of a bucket always target the same id.
    """
    parts = [seller_id, product_id or "", Granularity(granularity).value, period_key]
    digest = hashlib.sha1("\x1f".join(parts).encode("utf-8")).hexdigest()
    return f"agg_{digest}"


class TopProduct(BaseModel):
    """Ranked product entry of an aggregate"""
    product_id: str
    product_name: str
    revenue: Decimal
    units: int


class SalesAggregate(BaseModel):
    """Persisted aggregate for one (seller, product | none, granularity, period) bucket"""

    document_id: str
    seller_id: str
    product_id: Optional[str] = None
    granularity: Granularity
    period_key: str
    period_start: datetime
    period_end: datetime

    total_revenue: Decimal
    net_revenue: Decimal
    total_orders: int
    total_quantity: int
    average_order_value: Decimal
    unique_product_count: int
    channel_breakdown: Dict[str, Decimal]
    top_products: List[TopProduct] = Field(default_factory=list)
    top_selling_product: Optional[str] = None
    top_selling_product_revenue: Optional[Decimal] = None

    event_count: int = 0
    latest_event_at: Optional[datetime] = None
    last_updated: datetime
    data_completeness: float = DATA_COMPLETENESS_FULL
    processing_version: str = PROCESSING_VERSION

    @property
    def is_seller_level(self) -> bool:
        return self.product_id is None

    def content_fingerprint(self) -> Dict:
        """Document content without the last_updated watermark"""
        return self.model_dump(exclude={"last_updated"})


def build_aggregate_document(
    seller_id: str,
    product_id: Optional[str],
    period: PeriodKey,
    metrics: AggregateMetrics,
    now: Optional[datetime] = None,
) -> SalesAggregate:
    """
    Build the persisted document of a bucket from its metrics.

    Args:
        seller_id: Seller owning the bucket
        product_id: Product of a product-level bucket, None for seller-level
        period: Bucket period
        metrics: Unrounded metrics over the bucket's full event set
        now: Watermark to stamp; defaults to the current UTC time

    Returns:
        SalesAggregate: Document ready for a full-overwrite upsert
    """
    top_products = [
        TopProduct(
            product_id=p.product_id,
            product_name=p.product_name,
            revenue=round_money(p.revenue),
            units=p.units,
        )
        for p in metrics.top_products
    ]
    top = top_products[0] if top_products else None

    return SalesAggregate(
        document_id=aggregate_document_id(seller_id, product_id, period.granularity, period.key),
        seller_id=seller_id,
        product_id=product_id,
        granularity=period.granularity,
        period_key=period.key,
        period_start=period.start,
        period_end=period.end,
        total_revenue=round_money(metrics.total_revenue),
        net_revenue=round_money(metrics.net_revenue),
        total_orders=metrics.total_orders,
        total_quantity=metrics.total_quantity,
        average_order_value=round_money(metrics.average_order_value),
        unique_product_count=metrics.unique_product_count,
        channel_breakdown={k: round_money(v) for k, v in metrics.channel_breakdown.items()},
        top_products=top_products,
        top_selling_product=top.product_id if top else None,
        top_selling_product_revenue=top.revenue if top else None,
        event_count=metrics.event_count,
        latest_event_at=metrics.latest_event_at,
        last_updated=now or datetime.now(timezone.utc),
    )
