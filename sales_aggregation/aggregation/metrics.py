"""
Metrics Calculator

Pure reduction of a set of sales events into an aggregate metrics snapshot.

Money is accumulated as Decimal so that the result does not depend on the
order of the input; rounding happens only when a persisted document is built.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple

from .events import KNOWN_CHANNELS, UNCLASSIFIED_CHANNEL, SalesEvent

TOP_PRODUCTS_LIMIT = 5

ZERO = Decimal("0")


def empty_channel_breakdown() -> Dict[str, Decimal]:
    """Fixed-cardinality channel map: the known channels plus unclassified"""
    breakdown = {channel: ZERO for channel in KNOWN_CHANNELS}
    breakdown[UNCLASSIFIED_CHANNEL] = ZERO
    return breakdown


@dataclass
class ProductSubtotal:
    """Revenue and units of one product within a bucket"""
    product_id: str
    product_name: str
    revenue: Decimal = ZERO
    units: int = 0


@dataclass
class AggregateMetrics:
    """Transient accumulator for one bucket"""
    total_revenue: Decimal = ZERO
    net_revenue: Decimal = ZERO
    total_orders: int = 0
    total_quantity: int = 0
    average_order_value: Decimal = ZERO
    unique_product_count: int = 0
    channel_breakdown: Dict[str, Decimal] = field(default_factory=empty_channel_breakdown)
    top_products: List[ProductSubtotal] = field(default_factory=list)
    event_count: int = 0
    latest_event_at: Optional[datetime] = None

    @property
    def top_selling_product(self) -> Optional[ProductSubtotal]:
        return self.top_products[0] if self.top_products else None


def _canonical(event: SalesEvent) -> str:
    return event.model_dump_json()


def deduplicate_events(events: Iterable[SalesEvent]) -> List[SalesEvent]:
    """
    Collapse duplicate deliveries of the same event id.

    When two deliveries share an id but differ in content, the one with the
    smallest canonical serialization wins so the choice is order-independent.
    """
    unique: Dict[str, SalesEvent] = {}
    for event in events:
        existing = unique.get(event.event_id)
        if existing is None or _canonical(event) < _canonical(existing):
            unique[event.event_id] = event
    return list(unique.values())


def _rank_products(subtotals: Dict[str, ProductSubtotal]) -> List[ProductSubtotal]:
    ranked = sorted(subtotals.values(), key=lambda p: (-p.revenue, p.product_id))
    return ranked[:TOP_PRODUCTS_LIMIT]


def compute_metrics(events: Iterable[SalesEvent]) -> AggregateMetrics:
    """
    Compute aggregate metrics over a set of sales events.

    Only financially recognized events (paid, fulfilled) contribute. Refunds
    and cancellations are excluded and do not reduce recognized revenue.

    Args:
        events: Events of one bucket, in any order

    Returns:
        AggregateMetrics: Unrounded snapshot
    """
    metrics = AggregateMetrics()
    subtotals: Dict[str, ProductSubtotal] = {}
    # product_id -> (timestamp, event_id) of the event its display name came from
    name_sources: Dict[str, Tuple[datetime, str]] = {}

    unique_events = deduplicate_events(events)
    metrics.event_count = len(unique_events)

    for event in unique_events:
        if metrics.latest_event_at is None or event.event_timestamp > metrics.latest_event_at:
            metrics.latest_event_at = event.event_timestamp

        if not event.is_financially_recognized:
            continue

        metrics.total_revenue += event.total_amount
        metrics.net_revenue += event.net_revenue
        metrics.total_orders += 1
        metrics.total_quantity += event.quantity

        channel = event.channel if event.channel in KNOWN_CHANNELS else UNCLASSIFIED_CHANNEL
        metrics.channel_breakdown[channel] += event.total_amount

        if event.product_id is None:
            continue

        subtotal = subtotals.get(event.product_id)
        if subtotal is None:
            subtotal = subtotals[event.product_id] = ProductSubtotal(
                product_id=event.product_id,
                product_name=event.product_name,
            )
        subtotal.revenue += event.total_amount
        subtotal.units += event.quantity

        source = (event.event_timestamp, event.event_id)
        if event.product_id not in name_sources or source > name_sources[event.product_id]:
            name_sources[event.product_id] = source
            subtotal.product_name = event.product_name

    metrics.unique_product_count = len(subtotals)
    metrics.top_products = _rank_products(subtotals)

    if metrics.total_orders > 0:
        metrics.average_order_value = metrics.total_revenue / metrics.total_orders

    return metrics


def group_events_by_product(events: Iterable[SalesEvent]) -> Dict[str, List[SalesEvent]]:
    """Split events into per-product subsets; events without a product are omitted"""
    groups: Dict[str, List[SalesEvent]] = {}
    for event in events:
        if event.product_id is None:
            continue
        groups.setdefault(event.product_id, []).append(event)
    return groups
