"""
Unit Tests - Metrics Calculator
"""
import itertools
from datetime import datetime, timezone
from decimal import Decimal

from sales_aggregation.aggregation.metrics import (
    TOP_PRODUCTS_LIMIT,
    compute_metrics,
    deduplicate_events,
    group_events_by_product,
)


class TestComputeMetrics:
    """Tests for compute_metrics"""

    def test_basic_rollup(self, make_event):
        """Test three paid events of 200 each"""
        events = [
            make_event(quantity=2, unit_price=Decimal("100.00")),
            make_event(quantity=1, unit_price=Decimal("200.00"), product_id="prod-2"),
            make_event(quantity=3, total_amount=Decimal("200.00"), unit_price=Decimal("66.67"), product_id="prod-3"),
        ]

        metrics = compute_metrics(events)

        assert metrics.total_revenue == Decimal("600.00")
        assert metrics.total_orders == 3
        assert metrics.total_quantity == 6
        assert metrics.average_order_value == Decimal("200")
        assert metrics.unique_product_count == 3

    def test_order_independent(self, make_event):
        """Test every permutation of the input yields the same metrics"""
        events = [
            make_event(unit_price=Decimal("10.10"), channel="web"),
            make_event(unit_price=Decimal("20.20"), channel="mobile", product_id="prod-2"),
            make_event(unit_price=Decimal("30.30"), channel="marketplace", product_id="prod-3"),
            make_event(event_type="refunded", unit_price=Decimal("10.10")),
        ]

        baseline = compute_metrics(events)
        for permutation in itertools.permutations(events):
            assert compute_metrics(permutation) == baseline

    def test_only_financial_events_count(self, make_event):
        """Test non-financial lifecycle events contribute nothing"""
        events = [
            make_event(event_type="created"),
            make_event(event_type="refunded"),
            make_event(event_type="canceled"),
            make_event(event_type="returned"),
            make_event(event_type="shipped"),
            make_event(event_type="order_disputed"),
        ]

        metrics = compute_metrics(events)

        assert metrics.total_revenue == Decimal("0")
        assert metrics.total_orders == 0
        assert metrics.total_quantity == 0
        assert metrics.top_products == []
        assert metrics.event_count == 6

    def test_refund_does_not_reduce_revenue(self, make_event):
        """Test a refund after a sale leaves recognized revenue unchanged"""
        paid = [make_event(unit_price=Decimal("200.00")) for _ in range(3)]
        refund = make_event(event_type="refunded", unit_price=Decimal("200.00"))

        assert compute_metrics(paid + [refund]).total_revenue == Decimal("600.00")

    def test_fulfilled_counts(self, make_event):
        """Test fulfilled events are financially recognized"""
        metrics = compute_metrics([make_event(event_type="fulfilled", unit_price=Decimal("42.00"))])

        assert metrics.total_revenue == Decimal("42.00")
        assert metrics.total_orders == 1

    def test_average_order_value_zero_without_orders(self, make_event):
        """Test AOV is zero when no order is recognized"""
        assert compute_metrics([make_event(event_type="created")]).average_order_value == Decimal("0")
        assert compute_metrics([]).average_order_value == Decimal("0")

    def test_top_products_tie_break(self, make_event):
        """Test equal revenue is ordered by product id"""
        events = [
            make_event(product_id="C", unit_price=Decimal("50.00")),
            make_event(product_id="A", unit_price=Decimal("50.00")),
            make_event(product_id="B", unit_price=Decimal("50.00")),
            make_event(product_id="D", unit_price=Decimal("80.00")),
        ]

        metrics = compute_metrics(events)

        assert [p.product_id for p in metrics.top_products] == ["D", "A", "B", "C"]
        assert metrics.top_selling_product.product_id == "D"

    def test_top_products_limited(self, make_event):
        """Test at most five products are ranked"""
        events = [
            make_event(product_id=f"prod-{i}", unit_price=Decimal(i))
            for i in range(1, 9)
        ]

        metrics = compute_metrics(events)

        assert len(metrics.top_products) == TOP_PRODUCTS_LIMIT
        assert metrics.top_products[0].product_id == "prod-8"
        assert metrics.unique_product_count == 8

    def test_product_name_from_latest_event(self, make_event):
        """Test the display name comes from the most recent event"""
        events = [
            make_event(product_name="New Name", event_timestamp=datetime(2025, 3, 15, 11, tzinfo=timezone.utc)),
            make_event(product_name="Old Name", event_timestamp=datetime(2025, 3, 15, 9, tzinfo=timezone.utc)),
        ]

        assert compute_metrics(events).top_products[0].product_name == "New Name"

    def test_channel_breakdown(self, make_event):
        """Test revenue per channel with unknown channels unclassified"""
        events = [
            make_event(channel="web", unit_price=Decimal("10.00")),
            make_event(channel="WEB", unit_price=Decimal("5.00")),
            make_event(channel="social", unit_price=Decimal("7.00")),
            make_event(channel="carrier-pigeon", unit_price=Decimal("3.00")),
            make_event(channel=None, unit_price=Decimal("1.00")),
        ]

        breakdown = compute_metrics(events).channel_breakdown

        assert breakdown["web"] == Decimal("15.00")
        assert breakdown["social"] == Decimal("7.00")
        assert breakdown["unclassified"] == Decimal("4.00")
        assert breakdown["mobile"] == Decimal("0")
        assert "carrier-pigeon" not in breakdown

    def test_duplicates_counted_once(self, make_event):
        """Test redelivered events do not double count"""
        event = make_event(unit_price=Decimal("99.00"))

        metrics = compute_metrics([event, event, event])

        assert metrics.total_revenue == Decimal("99.00")
        assert metrics.event_count == 1

    def test_latest_event_at(self, make_event):
        """Test the latest timestamp of all considered events is reported"""
        late = datetime(2025, 3, 15, 23, tzinfo=timezone.utc)
        events = [make_event(), make_event(event_type="created", event_timestamp=late)]

        assert compute_metrics(events).latest_event_at == late


class TestDeduplicateEvents:
    """Tests for deduplicate_events"""

    def test_conflicting_duplicates_resolved_independent_of_order(self, make_event):
        """Test the same winner is chosen whichever delivery comes first"""
        first = make_event(event_id="dup", unit_price=Decimal("10.00"))
        second = make_event(event_id="dup", unit_price=Decimal("20.00"))

        assert deduplicate_events([first, second]) == deduplicate_events([second, first])
        assert len(deduplicate_events([first, second])) == 1


class TestGroupEventsByProduct:
    """Tests for group_events_by_product"""

    def test_groups_and_skips_productless(self, make_event):
        """Test events are split per product and product-less events dropped"""
        events = [
            make_event(product_id="A"),
            make_event(product_id="B"),
            make_event(product_id="A"),
            make_event(product_id=None),
        ]

        groups = group_events_by_product(events)

        assert sorted(groups) == ["A", "B"]
        assert len(groups["A"]) == 2
