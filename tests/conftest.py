"""
Test Suite Configuration
"""
import itertools
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, AsyncGenerator, Callable, Dict, Optional

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from sales_aggregation.aggregation.events import SalesEvent
from sales_aggregation.aggregation.service import SalesAggregationService
from sales_aggregation.aggregation.sources import InMemoryAggregateStore, InMemoryEventSource
from sales_aggregation.config import AggregationSettings
from sales_aggregation.database.models import Base


class FixedClock:
    """Controllable clock for queue and scheduler tests"""

    def __init__(self, now: Optional[datetime] = None):
        self.now = now or datetime(2025, 3, 15, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def aggregation_config() -> AggregationSettings:
    """Engine configuration with a short interval and tight timeouts"""
    return AggregationSettings.model_validate({
        "enable_real_time_updates": True,
        "batch_size": 50,
        "update_interval_ms": 20,
        "retention_days": 30,
        "max_pending_buckets": 1000,
        "operation_timeout_seconds": 0.5,
        "max_attempts": 3,
        "retry_backoff_base_seconds": 1.0,
        "retry_backoff_max_seconds": 8.0,
    })


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def make_event() -> Callable[..., SalesEvent]:
    """Factory for valid sales events with unique ids"""
    counter = itertools.count(1)

    def _make(**overrides: Any) -> SalesEvent:
        n = next(counter)
        data: Dict[str, Any] = {
            "event_id": f"evt-{n}",
            "seller_id": "seller-1",
            "product_id": "prod-1",
            "product_name": "Hand-thrown Mug",
            "event_type": "paid",
            "channel": "web",
            "quantity": 1,
            "unit_price": Decimal("100.00"),
            "event_timestamp": datetime(2025, 3, 15, 10, 0, tzinfo=timezone.utc),
        }
        data.update(overrides)
        return SalesEvent.model_validate(data)

    return _make


@pytest.fixture
def event_source() -> InMemoryEventSource:
    return InMemoryEventSource()


@pytest.fixture
def aggregate_store() -> InMemoryAggregateStore:
    return InMemoryAggregateStore()


@pytest.fixture
async def service(event_source, aggregate_store, aggregation_config, clock) -> AsyncGenerator[SalesAggregationService, None]:
    """Unstarted service over in-memory collaborators"""
    svc = SalesAggregationService(event_source, aggregate_store, aggregation_config, clock=clock)
    yield svc
    await svc.stop(drain=False)


@pytest.fixture
def ingest(service, event_source) -> Callable[..., None]:
    """Record events in history and offer them to the engine"""

    def _ingest(*events: SalesEvent) -> None:
        event_source.add(*events)
        for event in events:
            service.process_sales_event(event)

    return _ingest


@pytest.fixture
async def test_engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """Create test database engine backed by a temporary file"""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'aggregation.db'}",
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker[AsyncSession]:
    """Create test session factory"""
    return async_sessionmaker(
        bind=test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
