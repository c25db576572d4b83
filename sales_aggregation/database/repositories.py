"""
SQL Repositories

SQLAlchemy-backed implementations of the engine's outbound collaborators:

- SqlAlchemyEventSource: reads a seller's raw events from fact_sales_events
- SqlAlchemyAggregateStore: full-overwrite persistence of aggregate documents
  in agg_sales (delete + insert inside one transaction)
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncGenerator, List, Optional

import structlog
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sales_aggregation.aggregation.documents import SalesAggregate
from sales_aggregation.aggregation.events import SalesEvent
from sales_aggregation.aggregation.sources import AggregateStore, HistoricalEventSource

from .connection import get_db
from .models import SalesAggregateRecord, SalesEventRecord

logger = structlog.get_logger(__name__)


def _as_utc(value: datetime) -> datetime:
    # SQLite returns naive datetimes for timezone-aware columns
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class _SessionScope:
    """Sessions from an explicit factory, or from the global engine"""

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        self._session_factory = session_factory

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        if self._session_factory is None:
            async with get_db() as db:
                yield db
            return

        async with self._session_factory() as db:
            async with db.begin():
                yield db


# =============================================================================
# EVENT SOURCE
# =============================================================================

def record_to_event(record: SalesEventRecord) -> SalesEvent:
    return SalesEvent(
        event_id=record.event_id,
        seller_id=record.seller_id,
        product_id=record.product_id,
        product_name=record.product_name or "",
        event_type=record.event_type,
        channel=record.channel,
        quantity=record.quantity or 0,
        unit_price=record.unit_price or 0,
        total_amount=record.total_amount,
        net_revenue=record.net_revenue,
        event_timestamp=_as_utc(record.event_timestamp),
    )


def event_to_record(event: SalesEvent) -> SalesEventRecord:
    return SalesEventRecord(
        event_id=event.event_id,
        seller_id=event.seller_id,
        product_id=event.product_id,
        product_name=event.product_name,
        event_type=event.event_type.value,
        channel=event.channel,
        quantity=event.quantity,
        unit_price=event.unit_price,
        total_amount=event.total_amount,
        net_revenue=event.net_revenue,
        event_timestamp=event.event_timestamp,
    )


class SqlAlchemyEventSource(_SessionScope, HistoricalEventSource):
    """Historical event source over the fact_sales_events table"""

    async def get_events_in_range(
        self,
        seller_id: str,
        start: datetime,
        end: datetime,
    ) -> List[SalesEvent]:
        async with self.session() as db:
            result = await db.execute(
                select(SalesEventRecord)
                .where(
                    SalesEventRecord.seller_id == seller_id,
                    SalesEventRecord.event_timestamp >= start,
                    SalesEventRecord.event_timestamp < end,
                )
                .order_by(SalesEventRecord.event_timestamp, SalesEventRecord.event_id)
            )
            records = result.scalars().all()

        return [record_to_event(record) for record in records]


async def record_sales_event(db: AsyncSession, event: SalesEvent) -> bool:
    """
    Append an event to fact_sales_events unless its id is already stored.

    Returns:
        bool: True if the event was inserted
    """
    existing = await db.get(SalesEventRecord, event.event_id)
    if existing is not None:
        return False
    db.add(event_to_record(event))
    await db.flush()
    return True


# =============================================================================
# AGGREGATE STORE
# =============================================================================

class SqlAlchemyAggregateStore(_SessionScope, AggregateStore):
    """Aggregate store over the agg_sales table"""

    async def upsert(self, document_id: str, document: SalesAggregate) -> None:
        async with self.session() as db:
            await db.execute(
                delete(SalesAggregateRecord).where(SalesAggregateRecord.document_id == document_id)
            )
            db.add(
                SalesAggregateRecord(
                    document_id=document_id,
                    seller_id=document.seller_id,
                    product_id=document.product_id,
                    granularity=document.granularity.value,
                    period_key=document.period_key,
                    period_start=document.period_start,
                    period_end=document.period_end,
                    total_revenue=document.total_revenue,
                    net_revenue=document.net_revenue,
                    total_orders=document.total_orders,
                    total_quantity=document.total_quantity,
                    average_order_value=document.average_order_value,
                    document=document.model_dump(mode="json"),
                    last_updated=document.last_updated,
                )
            )

    async def get(self, document_id: str) -> Optional[SalesAggregate]:
        async with self.session() as db:
            record = await db.get(SalesAggregateRecord, document_id)
            if record is None:
                return None
            return SalesAggregate.model_validate(record.document)

    async def get_for_seller(
        self,
        seller_id: str,
        granularity: Optional[str] = None,
    ) -> List[SalesAggregate]:
        """All stored aggregates of a seller, newest period first"""
        query = select(SalesAggregateRecord).where(SalesAggregateRecord.seller_id == seller_id)
        if granularity is not None:
            query = query.where(SalesAggregateRecord.granularity == granularity)
        query = query.order_by(SalesAggregateRecord.period_start.desc(), SalesAggregateRecord.document_id)

        async with self.session() as db:
            result = await db.execute(query)
            return [SalesAggregate.model_validate(r.document) for r in result.scalars().all()]

    async def purge_before(self, cutoff: datetime) -> int:
        async with self.session() as db:
            result = await db.execute(
                delete(SalesAggregateRecord).where(SalesAggregateRecord.period_end < cutoff)
            )
            removed = result.rowcount or 0

        logger.debug("Purged aggregate rows", cutoff=cutoff.isoformat(), removed=removed)
        return removed
