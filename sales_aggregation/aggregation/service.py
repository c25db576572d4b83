"""
Sales Aggregation Service

Explicitly constructed engine facade. The composition root injects the
historical event source and the aggregate store; the service owns its pending
update queue and flush scheduler, so several isolated instances can coexist.

Example:
    service = SalesAggregationService(source, store, settings.aggregation)
    await service.start()
    service.process_sales_event(payload)
    aggregates = await service.calculate_daily_aggregates("seller-1", date.today())
    await service.stop()
"""

import asyncio
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

import structlog
from prometheus_client import Counter

from sales_aggregation.config.settings import AggregationSettings

from .documents import SalesAggregate, aggregate_document_id
from .events import SalesEvent, parse_sales_event
from .exceptions import BackpressureError, IngestError
from .metrics import group_events_by_product
from .periods import GRANULARITIES, Granularity, resolve
from .queue import BucketIdentity, DeadLetter, PendingUpdateQueue
from .scheduler import BatchFlushScheduler, FlushReport
from .sources import AggregateStore, HistoricalEventSource

logger = structlog.get_logger(__name__)

EVENTS_INGESTED = Counter(
    "sales_aggregation_events_ingested_total",
    "Sales events offered to the aggregation engine",
    ["status"],
)

DateLike = Union[date, datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SalesAggregationService:
    """Real-time sales aggregation engine"""

    def __init__(
        self,
        source: HistoricalEventSource,
        store: AggregateStore,
        config: Optional[AggregationSettings] = None,
        queue: Optional[PendingUpdateQueue] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.source = source
        self.store = store
        self.config = config.model_copy() if config else AggregationSettings()
        self._clock = clock
        self.queue = queue or PendingUpdateQueue(
            max_pending_buckets=self.config.max_pending_buckets,
            clock=clock,
        )
        self.scheduler = BatchFlushScheduler(self.queue, source, store, self.config, clock=clock)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Start the flush timer"""
        self.scheduler.start()
        logger.info("Sales aggregation service started", **self.get_config())

    async def stop(self, drain: bool = True) -> None:
        """Stop the flush timer, by default flushing what is still queued"""
        await self.scheduler.stop(drain=drain)
        logger.info("Sales aggregation service stopped")

    # -------------------------------------------------------------------------
    # Ingest
    # -------------------------------------------------------------------------

    def process_sales_event(self, payload: Union[SalesEvent, Mapping[str, Any]]) -> None:
        """
        Accept one sales event for aggregation.

        Fire-and-forget: the event is validated, its buckets are queued and
        the next flush cycle recomputes them.

        Raises:
            IngestError: If the event is malformed; nothing is queued
            BackpressureError: If the pending queue is full; retry later
        """
        try:
            event = parse_sales_event(payload)
        except IngestError as e:
            EVENTS_INGESTED.labels(status="rejected").inc()
            logger.warning("Rejected malformed sales event", errors=e.errors or str(e))
            raise

        if not self.config.enable_real_time_updates:
            EVENTS_INGESTED.labels(status="ignored").inc()
            logger.debug("Real-time updates disabled, event not queued", event_id=event.event_id)
            return

        try:
            identities = self.queue.enqueue(event)
        except BackpressureError as e:
            EVENTS_INGESTED.labels(status="backpressure").inc()
            logger.warning("Pending queue full, event deferred", event_id=event.event_id, pending=e.pending)
            raise

        EVENTS_INGESTED.labels(status="queued").inc()
        logger.debug(
            "Queued aggregation updates",
            event_id=event.event_id,
            seller_id=event.seller_id,
            buckets=len(identities),
        )

    # -------------------------------------------------------------------------
    # On-demand recompute
    # -------------------------------------------------------------------------

    async def calculate_aggregates(
        self,
        seller_id: str,
        at: DateLike,
        granularity: Union[Granularity, str],
    ) -> List[SalesAggregate]:
        """
        Recompute the bucket containing ``at`` without persisting it.

        Returns:
            Seller-level document first, then one per product ordered by
            product id; empty if the bucket has no events
        """
        period = resolve(at, granularity)
        events = await self.scheduler.read_history(seller_id, period)
        if not events:
            return []

        identity = BucketIdentity(seller_id, None, period)
        return self.scheduler.build_documents(identity, events, group_events_by_product(events), self._clock())

    async def calculate_daily_aggregates(self, seller_id: str, day: DateLike) -> List[SalesAggregate]:
        return await self.calculate_aggregates(seller_id, day, Granularity.DAILY)

    async def calculate_weekly_aggregates(self, seller_id: str, day: DateLike) -> List[SalesAggregate]:
        return await self.calculate_aggregates(seller_id, day, Granularity.WEEKLY)

    async def calculate_monthly_aggregates(self, seller_id: str, day: DateLike) -> List[SalesAggregate]:
        return await self.calculate_aggregates(seller_id, day, Granularity.MONTHLY)

    async def calculate_yearly_aggregates(self, seller_id: str, day: DateLike) -> List[SalesAggregate]:
        return await self.calculate_aggregates(seller_id, day, Granularity.YEARLY)

    # -------------------------------------------------------------------------
    # Dashboard reads
    # -------------------------------------------------------------------------

    async def get_aggregate(
        self,
        seller_id: str,
        granularity: Union[Granularity, str],
        at: DateLike,
        product_id: Optional[str] = None,
    ) -> Optional[SalesAggregate]:
        """
        Read one bucket for a dashboard.

        Falls back to on-demand recomputation when nothing is persisted yet
        or the store cannot be read.
        """
        period = resolve(at, granularity)
        document_id = aggregate_document_id(seller_id, product_id, period.granularity, period.key)

        try:
            document = await asyncio.wait_for(
                self.store.get(document_id),
                timeout=self.config.operation_timeout_seconds,
            )
        except Exception as e:
            logger.warning("Aggregate read failed, recomputing", document_id=document_id, error=str(e))
            document = None

        if document is not None:
            return document

        for candidate in await self.calculate_aggregates(seller_id, at, period.granularity):
            if candidate.product_id == product_id:
                return candidate
        return None

    async def get_dashboard_aggregates(
        self,
        seller_id: str,
        at: Optional[DateLike] = None,
    ) -> Dict[str, List[SalesAggregate]]:
        """Current daily, weekly, monthly and yearly aggregates of a seller"""
        at = at or self._clock()
        results = await asyncio.gather(
            *(self.calculate_aggregates(seller_id, at, granularity) for granularity in GRANULARITIES)
        )
        return {granularity.value: docs for granularity, docs in zip(GRANULARITIES, results)}

    # -------------------------------------------------------------------------
    # Configuration and introspection
    # -------------------------------------------------------------------------

    async def update_config(self, **changes: Any) -> AggregationSettings:
        """
        Apply runtime configuration changes.

        Changing ``update_interval_ms`` restarts the flush timer; queued
        buckets are kept.

        Raises:
            pydantic.ValidationError: If a value is invalid or unknown
        """
        previous = self.config
        updated = AggregationSettings.model_validate({**previous.model_dump(), **changes})

        self.config = updated
        self.scheduler.config = updated
        self.queue.max_pending_buckets = updated.max_pending_buckets

        if updated.update_interval_ms != previous.update_interval_ms and self.scheduler.is_running:
            await self.scheduler.restart()

        logger.info("Aggregation configuration updated", changes=sorted(changes))
        return updated

    def get_config(self) -> Dict[str, Any]:
        return self.config.model_dump()

    def get_stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = self.queue.snapshot()
        stats.update(
            is_running=self.scheduler.is_running,
            is_flushing=self.scheduler.is_flushing,
            config=self.get_config(),
        )
        report = self.scheduler.last_report
        if report is not None:
            stats["last_flush"] = {
                "selected": report.selected,
                "persisted": report.persisted,
                "failed": report.failed,
                "dead_lettered": report.dead_lettered,
                "duration_seconds": report.duration_seconds,
            }
        return stats

    async def flush_now(self) -> FlushReport:
        """Run one flush cycle immediately"""
        return await self.scheduler.flush_once()

    def dead_letters(self) -> List[DeadLetter]:
        return self.queue.dead_letters()

    def requeue_dead_letters(self) -> int:
        return self.queue.requeue_dead_letters()

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    async def backfill(self, seller_id: str, start: DateLike, end: DateLike) -> int:
        """
        Queue every bucket touched by a seller's events in ``[start, end)``.

        Used to rebuild aggregates after an outage or a bulk import; the
        regular flush cycles then recompute them.

        Returns:
            Number of distinct buckets queued
        """
        start_at = resolve(start, Granularity.DAILY).start if not isinstance(start, datetime) else start
        end_at = resolve(end, Granularity.DAILY).start if not isinstance(end, datetime) else end
        if start_at.tzinfo is None:
            start_at = start_at.replace(tzinfo=timezone.utc)
        if end_at.tzinfo is None:
            end_at = end_at.replace(tzinfo=timezone.utc)

        try:
            events = await asyncio.wait_for(
                self.source.get_events_in_range(seller_id, start_at, end_at),
                timeout=self.config.operation_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.error("Backfill history read timed out", seller_id=seller_id)
            raise

        touched = set()
        for event in events:
            if event.seller_id != seller_id or not start_at <= event.event_timestamp < end_at:
                continue
            touched.update(self.queue.enqueue(event))

        logger.info(
            "Backfill queued",
            seller_id=seller_id,
            start=start_at.isoformat(),
            end=end_at.isoformat(),
            events=len(events),
            buckets=len(touched),
        )
        return len(touched)

    async def purge_expired_aggregates(self, now: Optional[datetime] = None) -> int:
        """Delete aggregates whose period ended more than ``retention_days`` ago"""
        cutoff = (now or self._clock()) - timedelta(days=self.config.retention_days)
        removed = await self.store.purge_before(cutoff)
        logger.info("Expired aggregates purged", cutoff=cutoff.isoformat(), removed=removed)
        return removed
