"""
Batch Flush Scheduler

Timer-driven loop that drains the pending update queue:

- At most one flush cycle is active at a time; a tick that finds the previous
  cycle still running is skipped.
- Each cycle selects up to ``batch_size`` bucket identities and groups them
  by (seller, granularity, period) so one history read serves a seller bucket
  and all of its product buckets.
- Every bucket is recomputed from its COMPLETE event history, never from the
  queued events alone, and written with a full-overwrite upsert. Replayed,
  duplicated or out-of-order events therefore cannot be double counted.
- Failures are isolated per bucket and logged with the bucket identity;
  failed buckets stay queued.
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple

import structlog
from prometheus_client import Counter, Gauge, Histogram
from pydantic import ValidationError

from sales_aggregation.config.settings import AggregationSettings

from .documents import SalesAggregate, build_aggregate_document
from .events import SalesEvent
from .exceptions import IngestError, PermanentComputationError, TransientStoreError
from .metrics import compute_metrics, group_events_by_product
from .periods import Granularity, PeriodKey
from .queue import BucketIdentity, BucketState, PendingUpdateQueue
from .sources import AggregateStore, HistoricalEventSource

logger = structlog.get_logger(__name__)


# =============================================================================
# METRICS
# =============================================================================

BUCKETS_FLUSHED = Counter(
    "sales_aggregation_buckets_flushed_total",
    "Bucket flush outcomes",
    ["outcome"],
)

DOCUMENTS_WRITTEN = Counter(
    "sales_aggregation_documents_written_total",
    "Aggregate documents upserted",
    ["granularity"],
)

FLUSH_DURATION = Histogram(
    "sales_aggregation_flush_seconds",
    "Duration of one flush cycle",
)

FLUSH_SKIPPED = Counter(
    "sales_aggregation_flush_skipped_total",
    "Timer ticks skipped because a flush was still running",
)

PENDING_BUCKETS = Gauge(
    "sales_aggregation_pending_buckets",
    "Buckets waiting in the pending update queue",
)

DEAD_LETTER_BUCKETS = Gauge(
    "sales_aggregation_dead_letter_buckets",
    "Buckets parked on the dead-letter list",
)


GroupKey = Tuple[str, Granularity, str]


@dataclass
class FlushReport:
    """Outcome of one flush cycle"""
    selected: int = 0
    persisted: int = 0
    requeued: int = 0
    failed: int = 0
    dead_lettered: int = 0
    documents_written: int = 0
    skipped: bool = False
    duration_seconds: float = 0.0
    failures: Dict[str, str] = field(default_factory=dict)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BatchFlushScheduler:
    """
    Periodic flusher of the pending update queue.

    Example:
        scheduler = BatchFlushScheduler(queue, source, store, config)
        scheduler.start()
        ...
        await scheduler.stop(drain=True)
    """

    def __init__(
        self,
        queue: PendingUpdateQueue,
        source: HistoricalEventSource,
        store: AggregateStore,
        config: Optional[AggregationSettings] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.queue = queue
        self.source = source
        self.store = store
        self.config = config or AggregationSettings()
        self._clock = clock

        self._loop_task: Optional[asyncio.Task] = None
        self._flush_task: Optional[asyncio.Task] = None
        self._flush_lock = asyncio.Lock()
        self._running = False
        self.last_report: Optional[FlushReport] = None

    # -------------------------------------------------------------------------
    # Timer lifecycle
    # -------------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def is_flushing(self) -> bool:
        return self._flush_lock.locked()

    def start(self) -> None:
        """Start the timer loop on the running event loop"""
        if self._loop_task is not None and not self._loop_task.done():
            logger.warning("Flush scheduler already running")
            return

        self._running = True
        self._loop_task = asyncio.create_task(self._run_loop(), name="sales-aggregation-flush-timer")
        logger.info(
            "Flush scheduler started",
            interval_ms=self.config.update_interval_ms,
            batch_size=self.config.batch_size,
        )

    async def restart(self) -> None:
        """Restart the timer with the current interval; queued buckets are untouched"""
        await self._cancel_loop()
        self._running = False
        self.start()

    async def stop(self, drain: bool = False) -> None:
        """
        Stop the timer loop.

        Args:
            drain: Flush everything currently eligible before returning
        """
        self._running = False
        await self._cancel_loop()

        if self._flush_task is not None and not self._flush_task.done():
            await asyncio.gather(self._flush_task, return_exceptions=True)

        if drain:
            await self.drain()

        logger.info("Flush scheduler stopped", pending=len(self.queue))

    async def drain(self, max_cycles: int = 1000) -> List[FlushReport]:
        """Run flush cycles until nothing eligible is left or no progress is made"""
        reports = []
        for _ in range(max_cycles):
            report = await self.flush_once()
            reports.append(report)
            if report.selected == 0 or report.persisted == 0:
                break
        return reports

    async def _cancel_loop(self) -> None:
        task, self._loop_task = self._loop_task, None
        if task is None or task.done():
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    async def _run_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.config.update_interval_seconds)
            self._tick()

    def _tick(self) -> None:
        if self._flush_task is not None and not self._flush_task.done():
            FLUSH_SKIPPED.inc()
            logger.debug("Previous flush still running, skipping tick")
            return
        self._flush_task = asyncio.create_task(self.flush_once(), name="sales-aggregation-flush")
        self._flush_task.add_done_callback(self._on_flush_done)

    @staticmethod
    def _on_flush_done(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Flush cycle crashed", error=str(error), error_type=type(error).__name__)

    # -------------------------------------------------------------------------
    # Flush cycle
    # -------------------------------------------------------------------------

    async def flush_once(self) -> FlushReport:
        """
        Run one flush cycle.

        Returns:
            FlushReport: Per-cycle counts; ``skipped`` if a cycle was already active
        """
        if self._flush_lock.locked():
            FLUSH_SKIPPED.inc()
            return FlushReport(skipped=True)

        async with self._flush_lock:
            started = time.perf_counter()
            report = FlushReport()

            batch = self.queue.select_batch(self.config.batch_size)
            report.selected = len(batch)

            if batch:
                # In-flight upserts across the whole cycle never exceed batch_size
                upsert_slots = asyncio.Semaphore(self.config.batch_size)
                groups: Dict[GroupKey, List[BucketIdentity]] = {}
                for identity in batch:
                    groups.setdefault(identity.group_key, []).append(identity)

                results = await asyncio.gather(
                    *(self._flush_group(identities, report, upsert_slots) for identities in groups.values()),
                    return_exceptions=True,
                )
                for identities, result in zip(groups.values(), results):
                    if isinstance(result, Exception):
                        # A defect in the cycle itself; keep the buckets queued
                        for identity in identities:
                            self._record_failure(identity, result, permanent=False, report=report)

            report.duration_seconds = time.perf_counter() - started
            FLUSH_DURATION.observe(report.duration_seconds)
            self._update_gauges()
            self.last_report = report

            if report.selected:
                logger.info(
                    "Flush cycle completed",
                    selected=report.selected,
                    persisted=report.persisted,
                    requeued=report.requeued,
                    failed=report.failed,
                    dead_lettered=report.dead_lettered,
                    documents=report.documents_written,
                    duration_ms=round(report.duration_seconds * 1000, 2),
                )
            return report

    async def _flush_group(
        self,
        identities: List[BucketIdentity],
        report: FlushReport,
        upsert_slots: asyncio.Semaphore,
    ) -> None:
        """Recompute and persist every identity of one (seller, granularity, period) group"""
        seller_id = identities[0].seller_id
        period = identities[0].period

        try:
            events = await self.read_history(seller_id, period)
        except TransientStoreError as e:
            for identity in identities:
                self._record_failure(identity, e, permanent=False, report=report)
            return
        except PermanentComputationError as e:
            for identity in identities:
                self._record_failure(identity, e, permanent=True, report=report)
            return

        now = self._clock()
        by_product = group_events_by_product(events)
        documents: Dict[str, SalesAggregate] = {}
        identity_documents: Dict[BucketIdentity, List[str]] = {}

        for identity in identities:
            try:
                built = self.build_documents(identity, events, by_product, now)
            except PermanentComputationError as e:
                self._record_failure(identity, e, permanent=True, report=report)
                continue
            identity_documents[identity] = [doc.document_id for doc in built]
            for doc in built:
                documents[doc.document_id] = doc

        document_ids = list(documents)
        results = await asyncio.gather(
            *(self._upsert(documents[doc_id], upsert_slots) for doc_id in document_ids),
            return_exceptions=True,
        )
        errors: Dict[str, BaseException] = {}
        for doc_id, result in zip(document_ids, results):
            if isinstance(result, BaseException):
                errors[doc_id] = result
            else:
                report.documents_written += 1
                DOCUMENTS_WRITTEN.labels(granularity=period.granularity.value).inc()

        for identity, doc_ids in identity_documents.items():
            failed = [errors[d] for d in doc_ids if d in errors]
            if failed:
                self._record_failure(identity, failed[0], permanent=False, report=report)
                continue
            state = self.queue.mark_persisted(identity)
            if state is BucketState.QUEUED:
                report.requeued += 1
                BUCKETS_FLUSHED.labels(outcome="requeued").inc()
            else:
                report.persisted += 1
                BUCKETS_FLUSHED.labels(outcome="persisted").inc()

    def build_documents(
        self,
        identity: BucketIdentity,
        events: List[SalesEvent],
        by_product: Dict[str, List[SalesEvent]],
        now: datetime,
    ) -> List[SalesAggregate]:
        """Seller-level identities yield the seller document plus one per product present"""
        try:
            if identity.is_seller_level:
                documents = [
                    build_aggregate_document(identity.seller_id, None, identity.period, compute_metrics(events), now)
                ]
                for product_id in sorted(by_product):
                    documents.append(
                        build_aggregate_document(
                            identity.seller_id,
                            product_id,
                            identity.period,
                            compute_metrics(by_product[product_id]),
                            now,
                        )
                    )
                return documents

            product_events = by_product.get(identity.product_id, [])
            return [
                build_aggregate_document(
                    identity.seller_id,
                    identity.product_id,
                    identity.period,
                    compute_metrics(product_events),
                    now,
                )
            ]
        except Exception as e:
            raise PermanentComputationError(
                f"{type(e).__name__}: {e}",
                event_count=len(events),
            ) from e

    async def read_history(self, seller_id: str, period: PeriodKey) -> List[SalesEvent]:
        timeout = self.config.operation_timeout_seconds
        try:
            events = await asyncio.wait_for(
                self.source.get_events_in_range(seller_id, period.start, period.end),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            raise TransientStoreError(f"History read timed out after {timeout}s") from e
        except TransientStoreError:
            raise
        except (ValidationError, IngestError) as e:
            # Invalid stored rows count toward max_attempts like computation errors
            raise PermanentComputationError(f"History contains an invalid event: {e}") from e
        except Exception as e:
            raise TransientStoreError(f"History read failed: {type(e).__name__}: {e}") from e

        # The source contract is the seller's half-open range; enforce it
        return [event for event in events if event.seller_id == seller_id and period.contains(event.event_timestamp)]

    async def _upsert(self, document: SalesAggregate, slots: asyncio.Semaphore) -> None:
        timeout = self.config.operation_timeout_seconds
        try:
            async with slots:
                await asyncio.wait_for(self.store.upsert(document.document_id, document), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise TransientStoreError(f"Upsert timed out after {timeout}s") from e
        except TransientStoreError:
            raise
        except Exception as e:
            raise TransientStoreError(f"Upsert failed: {type(e).__name__}: {e}") from e

    def _record_failure(
        self,
        identity: BucketIdentity,
        error: BaseException,
        permanent: bool,
        report: FlushReport,
    ) -> None:
        reason = str(error) or type(error).__name__
        state = self.queue.mark_failed(
            identity,
            reason,
            permanent=permanent,
            max_attempts=self.config.max_attempts,
            backoff_base_seconds=self.config.retry_backoff_base_seconds,
            backoff_max_seconds=self.config.retry_backoff_max_seconds,
        )
        report.failures[str(identity)] = reason

        if state is BucketState.DEAD_LETTER:
            report.dead_lettered += 1
            BUCKETS_FLUSHED.labels(outcome="dead_lettered").inc()
            return

        report.failed += 1
        if permanent:
            BUCKETS_FLUSHED.labels(outcome="failed_permanent").inc()
            logger.error(
                "Bucket computation failed",
                bucket=str(identity),
                event_count=getattr(error, "event_count", None),
                error=reason,
            )
        else:
            BUCKETS_FLUSHED.labels(outcome="failed_transient").inc()
            logger.warning("Bucket flush failed, will retry", bucket=str(identity), error=reason)

    def _update_gauges(self) -> None:
        stats = self.queue.snapshot()
        PENDING_BUCKETS.set(stats["pending_buckets"])
        DEAD_LETTER_BUCKETS.set(stats["dead_letter_buckets"])
