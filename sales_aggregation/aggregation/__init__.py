"""
Aggregation Engine Module
"""
from .documents import SalesAggregate, aggregate_document_id
from .events import EventType, SalesEvent, parse_sales_event
from .exceptions import (
    AggregationError,
    BackpressureError,
    IngestError,
    PermanentComputationError,
    TransientStoreError,
)
from .periods import Granularity, PeriodKey, resolve
from .queue import BucketIdentity, PendingUpdateQueue
from .scheduler import BatchFlushScheduler, FlushReport
from .service import SalesAggregationService
from .sources import AggregateStore, HistoricalEventSource, InMemoryAggregateStore, InMemoryEventSource

__all__ = [
    "SalesAggregate",
    "aggregate_document_id",
    "EventType",
    "SalesEvent",
    "parse_sales_event",
    "AggregationError",
    "BackpressureError",
    "IngestError",
    "PermanentComputationError",
    "TransientStoreError",
    "Granularity",
    "PeriodKey",
    "resolve",
    "BucketIdentity",
    "PendingUpdateQueue",
    "BatchFlushScheduler",
    "FlushReport",
    "SalesAggregationService",
    "AggregateStore",
    "HistoricalEventSource",
    "InMemoryAggregateStore",
    "InMemoryEventSource",
]
