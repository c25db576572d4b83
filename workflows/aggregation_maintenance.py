"""
Prefect Workflow Orchestration - Aggregation Maintenance

Operator workflows around the real-time engine:
- Backfill: re-aggregate sellers' buckets after an outage or bulk import
- Retention: purge aggregates whose period ended beyond the retention window
"""

from datetime import datetime, timedelta, timezone
from typing import List, Optional

from prefect import flow, get_run_logger, task
from prefect.cache_policies import NO_CACHE

from sales_aggregation.aggregation.service import SalesAggregationService
from sales_aggregation.main import service_context


# =============================================================================
# TASKS
# =============================================================================

@task(
    name="queue_backfill",
    description="Queue every bucket touched by a seller's events in a range",
    retries=3,
    retry_delay_seconds=30,
    cache_policy=NO_CACHE,
)
async def queue_backfill(
    service: SalesAggregationService,
    seller_id: str,
    start: datetime,
    end: datetime,
) -> int:
    """Queue one seller's buckets for recomputation"""
    logger = get_run_logger()
    buckets = await service.backfill(seller_id, start, end)
    logger.info(f"Queued {buckets} buckets for seller {seller_id}")
    return buckets


@task(
    name="drain_pending_buckets",
    description="Flush queued buckets until nothing eligible remains",
    retries=2,
    retry_delay_seconds=60,
    cache_policy=NO_CACHE,
)
async def drain_pending_buckets(service: SalesAggregationService) -> dict:
    """Run flush cycles directly, without the timer"""
    logger = get_run_logger()
    reports = await service.scheduler.drain()

    summary = {
        "cycles": len(reports),
        "persisted": sum(r.persisted for r in reports),
        "failed": sum(r.failed for r in reports),
        "dead_lettered": sum(r.dead_lettered for r in reports),
        "documents_written": sum(r.documents_written for r in reports),
        "still_pending": service.get_stats()["pending_buckets"],
    }
    logger.info(
        f"Drain complete: {summary['persisted']} persisted, "
        f"{summary['failed']} failed, {summary['still_pending']} still pending"
    )
    return summary


@task(
    name="purge_expired",
    description="Delete aggregates past the retention window",
    retries=3,
    retry_delay_seconds=60,
    cache_policy=NO_CACHE,
)
async def purge_expired(service: SalesAggregationService, now: Optional[datetime] = None) -> int:
    logger = get_run_logger()
    removed = await service.purge_expired_aggregates(now)
    logger.info(f"Purged {removed} expired aggregates")
    return removed


# =============================================================================
# FLOWS
# =============================================================================

@flow(
    name="backfill_aggregates",
    description="Re-aggregate sellers' history into persisted rollups",
)
async def backfill_aggregates_flow(
    seller_ids: List[str],
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    store_backend: str = "sql",
) -> dict:
    """
    Backfill pipeline.

    Steps:
    1. Queue the buckets touched by each seller's events in [start, end)
    2. Drain the queue through the regular flush path
    """
    logger = get_run_logger()

    end = end or datetime.now(timezone.utc)
    start = start or end - timedelta(days=1)
    logger.info(f"Starting backfill of {len(seller_ids)} sellers from {start} to {end}")

    async with service_context(store_backend) as service:
        queued = {}
        for seller_id in seller_ids:
            queued[seller_id] = await queue_backfill(service, seller_id, start, end)

        drained = await drain_pending_buckets(service)

    return {
        "start": start.isoformat(),
        "end": end.isoformat(),
        "queued": queued,
        "drain": drained,
    }


@flow(
    name="purge_expired_aggregates",
    description="Scheduled retention purge of persisted aggregates",
)
async def purge_expired_aggregates_flow(store_backend: str = "sql") -> dict:
    async with service_context(store_backend) as service:
        removed = await purge_expired(service)
        retention_days = service.config.retention_days

    return {"removed": removed, "retention_days": retention_days}


if __name__ == "__main__":
    import asyncio

    asyncio.run(purge_expired_aggregates_flow())
