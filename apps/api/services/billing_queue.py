"""Billing job queue helpers (Redis/RQ)."""

from __future__ import annotations

import asyncio
from typing import Any, Dict

from redis import Redis
from rq import Queue
from rq.job import Job

from config import settings
from services.renewal.service import build_renewal_service


BILLING_QUEUE_NAME = "billing_jobs"


def get_redis_connection() -> Redis:
    """Build Redis connection used by RQ."""
    return Redis.from_url(settings.REDIS_URL)


def get_billing_queue() -> Queue:
    """Return the configured billing queue."""
    return Queue(
        name=BILLING_QUEUE_NAME,
        connection=get_redis_connection(),
        default_timeout=1800,
    )


def enqueue_subscription_renewal_job() -> Job:
    """Enqueue one renewal run. No RQ retry: the next scheduled run is the retry."""
    queue = get_billing_queue()
    return queue.enqueue(
        "services.billing_queue.run_subscription_renewal_job",
        job_timeout=1800,
        result_ttl=86400,
        failure_ttl=86400,
    )


async def run_subscription_renewal_job_async() -> Dict[str, Any]:
    """Renewal batch followed by the same-day downgrade safety net."""
    service = build_renewal_service()
    result = await service.process_subscription_renewals()
    expired_downgraded = await service.process_expired_downgrades()
    return {
        "summary": result.summary(),
        "details": [detail.to_dict() for detail in result.details],
        "expired_downgraded": expired_downgraded,
    }


def run_subscription_renewal_job() -> Dict[str, Any]:
    """RQ worker entrypoint for the renewal job."""
    return asyncio.run(run_subscription_renewal_job_async())
