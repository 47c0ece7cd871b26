from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest

from services.billing_queue import (
    BILLING_QUEUE_NAME,
    enqueue_subscription_renewal_job,
    run_subscription_renewal_job_async,
)


@pytest.mark.asyncio
async def test_job_runs_renewals_then_expired_downgrades(session_maker, seeder):
    now = datetime.now(timezone.utc)
    await seeder.tier("free", 0)
    pro = await seeder.tier("pro", 50000)
    await seeder.subscriber("job-renew", tier=pro, period_end=now + timedelta(days=1), balance=50000)

    with patch("services.renewal.service.async_session_maker", session_maker):
        payload = await run_subscription_renewal_job_async()

    assert payload["summary"]["renewed"] == 1
    assert payload["details"][0]["userId"] == "job-renew"
    assert payload["expired_downgraded"] == 0


def test_enqueue_targets_billing_queue_without_retry():
    queue = MagicMock()
    with patch("services.billing_queue.get_billing_queue", return_value=queue):
        enqueue_subscription_renewal_job()

    args, kwargs = queue.enqueue.call_args
    assert args == ("services.billing_queue.run_subscription_renewal_job",)
    assert "retry" not in kwargs
    assert BILLING_QUEUE_NAME == "billing_jobs"
