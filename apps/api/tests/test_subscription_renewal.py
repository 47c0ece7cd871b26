from datetime import datetime, timedelta, timezone

import pytest

from services.notifications import DOWNGRADED, INSUFFICIENT_BALANCE, RENEWAL_SUCCEEDED
from services.renewal import (
    DueSubscription,
    RenewalConflictError,
    SqlRenewalStore,
    SubscriptionRenewalService,
)
from services.wallet import InsufficientBalanceError


PRO_PRICE = 50000


def _utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _service(session_maker, notifier, now) -> SubscriptionRenewalService:
    return SubscriptionRenewalService(SqlRenewalStore(session_maker), notifier, clock=lambda: now)


@pytest.mark.asyncio
async def test_expired_and_funded_subscription_renews_from_now(session_maker, seeder, notifier, now):
    await seeder.tier("free", 0)
    pro = await seeder.tier("pro", PRO_PRICE)
    subscription = await seeder.subscriber("user-a", tier=pro, period_end=now - timedelta(days=1), balance=100000)

    result = await _service(session_maker, notifier, now).process_subscription_renewals()

    assert result.total_processed == 1
    assert result.renewed == 1
    detail = result.details[0]
    assert detail.action == "renewed"
    assert detail.metadata["amountPaid"] == PRO_PRICE
    assert detail.metadata["previousBalance"] == 100000

    wallet = await seeder.wallet("user-a")
    assert wallet.balance == 50000
    refreshed = await seeder.subscription(subscription.id)
    assert _utc(refreshed.current_period_start) == now
    assert _utc(refreshed.current_period_end) == now + timedelta(days=30)
    assert refreshed.status == "active"
    assert refreshed.tier_id == pro.id

    debits = await seeder.transactions("user-a", kind="subscription")
    assert len(debits) == 1
    assert debits[0].amount == -PRO_PRICE
    assert debits[0].balance_before == 100000
    assert debits[0].balance_after == 50000
    assert debits[0].reference_id == subscription.id
    assert notifier.kinds() == [RENEWAL_SUCCEEDED]


@pytest.mark.asyncio
async def test_expired_and_unfunded_subscription_is_downgraded(session_maker, seeder, notifier, now):
    free = await seeder.tier("free", 0)
    pro = await seeder.tier("pro", PRO_PRICE)
    subscription = await seeder.subscriber("user-b", tier=pro, period_end=now - timedelta(days=1), balance=0)

    result = await _service(session_maker, notifier, now).process_subscription_renewals()

    assert result.downgraded == 1
    assert result.details[0].action == "downgraded"
    refreshed = await seeder.subscription(subscription.id)
    assert refreshed.tier_id == free.id
    assert refreshed.auto_renewal is False
    assert refreshed.status == "active"
    assert (await seeder.wallet("user-b")).balance == 0
    assert await seeder.transactions("user-b") == []
    assert notifier.kinds() == [DOWNGRADED]


@pytest.mark.asyncio
async def test_unexpired_and_underfunded_subscription_gets_reminder(session_maker, seeder, notifier, now):
    await seeder.tier("free", 0)
    pro = await seeder.tier("pro", PRO_PRICE)
    period_end = now + timedelta(days=2)
    subscription = await seeder.subscriber("user-c", tier=pro, period_end=period_end, balance=10000)

    result = await _service(session_maker, notifier, now).process_subscription_renewals()

    assert result.reminders_sent == 1
    detail = result.details[0]
    assert detail.action == "reminder"
    assert detail.metadata["daysUntilExpiry"] == 2
    assert detail.metadata["required"] == PRO_PRICE
    refreshed = await seeder.subscription(subscription.id)
    assert _utc(refreshed.current_period_end) == period_end
    assert refreshed.tier_id == pro.id
    assert refreshed.auto_renewal is True
    assert await seeder.transactions("user-c", kind="subscription") == []
    assert (await seeder.wallet("user-c")).balance == 10000
    assert notifier.kinds() == [INSUFFICIENT_BALANCE]


@pytest.mark.asyncio
async def test_unexpired_and_funded_subscription_renews_without_gap(session_maker, seeder, notifier, now):
    await seeder.tier("free", 0)
    pro = await seeder.tier("pro", PRO_PRICE)
    period_end = now + timedelta(days=2)
    subscription = await seeder.subscriber("user-d", tier=pro, period_end=period_end, balance=PRO_PRICE)

    result = await _service(session_maker, notifier, now).process_subscription_renewals()

    assert result.renewed == 1
    refreshed = await seeder.subscription(subscription.id)
    assert _utc(refreshed.current_period_start) == period_end
    assert _utc(refreshed.current_period_end) == period_end + timedelta(days=30)
    assert (await seeder.wallet("user-d")).balance == 0


@pytest.mark.asyncio
async def test_null_period_end_fails_without_aborting_batch(session_maker, seeder, notifier, now):
    await seeder.tier("free", 0)
    pro = await seeder.tier("pro", PRO_PRICE)
    await seeder.subscriber("user-1", tier=pro, period_end=now - timedelta(days=1), balance=100000)
    await seeder.subscriber("user-2", tier=pro, period_end=now - timedelta(days=1), balance=0)
    await seeder.subscriber("user-3", tier=pro, period_end=now + timedelta(days=2), balance=10000)
    await seeder.subscriber("user-4", tier=pro, period_end=now + timedelta(days=2), balance=PRO_PRICE)
    broken = await seeder.subscriber("user-5", tier=pro, period_end=None, balance=PRO_PRICE)

    result = await _service(session_maker, notifier, now).process_subscription_renewals()

    assert result.total_processed == 5
    assert result.renewed == 2
    assert result.downgraded == 1
    assert result.reminders_sent == 1
    assert result.failed == 1
    assert result.total_processed == result.renewed + result.reminders_sent + result.downgraded + result.failed
    failed = [detail for detail in result.details if detail.action == "failed"]
    assert failed[0].subscription_id == broken.id
    assert "null current_period_end" in failed[0].message


@pytest.mark.asyncio
async def test_subscriptions_outside_window_or_inactive_are_not_selected(session_maker, seeder, notifier, now):
    await seeder.tier("free", 0)
    pro = await seeder.tier("pro", PRO_PRICE)
    await seeder.subscriber("far-future", tier=pro, period_end=now + timedelta(days=10), balance=PRO_PRICE)
    await seeder.subscriber("manual", tier=pro, period_end=now - timedelta(days=1), auto_renewal=False)
    await seeder.subscriber("cancelled", tier=pro, period_end=now - timedelta(days=1), status="cancelled")

    result = await _service(session_maker, notifier, now).process_subscription_renewals()

    assert result.total_processed == 0
    assert result.details == []
    assert notifier.sent == []


@pytest.mark.asyncio
async def test_second_run_is_idempotent(session_maker, seeder, notifier, now):
    await seeder.tier("free", 0)
    pro = await seeder.tier("pro", PRO_PRICE)
    await seeder.subscriber("renewer", tier=pro, period_end=now - timedelta(days=1), balance=100000)
    await seeder.subscriber("downgrader", tier=pro, period_end=now - timedelta(days=1), balance=0)
    await seeder.subscriber("reminded", tier=pro, period_end=now + timedelta(days=1), balance=100)
    service = _service(session_maker, notifier, now)

    first = await service.process_subscription_renewals()
    second = await service.process_subscription_renewals()

    assert (first.renewed, first.downgraded, first.reminders_sent) == (1, 1, 1)
    assert second.renewed == 0
    assert second.downgraded == 0
    assert second.total_processed == 1
    assert second.details[0].user_id == "reminded"
    assert len(await seeder.transactions("renewer", kind="subscription")) == 1
    assert (await seeder.wallet("renewer")).balance == 50000


@pytest.mark.asyncio
async def test_notification_failure_does_not_fail_renewal(session_maker, seeder, failing_notifier, now):
    await seeder.tier("free", 0)
    pro = await seeder.tier("pro", PRO_PRICE)
    await seeder.subscriber("loud", tier=pro, period_end=now - timedelta(days=1), balance=PRO_PRICE)

    result = await _service(session_maker, failing_notifier, now).process_subscription_renewals()

    assert result.renewed == 1
    assert result.failed == 0
    assert failing_notifier.kinds() == [RENEWAL_SUCCEEDED]


@pytest.mark.asyncio
async def test_missing_fallback_tier_reports_downgrade_without_changes(session_maker, seeder, notifier, now):
    pro = await seeder.tier("pro", PRO_PRICE)
    subscription = await seeder.subscriber("orphan", tier=pro, period_end=now - timedelta(days=1), balance=0)

    result = await _service(session_maker, notifier, now).process_subscription_renewals()

    assert result.downgraded == 1
    assert result.details[0].metadata["fallbackTierMissing"] is True
    refreshed = await seeder.subscription(subscription.id)
    assert refreshed.tier_id == pro.id
    assert refreshed.auto_renewal is True
    assert notifier.sent == []


@pytest.mark.asyncio
async def test_stale_period_end_rolls_back_debit(session_maker, seeder, now):
    pro = await seeder.tier("pro", PRO_PRICE)
    subscription = await seeder.subscriber("raced", tier=pro, period_end=now - timedelta(days=1), balance=100000)
    store = SqlRenewalStore(session_maker)
    wallet = await store.get_wallet("raced")
    stale = DueSubscription(
        subscription_id=subscription.id,
        user_id="raced",
        user_email="raced@example.com",
        tier_id=pro.id,
        tier_name="pro",
        tier_display_name="Pro",
        tier_price=PRO_PRICE,
        current_period_end=now - timedelta(days=5),
    )

    with pytest.raises(RenewalConflictError):
        await store.apply_renewal(
            subscription=stale,
            wallet_id=wallet.wallet_id,
            amount=PRO_PRICE,
            description="Auto-renewal: Pro subscription",
            period_start=now,
            period_end=now + timedelta(days=30),
            now=now,
        )

    assert (await seeder.wallet("raced")).balance == 100000
    assert await seeder.transactions("raced", kind="subscription") == []
    refreshed = await seeder.subscription(subscription.id)
    assert _utc(refreshed.current_period_end) == now - timedelta(days=1)


@pytest.mark.asyncio
async def test_renewal_rechecks_balance_under_lock(session_maker, seeder, now):
    pro = await seeder.tier("pro", PRO_PRICE)
    period_end = now - timedelta(days=1)
    subscription = await seeder.subscriber("drained", tier=pro, period_end=period_end, balance=10000)
    store = SqlRenewalStore(session_maker)
    wallet = await store.get_wallet("drained")
    due = DueSubscription(
        subscription_id=subscription.id,
        user_id="drained",
        user_email="drained@example.com",
        tier_id=pro.id,
        tier_name="pro",
        tier_display_name="Pro",
        tier_price=PRO_PRICE,
        current_period_end=period_end,
    )

    with pytest.raises(InsufficientBalanceError):
        await store.apply_renewal(
            subscription=due,
            wallet_id=wallet.wallet_id,
            amount=PRO_PRICE,
            description="Auto-renewal: Pro subscription",
            period_start=now,
            period_end=now + timedelta(days=30),
            now=now,
        )

    assert (await seeder.wallet("drained")).balance == 10000
    refreshed = await seeder.subscription(subscription.id)
    assert _utc(refreshed.current_period_end) == period_end


@pytest.mark.asyncio
async def test_result_serializes_to_output_contract(session_maker, seeder, notifier, now):
    await seeder.tier("free", 0)
    pro = await seeder.tier("pro", PRO_PRICE)
    await seeder.subscriber("contract", tier=pro, period_end=now + timedelta(days=1), balance=0)

    payload = (await _service(session_maker, notifier, now).process_subscription_renewals()).to_dict()

    assert payload["totalProcessed"] == 1
    assert payload["remindersSent"] == 1
    assert set(payload["details"][0]) == {"subscriptionId", "userId", "tierName", "action", "message", "metadata"}
    assert payload["details"][0]["tierName"] == "pro"
