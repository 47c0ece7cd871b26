"""Subscription auto-renewal against prepaid wallet balances.

The batch runs unattended (cron / RQ / lifespan loop), one subscription at a time.
Each subscription is classified as renew, remind or downgrade from its period end,
its tier price and the owner's wallet balance, and the matching action is applied.
Failures are isolated per subscription; only a failure to select the batch itself
escapes. Reruns are safe because selection re-reads current state and a renewal's
debit and period extension commit together.
"""

from __future__ import annotations

import logging
import traceback
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Callable, Optional, Tuple
from zoneinfo import ZoneInfo

from config import settings
from database import async_session_maker
from services.notifications import (
    DOWNGRADED,
    INSUFFICIENT_BALANCE,
    RENEWAL_SUCCEEDED,
    BaseNotifier,
    LoggingNotifier,
    safe_notify,
)
from services.renewal.store import BaseRenewalStore, SqlRenewalStore
from services.renewal.types import (
    DueSubscription,
    RenewalDecision,
    RenewalDetail,
    RenewalResult,
    WalletSnapshot,
)

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def classify_renewal(
    now: datetime,
    current_period_end: datetime,
    tier_price: int,
    balance: int,
) -> RenewalDecision:
    """Decide what to do with one due subscription.

    Downgrade is checked first, so an expired subscription that can now be paid
    for is renewed rather than downgraded.
    """
    if current_period_end is None:
        raise ValueError("current_period_end is required")
    is_expired = current_period_end <= now
    if is_expired and balance < tier_price:
        return RenewalDecision.DOWNGRADE
    if balance >= tier_price:
        return RenewalDecision.RENEW
    return RenewalDecision.REMIND


def next_period(now: datetime, current_period_end: datetime, period_days: int) -> Tuple[datetime, datetime]:
    """Return the renewed ``(start, end)``; lapsed subscriptions restart from now."""
    start = now if current_period_end <= now else current_period_end
    # NOTE: fixed-length extension for every tier, yearly included.
    return start, start + timedelta(days=period_days)


def _billing_timezone(name: str) -> tzinfo:
    if not name or name.upper() == "UTC":
        return timezone.utc
    return ZoneInfo(name)


class SubscriptionRenewalService:
    def __init__(
        self,
        store: BaseRenewalStore,
        notifier: Optional[BaseNotifier] = None,
        *,
        clock: Callable[[], datetime] = _utcnow,
        lookahead_days: Optional[int] = None,
        period_days: Optional[int] = None,
        timezone_name: Optional[str] = None,
    ) -> None:
        self._store = store
        self._notifier = notifier or LoggingNotifier()
        self._clock = clock
        self.lookahead_days = int(settings.RENEWAL_LOOKAHEAD_DAYS if lookahead_days is None else lookahead_days)
        self.period_days = int(settings.RENEWAL_PERIOD_DAYS if period_days is None else period_days)
        self.timezone = _billing_timezone(timezone_name if timezone_name is not None else settings.BILLING_TIMEZONE)

    async def process_subscription_renewals(self) -> RenewalResult:
        now = self._clock()
        threshold = now + timedelta(days=self.lookahead_days)
        result = RenewalResult()

        try:
            due = await self._store.list_due_subscriptions(threshold)
            fallback_tier_id = await self._store.get_fallback_tier_id() if due else None
        except Exception:
            logger.critical("Subscription renewal job failed before processing", exc_info=True)
            raise

        result.total_processed = len(due)
        if not due:
            logger.info("No subscriptions due for renewal")
            return result

        if fallback_tier_id is None:
            logger.warning("Fallback tier %r not found; downgrades will leave subscriptions unchanged", settings.FALLBACK_TIER_NAME)

        for subscription in due:
            result.add(await self._process_subscription(subscription, fallback_tier_id, now))

        logger.info(
            "Subscription renewal job completed total=%s renewed=%s reminders=%s downgraded=%s failed=%s",
            result.total_processed,
            result.renewed,
            result.reminders_sent,
            result.downgraded,
            result.failed,
        )
        return result

    async def _process_subscription(
        self,
        subscription: DueSubscription,
        fallback_tier_id: Optional[str],
        now: datetime,
    ) -> RenewalDetail:
        if subscription.current_period_end is None:
            logger.error(
                "Subscription %s has null current_period_end user=%s",
                subscription.subscription_id,
                subscription.user_id,
            )
            return self._detail(subscription, "failed", "Subscription has null current_period_end")

        try:
            wallet = await self._store.get_wallet(subscription.user_id)
            decision = classify_renewal(now, subscription.current_period_end, subscription.tier_price, wallet.balance)
            if decision is RenewalDecision.DOWNGRADE:
                return await self.downgrade(subscription, wallet, fallback_tier_id, now)
            if decision is RenewalDecision.RENEW:
                return await self.renew(subscription, wallet, now)
            return await self.remind(subscription, wallet, now)
        except Exception as exc:
            logger.exception(
                "Failed to process renewal subscription=%s user=%s",
                subscription.subscription_id,
                subscription.user_id,
            )
            return self._detail(
                subscription,
                "failed",
                str(exc) or type(exc).__name__,
                errorType=type(exc).__name__,
                error=traceback.format_exc(),
            )

    async def renew(self, subscription: DueSubscription, wallet: WalletSnapshot, now: datetime) -> RenewalDetail:
        period_start, period_end = next_period(now, subscription.current_period_end, self.period_days)
        receipt = await self._store.apply_renewal(
            subscription=subscription,
            wallet_id=wallet.wallet_id,
            amount=subscription.tier_price,
            description=f"Auto-renewal: {subscription.tier_display_name} subscription",
            period_start=period_start,
            period_end=period_end,
            now=now,
        )
        await safe_notify(
            self._notifier,
            RENEWAL_SUCCEEDED,
            {
                "user_id": subscription.user_id,
                "email": subscription.user_email,
                "tier": subscription.tier_display_name,
                "new_expires_at": period_end.isoformat(),
                "amount_paid": subscription.tier_price,
            },
        )
        logger.info(
            "Subscription renewed subscription=%s user=%s tier=%s amount=%s new_expires_at=%s",
            subscription.subscription_id,
            subscription.user_id,
            subscription.tier_name,
            subscription.tier_price,
            period_end.isoformat(),
        )
        return self._detail(
            subscription,
            "renewed",
            f"Successfully renewed until {period_end.isoformat()}",
            amountPaid=subscription.tier_price,
            previousBalance=receipt.balance_before,
            newBalance=receipt.balance_after,
            transactionId=receipt.transaction_id,
            periodStart=period_start.isoformat(),
            newExpiresAt=period_end.isoformat(),
        )

    async def remind(self, subscription: DueSubscription, wallet: WalletSnapshot, now: datetime) -> RenewalDetail:
        expires_at = subscription.current_period_end
        days_until_expiry = int((expires_at - now).total_seconds() // SECONDS_PER_DAY)
        await safe_notify(
            self._notifier,
            INSUFFICIENT_BALANCE,
            {
                "user_id": subscription.user_id,
                "email": subscription.user_email,
                "tier": subscription.tier_display_name,
                "price": subscription.tier_price,
                "expires_at": expires_at.isoformat(),
            },
        )
        logger.warning(
            "Insufficient balance for renewal, reminder sent user=%s tier=%s balance=%s required=%s days_until_expiry=%s",
            subscription.user_id,
            subscription.tier_name,
            wallet.balance,
            subscription.tier_price,
            days_until_expiry,
        )
        return self._detail(
            subscription,
            "reminder",
            f"Insufficient balance reminder sent - {days_until_expiry} days until expiry",
            balance=wallet.balance,
            required=subscription.tier_price,
            daysUntilExpiry=days_until_expiry,
            expiresAt=expires_at.isoformat(),
        )

    async def downgrade(
        self,
        subscription: DueSubscription,
        wallet: WalletSnapshot,
        fallback_tier_id: Optional[str],
        now: datetime,
    ) -> RenewalDetail:
        metadata = {
            "balance": wallet.balance,
            "required": subscription.tier_price,
            "expiredAt": subscription.current_period_end.isoformat(),
            "fallbackTierId": fallback_tier_id,
        }
        if fallback_tier_id is None:
            logger.warning(
                "Downgrade skipped, fallback tier missing subscription=%s user=%s",
                subscription.subscription_id,
                subscription.user_id,
            )
            return self._detail(
                subscription,
                "downgraded",
                "Fallback tier missing - subscription expired with insufficient balance but was left unchanged",
                fallbackTierMissing=True,
                **metadata,
            )

        await self._store.apply_downgrade(
            subscription_id=subscription.subscription_id,
            fallback_tier_id=fallback_tier_id,
            now=now,
        )
        await self._notify_downgrade(subscription)
        logger.warning(
            "User downgraded to fallback tier user=%s old_tier=%s balance=%s",
            subscription.user_id,
            subscription.tier_name,
            wallet.balance,
        )
        return self._detail(
            subscription,
            "downgraded",
            "Downgraded to fallback tier - subscription expired and insufficient balance",
            **metadata,
        )

    async def process_expired_downgrades(self) -> int:
        """Downgrade today's lapsed subscriptions that are still unpaid.

        Downgrading clears auto-renewal, which drops the row from the selection,
        so running this again the same day is a no-op.
        """
        now = self._clock()
        start_of_day, end_of_day = self.day_bounds(now)

        try:
            expiring = await self._store.list_subscriptions_ending_between(start_of_day, end_of_day)
            fallback_tier_id = await self._store.get_fallback_tier_id()
        except Exception:
            logger.error("Expired downgrade job failed", exc_info=True)
            raise

        if fallback_tier_id is None:
            if expiring:
                logger.warning("Fallback tier %r not found; expired downgrades skipped", settings.FALLBACK_TIER_NAME)
            return 0

        downgraded = 0
        for subscription in expiring:
            try:
                wallet = await self._store.get_wallet(subscription.user_id)
                if wallet.balance >= subscription.tier_price:
                    continue
                await self._store.apply_downgrade(
                    subscription_id=subscription.subscription_id,
                    fallback_tier_id=fallback_tier_id,
                    now=now,
                )
            except Exception:
                logger.exception("Expired downgrade failed subscription=%s", subscription.subscription_id)
                continue
            await self._notify_downgrade(subscription)
            downgraded += 1
            logger.warning(
                "User downgraded to fallback tier (expired today) user=%s old_tier=%s balance=%s",
                subscription.user_id,
                subscription.tier_name,
                wallet.balance,
            )

        logger.info("Expired downgrade job completed scanned=%s downgraded=%s", len(expiring), downgraded)
        return downgraded

    def day_bounds(self, now: datetime) -> Tuple[datetime, datetime]:
        local_now = now.astimezone(self.timezone)
        start = local_now.replace(hour=0, minute=0, second=0, microsecond=0)
        end = start + timedelta(days=1) - timedelta(microseconds=1)
        return start.astimezone(timezone.utc), end.astimezone(timezone.utc)

    async def _notify_downgrade(self, subscription: DueSubscription) -> None:
        await safe_notify(
            self._notifier,
            DOWNGRADED,
            {
                "user_id": subscription.user_id,
                "email": subscription.user_email,
                "old_tier": subscription.tier_display_name,
            },
        )

    @staticmethod
    def _detail(subscription: DueSubscription, action, message: str, **metadata) -> RenewalDetail:
        return RenewalDetail(
            subscription_id=subscription.subscription_id,
            user_id=subscription.user_id,
            tier_name=subscription.tier_name,
            action=action,
            message=message,
            metadata=metadata,
        )


def build_renewal_service(notifier: Optional[BaseNotifier] = None) -> SubscriptionRenewalService:
    return SubscriptionRenewalService(SqlRenewalStore(async_session_maker), notifier or LoggingNotifier())


async def process_subscription_renewals(notifier: Optional[BaseNotifier] = None) -> RenewalResult:
    """Run the renewal batch over the application database."""
    return await build_renewal_service(notifier).process_subscription_renewals()


async def process_expired_downgrades(notifier: Optional[BaseNotifier] = None) -> int:
    """Run the same-day downgrade safety net over the application database."""
    return await build_renewal_service(notifier).process_expired_downgrades()
