"""Persistence boundary for the renewal engine."""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, List, Optional

from sqlalchemy import or_, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.future import select

from models.pricing_tier import PricingTier
from models.subscription import Subscription
from models.user import User
from services.plan_catalog import get_fallback_tier_id, tier_renewal_price
from services.renewal.types import (
    DueSubscription,
    RenewalConflictError,
    RenewalReceipt,
    WalletSnapshot,
)
from services.wallet import InsufficientBalanceError, get_or_create_wallet, lock_wallet, record_transaction


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class BaseRenewalStore(ABC):
    """Everything the renewal service reads or writes goes through here."""

    @abstractmethod
    async def list_due_subscriptions(self, threshold: datetime) -> List[DueSubscription]:
        """Active auto-renewing subscriptions ending at or before ``threshold``.

        Rows with no period end are included so they can be reported as failed.
        """
        raise NotImplementedError

    @abstractmethod
    async def list_subscriptions_ending_between(self, start: datetime, end: datetime) -> List[DueSubscription]:
        raise NotImplementedError

    @abstractmethod
    async def get_fallback_tier_id(self) -> Optional[str]:
        raise NotImplementedError

    @abstractmethod
    async def get_wallet(self, user_id: str) -> WalletSnapshot:
        raise NotImplementedError

    @abstractmethod
    async def apply_renewal(
        self,
        *,
        subscription: DueSubscription,
        wallet_id: str,
        amount: int,
        description: str,
        period_start: datetime,
        period_end: datetime,
        now: datetime,
    ) -> RenewalReceipt:
        """Debit the wallet and extend the period as one atomic unit."""
        raise NotImplementedError

    @abstractmethod
    async def apply_downgrade(self, *, subscription_id: str, fallback_tier_id: str, now: datetime) -> None:
        raise NotImplementedError


class SqlRenewalStore(BaseRenewalStore):
    def __init__(self, session_maker: async_sessionmaker) -> None:
        self._session_maker = session_maker

    def _base_query(self):
        return (
            select(Subscription, PricingTier, User.email)
            .join(PricingTier, Subscription.tier_id == PricingTier.id)
            .join(User, Subscription.user_id == User.id)
            .where(
                Subscription.status == "active",
                Subscription.auto_renewal.is_(True),
            )
        )

    @staticmethod
    def _to_due(row: Any) -> DueSubscription:
        subscription, tier, email = row
        return DueSubscription(
            subscription_id=subscription.id,
            user_id=subscription.user_id,
            user_email=email,
            tier_id=tier.id,
            tier_name=tier.name,
            tier_display_name=tier.display_name,
            tier_price=tier_renewal_price(tier),
            current_period_end=_as_utc(subscription.current_period_end),
        )

    async def _fetch(self, query) -> List[DueSubscription]:
        async with self._session_maker() as db:
            result = await db.execute(query.order_by(Subscription.current_period_end, Subscription.id))
            return [self._to_due(row) for row in result.all()]

    async def list_due_subscriptions(self, threshold: datetime) -> List[DueSubscription]:
        query = self._base_query().where(
            or_(
                Subscription.current_period_end <= threshold,
                Subscription.current_period_end.is_(None),
            )
        )
        return await self._fetch(query)

    async def list_subscriptions_ending_between(self, start: datetime, end: datetime) -> List[DueSubscription]:
        query = self._base_query().where(
            Subscription.current_period_end >= start,
            Subscription.current_period_end <= end,
        )
        return await self._fetch(query)

    async def get_fallback_tier_id(self) -> Optional[str]:
        async with self._session_maker() as db:
            return await get_fallback_tier_id(db)

    async def get_wallet(self, user_id: str) -> WalletSnapshot:
        async with self._session_maker() as db:
            wallet = await get_or_create_wallet(user_id, db)
            await db.commit()
            return WalletSnapshot(wallet_id=wallet.id, user_id=wallet.user_id, balance=int(wallet.balance or 0))

    async def apply_renewal(
        self,
        *,
        subscription: DueSubscription,
        wallet_id: str,
        amount: int,
        description: str,
        period_start: datetime,
        period_end: datetime,
        now: datetime,
    ) -> RenewalReceipt:
        async with self._session_maker() as db:
            async with db.begin():
                return await self._renew_in_transaction(
                    db,
                    subscription=subscription,
                    wallet_id=wallet_id,
                    amount=amount,
                    description=description,
                    period_start=period_start,
                    period_end=period_end,
                    now=now,
                )

    async def _renew_in_transaction(
        self,
        db: AsyncSession,
        *,
        subscription: DueSubscription,
        wallet_id: str,
        amount: int,
        description: str,
        period_start: datetime,
        period_end: datetime,
        now: datetime,
    ) -> RenewalReceipt:
        wallet = await lock_wallet(wallet_id, db)
        if int(wallet.balance or 0) < amount:
            raise InsufficientBalanceError(required=amount, available=int(wallet.balance or 0))

        _, entry = await record_transaction(
            wallet_id,
            db,
            kind="subscription",
            amount=-amount,
            description=description,
            reference_id=subscription.subscription_id,
        )

        # Only move the period we classified; anything else means another writer got here first.
        result = await db.execute(
            update(Subscription)
            .where(
                Subscription.id == subscription.subscription_id,
                Subscription.current_period_end == subscription.current_period_end,
            )
            .values(
                current_period_start=period_start,
                current_period_end=period_end,
                status="active",
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise RenewalConflictError(
                f"Subscription {subscription.subscription_id} period changed during renewal"
            )

        return RenewalReceipt(
            transaction_id=entry.id,
            balance_before=int(entry.balance_before),
            balance_after=int(entry.balance_after),
            period_start=period_start,
            period_end=period_end,
        )

    async def apply_downgrade(self, *, subscription_id: str, fallback_tier_id: str, now: datetime) -> None:
        async with self._session_maker() as db:
            async with db.begin():
                result = await db.execute(
                    update(Subscription)
                    .where(
                        Subscription.id == subscription_id,
                        Subscription.auto_renewal.is_(True),
                    )
                    .values(
                        tier_id=fallback_tier_id,
                        status="active",
                        auto_renewal=False,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    raise RenewalConflictError(f"Subscription {subscription_id} was already downgraded")
