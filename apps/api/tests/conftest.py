from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.future import select

from database import Base
import models  # noqa: F401
from models.pricing_tier import PricingTier
from models.subscription import Subscription
from models.user import User
from models.wallet import Wallet, WalletTransaction
from services.notifications import BaseNotifier
from services.wallet import credit_topup


FIXED_NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


class RecordingNotifier(BaseNotifier):
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent: List[Tuple[str, Dict[str, Any]]] = []

    async def notify(self, kind: str, payload: Dict[str, Any]) -> None:
        self.sent.append((kind, payload))
        if self.fail:
            raise RuntimeError("smtp unavailable")

    def kinds(self) -> List[str]:
        return [kind for kind, _ in self.sent]


class BillingSeeder:
    """Inserts tiers, users, wallets and subscriptions for renewal scenarios."""

    def __init__(self, session_maker: async_sessionmaker):
        self.session_maker = session_maker

    async def tier(self, name: str, price_monthly: int, display_name: Optional[str] = None) -> PricingTier:
        async with self.session_maker() as db:
            tier = PricingTier(
                name=name,
                display_name=display_name or name.capitalize(),
                price_monthly=price_monthly,
                price_yearly=price_monthly * 10,
                is_active=True,
            )
            db.add(tier)
            await db.commit()
            return tier

    async def subscriber(
        self,
        user_id: str,
        *,
        tier: PricingTier,
        period_end: Optional[datetime],
        balance: int = 0,
        auto_renewal: bool = True,
        status: str = "active",
    ) -> Subscription:
        async with self.session_maker() as db:
            db.add(User(id=user_id, email=f"{user_id}@example.com"))
            await db.flush()
            if balance:
                await credit_topup(user_id, db, amount=balance, description="Seed top-up")
            subscription = Subscription(
                user_id=user_id,
                tier_id=tier.id,
                status=status,
                auto_renewal=auto_renewal,
                current_period_start=(period_end - timedelta(days=30)) if period_end else None,
                current_period_end=period_end,
            )
            db.add(subscription)
            await db.commit()
            return subscription

    async def subscription(self, subscription_id: str) -> Subscription:
        async with self.session_maker() as db:
            result = await db.execute(select(Subscription).where(Subscription.id == subscription_id))
            return result.scalar_one()

    async def wallet(self, user_id: str) -> Wallet:
        async with self.session_maker() as db:
            result = await db.execute(select(Wallet).where(Wallet.user_id == user_id))
            return result.scalar_one()

    async def transactions(self, user_id: str, kind: Optional[str] = None) -> List[WalletTransaction]:
        async with self.session_maker() as db:
            query = (
                select(WalletTransaction)
                .join(Wallet, WalletTransaction.wallet_id == Wallet.id)
                .where(Wallet.user_id == user_id)
                .order_by(WalletTransaction.created_at)
            )
            if kind:
                query = query.where(WalletTransaction.type == kind)
            result = await db.execute(query)
            return list(result.scalars().all())


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    db_path = tmp_path / "billing.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield maker
    await engine.dispose()


@pytest.fixture
def seeder(session_maker):
    return BillingSeeder(session_maker)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def now():
    return FIXED_NOW


@pytest.fixture
def failing_notifier():
    return RecordingNotifier(fail=True)
