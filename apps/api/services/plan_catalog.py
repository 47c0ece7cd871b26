"""Read-only pricing tier lookups."""

from __future__ import annotations

from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.pricing_tier import PricingTier


async def get_tier_by_name(name: str, db: AsyncSession, *, active_only: bool = True) -> Optional[PricingTier]:
    query = select(PricingTier).where(PricingTier.name == name)
    if active_only:
        query = query.where(PricingTier.is_active.is_(True))
    result = await db.execute(query)
    return result.scalar_one_or_none()


async def get_fallback_tier_id(db: AsyncSession) -> Optional[str]:
    """Return the id of the zero-cost tier subscriptions fall back to, if it exists."""
    tier = await get_tier_by_name(settings.FALLBACK_TIER_NAME, db, active_only=False)
    return tier.id if tier else None


def tier_renewal_price(tier: PricingTier) -> int:
    # Renewals always charge the monthly price.
    return max(int(tier.price_monthly or 0), 0)
