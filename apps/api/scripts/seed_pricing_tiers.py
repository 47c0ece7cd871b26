import asyncio
import sys
import os

# Add parent dir to path to find config/database
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy.future import select

from database import Base, async_session_maker, engine
import models  # noqa: F401
from models.pricing_tier import PricingTier

GB = 1024 * 1024 * 1024

DEFAULT_TIERS = [
    {
        "name": "free",
        "display_name": "Free",
        "price_monthly": 0,
        "price_yearly": 0,
        "max_workspaces": 1,
        "max_team_members": 0,
        "storage_limit_bytes": 2 * GB,
        "sort_order": 0,
    },
    {
        "name": "pro",
        "display_name": "Pro",
        "price_monthly": 99000,
        "price_yearly": 990000,
        "max_workspaces": 3,
        "max_team_members": 5,
        "storage_limit_bytes": 10 * GB,
        "sort_order": 1,
    },
    {
        "name": "business",
        "display_name": "Business",
        "price_monthly": 299000,
        "price_yearly": 2990000,
        "max_workspaces": -1,
        "max_team_members": 20,
        "storage_limit_bytes": 50 * GB,
        "sort_order": 2,
    },
]


async def seed_pricing_tiers() -> int:
    created = 0
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with async_session_maker() as db:
        for tier in DEFAULT_TIERS:
            existing = await db.execute(select(PricingTier.id).where(PricingTier.name == tier["name"]))
            if existing.scalar_one_or_none():
                print(f"⏭️ Tier already exists: {tier['display_name']}")
                continue
            db.add(PricingTier(is_active=True, **tier))
            created += 1
            print(f"✅ Created tier: {tier['display_name']}")
        await db.commit()
    return created


if __name__ == "__main__":
    print("📦 Seeding pricing tiers...")
    asyncio.run(seed_pricing_tiers())
