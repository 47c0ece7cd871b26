"""PricingTier model (plan catalog)."""

import uuid

from sqlalchemy import BigInteger, Boolean, Column, DateTime, Integer, String
from sqlalchemy.sql import func

from database import Base


class PricingTier(Base):
    """Priced plan catalog entry. Prices are in the minor currency unit."""

    __tablename__ = "pricing_tiers"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String, unique=True, nullable=False, index=True)
    display_name = Column(String, nullable=False)
    price_monthly = Column(Integer, nullable=True, default=0)
    price_yearly = Column(Integer, nullable=True, default=0)
    max_workspaces = Column(Integer, nullable=True, default=1)
    max_team_members = Column(Integer, nullable=True, default=0)
    storage_limit_bytes = Column(BigInteger, nullable=True, default=2147483648)
    is_active = Column(Boolean, nullable=False, default=True, index=True)
    sort_order = Column(Integer, nullable=True, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
