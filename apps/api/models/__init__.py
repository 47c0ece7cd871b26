"""Models package."""

from .user import User
from .pricing_tier import PricingTier
from .wallet import Wallet, WalletTransaction
from .subscription import Subscription
