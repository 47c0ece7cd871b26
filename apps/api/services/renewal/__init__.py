"""Subscription renewal engine."""

from services.renewal.service import (
    SubscriptionRenewalService,
    build_renewal_service,
    classify_renewal,
    next_period,
    process_expired_downgrades,
    process_subscription_renewals,
)
from services.renewal.store import BaseRenewalStore, SqlRenewalStore
from services.renewal.types import (
    DueSubscription,
    RenewalConflictError,
    RenewalDecision,
    RenewalDetail,
    RenewalReceipt,
    RenewalResult,
    WalletSnapshot,
)

__all__ = [
    "BaseRenewalStore",
    "DueSubscription",
    "RenewalConflictError",
    "RenewalDecision",
    "RenewalDetail",
    "RenewalReceipt",
    "RenewalResult",
    "SqlRenewalStore",
    "SubscriptionRenewalService",
    "WalletSnapshot",
    "build_renewal_service",
    "classify_renewal",
    "next_period",
    "process_expired_downgrades",
    "process_subscription_renewals",
]
