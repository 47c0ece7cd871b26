"""Value types shared by the renewal store and service."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional


RenewalAction = Literal["renewed", "reminder", "downgraded", "failed"]


class RenewalDecision(str, Enum):
    RENEW = "renew"
    REMIND = "remind"
    DOWNGRADE = "downgrade"


class RenewalConflictError(RuntimeError):
    """Raised when a subscription's period moved between selection and renewal."""


@dataclass(frozen=True)
class DueSubscription:
    subscription_id: str
    user_id: str
    user_email: str
    tier_id: str
    tier_name: str
    tier_display_name: str
    tier_price: int
    current_period_end: Optional[datetime]


@dataclass(frozen=True)
class WalletSnapshot:
    wallet_id: str
    user_id: str
    balance: int


@dataclass(frozen=True)
class RenewalReceipt:
    transaction_id: str
    balance_before: int
    balance_after: int
    period_start: datetime
    period_end: datetime


@dataclass
class RenewalDetail:
    subscription_id: str
    user_id: str
    tier_name: str
    action: RenewalAction
    message: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subscriptionId": self.subscription_id,
            "userId": self.user_id,
            "tierName": self.tier_name,
            "action": self.action,
            "message": self.message,
            "metadata": self.metadata,
        }


@dataclass
class RenewalResult:
    total_processed: int = 0
    renewed: int = 0
    reminders_sent: int = 0
    downgraded: int = 0
    failed: int = 0
    details: List[RenewalDetail] = field(default_factory=list)

    def add(self, detail: RenewalDetail) -> None:
        if detail.action == "renewed":
            self.renewed += 1
        elif detail.action == "reminder":
            self.reminders_sent += 1
        elif detail.action == "downgraded":
            self.downgraded += 1
        else:
            self.failed += 1
        self.details.append(detail)

    def summary(self) -> Dict[str, int]:
        return {
            "totalProcessed": self.total_processed,
            "renewed": self.renewed,
            "remindersSent": self.reminders_sent,
            "downgraded": self.downgraded,
            "failed": self.failed,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            **self.summary(),
            "details": [detail.to_dict() for detail in self.details],
        }
