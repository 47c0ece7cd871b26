"""Outbound billing notifications (delivery is stubbed)."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict


logger = logging.getLogger(__name__)

RENEWAL_SUCCEEDED = "renewal_succeeded"
INSUFFICIENT_BALANCE = "insufficient_balance"
DOWNGRADED = "downgraded"
NOTIFICATION_KINDS = (RENEWAL_SUCCEEDED, INSUFFICIENT_BALANCE, DOWNGRADED)


class BaseNotifier(ABC):
    @abstractmethod
    async def notify(self, kind: str, payload: Dict[str, Any]) -> None:
        raise NotImplementedError


class LoggingNotifier(BaseNotifier):
    """Logs the email that would be sent. Swap for a real mail transport later."""

    async def notify(self, kind: str, payload: Dict[str, Any]) -> None:
        if kind not in NOTIFICATION_KINDS:
            raise ValueError(f"Unknown notification kind: {kind}")
        logger.info("Billing email queued kind=%s email=%s payload=%s", kind, payload.get("email"), payload)


async def safe_notify(notifier: BaseNotifier, kind: str, payload: Dict[str, Any]) -> bool:
    """Best-effort delivery; never breaks the billing workflow."""
    try:
        await notifier.notify(kind, payload)
        return True
    except Exception as exc:
        logger.warning("Billing notification skipped kind=%s user=%s: %s", kind, payload.get("user_id"), exc)
        return False
