"""Scheduler-triggered billing endpoints, authenticated by CRON_SECRET."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Header
from fastapi.responses import JSONResponse

from config import require_cron_secret, settings
from routers.auth_scope import cron_token_matches
from services.billing_queue import enqueue_subscription_renewal_job
from services.renewal.service import process_expired_downgrades, process_subscription_renewals

router = APIRouter()
logger = logging.getLogger(__name__)


def _error(status_code: int, code: str, message: str, details: Optional[str] = None) -> JSONResponse:
    error = {"code": code, "message": message}
    if details is not None:
        error["details"] = details
    return JSONResponse(status_code=status_code, content={"success": False, "error": error})


def _reject(authorization: Optional[str]) -> Optional[JSONResponse]:
    try:
        expected = require_cron_secret()
    except ValueError:
        logger.error("CRON_SECRET not configured")
        return _error(500, "CONFIG_ERROR", "CRON_SECRET not configured")
    if not cron_token_matches(authorization, expected):
        return _error(401, "UNAUTHORIZED", "Invalid or missing cron secret")
    return None


@router.post("/subscription-renewal")
async def run_subscription_renewal(authorization: Optional[str] = Header(default=None)):
    rejection = _reject(authorization)
    if rejection is not None:
        return rejection

    try:
        result = await process_subscription_renewals()
    except Exception as exc:
        logger.error("Subscription renewal cron failed: %s", exc)
        return _error(500, "INTERNAL_ERROR", "Subscription renewal job failed", details=str(exc))

    return {
        "success": True,
        "data": {
            "summary": result.summary(),
            "details": [detail.to_dict() for detail in result.details],
        },
    }


@router.get("/subscription-renewal")
async def subscription_renewal_info(authorization: Optional[str] = Header(default=None)):
    try:
        expected = require_cron_secret()
    except ValueError:
        expected = ""
    if not cron_token_matches(authorization, expected):
        return _error(401, "UNAUTHORIZED", "Invalid or missing cron secret")
    return {
        "success": True,
        "message": "Subscription renewal cron endpoint is ready",
        "usage": {
            "method": "POST",
            "headers": {"Authorization": "Bearer YOUR_CRON_SECRET"},
            "cronSchedule": "0 0 * * * (daily at midnight)",
            "description": (
                f"Processes auto-renewal for subscriptions due within {settings.RENEWAL_LOOKAHEAD_DAYS} days"
            ),
        },
    }


@router.post("/subscription-renewal/enqueue")
async def enqueue_subscription_renewal(authorization: Optional[str] = Header(default=None)):
    rejection = _reject(authorization)
    if rejection is not None:
        return rejection

    try:
        job = enqueue_subscription_renewal_job()
    except Exception as exc:
        logger.error("Subscription renewal enqueue failed: %s", exc)
        return _error(503, "QUEUE_UNAVAILABLE", "Billing queue is unavailable", details=str(exc))
    return JSONResponse(status_code=202, content={"success": True, "data": {"job_id": job.id}})


@router.post("/expired-downgrades")
async def run_expired_downgrades(authorization: Optional[str] = Header(default=None)):
    rejection = _reject(authorization)
    if rejection is not None:
        return rejection

    try:
        downgraded = await process_expired_downgrades()
    except Exception as exc:
        logger.error("Expired downgrade cron failed: %s", exc)
        return _error(500, "INTERNAL_ERROR", "Expired downgrade job failed", details=str(exc))
    return {"success": True, "data": {"downgraded": downgraded}}
