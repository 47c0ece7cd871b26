"""Wallet balance, history and manual top-up router."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from database import get_db
from models.user import User
from routers.auth_scope import AuthContext, get_auth_context
from services.wallet import (
    credit_topup,
    get_or_create_wallet,
    list_wallet_transactions,
    serialize_transaction,
)

router = APIRouter()
logger = logging.getLogger(__name__)


class TopUpRequest(BaseModel):
    amount: int = Field(gt=0)
    payment_reference: Optional[str] = None
    provider: str = Field(default="manual", max_length=32)


async def _ensure_user(db: AsyncSession, auth: AuthContext) -> User:
    result = await db.execute(select(User).where(User.id == auth.user_id))
    user = result.scalar_one_or_none()
    if user:
        return user

    user = User(id=auth.user_id, email=auth.email or f"{auth.user_id}@local.invalid")
    db.add(user)
    await db.flush()
    return user


@router.get("/balance")
async def wallet_balance(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    await _ensure_user(db, auth)
    wallet = await get_or_create_wallet(auth.user_id, db)
    await db.commit()
    return {"wallet_id": wallet.id, "balance": int(wallet.balance or 0)}


@router.get("/history")
async def wallet_history(
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    await _ensure_user(db, auth)
    wallet = await get_or_create_wallet(auth.user_id, db)
    await db.commit()
    entries = await list_wallet_transactions(wallet.id, db, limit=limit, offset=offset)
    return {
        "wallet_id": wallet.id,
        "balance": int(wallet.balance or 0),
        "transactions": [serialize_transaction(entry) for entry in entries],
        "limit": limit,
        "offset": offset,
    }


@router.post("/topup")
async def manual_topup(
    request: TopUpRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    if request.amount < settings.TOPUP_MIN_AMOUNT or request.amount > settings.TOPUP_MAX_AMOUNT:
        raise HTTPException(
            status_code=422,
            detail=(
                f"Top-up amount must be between {settings.TOPUP_MIN_AMOUNT} "
                f"and {settings.TOPUP_MAX_AMOUNT}."
            ),
        )

    await _ensure_user(db, auth)
    entry = await credit_topup(
        auth.user_id,
        db,
        amount=request.amount,
        description=f"Wallet top-up ({request.provider})",
        gateway_provider=request.provider,
        gateway_payment_id=request.payment_reference,
    )
    logger.info("Wallet top-up user=%s amount=%s provider=%s", auth.user_id, request.amount, request.provider)
    return {
        "ok": True,
        "amount": request.amount,
        "balance_after": entry.balance_after,
        "transaction": serialize_transaction(entry),
    }
