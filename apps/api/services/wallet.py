"""Wallet balance and append-only transaction ledger helpers."""

from __future__ import annotations

from typing import List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.wallet import Wallet, WalletTransaction


TRANSACTION_TYPES = ("topup", "subscription", "refund")


class WalletError(Exception):
    """Base class for wallet ledger failures."""


class WalletNotFoundError(WalletError):
    pass


class InsufficientBalanceError(WalletError):
    def __init__(self, required: int, available: int):
        self.required = int(required)
        self.available = int(available)
        super().__init__(f"Insufficient balance. Required: {self.required}, available: {self.available}.")


async def get_or_create_wallet(user_id: str, db: AsyncSession) -> Wallet:
    """Return the user's wallet, creating a zero-balance one on first access.

    Creation relies on the unique ``wallets.user_id`` constraint. The insert runs in
    a savepoint; if a concurrent caller wins it, only the savepoint is rolled back
    and the winner's row is returned, so earlier work on ``db`` is kept.
    """
    result = await db.execute(select(Wallet).where(Wallet.user_id == user_id))
    wallet = result.scalar_one_or_none()
    if wallet:
        return wallet

    wallet = Wallet(user_id=user_id, balance=0)
    try:
        async with db.begin_nested():
            db.add(wallet)
            await db.flush()
    except IntegrityError:
        result = await db.execute(select(Wallet).where(Wallet.user_id == user_id))
        return result.scalar_one()
    return wallet


async def lock_wallet(wallet_id: str, db: AsyncSession) -> Wallet:
    """Load a wallet row with ``SELECT ... FOR UPDATE`` inside the caller's transaction."""
    result = await db.execute(
        select(Wallet).where(Wallet.id == wallet_id).with_for_update().execution_options(populate_existing=True)
    )
    wallet = result.scalar_one_or_none()
    if wallet is None:
        raise WalletNotFoundError(f"Wallet {wallet_id} not found")
    return wallet


async def record_transaction(
    wallet_id: str,
    db: AsyncSession,
    *,
    kind: str,
    amount: int,
    description: str,
    reference_id: Optional[str] = None,
    gateway_provider: Optional[str] = None,
    gateway_payment_id: Optional[str] = None,
) -> Tuple[Wallet, WalletTransaction]:
    """Append one ledger entry and move the wallet balance by ``amount``.

    No business validation happens here: callers check sufficiency before a debit.
    The balance update and the entry are flushed together but not committed, so the
    caller decides the transaction boundary.
    """
    if kind not in TRANSACTION_TYPES:
        raise ValueError(f"Unknown transaction type: {kind}")

    wallet = await lock_wallet(wallet_id, db)
    balance_before = int(wallet.balance or 0)
    balance_after = balance_before + int(amount)

    entry = WalletTransaction(
        wallet_id=wallet.id,
        type=kind,
        amount=int(amount),
        balance_before=balance_before,
        balance_after=balance_after,
        description=description,
        reference_id=reference_id,
        gateway_provider=gateway_provider,
        gateway_payment_id=gateway_payment_id,
        status="completed",
    )
    wallet.balance = balance_after
    db.add(entry)
    await db.flush()
    return wallet, entry


async def get_wallet_balance(user_id: str, db: AsyncSession) -> int:
    wallet = await get_or_create_wallet(user_id, db)
    await db.commit()
    return int(wallet.balance or 0)


async def has_enough_balance(user_id: str, amount: int, db: AsyncSession) -> bool:
    return await get_wallet_balance(user_id, db) >= int(amount)


async def list_wallet_transactions(
    wallet_id: str,
    db: AsyncSession,
    *,
    limit: int = 20,
    offset: int = 0,
) -> List[WalletTransaction]:
    result = await db.execute(
        select(WalletTransaction)
        .where(WalletTransaction.wallet_id == wallet_id)
        .order_by(WalletTransaction.created_at.desc(), WalletTransaction.id.desc())
        .limit(max(1, min(int(limit), 100)))
        .offset(max(int(offset), 0))
    )
    return list(result.scalars().all())


async def credit_topup(
    user_id: str,
    db: AsyncSession,
    *,
    amount: int,
    description: str,
    gateway_provider: str = "manual",
    gateway_payment_id: Optional[str] = None,
) -> WalletTransaction:
    """Credit an already-settled top-up to the user's wallet and commit."""
    if int(amount) <= 0:
        raise ValueError("Top-up amount must be greater than 0")
    wallet = await get_or_create_wallet(user_id, db)
    _, entry = await record_transaction(
        wallet.id,
        db,
        kind="topup",
        amount=int(amount),
        description=description,
        gateway_provider=gateway_provider,
        gateway_payment_id=gateway_payment_id,
    )
    await db.commit()
    return entry


async def refund(
    user_id: str,
    db: AsyncSession,
    *,
    amount: int,
    description: str,
    reference_id: Optional[str] = None,
) -> WalletTransaction:
    """Return money to the user's wallet and commit."""
    if int(amount) <= 0:
        raise ValueError("Refund amount must be greater than 0")
    wallet = await get_or_create_wallet(user_id, db)
    _, entry = await record_transaction(
        wallet.id,
        db,
        kind="refund",
        amount=int(amount),
        description=description,
        reference_id=reference_id,
    )
    await db.commit()
    return entry


def serialize_transaction(entry: WalletTransaction) -> dict:
    return {
        "id": entry.id,
        "type": entry.type,
        "amount": entry.amount,
        "balance_before": entry.balance_before,
        "balance_after": entry.balance_after,
        "description": entry.description,
        "reference_id": entry.reference_id,
        "gateway_provider": entry.gateway_provider,
        "status": entry.status,
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
    }
