"""Manager working-capital wallet.

Every balance movement goes through :func:`credit` or :func:`debit`, which
lock the wallet row, apply the change and append one balance-stamped
``WalletTransaction`` in the caller's unit of work.  Transaction amounts are
signed (debits negative) so the log alone is enough to replay the balance.

The wallet may never go below zero: a debit that would overdraw it raises
``InsufficientFundsError`` and the whole unit of work rolls back.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from microledger.config import settings
from microledger.models.user import UserRole
from microledger.models.wallet import Wallet, WalletTransaction, WalletTransactionType
from microledger.services.ledger.access import get_user
from microledger.services.ledger.clock import now_utc
from microledger.services.ledger.exceptions import (
    CurrencyMismatchError,
    ForbiddenError,
    InsufficientFundsError,
    ValidationError,
    WalletNotFoundError,
)
from microledger.services.ledger.money import ZERO, positive_money, to_money

logger = logging.getLogger(__name__)

_WALLET_ROLES = (UserRole.SUBADMIN, UserRole.MANAGER)


# ---------------------------------------------------------------------------
# Lookup
# ---------------------------------------------------------------------------

async def _find_wallet(db: AsyncSession, user_id: int, *, lock: bool) -> Wallet | None:
    stmt = select(Wallet).where(Wallet.user_id == user_id)
    if lock:
        stmt = stmt.with_for_update()
    result = await db.execute(stmt.execution_options(populate_existing=True))
    return result.scalar_one_or_none()


async def get_wallet(db: AsyncSession, user_id: int, *, lock: bool = False) -> Wallet:
    wallet = await _find_wallet(db, user_id, lock=lock)
    if wallet is None:
        raise WalletNotFoundError(f"Wallet for user {user_id} not found")
    return wallet


async def get_or_create_wallet(
    db: AsyncSession, user_id: int, currency: str | None = None
) -> Wallet:
    """Return the user's locked wallet, opening an empty one on first use.

    Only SUBADMIN and MANAGER users hold wallets.
    """
    wallet = await _find_wallet(db, user_id, lock=True)
    if wallet is not None:
        return wallet

    user = await get_user(db, user_id)
    if user.role not in _WALLET_ROLES:
        raise ValidationError("Only SUBADMIN and MANAGER users can hold a wallet")

    wallet = Wallet(
        user_id=user_id,
        balance=ZERO,
        currency=currency or settings.default_currency,
    )
    db.add(wallet)
    await db.flush()
    logger.info("Opened wallet %s for user %s", wallet.id, user_id)
    return wallet


# ---------------------------------------------------------------------------
# Primitives
# ---------------------------------------------------------------------------

async def _post(
    db: AsyncSession,
    wallet: Wallet,
    delta: Decimal,
    tx_type: WalletTransactionType,
    description: str,
) -> WalletTransaction:
    """Apply *delta* to the locked wallet row and append its transaction."""
    before = to_money(wallet.balance)

    result = await db.execute(
        update(Wallet)
        .where(Wallet.id == wallet.id)
        .values(balance=Wallet.balance + delta)
        .returning(Wallet.balance)
        .execution_options(synchronize_session=False)
    )
    after = to_money(result.scalar_one())

    # Re-check against the value actually stored, not the pre-read one
    if delta < 0 and after < 0:
        raise InsufficientFundsError(
            f"Insufficient funds. Available: {before}, required: {-delta}"
        )
    set_committed_value(wallet, "balance", after)

    txn = WalletTransaction(
        wallet_id=wallet.id,
        user_id=wallet.user_id,
        type=tx_type,
        amount=delta,
        currency=wallet.currency,
        description=description,
        balance_before=before,
        balance_after=after,
        created_at=now_utc(),
    )
    db.add(txn)
    await db.flush()
    return txn


async def credit(
    db: AsyncSession,
    user_id: int,
    amount: Decimal | int | str,
    tx_type: WalletTransactionType,
    description: str,
) -> WalletTransaction:
    amount = positive_money(amount)
    wallet = await get_or_create_wallet(db, user_id)
    txn = await _post(db, wallet, amount, tx_type, description)
    logger.debug("Wallet %s credited %s (%s)", wallet.id, amount, tx_type.value)
    return txn


async def debit(
    db: AsyncSession,
    user_id: int,
    amount: Decimal | int | str,
    tx_type: WalletTransactionType,
    description: str,
) -> WalletTransaction:
    amount = positive_money(amount)
    wallet = await get_wallet(db, user_id, lock=True)
    if to_money(wallet.balance) < amount:
        raise InsufficientFundsError(
            f"Insufficient funds. Available: {to_money(wallet.balance)}, required: {amount}"
        )
    txn = await _post(db, wallet, -amount, tx_type, description)
    logger.debug("Wallet %s debited %s (%s)", wallet.id, amount, tx_type.value)
    return txn


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------

def transaction_to_dict(txn: WalletTransaction) -> dict[str, Any]:
    return {
        "id": txn.id,
        "wallet_id": txn.wallet_id,
        "user_id": txn.user_id,
        "type": txn.type.value,
        "amount": txn.amount,
        "currency": txn.currency,
        "description": txn.description,
        "balance_before": txn.balance_before,
        "balance_after": txn.balance_after,
        "created_at": txn.created_at,
    }


def _check_currency(wallet: Wallet, currency: str) -> None:
    if wallet.currency != currency:
        raise CurrencyMismatchError(
            f"Wallet uses {wallet.currency}, cannot operate in {currency}"
        )


async def deposit(
    db: AsyncSession, user_id: int, amount, currency: str, description: str = "Depósito"
) -> dict[str, Any]:
    wallet = await get_or_create_wallet(db, user_id, currency)
    _check_currency(wallet, currency)
    txn = await credit(db, user_id, amount, WalletTransactionType.DEPOSIT, description)
    logger.info("Deposit of %s %s into wallet %s", txn.amount, currency, wallet.id)
    return transaction_to_dict(txn)


async def withdraw(
    db: AsyncSession, user_id: int, amount, currency: str, description: str = "Retiro"
) -> dict[str, Any]:
    wallet = await get_wallet(db, user_id, lock=True)
    _check_currency(wallet, currency)
    txn = await debit(db, user_id, amount, WalletTransactionType.WITHDRAWAL, description)
    logger.info("Withdrawal of %s %s from wallet %s", -txn.amount, currency, wallet.id)
    return transaction_to_dict(txn)


async def transfer(
    db: AsyncSession,
    subadmin_id: int,
    manager_id: int,
    amount,
    currency: str,
    description: str = "Transferencia",
) -> dict[str, Any]:
    """Move working capital from a SUBADMIN to a MANAGER they created."""
    amount = positive_money(amount)

    subadmin = await get_user(db, subadmin_id)
    if subadmin.role != UserRole.SUBADMIN:
        raise ForbiddenError("Only SUBADMIN users can transfer funds")

    manager = await get_user(db, manager_id)
    if manager.role != UserRole.MANAGER:
        raise ValidationError("Transfer recipient must be a MANAGER")
    if manager.created_by_id != subadmin_id:
        raise ForbiddenError("Can only transfer to managers you created")

    source = await get_wallet(db, subadmin_id, lock=True)
    _check_currency(source, currency)
    target = await get_or_create_wallet(db, manager_id, currency)
    _check_currency(target, currency)

    out_txn = await debit(
        db, subadmin_id, amount, WalletTransactionType.TRANSFER_TO_MANAGER, description
    )
    in_txn = await credit(
        db, manager_id, amount, WalletTransactionType.TRANSFER_FROM_SUBADMIN, description
    )
    logger.info(
        "Transferred %s %s from user %s to user %s", amount, currency, subadmin_id, manager_id
    )
    return {
        "subadmin_transaction": transaction_to_dict(out_txn),
        "manager_transaction": transaction_to_dict(in_txn),
    }


async def get_balance(db: AsyncSession, user_id: int) -> dict[str, Any]:
    wallet = await get_wallet(db, user_id)
    return {
        "balance": to_money(wallet.balance),
        "currency": wallet.currency,
        "available_for_loan": to_money(wallet.balance),
    }


async def list_transactions(
    db: AsyncSession,
    user_id: int,
    *,
    tx_type: WalletTransactionType | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[dict[str, Any]]:
    """Newest first."""
    wallet = await get_wallet(db, user_id)
    stmt = select(WalletTransaction).where(WalletTransaction.wallet_id == wallet.id)
    if tx_type is not None:
        stmt = stmt.where(WalletTransaction.type == tx_type)
    if start is not None:
        stmt = stmt.where(WalletTransaction.created_at >= start)
    if end is not None:
        stmt = stmt.where(WalletTransaction.created_at <= end)
    stmt = stmt.order_by(
        WalletTransaction.created_at.desc(), WalletTransaction.id.desc()
    ).limit(limit).offset(offset)
    result = await db.execute(stmt)
    return [transaction_to_dict(t) for t in result.scalars().all()]


# ---------------------------------------------------------------------------
# Maintenance
# ---------------------------------------------------------------------------

async def recalculate_wallet_transaction_balances(db: AsyncSession) -> int:
    """Rewrite every transaction's before/after stamps by chronological replay.

    The opening balance is derived backwards from the current balance, so
    the last stamp always lands on the stored balance.  Returns the number
    of transactions whose stamps changed.
    """
    wallets = (await db.execute(select(Wallet).order_by(Wallet.id))).scalars().all()
    updated = 0

    for wallet in wallets:
        txns = (
            await db.execute(
                select(WalletTransaction)
                .where(WalletTransaction.wallet_id == wallet.id)
                .order_by(WalletTransaction.created_at, WalletTransaction.id)
            )
        ).scalars().all()
        if not txns:
            continue

        running = to_money(wallet.balance) - sum((to_money(t.amount) for t in txns), ZERO)
        for txn in txns:
            before = running
            running = before + to_money(txn.amount)
            if to_money(txn.balance_before) != before or to_money(txn.balance_after) != running:
                txn.balance_before = before
                txn.balance_after = running
                updated += 1

        logger.info("Wallet %s: replayed %d transactions", wallet.id, len(txns))

    await db.flush()
    if updated:
        logger.warning("Repaired balance stamps on %d wallet transactions", updated)
    return updated
