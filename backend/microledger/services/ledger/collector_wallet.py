"""Collector cash-on-hand wallet.

Tracks the physical cash a manager carries in the field.  Unlike the
working-capital wallet the balance may go negative (a disbursement can be
handed out before collections cover it).

Stored amounts follow the type:

* COLLECTION, CASH_ADJUSTMENT, PAYMENT_RESET are signed and added as-is;
  a reversal is a negative COLLECTION or a negative PAYMENT_RESET row.
* WITHDRAWAL, ROUTE_EXPENSE, LOAN_DISBURSEMENT are positive and subtracted.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from microledger.config import settings
from microledger.models.user import User, UserRole
from microledger.models.wallet import (
    COLLECTOR_OUTFLOW_TYPES,
    COLLECTOR_SIGNED_TYPES,
    CollectorWallet,
    CollectorWalletTransaction,
    CollectorWalletTransactionType,
)
from microledger.services.ledger.access import Actor, get_user
from microledger.services.ledger.clock import now_utc
from microledger.services.ledger.exceptions import (
    ForbiddenError,
    ValidationError,
    WalletNotFoundError,
)
from microledger.services.ledger.money import ZERO, positive_money, to_money

logger = logging.getLogger(__name__)


def balance_effect(tx_type: CollectorWalletTransactionType, amount: Decimal) -> Decimal:
    """Signed change a stored transaction applies to the balance."""
    if tx_type in COLLECTOR_SIGNED_TYPES:
        return to_money(amount)
    if tx_type in COLLECTOR_OUTFLOW_TYPES:
        return -to_money(amount)
    raise ValueError(f"Unknown collector transaction type: {tx_type}")


async def _find_wallet(
    db: AsyncSession, user_id: int, *, lock: bool
) -> CollectorWallet | None:
    stmt = select(CollectorWallet).where(CollectorWallet.user_id == user_id)
    if lock:
        stmt = stmt.with_for_update()
    result = await db.execute(stmt.execution_options(populate_existing=True))
    return result.scalar_one_or_none()


async def get_wallet(db: AsyncSession, user_id: int) -> CollectorWallet:
    wallet = await _find_wallet(db, user_id, lock=False)
    if wallet is None:
        raise WalletNotFoundError(f"Collector wallet for user {user_id} not found")
    return wallet


async def get_or_create_wallet(db: AsyncSession, user_id: int) -> CollectorWallet:
    """Locked collector wallet for *user_id*, created empty on first use."""
    wallet = await _find_wallet(db, user_id, lock=True)
    if wallet is None:
        logger.info("Opening collector wallet for user %s", user_id)
        wallet = CollectorWallet(
            user_id=user_id, balance=ZERO, currency=settings.default_currency
        )
        db.add(wallet)
        await db.flush()
    return wallet


async def _post(
    db: AsyncSession,
    user_id: int,
    tx_type: CollectorWalletTransactionType,
    stored_amount: Decimal,
    description: str,
    *,
    sub_loan_id: int | None = None,
    route_id: int | None = None,
    loan_id: int | None = None,
) -> CollectorWalletTransaction:
    wallet = await get_or_create_wallet(db, user_id)
    before = to_money(wallet.balance)
    delta = balance_effect(tx_type, stored_amount)

    result = await db.execute(
        update(CollectorWallet)
        .where(CollectorWallet.id == wallet.id)
        .values(balance=CollectorWallet.balance + delta)
        .returning(CollectorWallet.balance)
        .execution_options(synchronize_session=False)
    )
    after = to_money(result.scalar_one())
    set_committed_value(wallet, "balance", after)

    txn = CollectorWalletTransaction(
        wallet_id=wallet.id,
        user_id=user_id,
        type=tx_type,
        amount=stored_amount,
        currency=wallet.currency,
        description=description,
        balance_before=before,
        balance_after=after,
        sub_loan_id=sub_loan_id,
        route_id=route_id,
        loan_id=loan_id,
        created_at=now_utc(),
    )
    db.add(txn)
    await db.flush()
    logger.debug(
        "Collector wallet %s %s %s: %s -> %s",
        wallet.id, tx_type.value, stored_amount, before, after,
    )
    return txn


# ---------------------------------------------------------------------------
# Engine-facing primitives
# ---------------------------------------------------------------------------

async def record_collection(
    db: AsyncSession, user_id: int, amount, description: str, sub_loan_id: int | None = None
) -> CollectorWalletTransaction:
    amount = positive_money(amount)
    return await _post(
        db,
        user_id,
        CollectorWalletTransactionType.COLLECTION,
        amount,
        description,
        sub_loan_id=sub_loan_id,
    )


async def revert_collection(
    db: AsyncSession, user_id: int, amount, description: str, sub_loan_id: int | None = None
) -> CollectorWalletTransaction:
    """Negative COLLECTION: undoes one collection without deleting it."""
    amount = positive_money(amount)
    return await _post(
        db,
        user_id,
        CollectorWalletTransactionType.COLLECTION,
        -amount,
        description,
        sub_loan_id=sub_loan_id,
    )


async def record_payment_reset(
    db: AsyncSession, user_id: int, amount, description: str, sub_loan_id: int | None = None
) -> CollectorWalletTransaction:
    amount = positive_money(amount)
    return await _post(
        db,
        user_id,
        CollectorWalletTransactionType.PAYMENT_RESET,
        -amount,
        description,
        sub_loan_id=sub_loan_id,
    )


async def record_route_expense(
    db: AsyncSession, user_id: int, amount, description: str, route_id: int | None = None
) -> CollectorWalletTransaction:
    amount = positive_money(amount)
    return await _post(
        db,
        user_id,
        CollectorWalletTransactionType.ROUTE_EXPENSE,
        amount,
        description,
        route_id=route_id,
    )


async def record_loan_disbursement(
    db: AsyncSession, user_id: int, amount, description: str, loan_id: int | None = None
) -> CollectorWalletTransaction:
    amount = positive_money(amount)
    return await _post(
        db,
        user_id,
        CollectorWalletTransactionType.LOAN_DISBURSEMENT,
        amount,
        description,
        loan_id=loan_id,
    )


# ---------------------------------------------------------------------------
# Operator actions
# ---------------------------------------------------------------------------

async def _check_created_manager(db: AsyncSession, subadmin_id: int, manager_id: int) -> User:
    manager = await get_user(db, manager_id)
    if manager.role != UserRole.MANAGER:
        raise ValidationError("Target user must be a MANAGER")
    if manager.created_by_id != subadmin_id:
        raise ForbiddenError("Can only operate on managers you created")
    return manager


async def withdraw(
    db: AsyncSession,
    actor: Actor,
    manager_id: int,
    amount,
    description: str = "Retiro de caja",
) -> dict[str, Any]:
    """Take cash out of a manager's float; the balance may go negative.

    A manager may withdraw from their own wallet; a SUBADMIN from the
    wallets of managers they created.
    """
    if actor.user_id != manager_id:
        if actor.role != UserRole.SUBADMIN:
            raise ForbiddenError("Only SUBADMIN can withdraw from a manager's wallet")
        await _check_created_manager(db, actor.user_id, manager_id)

    amount = positive_money(amount)
    txn = await _post(
        db, manager_id, CollectorWalletTransactionType.WITHDRAWAL, amount, description
    )
    logger.info("Collector withdrawal: user %s amount %s by %s", manager_id, amount, actor.user_id)
    return transaction_to_dict(txn)


async def cash_adjustment(
    db: AsyncSession,
    actor: Actor,
    manager_id: int,
    amount,
    description: str = "Ajuste de caja",
) -> dict[str, Any]:
    if actor.role != UserRole.SUBADMIN:
        raise ForbiddenError("Only SUBADMIN can make cash adjustments")
    await _check_created_manager(db, actor.user_id, manager_id)

    amount = positive_money(amount)
    txn = await _post(
        db, manager_id, CollectorWalletTransactionType.CASH_ADJUSTMENT, amount, description
    )
    logger.info("Cash adjustment: SUBADMIN %s -> MANAGER %s, %s", actor.user_id, manager_id, amount)
    return transaction_to_dict(txn)


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

def transaction_to_dict(txn: CollectorWalletTransaction) -> dict[str, Any]:
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
        "sub_loan_id": txn.sub_loan_id,
        "route_id": txn.route_id,
        "loan_id": txn.loan_id,
        "created_at": txn.created_at,
    }


async def _transactions(db: AsyncSession, wallet_ids: list[int]) -> list[CollectorWalletTransaction]:
    if not wallet_ids:
        return []
    result = await db.execute(
        select(CollectorWalletTransaction)
        .where(CollectorWalletTransaction.wallet_id.in_(wallet_ids))
        .order_by(CollectorWalletTransaction.created_at, CollectorWalletTransaction.id)
    )
    return list(result.scalars().all())


def _net(txns: list[CollectorWalletTransaction]) -> Decimal:
    return sum((balance_effect(t.type, t.amount) for t in txns), ZERO)


async def recalculate_balance(db: AsyncSession, user_id: int) -> dict[str, Any]:
    """Re-derive the balance from the transaction log and fix drift."""
    wallet = await get_or_create_wallet(db, user_id)
    calculated = _net(await _transactions(db, [wallet.id]))
    stored = to_money(wallet.balance)

    if abs(calculated - stored) > settings.balance_tolerance:
        logger.warning(
            "Collector wallet %s out of sync for user %s. Stored: %s, calculated: %s",
            wallet.id, user_id, stored, calculated,
        )
        wallet.balance = calculated
        await db.flush()
        return {
            "wallet_id": wallet.id,
            "balance": calculated,
            "currency": wallet.currency,
            "recalculated": True,
            "previous_balance": stored,
        }

    return {
        "wallet_id": wallet.id,
        "balance": calculated,
        "currency": wallet.currency,
        "recalculated": False,
    }


async def get_balance(db: AsyncSession, actor: Actor) -> dict[str, Any]:
    """A manager's own balance, or the sum over a SUBADMIN's managers."""
    if actor.role != UserRole.SUBADMIN:
        return await recalculate_balance(db, actor.user_id)

    manager_ids = (
        await db.execute(
            select(User.id).where(
                User.created_by_id == actor.user_id,
                User.role == UserRole.MANAGER,
                User.deleted_at.is_(None),
            )
        )
    ).scalars().all()
    wallet_ids = []
    if manager_ids:
        wallet_ids = (
            await db.execute(
                select(CollectorWallet.id).where(CollectorWallet.user_id.in_(manager_ids))
            )
        ).scalars().all()
    txns = await _transactions(db, list(wallet_ids))
    return {
        "wallet_id": None,
        "balance": _net(txns),
        "currency": settings.default_currency,
        "managers_count": len(manager_ids),
        "transactions_count": len(txns),
    }


async def list_transactions(
    db: AsyncSession,
    user_id: int,
    *,
    tx_type: CollectorWalletTransactionType | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[dict[str, Any]]:
    wallet = await get_wallet(db, user_id)
    stmt = select(CollectorWalletTransaction).where(
        CollectorWalletTransaction.wallet_id == wallet.id
    )
    if tx_type is not None:
        stmt = stmt.where(CollectorWalletTransaction.type == tx_type)
    if start is not None:
        stmt = stmt.where(CollectorWalletTransaction.created_at >= start)
    if end is not None:
        stmt = stmt.where(CollectorWalletTransaction.created_at <= end)
    stmt = stmt.order_by(
        CollectorWalletTransaction.created_at.desc(), CollectorWalletTransaction.id.desc()
    ).limit(limit).offset(offset)
    result = await db.execute(stmt)
    return [transaction_to_dict(t) for t in result.scalars().all()]


async def recalculate_collector_transaction_balances(db: AsyncSession) -> int:
    """Replay every collector wallet's log and rewrite drifted stamps."""
    wallets = (
        await db.execute(select(CollectorWallet).order_by(CollectorWallet.id))
    ).scalars().all()
    updated = 0

    for wallet in wallets:
        txns = await _transactions(db, [wallet.id])
        if not txns:
            continue
        running = to_money(wallet.balance) - _net(txns)
        for txn in txns:
            before = running
            running = before + balance_effect(txn.type, txn.amount)
            if to_money(txn.balance_before) != before or to_money(txn.balance_after) != running:
                txn.balance_before = before
                txn.balance_after = running
                updated += 1

    await db.flush()
    if updated:
        logger.warning("Repaired balance stamps on %d collector transactions", updated)
    return updated
