"""Reversal engine: single-payment revert, reset and edit.

Reversals never delete ledger history.  The manager wallet gets a
compensating LOAN_PAYMENT debit; the collector wallet gets a negative
COLLECTION (single revert) or a negative PAYMENT_RESET (reset and edit).

Cascaded excess is undone on the earlier installments that received it,
highest ``payment_number`` first.  Only history entries tagged with the
reverted installment as their source are removed; money those installments
got from their own payments is left alone.
"""

import logging
from datetime import timedelta
from decimal import Decimal
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from microledger.config import settings
from microledger.database import atomic
from microledger.models.loan import Loan, SubLoan, SubLoanStatus
from microledger.models.payment import Payment
from microledger.models.wallet import WalletTransactionType
from microledger.services.ledger import collector_wallet, wallet
from microledger.services.ledger.access import Actor, ensure_client_access
from microledger.services.ledger.clock import as_utc, business_date, now_utc, parse_payment_date
from microledger.services.ledger.exceptions import (
    EditNotAllowedError,
    EditWindowExpiredError,
    NoPaymentsToEditError,
    NoPaymentsToResetError,
    ResetWindowExpiredError,
)
from microledger.services.ledger.installments import (
    attributed_since_reset,
    find_allocations,
    history_date,
    reset_installment,
    summarize,
    undo_allocation,
)
from microledger.services.ledger.money import ZERO, positive_money, to_money
from microledger.services.ledger.payments import (
    allocate_payment,
    ensure_not_deleted,
    list_payments,
    load_sub_loan,
    validate_payable,
)
from microledger.services.ledger.route_reconciliation import reconcile_routes_for_sub_loan

logger = logging.getLogger(__name__)


async def _paid_predecessors(db: AsyncSession, sub_loan: SubLoan) -> list[SubLoan]:
    """Earlier installments that may hold cascaded excess, highest number first."""
    result = await db.execute(
        select(SubLoan)
        .where(
            SubLoan.loan_id == sub_loan.loan_id,
            SubLoan.payment_number < sub_loan.payment_number,
            SubLoan.status.in_([SubLoanStatus.PARTIAL, SubLoanStatus.PAID]),
            SubLoan.deleted_at.is_(None),
        )
        .order_by(SubLoan.payment_number.desc())
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def _undo_excess(
    db: AsyncSession, sub_loan: SubLoan, excess: Decimal, date: str | None = None
) -> Decimal:
    """Take *excess* back from the entries *sub_loan* cascaded onto predecessors.

    *date* limits the search to the cascade of one payment.  Returns what
    could not be found.
    """
    if excess <= 0:
        return ZERO
    for predecessor in await _paid_predecessors(db, sub_loan):
        for index, entry in find_allocations(predecessor, source=sub_loan.id, date=date):
            if excess <= 0:
                break
            excess -= undo_allocation(predecessor, min(entry.amount, excess), index=index)
    if excess > 0:
        logger.warning(
            "Could not locate %s of cascaded excess behind sub-loan %s", excess, sub_loan.id
        )
    return excess


def _reversal_label(loan: Loan, sub_loan: SubLoan) -> str:
    return f"préstamo {loan.loan_track} - Cuota #{sub_loan.payment_number}"


async def revert_last_payment(
    db: AsyncSession, sub_loan: SubLoan, loan: Loan, payment: Payment
) -> Decimal:
    """Undo one payment completely; returns the reverted amount.

    Runs inside the caller's unit of work with *sub_loan* already locked.
    The target's own history entry for the payment tells how much of it
    stayed there; the rest was cascaded to predecessors.
    """
    amount = to_money(payment.amount)
    label = _reversal_label(loan, sub_loan)

    await wallet.debit(
        db, loan.manager_id, amount, WalletTransactionType.LOAN_PAYMENT, f"Reversión pago {label}"
    )
    await collector_wallet.revert_collection(
        db, loan.manager_id, amount, f"Reversión cobro {label}", sub_loan_id=sub_loan.id
    )

    stamp = history_date(payment.payment_date)
    own = find_allocations(sub_loan, date=stamp) or find_allocations(sub_loan)
    index, entry = own[0] if own else (None, None)
    on_target = entry.amount if entry is not None else amount
    on_target = min(on_target, amount, to_money(sub_loan.paid_amount))
    await _undo_excess(db, sub_loan, amount - on_target, date=stamp)

    undo_allocation(sub_loan, on_target, index=index)
    await db.delete(payment)
    await db.flush()

    logger.info("Reverted payment %s (%s) on sub-loan %s", payment.id, amount, sub_loan.id)
    return amount


async def _reverse_all_payments(
    db: AsyncSession, sub_loan: SubLoan, loan: Loan, payments: list[Payment], action: str
) -> Decimal:
    """Reverse every payment on *sub_loan* in one shot; returns the total."""
    total = sum((to_money(p.amount) for p in payments), ZERO)
    label = _reversal_label(loan, sub_loan)

    await wallet.debit(
        db, loan.manager_id, total, WalletTransactionType.LOAN_PAYMENT, f"{action} pagos {label}"
    )
    await collector_wallet.record_payment_reset(
        db, loan.manager_id, total, f"{action} cobros {label}", sub_loan_id=sub_loan.id
    )

    on_target = min(attributed_since_reset(sub_loan), total)
    await _undo_excess(db, sub_loan, total - on_target)

    for payment in payments:
        await db.delete(payment)
    await db.flush()
    return total


async def reset_sub_loan_payments(
    db: AsyncSession, actor: Actor, sub_loan_id: int, description: str | None = None
) -> dict[str, Any]:
    """Fully reverse an installment's payments within the reset window."""
    async with atomic(db, timeout_seconds=settings.payment_transaction_timeout_seconds):
        sub_loan, loan = await load_sub_loan(db, sub_loan_id, lock=True)
        ensure_not_deleted(sub_loan)
        await ensure_client_access(db, actor, loan.client_id)

        payments = await list_payments(db, sub_loan.id)
        if not payments:
            raise NoPaymentsToResetError(f"SubLoan {sub_loan.id} has no payments to reset")

        now = now_utc()
        last_date = as_utc(payments[-1].payment_date)
        if now - last_date > timedelta(hours=settings.reset_window_hours):
            raise ResetWindowExpiredError(
                f"Last payment on SubLoan {sub_loan.id} is older than "
                f"{settings.reset_window_hours} hours"
            )

        total = await _reverse_all_payments(db, sub_loan, loan, payments, "Reseteo")
        reset_installment(
            sub_loan,
            total,
            description or f"Reseteo de pagos SubLoan #{sub_loan.payment_number}",
            now,
        )
        await db.flush()
        await reconcile_routes_for_sub_loan(db, sub_loan.id)

        logger.info(
            "Reset sub-loan %s: %d payment(s) totalling %s reversed",
            sub_loan.id, len(payments), total,
        )
        return {
            "sub_loan": summarize(sub_loan),
            "reset_amount": total,
            "deleted_payments": len(payments),
        }


async def edit_payment(
    db: AsyncSession,
    actor: Actor,
    sub_loan_id: int,
    new_amount,
    payment_date=None,
    description: str | None = None,
) -> dict[str, Any]:
    """Replace a PAID installment's payments with a single new amount.

    Allowed while the last payment is dated today or within
    ``settings.edit_window_days`` before it (business calendar).  The target
    is always left PARTIAL afterwards, even when the new amount covers it.
    """
    new_amount = positive_money(new_amount)
    when = parse_payment_date(payment_date)

    async with atomic(db, timeout_seconds=settings.payment_transaction_timeout_seconds):
        sub_loan, loan = await load_sub_loan(db, sub_loan_id, lock=True)
        ensure_not_deleted(sub_loan)
        await ensure_client_access(db, actor, loan.client_id)

        if sub_loan.status != SubLoanStatus.PAID:
            raise EditNotAllowedError(f"SubLoan {sub_loan.id} is not fully paid")

        payments = await list_payments(db, sub_loan.id)
        if not payments:
            raise NoPaymentsToEditError(f"SubLoan {sub_loan.id} has no payments to edit")

        age_days = (business_date() - business_date(payments[-1].payment_date)).days
        if age_days < 0 or age_days > settings.edit_window_days:
            raise EditWindowExpiredError(
                f"Last payment on SubLoan {sub_loan.id} can no longer be edited"
            )

        currency = payments[-1].currency
        validate_payable(loan, currency)

        reverted = await _reverse_all_payments(db, sub_loan, loan, payments, "Edición")
        sub_loan.paid_amount = ZERO
        sub_loan.status = SubLoanStatus.PENDING
        sub_loan.paid_date = None
        sub_loan.payment_history = []
        await db.flush()

        result = await allocate_payment(
            db,
            sub_loan,
            loan,
            new_amount,
            when,
            currency=currency,
            description=description,
            recorded_by=actor.user_id,
            force_partial=True,
        )

        logger.info(
            "Edited sub-loan %s: %s reverted, %s reapplied", sub_loan.id, reverted, new_amount
        )
        return {"reverted_amount": reverted, **result}
