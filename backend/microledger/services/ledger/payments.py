"""Payment waterfall engine.

A registered payment is applied to its target installment first.  Whatever
exceeds the target's remainder cascades to earlier PARTIAL installments of
the same loan, lowest ``payment_number`` first.  One ``Payment`` row records
the full amount, and the same amount is credited to the loan manager's
wallet and collector wallet.  All of it happens in one unit of work.

A PAID installment accepts a new payment only on the same business day as
its last payment: that payment is reverted first and the new amount is
applied in its place (same-day correction).
"""

import logging
from datetime import datetime
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
from microledger.services.ledger.clock import business_date, now_utc, parse_payment_date
from microledger.services.ledger.exceptions import (
    AlreadyPaidError,
    CurrencyMismatchError,
    LedgerError,
    LoanNotFoundError,
    MissingManagerError,
    SubLoanDeletedError,
    SubLoanNotFoundError,
)
from microledger.services.ledger.installments import apply_allocation, summarize
from microledger.services.ledger.money import positive_money, to_money

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

async def load_sub_loan(
    db: AsyncSession, sub_loan_id: int, *, lock: bool = False
) -> tuple[SubLoan, Loan]:
    stmt = select(SubLoan).where(SubLoan.id == sub_loan_id)
    if lock:
        stmt = stmt.with_for_update()
    result = await db.execute(stmt.execution_options(populate_existing=True))
    sub_loan = result.scalar_one_or_none()
    if sub_loan is None:
        raise SubLoanNotFoundError(f"SubLoan {sub_loan_id} not found")

    loan = await db.get(Loan, sub_loan.loan_id)
    if loan is None:
        raise LoanNotFoundError(f"Loan {sub_loan.loan_id} not found")
    return sub_loan, loan


async def list_payments(db: AsyncSession, sub_loan_id: int) -> list[Payment]:
    """Payments on one installment, oldest first."""
    result = await db.execute(
        select(Payment)
        .where(Payment.sub_loan_id == sub_loan_id)
        .order_by(Payment.payment_date, Payment.id)
    )
    return list(result.scalars().all())


async def latest_payment(db: AsyncSession, sub_loan_id: int) -> Payment | None:
    result = await db.execute(
        select(Payment)
        .where(Payment.sub_loan_id == sub_loan_id)
        .order_by(Payment.payment_date.desc(), Payment.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def _partial_predecessors(db: AsyncSession, sub_loan: SubLoan) -> list[SubLoan]:
    """Earlier PARTIAL installments of the same loan, in waterfall order, locked."""
    result = await db.execute(
        select(SubLoan)
        .where(
            SubLoan.loan_id == sub_loan.loan_id,
            SubLoan.payment_number < sub_loan.payment_number,
            SubLoan.status == SubLoanStatus.PARTIAL,
            SubLoan.deleted_at.is_(None),
        )
        .order_by(SubLoan.payment_number)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


def payment_to_dict(payment: Payment) -> dict[str, Any]:
    return {
        "id": payment.id,
        "sub_loan_id": payment.sub_loan_id,
        "amount": to_money(payment.amount),
        "currency": payment.currency,
        "payment_date": payment.payment_date,
        "description": payment.description,
        "created_at": payment.created_at,
    }


# ---------------------------------------------------------------------------
# Waterfall
# ---------------------------------------------------------------------------

async def allocate_payment(
    db: AsyncSession,
    sub_loan: SubLoan,
    loan: Loan,
    amount: Decimal,
    when: datetime,
    *,
    currency: str,
    description: str | None = None,
    recorded_by: int | None = None,
    force_partial: bool = False,
) -> dict[str, Any]:
    """Apply *amount* to *sub_loan* and cascade the excess (steps 1-7).

    Expects *sub_loan* locked and validated.  ``force_partial`` leaves the
    target PARTIAL even when fully covered; cascaded installments follow the
    normal rule.
    """
    distributions = []
    distribution, excess = apply_allocation(sub_loan, amount, when, force_partial=force_partial)
    distributions.append(distribution)

    if excess > 0:
        for predecessor in await _partial_predecessors(db, sub_loan):
            if excess <= 0:
                break
            distribution, excess = apply_allocation(predecessor, excess, when, source=sub_loan.id)
            distributions.append(distribution)

    if excess > 0:
        logger.warning(
            "Unallocated excess %s on sub-loan %s (loan %s) absorbed",
            excess, sub_loan.id, loan.loan_track,
        )

    payment = Payment(
        sub_loan_id=sub_loan.id,
        amount=amount,
        currency=currency,
        payment_date=when,
        description=description or f"Pago SubLoan #{sub_loan.payment_number}",
        recorded_by=recorded_by,
        created_at=now_utc(),
    )
    db.add(payment)
    await db.flush()

    await wallet.credit(
        db,
        loan.manager_id,
        amount,
        WalletTransactionType.LOAN_PAYMENT,
        f"Pago préstamo {loan.loan_track} - Cuota #{sub_loan.payment_number}",
    )
    # Always the loan's manager, whoever registered the payment
    await collector_wallet.record_collection(
        db,
        loan.manager_id,
        amount,
        f"Cobro préstamo {loan.loan_track} - Cuota #{sub_loan.payment_number}",
        sub_loan_id=sub_loan.id,
    )

    logger.info(
        "Payment %s of %s registered on sub-loan %s (%d installments touched)",
        payment.id, amount, sub_loan.id, len(distributions),
    )
    return {
        "payment": payment_to_dict(payment),
        "sub_loan": summarize(sub_loan),
        "distributed_payments": [d.to_dict() for d in distributions],
    }


def ensure_not_deleted(sub_loan: SubLoan) -> None:
    if sub_loan.deleted_at is not None:
        raise SubLoanDeletedError(f"SubLoan {sub_loan.id} has been deleted")


def validate_payable(loan: Loan, currency: str) -> None:
    if loan.currency != currency:
        raise CurrencyMismatchError(
            f"Loan uses {loan.currency}, cannot be paid in {currency}"
        )
    if loan.manager_id is None:
        raise MissingManagerError(f"Loan {loan.loan_track} has no assigned manager")


async def register_payment(
    db: AsyncSession,
    actor: Actor,
    sub_loan_id: int,
    amount,
    currency: str,
    payment_date=None,
    description: str | None = None,
) -> dict[str, Any]:
    """Register one payment against an installment.

    Returns ``{"payment", "sub_loan", "distributed_payments"}``.
    """
    from microledger.services.ledger.reversal import revert_last_payment

    amount = positive_money(amount)
    when = parse_payment_date(payment_date)

    async with atomic(db, timeout_seconds=settings.payment_transaction_timeout_seconds):
        sub_loan, loan = await load_sub_loan(db, sub_loan_id, lock=True)
        ensure_not_deleted(sub_loan)
        await ensure_client_access(db, actor, loan.client_id)
        validate_payable(loan, currency)

        if sub_loan.status == SubLoanStatus.PAID:
            last = await latest_payment(db, sub_loan.id)
            if last is None or business_date(last.payment_date) != business_date(when):
                raise AlreadyPaidError(f"SubLoan {sub_loan.id} is already fully paid")
            logger.info(
                "Same-day correction on sub-loan %s: replacing payment %s (%s) with %s",
                sub_loan.id, last.id, last.amount, amount,
            )
            await revert_last_payment(db, sub_loan, loan, last)

        return await allocate_payment(
            db,
            sub_loan,
            loan,
            amount,
            when,
            currency=currency,
            description=description,
            recorded_by=actor.user_id,
        )


async def register_bulk_payments(
    db: AsyncSession, actor: Actor, items: list[dict[str, Any]]
) -> dict[str, Any]:
    """Register several payments one by one; a failure only skips its own item.

    Each item holds ``sub_loan_id``, ``amount``, ``currency`` and optionally
    ``payment_date`` and ``description``.
    """
    results = []
    for item in items:
        sub_loan_id = item.get("sub_loan_id")
        try:
            result = await register_payment(
                db,
                actor,
                sub_loan_id,
                item.get("amount"),
                item.get("currency", settings.default_currency),
                payment_date=item.get("payment_date"),
                description=item.get("description"),
            )
        except LedgerError as exc:
            logger.info("Bulk item for sub-loan %s failed: %s", sub_loan_id, exc.message)
            results.append({
                "success": False,
                "sub_loan_id": sub_loan_id,
                "error": exc.message,
                "reason": exc.reason,
            })
            continue
        results.append({"success": True, "sub_loan_id": sub_loan_id, "result": result})

    successful = sum(1 for r in results if r["success"])
    return {
        "total": len(items),
        "successful": successful,
        "failed": len(results) - successful,
        "results": results,
    }


async def get_sub_loan_payments(
    db: AsyncSession, actor: Actor, sub_loan_id: int
) -> dict[str, Any]:
    """Installment summary, its payments (oldest first) and the raw history."""
    sub_loan, loan = await load_sub_loan(db, sub_loan_id)
    await ensure_client_access(db, actor, loan.client_id)
    payments = await list_payments(db, sub_loan.id)

    return {
        "sub_loan": {
            "id": sub_loan.id,
            "payment_number": sub_loan.payment_number,
            "amount": to_money(sub_loan.amount),
            "total_amount": to_money(sub_loan.total_amount),
            "paid_amount": to_money(sub_loan.paid_amount),
            "status": sub_loan.status.value,
            "due_date": sub_loan.due_date,
            "paid_date": sub_loan.paid_date,
        },
        "payments": [payment_to_dict(p) for p in payments],
        "payment_history": list(sub_loan.payment_history or []),
    }
