"""Loan issuance: tracking code, installment schedule and disbursement."""

import calendar
import logging
from datetime import date, timedelta
from decimal import Decimal, ROUND_DOWN
from typing import Any

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from microledger.config import settings
from microledger.database import atomic
from microledger.models.loan import Loan, PaymentFrequency, SubLoan, SubLoanStatus
from microledger.models.user import Client
from microledger.models.wallet import WalletTransactionType
from microledger.services.ledger import collector_wallet, wallet
from microledger.services.ledger.access import Actor, manages_client
from microledger.services.ledger.clock import business_date, start_of_business_day
from microledger.services.ledger.exceptions import (
    CurrencyMismatchError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from microledger.services.ledger.money import CENT, ZERO, to_money
from microledger.services.ledger.sequence import (
    ensure_tracking_code_available,
    next_tracking_code,
)

logger = logging.getLogger(__name__)


class LoanRequest(BaseModel):
    client_id: int
    amount: Decimal = Field(gt=0, decimal_places=2, description="Principal handed to the client")
    total_payments: int = Field(gt=0, le=1000)
    payment_frequency: PaymentFrequency
    currency: str | None = None
    base_interest_rate: Decimal = Field(default=Decimal("0"), ge=0, description="Fraction, 0.2 = 20%")
    penalty_interest_rate: Decimal | None = Field(default=None, ge=0)
    first_due_date: date | None = None
    loan_track: str | None = None
    description: str | None = None
    notes: str | None = None


# ---------------------------------------------------------------------------
# Schedule
# ---------------------------------------------------------------------------

def _add_months(day: date, months: int) -> date:
    month_index = day.month - 1 + months
    year = day.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return day.replace(year=year, month=month, day=min(day.day, last_day))


def _skip_sunday(day: date) -> date:
    return day + timedelta(days=1) if day.weekday() == 6 else day


def calculate_due_dates(
    total_payments: int, frequency: PaymentFrequency, first_due_date: date | None = None
) -> list[date]:
    """Due dates for each installment, starting at *first_due_date* (default today).

    Sundays move to Monday, and a date already taken moves forward to the
    next free non-Sunday.
    """
    start = first_due_date or business_date()
    dates: list[date] = []

    for i in range(total_payments):
        if frequency == PaymentFrequency.DAILY:
            due = start + timedelta(days=i)
        elif frequency == PaymentFrequency.WEEKLY:
            due = start + timedelta(weeks=i)
        elif frequency == PaymentFrequency.BIWEEKLY:
            due = start + timedelta(weeks=2 * i)
        else:
            due = _add_months(start, i)

        due = _skip_sunday(due)
        while due in dates:
            due = _skip_sunday(due + timedelta(days=1))
        dates.append(due)

    return dates


def split_amount(total: Decimal, parts: int) -> list[Decimal]:
    """Equal installments in cents; the rounding remainder goes on the last one."""
    total = to_money(total)
    share = (total / parts).quantize(CENT, rounding=ROUND_DOWN)
    amounts = [share] * parts
    amounts[-1] = total - share * (parts - 1)
    return amounts


# ---------------------------------------------------------------------------
# Issuance
# ---------------------------------------------------------------------------

def loan_to_dict(loan: Loan, sub_loans: list[SubLoan]) -> dict[str, Any]:
    return {
        "id": loan.id,
        "loan_track": loan.loan_track,
        "client_id": loan.client_id,
        "manager_id": loan.manager_id,
        "original_amount": to_money(loan.original_amount),
        "amount": to_money(loan.amount),
        "currency": loan.currency,
        "payment_frequency": loan.payment_frequency.value,
        "total_payments": loan.total_payments,
        "sub_loans": [
            {
                "id": s.id,
                "payment_number": s.payment_number,
                "total_amount": to_money(s.total_amount),
                "status": s.status.value,
                "due_date": s.due_date,
            }
            for s in sub_loans
        ],
    }


async def create_loan(db: AsyncSession, actor: Actor, data: LoanRequest | dict) -> dict[str, Any]:
    """Issue a loan to a client the actor manages.

    The actor becomes the loan's manager.  The principal is debited from the
    actor's wallet (which must cover it) and from their collector wallet
    (which may go negative).
    """
    try:
        request = data if isinstance(data, LoanRequest) else LoanRequest.model_validate(data)
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid loan request: {exc}") from exc

    currency = request.currency or settings.default_currency
    principal = to_money(request.amount)
    total = to_money(principal * (1 + request.base_interest_rate))

    async with atomic(db, timeout_seconds=settings.payment_transaction_timeout_seconds):
        client = await db.get(Client, request.client_id)
        if client is None:
            raise NotFoundError(f"Client {request.client_id} not found")
        if not await manages_client(db, actor.user_id, request.client_id):
            raise ForbiddenError(f"Client {request.client_id} is not managed by user {actor.user_id}")

        funding = await wallet.get_wallet(db, actor.user_id, lock=True)
        if funding.currency != currency:
            raise CurrencyMismatchError(
                f"Wallet uses {funding.currency}, cannot disburse in {currency}"
            )

        if request.loan_track:
            code = await ensure_tracking_code_available(db, request.loan_track)
        else:
            code = await next_tracking_code(db)

        loan = Loan(
            client_id=client.id,
            manager_id=actor.user_id,
            original_amount=principal,
            amount=total,
            currency=currency,
            base_interest_rate=request.base_interest_rate,
            penalty_interest_rate=request.penalty_interest_rate,
            payment_frequency=request.payment_frequency,
            total_payments=request.total_payments,
            first_due_date=(
                start_of_business_day(request.first_due_date) if request.first_due_date else None
            ),
            loan_track=code.code,
            prefix=code.prefix,
            year=code.year,
            sequence=code.sequence,
            description=request.description,
            notes=request.notes,
        )
        db.add(loan)
        await db.flush()

        due_dates = calculate_due_dates(
            request.total_payments, request.payment_frequency, request.first_due_date
        )
        sub_loans = [
            SubLoan(
                loan_id=loan.id,
                payment_number=number,
                amount=share,
                total_amount=share,
                paid_amount=ZERO,
                status=SubLoanStatus.PENDING,
                due_date=start_of_business_day(due),
                days_overdue=0,
                payment_history=[],
            )
            for number, (due, share) in enumerate(
                zip(due_dates, split_amount(total, request.total_payments)), start=1
            )
        ]
        db.add_all(sub_loans)
        await db.flush()

        label = f"Desembolso préstamo {loan.loan_track}"
        await wallet.debit(
            db, actor.user_id, principal, WalletTransactionType.LOAN_DISBURSEMENT, label
        )
        await collector_wallet.record_loan_disbursement(
            db, actor.user_id, principal, label, loan_id=loan.id
        )

        logger.info(
            "Issued loan %s: %s %s in %d %s installments",
            loan.loan_track, total, currency, request.total_payments,
            request.payment_frequency.value,
        )
        return loan_to_dict(loan, sub_loans)
