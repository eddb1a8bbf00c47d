"""Installment (SubLoan) state machine and payment-history log.

These helpers mutate in-memory ``SubLoan`` rows only; flushing and locking
are the caller's job.  ``payment_history`` is a JSON list holding two kinds
of entries:

* allocation ``{"date": ISO-8601, "amount": n, "balance": n}``, plus
  ``"source_sub_loan_id"`` when the money cascaded from a later installment
* reset marker ``{"type": "RESET", "amount": -n, "balance": 0, "description": s, "date": ISO-8601}``

The list is always replaced, never mutated in place, so the ORM sees the
change.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any

from microledger.models.loan import SubLoan, SubLoanStatus
from microledger.services.ledger.clock import as_utc
from microledger.services.ledger.money import ZERO, to_money

RESET_TYPE = "RESET"


def derive_status(paid: Decimal, total: Decimal) -> SubLoanStatus:
    """Status implied by the paid amount alone (OVERDUE is set by maintenance)."""
    paid = to_money(paid)
    if paid <= 0:
        return SubLoanStatus.PENDING
    if paid >= to_money(total):
        return SubLoanStatus.PAID
    return SubLoanStatus.PARTIAL


# ---------------------------------------------------------------------------
# History entries
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AllocationEntry:
    date: str
    amount: Decimal
    balance: Decimal
    source: int | None = None

    def to_dict(self) -> dict[str, Any]:
        raw = {"date": self.date, "amount": float(self.amount), "balance": float(self.balance)}
        if self.source is not None:
            raw["source_sub_loan_id"] = self.source
        return raw


@dataclass(frozen=True)
class ResetEntry:
    date: str
    amount: Decimal
    description: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": RESET_TYPE,
            "amount": float(self.amount),
            "balance": 0,
            "description": self.description,
            "date": self.date,
        }


def parse_entry(raw: dict[str, Any]) -> AllocationEntry | ResetEntry:
    if raw.get("type") == RESET_TYPE:
        return ResetEntry(
            date=raw.get("date", ""),
            amount=to_money(raw.get("amount")),
            description=raw.get("description", ""),
        )
    return AllocationEntry(
        date=raw.get("date", ""),
        amount=to_money(raw.get("amount")),
        balance=to_money(raw.get("balance")),
        source=raw.get("source_sub_loan_id"),
    )


def history_entries(sub_loan: SubLoan) -> list[AllocationEntry | ResetEntry]:
    return [parse_entry(raw) for raw in (sub_loan.payment_history or [])]


def history_date(when: datetime) -> str:
    """The ``date`` stamp an allocation made at *when* carries."""
    return as_utc(when).isoformat()


def append_entry(sub_loan: SubLoan, entry: AllocationEntry | ResetEntry) -> None:
    sub_loan.payment_history = [*(sub_loan.payment_history or []), entry.to_dict()]


def last_allocation(sub_loan: SubLoan) -> AllocationEntry | None:
    for entry in reversed(history_entries(sub_loan)):
        if isinstance(entry, ResetEntry):
            return None
        return entry
    return None


def find_allocations(
    sub_loan: SubLoan, *, source: int | None = None, date: str | None = None
) -> list[tuple[int, AllocationEntry]]:
    """Allocation entries since the last RESET marker, newest first, with their index.

    Only entries cascaded from *source* are returned (``None`` means the
    installment's own payments); *date* further narrows to one payment.
    """
    found = []
    for index, entry in enumerate(history_entries(sub_loan)):
        if isinstance(entry, ResetEntry):
            found = []
        elif entry.source == source and (date is None or entry.date == date):
            found.append((index, entry))
    return found[::-1]


# ---------------------------------------------------------------------------
# Allocation
# ---------------------------------------------------------------------------

@dataclass
class Distribution:
    """What one allocation did to one installment."""

    sub_loan_id: int
    payment_number: int
    distributed_amount: Decimal
    new_status: SubLoanStatus
    new_paid_amount: Decimal

    def to_dict(self) -> dict[str, Any]:
        return {
            "sub_loan_id": self.sub_loan_id,
            "payment_number": self.payment_number,
            "distributed_amount": self.distributed_amount,
            "new_status": self.new_status.value,
            "new_paid_amount": self.new_paid_amount,
        }


def apply_allocation(
    sub_loan: SubLoan,
    amount: Decimal,
    when: datetime,
    *,
    force_partial: bool = False,
    source: int | None = None,
) -> tuple[Distribution, Decimal]:
    """Apply up to *amount* to *sub_loan*; return the distribution and the excess.

    Covering the remainder marks the installment PAID and stamps
    ``paid_date``.  With ``force_partial`` the installment stays PARTIAL
    even when fully covered (payment edits).  *source* is the installment
    the money was paid on when it arrives as cascaded excess.
    """
    amount = to_money(amount)
    total = to_money(sub_loan.total_amount)
    paid = to_money(sub_loan.paid_amount)
    remaining = total - paid

    if amount >= remaining:
        applied = remaining
        excess = amount - remaining
        sub_loan.paid_amount = total
        if force_partial:
            sub_loan.status = SubLoanStatus.PARTIAL
        else:
            sub_loan.status = SubLoanStatus.PAID
            sub_loan.paid_date = when
        append_entry(
            sub_loan,
            AllocationEntry(date=history_date(when), amount=applied, balance=ZERO, source=source),
        )
    else:
        applied = amount
        excess = ZERO
        sub_loan.paid_amount = paid + amount
        sub_loan.status = SubLoanStatus.PARTIAL
        append_entry(
            sub_loan,
            AllocationEntry(
                date=history_date(when),
                amount=applied,
                balance=total - sub_loan.paid_amount,
                source=source,
            ),
        )

    distribution = Distribution(
        sub_loan_id=sub_loan.id,
        payment_number=sub_loan.payment_number,
        distributed_amount=applied,
        new_status=sub_loan.status,
        new_paid_amount=to_money(sub_loan.paid_amount),
    )
    return distribution, excess


def undo_allocation(sub_loan: SubLoan, amount: Decimal, index: int | None = None) -> Decimal:
    """Take back up to *amount* from *sub_loan* and drop the history entry at *index*.

    *index* defaults to the trailing allocation entry.  Returns the amount
    actually removed (never more than was paid).
    """
    if index is None and last_allocation(sub_loan) is not None:
        index = len(sub_loan.payment_history) - 1

    removed = min(to_money(amount), to_money(sub_loan.paid_amount))
    sub_loan.paid_amount = to_money(sub_loan.paid_amount) - removed
    sub_loan.status = derive_status(sub_loan.paid_amount, sub_loan.total_amount)
    if sub_loan.status != SubLoanStatus.PAID:
        sub_loan.paid_date = None

    if index is None:
        return removed
    history = list(sub_loan.payment_history)
    entry = parse_entry(history[index])
    if entry.amount > removed:
        # Only part of that allocation was taken back; keep the rest logged
        history[index] = AllocationEntry(
            date=entry.date,
            amount=entry.amount - removed,
            balance=to_money(sub_loan.total_amount) - sub_loan.paid_amount,
            source=entry.source,
        ).to_dict()
    else:
        del history[index]
    sub_loan.payment_history = history
    return removed


def attributed_since_reset(sub_loan: SubLoan, source: int | None = None) -> Decimal:
    """Sum of the entries :func:`find_allocations` returns for *source*."""
    return sum((entry.amount for _, entry in find_allocations(sub_loan, source=source)), ZERO)


def reset_installment(sub_loan: SubLoan, total: Decimal, description: str, when: datetime) -> None:
    """Zero the installment and append a signed RESET marker."""
    sub_loan.paid_amount = ZERO
    sub_loan.status = SubLoanStatus.PENDING
    sub_loan.paid_date = None
    append_entry(
        sub_loan, ResetEntry(date=history_date(when), amount=-to_money(total), description=description)
    )


def summarize(sub_loan: SubLoan) -> dict[str, Any]:
    return {
        "id": sub_loan.id,
        "payment_number": sub_loan.payment_number,
        "status": sub_loan.status.value,
        "paid_amount": to_money(sub_loan.paid_amount),
        "total_amount": to_money(sub_loan.total_amount),
        "remaining_amount": to_money(sub_loan.total_amount) - to_money(sub_loan.paid_amount),
    }
