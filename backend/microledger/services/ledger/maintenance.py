"""Scheduled maintenance: overdue marking and wallet balance repair."""

import logging
from datetime import date, timedelta
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from microledger.models.loan import Loan, SubLoan, SubLoanStatus
from microledger.services.ledger.clock import business_date, start_of_business_day
from microledger.services.ledger.collector_wallet import recalculate_collector_transaction_balances
from microledger.services.ledger.wallet import recalculate_wallet_transaction_balances

logger = logging.getLogger(__name__)


async def mark_overdue_sub_loans(db: AsyncSession, today: date | None = None) -> dict[str, Any]:
    """PENDING installments due on or before *today* become OVERDUE.

    ``days_overdue`` is refreshed for every OVERDUE installment, including
    ones marked on earlier runs.
    """
    today = today or business_date()
    cutoff = start_of_business_day(today + timedelta(days=1))

    result = await db.execute(
        select(SubLoan)
        .join(Loan, Loan.id == SubLoan.loan_id)
        .where(
            SubLoan.status.in_([SubLoanStatus.PENDING, SubLoanStatus.OVERDUE]),
            SubLoan.due_date < cutoff,
            SubLoan.deleted_at.is_(None),
            Loan.deleted_at.is_(None),
        )
        .with_for_update(of=SubLoan)
    )
    marked = []
    for sub_loan in result.scalars().all():
        if sub_loan.status == SubLoanStatus.PENDING:
            sub_loan.status = SubLoanStatus.OVERDUE
            marked.append(sub_loan.id)
        sub_loan.days_overdue = max((today - business_date(sub_loan.due_date)).days, 0)

    await db.flush()
    logger.info("Marked %d sub-loan(s) overdue for %s", len(marked), today.isoformat())
    return {"date": today.isoformat(), "count": len(marked), "sub_loan_ids": marked}


async def repair_wallet_balances(db: AsyncSession) -> dict[str, int]:
    """Replay both wallet ledgers and rewrite drifted balance stamps."""
    wallet_rows = await recalculate_wallet_transaction_balances(db)
    collector_rows = await recalculate_collector_transaction_balances(db)
    return {
        "wallet_transactions_updated": wallet_rows,
        "collector_transactions_updated": collector_rows,
    }
