"""Tests for loan issuance and installment schedule generation.

Tests cover:
- Due-date calculation per frequency (Sunday skip, month-end clamp)
- Splitting the total into cent-exact installments
- create_loan: tracking code, installments, wallet and collector debits
- Rejections: funds, access, unknown client, invalid request
"""

import pytest
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import func, select

from microledger.models import Loan, PaymentFrequency, SubLoan, User, UserRole
from microledger.services.ledger import collector_wallet, wallet
from microledger.services.ledger.access import Actor
from microledger.services.ledger.clock import business_date
from microledger.services.ledger.exceptions import (
    ForbiddenError,
    InsufficientFundsError,
    NotFoundError,
    TrackingCodeConflictError,
    ValidationError,
    WalletNotFoundError,
)
from microledger.services.ledger.loans import calculate_due_dates, create_loan, split_amount


async def _loan_count(db):
    return (await db.execute(select(func.count(Loan.id)))).scalar_one()


# ===================================================================
# Schedule
# ===================================================================


class TestDueDates:
    def test_daily_skips_sunday_and_shifts_forward(self):
        # 2024-01-06 is a Saturday
        dates = calculate_due_dates(3, PaymentFrequency.DAILY, date(2024, 1, 6))
        assert dates == [date(2024, 1, 6), date(2024, 1, 8), date(2024, 1, 9)]

    def test_weekly(self):
        dates = calculate_due_dates(3, PaymentFrequency.WEEKLY, date(2024, 1, 1))
        assert dates == [date(2024, 1, 1), date(2024, 1, 8), date(2024, 1, 15)]

    def test_biweekly(self):
        dates = calculate_due_dates(3, PaymentFrequency.BIWEEKLY, date(2024, 1, 1))
        assert dates == [date(2024, 1, 1), date(2024, 1, 15), date(2024, 1, 29)]

    def test_monthly_clamps_to_month_end(self):
        # 2024-03-31 is a Sunday
        dates = calculate_due_dates(3, PaymentFrequency.MONTHLY, date(2024, 1, 31))
        assert dates == [date(2024, 1, 31), date(2024, 2, 29), date(2024, 4, 1)]

    def test_sunday_start_moves_to_monday(self):
        dates = calculate_due_dates(1, PaymentFrequency.WEEKLY, date(2024, 1, 7))
        assert dates == [date(2024, 1, 8)]

    def test_dates_unique(self):
        dates = calculate_due_dates(30, PaymentFrequency.DAILY, date(2024, 1, 1))
        assert len(set(dates)) == 30
        assert all(d.weekday() != 6 for d in dates)


class TestSplitAmount:
    def test_remainder_on_last_installment(self):
        assert split_amount(Decimal("1000"), 3) == [
            Decimal("333.33"), Decimal("333.33"), Decimal("333.34"),
        ]

    def test_even_split(self):
        assert split_amount(Decimal("1200"), 4) == [Decimal("300.00")] * 4

    def test_sum_preserved(self):
        parts = split_amount(Decimal("99.99"), 7)
        assert sum(parts) == Decimal("99.99")


# ===================================================================
# Issuance
# ===================================================================


def _request(client_id, **overrides):
    data = {
        "client_id": client_id,
        "amount": "1000",
        "total_payments": 4,
        "payment_frequency": "WEEKLY",
        "base_interest_rate": "0.2",
        "first_due_date": "2030-01-07",
    }
    data.update(overrides)
    return data


class TestCreateLoan:
    @pytest.mark.asyncio
    async def test_issues_loan_and_disburses(
        self, db, manager, manager_actor, client, manager_wallets
    ):
        await wallet.deposit(db, manager.id, "5000", "ARS")
        await db.commit()

        result = await create_loan(db, manager_actor, _request(client.id))

        assert result["loan_track"] == f"CREDITO-{business_date().year}-00001"
        assert result["manager_id"] == manager.id
        assert result["original_amount"] == Decimal("1000")
        assert result["amount"] == Decimal("1200")
        assert [s["total_amount"] for s in result["sub_loans"]] == [Decimal("300")] * 4
        assert [s["status"] for s in result["sub_loans"]] == ["PENDING"] * 4
        assert result["sub_loans"][0]["due_date"] == datetime(2030, 1, 7, 3, tzinfo=timezone.utc)
        assert result["sub_loans"][3]["due_date"] == datetime(2030, 1, 28, 3, tzinfo=timezone.utc)

        assert (await wallet.get_wallet(db, manager.id)).balance == Decimal("4000")
        assert (await collector_wallet.get_wallet(db, manager.id)).balance == Decimal("-1000")

    @pytest.mark.asyncio
    async def test_consecutive_loans_get_consecutive_codes(
        self, db, manager, manager_actor, client, manager_wallets
    ):
        await wallet.deposit(db, manager.id, "5000", "ARS")
        await db.commit()

        first = await create_loan(db, manager_actor, _request(client.id))
        second = await create_loan(db, manager_actor, _request(client.id))

        assert first["loan_track"].endswith("-00001")
        assert second["loan_track"].endswith("-00002")

    @pytest.mark.asyncio
    async def test_custom_tracking_code(self, db, manager, manager_actor, client, manager_wallets):
        await wallet.deposit(db, manager.id, "5000", "ARS")
        await db.commit()

        await create_loan(db, manager_actor, _request(client.id, loan_track="ESPECIAL A"))
        await create_loan(db, manager_actor, _request(client.id, loan_track="ESPECIAL B"))

        with pytest.raises(TrackingCodeConflictError):
            await create_loan(db, manager_actor, _request(client.id, loan_track="ESPECIAL A"))
        assert await _loan_count(db) == 2

    @pytest.mark.asyncio
    async def test_without_interest(self, db, manager, manager_actor, client, manager_wallets):
        await wallet.deposit(db, manager.id, "1000", "ARS")
        await db.commit()

        result = await create_loan(
            db, manager_actor, _request(client.id, base_interest_rate="0", total_payments=3)
        )

        assert result["amount"] == Decimal("1000")
        assert [s["total_amount"] for s in result["sub_loans"]] == [
            Decimal("333.33"), Decimal("333.33"), Decimal("333.34"),
        ]
        count = await db.execute(
            select(func.count(SubLoan.id)).where(SubLoan.loan_id == result["id"])
        )
        assert count.scalar_one() == 3

    @pytest.mark.asyncio
    async def test_insufficient_funds_rolls_back(self, db, manager_actor, client, manager_wallets):
        with pytest.raises(InsufficientFundsError):
            await create_loan(db, manager_actor, _request(client.id))
        assert await _loan_count(db) == 0

    @pytest.mark.asyncio
    async def test_client_of_another_manager(self, db, client):
        other = User(full_name="Otro", email="otro@example.com", role=UserRole.MANAGER)
        db.add(other)
        await db.commit()

        with pytest.raises(ForbiddenError):
            await create_loan(db, Actor.from_user(other), _request(client.id))

    @pytest.mark.asyncio
    async def test_unknown_client(self, db, manager_actor, manager_wallets):
        with pytest.raises(NotFoundError):
            await create_loan(db, manager_actor, _request(99999))

    @pytest.mark.asyncio
    async def test_manager_without_wallet(self, db, manager_actor, client):
        with pytest.raises(WalletNotFoundError):
            await create_loan(db, manager_actor, _request(client.id))

    @pytest.mark.asyncio
    @pytest.mark.parametrize("overrides", [
        {"total_payments": 0},
        {"amount": "0"},
        {"amount": "1000.005"},
        {"payment_frequency": "YEARLY"},
        {"base_interest_rate": "-0.1"},
    ])
    async def test_invalid_request(self, db, manager_actor, client, manager_wallets, overrides):
        with pytest.raises(ValidationError):
            await create_loan(db, manager_actor, _request(client.id, **overrides))
