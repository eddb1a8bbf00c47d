"""Tests for payment reset and payment edit.

Tests cover:
- Reset window enforcement and rollback on rejection
- Reset unwinding only the excess the installment cascaded, and the RESET marker
- Route reconciliation on reset (ACTIVE routes only)
- Edit: forced PARTIAL target, cascade re-application, window rules
- Same-day correction reverting one payment and its own cascade
"""

import pytest
from datetime import timedelta
from decimal import Decimal

from sqlalchemy import func, select

from microledger.models import (
    CollectionRouteItem,
    CollectionRouteStatus,
    CollectorWalletTransaction,
    CollectorWalletTransactionType,
    DailyCollectionRoute,
    ExpenseCategory,
    Payment,
    RouteExpense,
    SubLoanStatus,
)
from microledger.services.ledger import collector_wallet, wallet
from microledger.services.ledger.clock import now_utc
from microledger.services.ledger.exceptions import (
    EditNotAllowedError,
    EditWindowExpiredError,
    NoPaymentsToEditError,
    NoPaymentsToResetError,
    ResetWindowExpiredError,
)
from microledger.services.ledger.payments import register_payment
from microledger.services.ledger.reversal import edit_payment, reset_sub_loan_payments


async def _payment_count(db, sub_loan_id):
    result = await db.execute(
        select(func.count(Payment.id)).where(Payment.sub_loan_id == sub_loan_id)
    )
    return result.scalar_one()


async def _balances(db, user_id):
    w = await wallet.get_wallet(db, user_id)
    c = await collector_wallet.get_wallet(db, user_id)
    return w.balance, c.balance


# ===================================================================
# Reset
# ===================================================================


class TestReset:
    @pytest.mark.asyncio
    async def test_outside_window_rejected_without_writes(
        self, db, manager, manager_actor, manager_wallets, make_loan
    ):
        _, (sub,) = await make_loan(["1000"])
        sub_id, manager_id = sub.id, manager.id
        await register_payment(
            db, manager_actor, sub_id, "1000", "ARS", payment_date=now_utc() - timedelta(hours=25)
        )

        with pytest.raises(ResetWindowExpiredError):
            await reset_sub_loan_payments(db, manager_actor, sub_id)

        await db.refresh(sub)
        assert sub.status == SubLoanStatus.PAID
        assert await _payment_count(db, sub_id) == 1
        assert await _balances(db, manager_id) == (Decimal("1000"), Decimal("1000"))

    @pytest.mark.asyncio
    async def test_reset_unwinds_cascade(
        self, db, manager, manager_actor, manager_wallets, make_loan
    ):
        _, (first, second) = await make_loan(["500", "500"], paid=["300", "0"])
        await register_payment(db, manager_actor, second.id, "700", "ARS")

        result = await reset_sub_loan_payments(db, manager_actor, second.id)

        assert result["reset_amount"] == Decimal("700")
        assert result["deleted_payments"] == 1
        assert result["sub_loan"]["status"] == "PENDING"
        assert second.paid_amount == Decimal("0")
        assert second.paid_date is None
        assert first.status == SubLoanStatus.PARTIAL
        assert first.paid_amount == Decimal("300")
        assert await _payment_count(db, second.id) == 0
        assert await _balances(db, manager.id) == (Decimal("0"), Decimal("0"))

    @pytest.mark.asyncio
    async def test_reset_only_takes_back_its_own_cascade(
        self, db, manager, manager_actor, manager_wallets, make_loan
    ):
        _, (first, second, third) = await make_loan(
            ["500", "500", "500"], paid=["300", "0", "0"]
        )
        await register_payment(db, manager_actor, second.id, "500", "ARS")
        await register_payment(db, manager_actor, third.id, "700", "ARS")
        assert first.paid_amount == Decimal("500")

        await reset_sub_loan_payments(db, manager_actor, third.id)

        assert first.status == SubLoanStatus.PARTIAL
        assert first.paid_amount == Decimal("300")
        assert all("source_sub_loan_id" not in e for e in first.payment_history)
        assert second.status == SubLoanStatus.PAID
        assert second.paid_amount == Decimal("500")
        assert len(second.payment_history) == 1
        assert third.paid_amount == Decimal("0")
        assert await _payment_count(db, second.id) == 1
        assert await _balances(db, manager.id) == (Decimal("500"), Decimal("500"))

    @pytest.mark.asyncio
    async def test_reset_marker_appended(self, db, manager_actor, manager_wallets, make_loan):
        _, (sub,) = await make_loan(["1000"])
        await register_payment(db, manager_actor, sub.id, "400", "ARS")
        await register_payment(db, manager_actor, sub.id, "300", "ARS")

        await reset_sub_loan_payments(db, manager_actor, sub.id, description="Error de carga")

        marker = sub.payment_history[-1]
        assert marker["type"] == "RESET"
        assert marker["amount"] == -700.0
        assert marker["balance"] == 0
        assert marker["description"] == "Error de carga"
        assert len(sub.payment_history) == 3

    @pytest.mark.asyncio
    async def test_collector_gets_single_reset_row(
        self, db, manager, manager_actor, manager_wallets, make_loan
    ):
        _, (sub,) = await make_loan(["1000"])
        await register_payment(db, manager_actor, sub.id, "400", "ARS")
        await register_payment(db, manager_actor, sub.id, "300", "ARS")

        await reset_sub_loan_payments(db, manager_actor, sub.id)

        rows = (
            await db.execute(
                select(CollectorWalletTransaction).where(
                    CollectorWalletTransaction.type == CollectorWalletTransactionType.PAYMENT_RESET
                )
            )
        ).scalars().all()
        assert [r.amount for r in rows] == [Decimal("-700")]

    @pytest.mark.asyncio
    async def test_nothing_to_reset(self, db, manager_actor, manager_wallets, make_loan):
        _, (sub,) = await make_loan(["100"])
        with pytest.raises(NoPaymentsToResetError):
            await reset_sub_loan_payments(db, manager_actor, sub.id)

    @pytest.mark.asyncio
    async def test_active_routes_reconciled(
        self, db, manager, manager_actor, manager_wallets, make_loan
    ):
        _, (sub,) = await make_loan(["1000"])
        await register_payment(db, manager_actor, sub.id, "700", "ARS")

        active = DailyCollectionRoute(
            manager_id=manager.id, route_date=now_utc(), status=CollectionRouteStatus.ACTIVE,
            total_collected=Decimal("700"), net_amount=Decimal("650"),
        )
        closed = DailyCollectionRoute(
            manager_id=manager.id, route_date=now_utc(), status=CollectionRouteStatus.CLOSED,
            total_collected=Decimal("700"), net_amount=Decimal("700"),
        )
        db.add_all([active, closed])
        await db.flush()
        active_item = CollectionRouteItem(
            route_id=active.id, sub_loan_id=sub.id, client_name="María Gómez",
            amount_collected=Decimal("700"),
        )
        closed_item = CollectionRouteItem(
            route_id=closed.id, sub_loan_id=sub.id, client_name="María Gómez",
            amount_collected=Decimal("700"),
        )
        db.add_all([
            active_item,
            closed_item,
            RouteExpense(
                route_id=active.id, category=ExpenseCategory.COMBUSTIBLE,
                amount=Decimal("50"), description="Nafta",
            ),
        ])
        await db.commit()

        await reset_sub_loan_payments(db, manager_actor, sub.id)

        assert active_item.amount_collected == Decimal("0")
        assert active.total_collected == Decimal("0")
        assert active.total_expenses == Decimal("50")
        assert active.net_amount == Decimal("-50")
        assert closed_item.amount_collected == Decimal("700")
        assert closed.total_collected == Decimal("700")


# ===================================================================
# Edit
# ===================================================================


class TestEdit:
    @pytest.mark.asyncio
    async def test_edit_leaves_target_partial(
        self, db, manager, manager_actor, manager_wallets, make_loan
    ):
        _, (sub,) = await make_loan(["1000"])
        await register_payment(db, manager_actor, sub.id, "1000", "ARS")

        result = await edit_payment(db, manager_actor, sub.id, "1000")

        assert result["reverted_amount"] == Decimal("1000")
        assert sub.status == SubLoanStatus.PARTIAL
        assert sub.paid_amount == Decimal("1000")
        assert sub.paid_date is None
        assert await _payment_count(db, sub.id) == 1
        assert await _balances(db, manager.id) == (Decimal("1000"), Decimal("1000"))

    @pytest.mark.asyncio
    async def test_edit_rebuilds_history(self, db, manager_actor, manager_wallets, make_loan):
        _, (sub,) = await make_loan(["1000"])
        await register_payment(db, manager_actor, sub.id, "600", "ARS")
        await register_payment(db, manager_actor, sub.id, "400", "ARS")

        await edit_payment(db, manager_actor, sub.id, "800")

        assert len(sub.payment_history) == 1
        assert sub.payment_history[0]["amount"] == 800.0
        assert sub.payment_history[0]["balance"] == 200.0

    @pytest.mark.asyncio
    async def test_edit_recascades_excess(
        self, db, manager, manager_actor, manager_wallets, make_loan
    ):
        _, (first, second) = await make_loan(["500", "500"], paid=["300", "0"])
        await register_payment(db, manager_actor, second.id, "700", "ARS")

        result = await edit_payment(db, manager_actor, second.id, "900")

        assert second.status == SubLoanStatus.PARTIAL
        assert second.paid_amount == Decimal("500")
        assert first.status == SubLoanStatus.PAID
        assert first.paid_amount == Decimal("500")
        assert [
            (d["payment_number"], d["distributed_amount"])
            for d in result["distributed_payments"]
        ] == [(2, Decimal("500")), (1, Decimal("200"))]
        assert await _balances(db, manager.id) == (Decimal("900"), Decimal("900"))

    @pytest.mark.asyncio
    async def test_yesterday_payment_still_editable(
        self, db, manager_actor, manager_wallets, make_loan
    ):
        _, (sub,) = await make_loan(["500"])
        await register_payment(
            db, manager_actor, sub.id, "500", "ARS", payment_date=now_utc() - timedelta(days=1)
        )

        result = await edit_payment(db, manager_actor, sub.id, "450")

        assert result["sub_loan"]["paid_amount"] == Decimal("450")
        assert sub.status == SubLoanStatus.PARTIAL

    @pytest.mark.asyncio
    async def test_old_payment_not_editable(
        self, db, manager_actor, manager_wallets, make_loan
    ):
        _, (sub,) = await make_loan(["500"])
        sub_id = sub.id
        await register_payment(
            db, manager_actor, sub_id, "500", "ARS", payment_date=now_utc() - timedelta(days=3)
        )

        with pytest.raises(EditWindowExpiredError):
            await edit_payment(db, manager_actor, sub_id, "450")

        await db.refresh(sub)
        assert sub.status == SubLoanStatus.PAID

    @pytest.mark.asyncio
    async def test_only_paid_installments_editable(
        self, db, manager_actor, manager_wallets, make_loan
    ):
        _, (sub,) = await make_loan(["500"])
        await register_payment(db, manager_actor, sub.id, "200", "ARS")

        with pytest.raises(EditNotAllowedError):
            await edit_payment(db, manager_actor, sub.id, "300")

    @pytest.mark.asyncio
    async def test_paid_without_payment_rows(self, db, manager_actor, manager_wallets, make_loan):
        _, (sub,) = await make_loan(["500"], paid=["500"])
        with pytest.raises(NoPaymentsToEditError):
            await edit_payment(db, manager_actor, sub.id, "300")


# ===================================================================
# Same-day correction
# ===================================================================


class TestRevertLastPayment:
    @pytest.mark.asyncio
    async def test_correction_only_takes_back_its_own_cascade(
        self, db, manager, manager_actor, manager_wallets, make_loan
    ):
        _, (first, second, third) = await make_loan(
            ["500", "500", "500"], paid=["300", "0", "0"]
        )
        await register_payment(db, manager_actor, second.id, "500", "ARS")
        await register_payment(db, manager_actor, third.id, "700", "ARS")

        result = await register_payment(db, manager_actor, third.id, "600", "ARS")

        assert first.status == SubLoanStatus.PARTIAL
        assert first.paid_amount == Decimal("400")
        assert [e["amount"] for e in first.payment_history] == [300.0, 100.0]
        assert second.status == SubLoanStatus.PAID
        assert second.paid_amount == Decimal("500")
        assert third.status == SubLoanStatus.PAID
        assert result["payment"]["amount"] == Decimal("600")
        assert await _payment_count(db, third.id) == 1
        assert await _balances(db, manager.id) == (Decimal("1100"), Decimal("1100"))

    @pytest.mark.asyncio
    async def test_correction_keeps_earlier_cascades_from_other_days(
        self, db, manager, manager_actor, manager_wallets, make_loan
    ):
        _, (first, second) = await make_loan(["500", "500"], paid=["100", "0"])
        yesterday = now_utc() - timedelta(days=1)
        await register_payment(db, manager_actor, second.id, "100", "ARS", payment_date=yesterday)
        await register_payment(db, manager_actor, second.id, "600", "ARS")
        assert first.paid_amount == Decimal("300")

        await register_payment(db, manager_actor, second.id, "400", "ARS")

        # Yesterday's 100 stays on the target; today's 200 cascade is undone
        assert first.paid_amount == Decimal("100")
        assert first.status == SubLoanStatus.PARTIAL
        assert second.paid_amount == Decimal("500")
        assert second.status == SubLoanStatus.PAID
        assert await _payment_count(db, second.id) == 2
