"""Keep ACTIVE collection routes in step with installment paid amounts."""

import logging

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from microledger.models.collection_route import (
    CollectionRouteItem,
    CollectionRouteStatus,
    DailyCollectionRoute,
    RouteExpense,
)
from microledger.models.loan import SubLoan
from microledger.services.ledger.money import ZERO, to_money

logger = logging.getLogger(__name__)


async def recalculate_route_totals(db: AsyncSession, route: DailyCollectionRoute) -> None:
    """Recompute collected/expenses/net from the route's items and expenses.

    ``total_collected`` sums the current paid amount of each item's
    installment; items whose installment is gone contribute nothing.
    """
    collected = (
        await db.execute(
            select(func.coalesce(func.sum(SubLoan.paid_amount), 0))
            .select_from(CollectionRouteItem)
            .join(SubLoan, SubLoan.id == CollectionRouteItem.sub_loan_id)
            .where(CollectionRouteItem.route_id == route.id)
        )
    ).scalar_one()
    expenses = (
        await db.execute(
            select(func.coalesce(func.sum(RouteExpense.amount), 0))
            .where(RouteExpense.route_id == route.id)
        )
    ).scalar_one()

    route.total_collected = to_money(collected)
    route.total_expenses = to_money(expenses)
    route.net_amount = route.total_collected - route.total_expenses


async def reconcile_routes_for_sub_loan(db: AsyncSession, sub_loan_id: int) -> int:
    """Sync every ACTIVE route item for *sub_loan_id*; returns routes touched.

    Closed routes are historical records and are left alone.
    """
    sub_loan = await db.get(SubLoan, sub_loan_id)
    paid = to_money(sub_loan.paid_amount) if sub_loan is not None else ZERO

    rows = (
        await db.execute(
            select(CollectionRouteItem, DailyCollectionRoute)
            .join(DailyCollectionRoute, DailyCollectionRoute.id == CollectionRouteItem.route_id)
            .where(
                CollectionRouteItem.sub_loan_id == sub_loan_id,
                DailyCollectionRoute.status == CollectionRouteStatus.ACTIVE,
            )
            .execution_options(populate_existing=True)
        )
    ).all()

    routes: dict[int, DailyCollectionRoute] = {}
    for item, route in rows:
        item.amount_collected = paid
        routes[route.id] = route

    await db.flush()
    for route in routes.values():
        await recalculate_route_totals(db, route)
    await db.flush()

    if routes:
        logger.info(
            "Reconciled %d active route(s) for sub-loan %s (paid %s)",
            len(routes), sub_loan_id, paid,
        )
    return len(routes)
