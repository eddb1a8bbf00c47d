"""Celery periodic tasks: overdue marking and wallet stamp repair."""

import asyncio
import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from microledger.config import settings
from microledger.services.ledger.maintenance import (
    mark_overdue_sub_loans,
    repair_wallet_balances,
)
from microledger.tasks import celery_app

logger = logging.getLogger(__name__)

__all__ = ["mark_overdue", "repair_balances"]


def _run_in_session(job):
    """Run ``job(db)`` in a fresh engine on a private event loop and commit."""

    async def _run():
        engine = create_async_engine(settings.database_url)
        session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        try:
            async with session_factory() as db:
                try:
                    result = await job(db)
                    await db.commit()
                    return result
                except Exception:
                    await db.rollback()
                    raise
        finally:
            await engine.dispose()

    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(_run())
    finally:
        loop.close()


@celery_app.task(name="microledger.tasks.ledger_tasks.mark_overdue")
def mark_overdue() -> dict:
    """Flip PENDING installments that reached their due date to OVERDUE."""
    stats = _run_in_session(mark_overdue_sub_loans)
    logger.info("Overdue marking finished: %s", stats["count"])
    return stats


@celery_app.task(name="microledger.tasks.ledger_tasks.repair_balances")
def repair_balances() -> dict:
    stats = _run_in_session(repair_wallet_balances)
    logger.info("Balance repair finished: %s", stats)
    return stats
