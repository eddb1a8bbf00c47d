"""Async SQLAlchemy engine, session factory and transactional helpers."""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from microledger.config import settings
from microledger.services.ledger.exceptions import LedgerTimeoutError

logger = logging.getLogger(__name__)

# PostgreSQL SQLSTATE for "canceling statement due to statement timeout"
_QUERY_CANCELED = "57014"


class Base(DeclarativeBase):
    pass


engine = create_async_engine(settings.database_url, echo=settings.database_echo)
async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def _is_statement_timeout(exc: DBAPIError) -> bool:
    orig = exc.orig
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if code == _QUERY_CANCELED:
        return True
    return "statement timeout" in str(orig).lower()


async def _apply_statement_timeout(db: AsyncSession, timeout_seconds: int | None) -> None:
    if not timeout_seconds:
        return
    bind = db.get_bind()
    if bind.dialect.name != "postgresql":
        return
    await db.execute(text(f"SET LOCAL statement_timeout = {int(timeout_seconds * 1000)}"))


@asynccontextmanager
async def atomic(db: AsyncSession, *, timeout_seconds: int | None = None) -> AsyncIterator[AsyncSession]:
    """Run a block as one all-or-nothing unit.

    Opens (and commits) a transaction when the session has none; otherwise
    wraps the block in a SAVEPOINT so a failure only discards this block's
    writes and the caller keeps control of the outer commit.
    """
    try:
        if db.in_transaction():
            async with db.begin_nested():
                yield db
        else:
            async with db.begin():
                await _apply_statement_timeout(db, timeout_seconds)
                yield db
    except DBAPIError as exc:
        if _is_statement_timeout(exc):
            logger.warning("Ledger transaction timed out after %ss", timeout_seconds)
            raise LedgerTimeoutError(
                f"Transaction exceeded {timeout_seconds}s; retry the operation"
            ) from exc
        raise


@asynccontextmanager
async def unit_of_work(*, timeout_seconds: int | None = None) -> AsyncIterator[AsyncSession]:
    """Fresh session with one committed transaction around the block."""
    async with async_session() as db:
        async with atomic(db, timeout_seconds=timeout_seconds):
            yield db
