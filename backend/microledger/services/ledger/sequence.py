"""Collision-free, human-readable loan tracking codes.

Sequential codes look like ``CREDITO-2025-00042``.  The counter row for
``(prefix, year)`` is incremented and read back in a single upsert inside the
caller's transaction, so two concurrent issuances can never reserve the same
number.
"""

import logging
import re
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from microledger.config import settings
from microledger.models.loan import Loan, LoanSequence
from microledger.services.ledger.clock import business_date
from microledger.services.ledger.exceptions import TrackingCodeConflictError, ValidationError

logger = logging.getLogger(__name__)

SEQUENCE_WIDTH = 5
_CUSTOM_CODE_RE = re.compile(r"^(?P<prefix>[^-]+)-(?P<year>\d{4})-(?P<sequence>\d+)")


@dataclass(frozen=True)
class TrackingCode:
    code: str
    prefix: str
    year: int
    sequence: int


def format_tracking_code(prefix: str, year: int, sequence: int) -> str:
    return f"{prefix}-{year}-{sequence:0{SEQUENCE_WIDTH}d}"


async def _reserve_next(db: AsyncSession, prefix: str, year: int) -> int:
    """Increment the counter and return the number just reserved."""
    dialect = db.get_bind().dialect.name
    insert = {"postgresql": postgresql.insert, "sqlite": sqlite.insert}.get(dialect)

    if insert is not None:
        stmt = insert(LoanSequence).values(prefix=prefix, year=year, next=2)
        stmt = stmt.on_conflict_do_update(
            index_elements=[LoanSequence.prefix, LoanSequence.year],
            set_={"next": LoanSequence.next + 1},
        ).returning(LoanSequence.next)
        next_value = (await db.execute(stmt)).scalar_one()
        return next_value - 1

    # Generic fallback: lock the counter row, create it on first use.
    row = (
        await db.execute(
            select(LoanSequence)
            .where(LoanSequence.prefix == prefix, LoanSequence.year == year)
            .with_for_update()
        )
    ).scalar_one_or_none()
    if row is None:
        db.add(LoanSequence(prefix=prefix, year=year, next=2))
        await db.flush()
        return 1
    reserved = row.next
    row.next = reserved + 1
    await db.flush()
    return reserved


async def next_tracking_code(db: AsyncSession, prefix: str | None = None) -> TrackingCode:
    """Reserve and return the next sequential code for *prefix* in the current year."""
    prefix = (prefix or settings.tracking_code_prefix).strip().upper()
    if not prefix or "-" in prefix:
        raise ValidationError(f"Invalid tracking code prefix: {prefix!r}")

    year = business_date().year
    sequence = await _reserve_next(db, prefix, year)
    code = format_tracking_code(prefix, year, sequence)
    logger.info("Reserved tracking code %s", code)
    return TrackingCode(code=code, prefix=prefix, year=year, sequence=sequence)


async def ensure_tracking_code_available(db: AsyncSession, code: str) -> TrackingCode:
    """Validate a caller-supplied code is globally unique.

    Custom codes never touch the counter.  When the code follows the
    ``PREFIX-YEAR-N`` shape its parts are kept; otherwise it is filed under
    the ``CUSTOM`` prefix with sequence 0.
    """
    code = code.strip()
    if not code:
        raise ValidationError("Tracking code must not be empty")

    existing = await db.execute(select(Loan.id).where(Loan.loan_track == code))
    if existing.scalar_one_or_none() is not None:
        raise TrackingCodeConflictError(f"Tracking code {code} already exists")

    match = _CUSTOM_CODE_RE.match(code)
    if match:
        return TrackingCode(
            code=code,
            prefix=match.group("prefix"),
            year=int(match.group("year")),
            sequence=int(match.group("sequence")),
        )
    return TrackingCode(code=code, prefix="CUSTOM", year=business_date().year, sequence=0)
