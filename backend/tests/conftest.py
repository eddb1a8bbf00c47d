"""Shared fixtures: in-memory SQLite ledger database and seed data."""

import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")

from datetime import timedelta
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from microledger.database import Base
from microledger.models import (
    Client,
    ClientManager,
    CollectorWallet,
    Loan,
    PaymentFrequency,
    SubLoan,
    SubLoanStatus,
    User,
    UserRole,
    Wallet,
)
from microledger.services.ledger.access import Actor
from microledger.services.ledger.clock import now_utc


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    # pysqlite's own transaction handling breaks SAVEPOINT; emit BEGIN ourselves
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def db(engine):
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def subadmin(db):
    user = User(full_name="Sub Admin", email="sub@example.com", role=UserRole.SUBADMIN)
    db.add(user)
    await db.commit()
    return user


@pytest_asyncio.fixture
async def manager(db, subadmin):
    user = User(
        full_name="Cobrador Uno",
        email="manager@example.com",
        role=UserRole.MANAGER,
        created_by_id=subadmin.id,
    )
    db.add(user)
    await db.commit()
    return user


@pytest_asyncio.fixture
async def client(db, manager):
    client = Client(full_name="María Gómez", phone="+5491100000000", address="Calle 1")
    db.add(client)
    await db.flush()
    db.add(ClientManager(client_id=client.id, user_id=manager.id))
    await db.commit()
    return client


@pytest.fixture
def manager_actor(manager):
    return Actor.from_user(manager)


@pytest_asyncio.fixture
async def manager_wallets(db, manager):
    """Empty working-capital and collector wallets for the manager."""
    wallet = Wallet(user_id=manager.id, balance=Decimal("0"), currency="ARS")
    collector = CollectorWallet(user_id=manager.id, balance=Decimal("0"), currency="ARS")
    db.add_all([wallet, collector])
    await db.commit()
    return wallet, collector


@pytest.fixture
def make_loan(db, manager, client):
    """Build a loan whose installments have the given totals (and paid amounts)."""
    counter = {"n": 0}

    async def _make(totals, paid=None, currency="ARS", with_manager=True):
        counter["n"] += 1
        paid = paid or [Decimal("0")] * len(totals)
        total = sum((Decimal(str(t)) for t in totals), Decimal("0"))
        loan = Loan(
            client_id=client.id,
            manager_id=manager.id if with_manager else None,
            original_amount=total,
            amount=total,
            currency=currency,
            payment_frequency=PaymentFrequency.WEEKLY,
            total_payments=len(totals),
            loan_track=f"TEST-2025-{counter['n']:05d}",
            prefix="TEST",
            year=2025,
            sequence=counter["n"],
        )
        db.add(loan)
        await db.flush()

        sub_loans = []
        start = now_utc()
        for number, (total_amount, paid_amount) in enumerate(zip(totals, paid), start=1):
            total_amount = Decimal(str(total_amount))
            paid_amount = Decimal(str(paid_amount))
            if paid_amount <= 0:
                status = SubLoanStatus.PENDING
                history = []
            elif paid_amount < total_amount:
                status = SubLoanStatus.PARTIAL
                history = [{
                    "date": start.isoformat(),
                    "amount": float(paid_amount),
                    "balance": float(total_amount - paid_amount),
                }]
            else:
                status = SubLoanStatus.PAID
                history = [{"date": start.isoformat(), "amount": float(paid_amount), "balance": 0}]
            sub_loans.append(SubLoan(
                loan_id=loan.id,
                payment_number=number,
                amount=total_amount,
                total_amount=total_amount,
                paid_amount=paid_amount,
                status=status,
                due_date=start + timedelta(weeks=number - 1),
                days_overdue=0,
                payment_history=history,
            ))
        db.add_all(sub_loans)
        await db.commit()
        return loan, sub_loans

    return _make
