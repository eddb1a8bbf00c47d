"""Loan, SubLoan (installment) and tracking-code sequence models."""

import enum
from datetime import datetime, date
from decimal import Decimal

from sqlalchemy import (
    String, Numeric, Integer, Enum, DateTime, ForeignKey, Text, JSON,
    UniqueConstraint, CheckConstraint, Index, func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from microledger.database import Base


class PaymentFrequency(str, enum.Enum):
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    BIWEEKLY = "BIWEEKLY"
    MONTHLY = "MONTHLY"


class SubLoanStatus(str, enum.Enum):
    PENDING = "PENDING"
    PARTIAL = "PARTIAL"
    PAID = "PAID"
    OVERDUE = "OVERDUE"


class LoanSequence(Base):
    """Tracking-code counter, one row per (prefix, year)."""

    __tablename__ = "loan_sequences"

    prefix: Mapped[str] = mapped_column(String(50), primary_key=True)
    year: Mapped[int] = mapped_column(Integer, primary_key=True)
    next: Mapped[int] = mapped_column(Integer, nullable=False, default=1)


class Loan(Base):
    __tablename__ = "loans"
    # loan_track is the unique key; custom codes all share sequence 0
    __table_args__ = (
        Index("ix_loans_prefix_year_sequence", "prefix", "year", "sequence"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    client_id: Mapped[int] = mapped_column(ForeignKey("clients.id"), nullable=False, index=True)
    manager_id: Mapped[int | None] = mapped_column(
        ForeignKey("users.id"), nullable=True, index=True
    )

    # Terms (fixed at issuance)
    original_amount: Mapped[Decimal] = mapped_column(Numeric(40, 2), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(40, 2), nullable=False)  # with interest
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="ARS")
    base_interest_rate: Mapped[Decimal | None] = mapped_column(Numeric(8, 4), nullable=True)
    penalty_interest_rate: Mapped[Decimal | None] = mapped_column(Numeric(8, 4), nullable=True)
    payment_frequency: Mapped[PaymentFrequency] = mapped_column(
        Enum(PaymentFrequency), nullable=False
    )
    total_payments: Mapped[int] = mapped_column(Integer, nullable=False)
    first_due_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Tracking
    loan_track: Mapped[str] = mapped_column(String(100), unique=True, index=True, nullable=False)
    prefix: Mapped[str] = mapped_column(String(50), nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    sub_loans = relationship(
        "SubLoan", back_populates="loan", order_by="SubLoan.payment_number"
    )


class SubLoan(Base):
    """One scheduled repayment slice of a Loan."""

    __tablename__ = "sub_loans"
    __table_args__ = (
        UniqueConstraint("loan_id", "payment_number", name="uq_sub_loans_loan_payment_number"),
        CheckConstraint("paid_amount >= 0", name="ck_sub_loans_paid_non_negative"),
        CheckConstraint("paid_amount <= total_amount", name="ck_sub_loans_paid_le_total"),
        Index("ix_sub_loans_loan_status", "loan_id", "status"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    loan_id: Mapped[int] = mapped_column(ForeignKey("loans.id"), nullable=False, index=True)
    payment_number: Mapped[int] = mapped_column(Integer, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(40, 2), nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(40, 2), nullable=False)
    paid_amount: Mapped[Decimal] = mapped_column(
        Numeric(40, 2), nullable=False, default=Decimal("0")
    )
    status: Mapped[SubLoanStatus] = mapped_column(
        Enum(SubLoanStatus), nullable=False, default=SubLoanStatus.PENDING
    )
    due_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    paid_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    days_overdue: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    # Append-only log: allocation entries and signed RESET markers
    payment_history: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    loan = relationship("Loan", back_populates="sub_loans")
    payments = relationship("Payment", back_populates="sub_loan", order_by="Payment.payment_date")

    @property
    def remaining_amount(self) -> Decimal:
        return self.total_amount - self.paid_amount
