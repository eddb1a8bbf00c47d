"""Payment model: one registered amount against one SubLoan."""

from datetime import datetime
from decimal import Decimal

from sqlalchemy import String, Numeric, DateTime, ForeignKey, Text, Index, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from microledger.database import Base


class Payment(Base):
    __tablename__ = "payments"
    __table_args__ = (
        Index("ix_payments_sub_loan_date", "sub_loan_id", "payment_date"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    sub_loan_id: Mapped[int] = mapped_column(
        ForeignKey("sub_loans.id"), nullable=False, index=True
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(40, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    payment_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    recorded_by: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    sub_loan = relationship("SubLoan", back_populates="payments")
