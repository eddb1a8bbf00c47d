"""Manager working-capital wallet and collector cash wallet models.

Both ledgers are append-only.  Every transaction row stamps the balance
before and after it was applied; those stamps are only rewritten by the
balance-repair maintenance pass.
"""

import enum
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    String, Numeric, Enum, DateTime, ForeignKey, Text, Index, CheckConstraint, func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from microledger.database import Base


# ===================================================================
# Enumerations
# ===================================================================


class WalletTransactionType(str, enum.Enum):
    DEPOSIT = "DEPOSIT"
    WITHDRAWAL = "WITHDRAWAL"
    LOAN_DISBURSEMENT = "LOAN_DISBURSEMENT"
    LOAN_PAYMENT = "LOAN_PAYMENT"
    TRANSFER_TO_MANAGER = "TRANSFER_TO_MANAGER"
    TRANSFER_FROM_SUBADMIN = "TRANSFER_FROM_SUBADMIN"


class CollectorWalletTransactionType(str, enum.Enum):
    COLLECTION = "COLLECTION"
    WITHDRAWAL = "WITHDRAWAL"
    ROUTE_EXPENSE = "ROUTE_EXPENSE"
    LOAN_DISBURSEMENT = "LOAN_DISBURSEMENT"
    CASH_ADJUSTMENT = "CASH_ADJUSTMENT"
    PAYMENT_RESET = "PAYMENT_RESET"


# Types whose stored amount is added to the collector balance as-is
# (negative COLLECTION / PAYMENT_RESET rows encode reversals).
COLLECTOR_SIGNED_TYPES = frozenset({
    CollectorWalletTransactionType.COLLECTION,
    CollectorWalletTransactionType.CASH_ADJUSTMENT,
    CollectorWalletTransactionType.PAYMENT_RESET,
})

# Types whose stored amount is subtracted from the collector balance
COLLECTOR_OUTFLOW_TYPES = frozenset({
    CollectorWalletTransactionType.WITHDRAWAL,
    CollectorWalletTransactionType.ROUTE_EXPENSE,
    CollectorWalletTransactionType.LOAN_DISBURSEMENT,
})


# ===================================================================
# Manager wallet
# ===================================================================


class Wallet(Base):
    __tablename__ = "wallets"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), unique=True, nullable=False)
    balance: Mapped[Decimal] = mapped_column(Numeric(40, 2), nullable=False, default=Decimal("0"))
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="ARS")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    transactions = relationship("WalletTransaction", back_populates="wallet")


class WalletTransaction(Base):
    __tablename__ = "wallet_transactions"
    __table_args__ = (
        CheckConstraint("amount <> 0", name="ck_wallet_transactions_amount_nonzero"),
        Index("ix_wallet_transactions_wallet_created", "wallet_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    wallet_id: Mapped[int] = mapped_column(ForeignKey("wallets.id"), nullable=False, index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    type: Mapped[WalletTransactionType] = mapped_column(
        Enum(WalletTransactionType), nullable=False
    )
    # Signed: credits positive, debits negative (LOAN_PAYMENT reversals included)
    amount: Mapped[Decimal] = mapped_column(Numeric(40, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    balance_before: Mapped[Decimal] = mapped_column(Numeric(40, 2), nullable=False)
    balance_after: Mapped[Decimal] = mapped_column(Numeric(40, 2), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    wallet = relationship("Wallet", back_populates="transactions")


# ===================================================================
# Collector wallet
# ===================================================================


class CollectorWallet(Base):
    __tablename__ = "collector_wallets"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), unique=True, nullable=False)
    # May be negative: disbursements can exceed the cash float.
    balance: Mapped[Decimal] = mapped_column(Numeric(40, 2), nullable=False, default=Decimal("0"))
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="ARS")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    transactions = relationship("CollectorWalletTransaction", back_populates="wallet")


class CollectorWalletTransaction(Base):
    __tablename__ = "collector_wallet_transactions"
    __table_args__ = (
        Index("ix_collector_wallet_transactions_wallet_created", "wallet_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    wallet_id: Mapped[int] = mapped_column(
        ForeignKey("collector_wallets.id"), nullable=False, index=True
    )
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    type: Mapped[CollectorWalletTransactionType] = mapped_column(
        Enum(CollectorWalletTransactionType), nullable=False
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(40, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    balance_before: Mapped[Decimal] = mapped_column(Numeric(40, 2), nullable=False)
    balance_after: Mapped[Decimal] = mapped_column(Numeric(40, 2), nullable=False)
    sub_loan_id: Mapped[int | None] = mapped_column(
        ForeignKey("sub_loans.id", ondelete="SET NULL"), nullable=True, index=True
    )
    route_id: Mapped[int | None] = mapped_column(
        ForeignKey("daily_collection_routes.id", ondelete="SET NULL"), nullable=True
    )
    loan_id: Mapped[int | None] = mapped_column(
        ForeignKey("loans.id", ondelete="SET NULL"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    wallet = relationship("CollectorWallet", back_populates="transactions")
