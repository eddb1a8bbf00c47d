"""Daily collection routes: per-manager list of installments to visit."""

import enum
from datetime import datetime
from decimal import Decimal

from sqlalchemy import String, Integer, Numeric, Enum, DateTime, ForeignKey, Text, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from microledger.database import Base


class CollectionRouteStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    CLOSED = "CLOSED"


class ExpenseCategory(str, enum.Enum):
    COMBUSTIBLE = "COMBUSTIBLE"
    CONSUMO = "CONSUMO"
    REPARACIONES = "REPARACIONES"
    OTROS = "OTROS"


class DailyCollectionRoute(Base):
    __tablename__ = "daily_collection_routes"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    manager_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    route_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[CollectionRouteStatus] = mapped_column(
        Enum(CollectionRouteStatus), nullable=False, default=CollectionRouteStatus.ACTIVE
    )
    total_collected: Mapped[Decimal] = mapped_column(Numeric(40, 2), nullable=False, default=Decimal("0"))
    total_expenses: Mapped[Decimal] = mapped_column(Numeric(40, 2), nullable=False, default=Decimal("0"))
    net_amount: Mapped[Decimal] = mapped_column(Numeric(40, 2), nullable=False, default=Decimal("0"))
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    items = relationship("CollectionRouteItem", back_populates="route", order_by="CollectionRouteItem.order_index")
    expenses = relationship("RouteExpense", back_populates="route")


class CollectionRouteItem(Base):
    __tablename__ = "collection_route_items"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    route_id: Mapped[int] = mapped_column(
        ForeignKey("daily_collection_routes.id"), nullable=False, index=True
    )
    # Nullable so route history survives sub-loan deletion
    sub_loan_id: Mapped[int | None] = mapped_column(
        ForeignKey("sub_loans.id", ondelete="SET NULL"), nullable=True, index=True
    )
    client_name: Mapped[str] = mapped_column(String(200), nullable=False)
    client_phone: Mapped[str | None] = mapped_column(String(30), nullable=True)
    client_address: Mapped[str | None] = mapped_column(String(255), nullable=True)
    order_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    amount_collected: Mapped[Decimal] = mapped_column(Numeric(40, 2), nullable=False, default=Decimal("0"))
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    route = relationship("DailyCollectionRoute", back_populates="items")


class RouteExpense(Base):
    __tablename__ = "route_expenses"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    route_id: Mapped[int] = mapped_column(
        ForeignKey("daily_collection_routes.id"), nullable=False, index=True
    )
    category: Mapped[ExpenseCategory] = mapped_column(Enum(ExpenseCategory), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(40, 2), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    route = relationship("DailyCollectionRoute", back_populates="expenses")
