"""Initial ledger schema.

Creates: users, clients, client_managers, loan_sequences, loans, sub_loans,
         payments, wallets, wallet_transactions, collector_wallets,
         collector_wallet_transactions, daily_collection_routes,
         collection_route_items, route_expenses
"""

from alembic import op
import sqlalchemy as sa


revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def _money(name, **kwargs):
    return sa.Column(name, sa.Numeric(40, 2), **kwargs)


def _timestamps(with_updated=True):
    cols = [sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now())]
    if with_updated:
        cols.append(
            sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now())
        )
    return cols


def upgrade() -> None:
    # ── Identity ─────────────────────────────────────────────
    op.create_table(
        "users",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("full_name", sa.String(200), nullable=False),
        sa.Column("email", sa.String(255), unique=True, nullable=True),
        sa.Column(
            "role",
            sa.Enum("SUPERADMIN", "ADMIN", "SUBADMIN", "MANAGER", name="userrole"),
            nullable=False,
        ),
        sa.Column("created_by_id", sa.Integer, sa.ForeignKey("users.id"), nullable=True, index=True),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(with_updated=False),
    )
    op.create_table(
        "clients",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("full_name", sa.String(200), nullable=False),
        sa.Column("phone", sa.String(30), nullable=True),
        sa.Column("address", sa.String(255), nullable=True),
        *_timestamps(with_updated=False),
    )
    op.create_table(
        "client_managers",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("client_id", sa.Integer, sa.ForeignKey("clients.id"), nullable=False, index=True),
        sa.Column("user_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False, index=True),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(with_updated=False),
        sa.UniqueConstraint("client_id", "user_id", name="uq_client_manager"),
    )

    # ── Loans ────────────────────────────────────────────────
    op.create_table(
        "loan_sequences",
        sa.Column("prefix", sa.String(50), primary_key=True),
        sa.Column("year", sa.Integer, primary_key=True),
        sa.Column("next", sa.Integer, nullable=False, server_default="1"),
    )
    op.create_table(
        "loans",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("client_id", sa.Integer, sa.ForeignKey("clients.id"), nullable=False, index=True),
        sa.Column("manager_id", sa.Integer, sa.ForeignKey("users.id"), nullable=True, index=True),
        _money("original_amount", nullable=False),
        _money("amount", nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default="ARS"),
        sa.Column("base_interest_rate", sa.Numeric(8, 4), nullable=True),
        sa.Column("penalty_interest_rate", sa.Numeric(8, 4), nullable=True),
        sa.Column(
            "payment_frequency",
            sa.Enum("DAILY", "WEEKLY", "BIWEEKLY", "MONTHLY", name="paymentfrequency"),
            nullable=False,
        ),
        sa.Column("total_payments", sa.Integer, nullable=False),
        sa.Column("first_due_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("loan_track", sa.String(100), unique=True, index=True, nullable=False),
        sa.Column("prefix", sa.String(50), nullable=False),
        sa.Column("year", sa.Integer, nullable=False),
        sa.Column("sequence", sa.Integer, nullable=False, server_default="0"),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("notes", sa.Text, nullable=True),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_loans_prefix_year_sequence", "loans", ["prefix", "year", "sequence"])

    op.create_table(
        "sub_loans",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("loan_id", sa.Integer, sa.ForeignKey("loans.id"), nullable=False, index=True),
        sa.Column("payment_number", sa.Integer, nullable=False),
        _money("amount", nullable=False),
        _money("total_amount", nullable=False),
        _money("paid_amount", nullable=False, server_default="0"),
        sa.Column(
            "status",
            sa.Enum("PENDING", "PARTIAL", "PAID", "OVERDUE", name="subloanstatus"),
            nullable=False,
        ),
        sa.Column("due_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("paid_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("days_overdue", sa.Integer, nullable=False, server_default="0"),
        sa.Column("payment_history", sa.JSON, nullable=False),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("loan_id", "payment_number", name="uq_sub_loans_loan_payment_number"),
        sa.CheckConstraint("paid_amount >= 0", name="ck_sub_loans_paid_non_negative"),
        sa.CheckConstraint("paid_amount <= total_amount", name="ck_sub_loans_paid_le_total"),
    )
    op.create_index("ix_sub_loans_loan_status", "sub_loans", ["loan_id", "status"])

    op.create_table(
        "payments",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("sub_loan_id", sa.Integer, sa.ForeignKey("sub_loans.id"), nullable=False, index=True),
        _money("amount", nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("payment_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("recorded_by", sa.Integer, sa.ForeignKey("users.id"), nullable=True),
        *_timestamps(with_updated=False),
    )
    op.create_index("ix_payments_sub_loan_date", "payments", ["sub_loan_id", "payment_date"])

    # ── Manager wallet ───────────────────────────────────────
    op.create_table(
        "wallets",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.Integer, sa.ForeignKey("users.id"), unique=True, nullable=False),
        _money("balance", nullable=False, server_default="0"),
        sa.Column("currency", sa.String(3), nullable=False, server_default="ARS"),
        *_timestamps(),
    )
    op.create_table(
        "wallet_transactions",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("wallet_id", sa.Integer, sa.ForeignKey("wallets.id"), nullable=False, index=True),
        sa.Column("user_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False, index=True),
        sa.Column(
            "type",
            sa.Enum(
                "DEPOSIT", "WITHDRAWAL", "LOAN_DISBURSEMENT", "LOAN_PAYMENT",
                "TRANSFER_TO_MANAGER", "TRANSFER_FROM_SUBADMIN",
                name="wallettransactiontype",
            ),
            nullable=False,
        ),
        _money("amount", nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("description", sa.Text, nullable=False),
        _money("balance_before", nullable=False),
        _money("balance_after", nullable=False),
        *_timestamps(with_updated=False),
        sa.CheckConstraint("amount <> 0", name="ck_wallet_transactions_amount_nonzero"),
    )
    op.create_index(
        "ix_wallet_transactions_wallet_created", "wallet_transactions", ["wallet_id", "created_at"]
    )

    # ── Collection routes ────────────────────────────────────
    op.create_table(
        "daily_collection_routes",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("manager_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False, index=True),
        sa.Column("route_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "status",
            sa.Enum("ACTIVE", "CLOSED", name="collectionroutestatus"),
            nullable=False,
        ),
        _money("total_collected", nullable=False, server_default="0"),
        _money("total_expenses", nullable=False, server_default="0"),
        _money("net_amount", nullable=False, server_default="0"),
        sa.Column("notes", sa.Text, nullable=True),
        sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_table(
        "collection_route_items",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "route_id", sa.Integer, sa.ForeignKey("daily_collection_routes.id"),
            nullable=False, index=True,
        ),
        sa.Column(
            "sub_loan_id", sa.Integer, sa.ForeignKey("sub_loans.id", ondelete="SET NULL"),
            nullable=True, index=True,
        ),
        sa.Column("client_name", sa.String(200), nullable=False),
        sa.Column("client_phone", sa.String(30), nullable=True),
        sa.Column("client_address", sa.String(255), nullable=True),
        sa.Column("order_index", sa.Integer, nullable=False, server_default="0"),
        _money("amount_collected", nullable=False, server_default="0"),
        sa.Column("notes", sa.Text, nullable=True),
        *_timestamps(with_updated=False),
    )
    op.create_table(
        "route_expenses",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "route_id", sa.Integer, sa.ForeignKey("daily_collection_routes.id"),
            nullable=False, index=True,
        ),
        sa.Column(
            "category",
            sa.Enum("COMBUSTIBLE", "CONSUMO", "REPARACIONES", "OTROS", name="expensecategory"),
            nullable=False,
        ),
        _money("amount", nullable=False),
        sa.Column("description", sa.Text, nullable=False),
        *_timestamps(with_updated=False),
    )

    # ── Collector wallet ─────────────────────────────────────
    op.create_table(
        "collector_wallets",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.Integer, sa.ForeignKey("users.id"), unique=True, nullable=False),
        _money("balance", nullable=False, server_default="0"),
        sa.Column("currency", sa.String(3), nullable=False, server_default="ARS"),
        *_timestamps(),
    )
    op.create_table(
        "collector_wallet_transactions",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "wallet_id", sa.Integer, sa.ForeignKey("collector_wallets.id"),
            nullable=False, index=True,
        ),
        sa.Column("user_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False, index=True),
        sa.Column(
            "type",
            sa.Enum(
                "COLLECTION", "WITHDRAWAL", "ROUTE_EXPENSE", "LOAN_DISBURSEMENT",
                "CASH_ADJUSTMENT", "PAYMENT_RESET",
                name="collectorwallettransactiontype",
            ),
            nullable=False,
        ),
        _money("amount", nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("description", sa.Text, nullable=False),
        _money("balance_before", nullable=False),
        _money("balance_after", nullable=False),
        sa.Column(
            "sub_loan_id", sa.Integer, sa.ForeignKey("sub_loans.id", ondelete="SET NULL"),
            nullable=True, index=True,
        ),
        sa.Column(
            "route_id", sa.Integer,
            sa.ForeignKey("daily_collection_routes.id", ondelete="SET NULL"), nullable=True,
        ),
        sa.Column(
            "loan_id", sa.Integer, sa.ForeignKey("loans.id", ondelete="SET NULL"), nullable=True
        ),
        *_timestamps(with_updated=False),
    )
    op.create_index(
        "ix_collector_wallet_transactions_wallet_created",
        "collector_wallet_transactions",
        ["wallet_id", "created_at"],
    )


def downgrade() -> None:
    for table in (
        "collector_wallet_transactions",
        "collector_wallets",
        "route_expenses",
        "collection_route_items",
        "daily_collection_routes",
        "wallet_transactions",
        "wallets",
        "payments",
        "sub_loans",
        "loans",
        "loan_sequences",
        "client_managers",
        "clients",
        "users",
    ):
        op.drop_table(table)
    for enum_name in (
        "collectorwallettransactiontype",
        "expensecategory",
        "collectionroutestatus",
        "wallettransactiontype",
        "subloanstatus",
        "paymentfrequency",
        "userrole",
    ):
        op.execute(f"DROP TYPE IF EXISTS {enum_name}")
