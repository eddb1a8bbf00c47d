"""SQLAlchemy models for the microledger collections ledger."""

from microledger.models.user import User, UserRole, Client, ClientManager
from microledger.models.loan import (
    Loan,
    LoanSequence,
    PaymentFrequency,
    SubLoan,
    SubLoanStatus,
)
from microledger.models.payment import Payment
from microledger.models.wallet import (
    Wallet,
    WalletTransaction,
    WalletTransactionType,
    CollectorWallet,
    CollectorWalletTransaction,
    CollectorWalletTransactionType,
)
from microledger.models.collection_route import (
    DailyCollectionRoute,
    CollectionRouteItem,
    CollectionRouteStatus,
    RouteExpense,
    ExpenseCategory,
)

__all__ = [
    "User",
    "UserRole",
    "Client",
    "ClientManager",
    # Loans
    "Loan",
    "LoanSequence",
    "PaymentFrequency",
    "SubLoan",
    "SubLoanStatus",
    "Payment",
    # Wallets
    "Wallet",
    "WalletTransaction",
    "WalletTransactionType",
    "CollectorWallet",
    "CollectorWalletTransaction",
    "CollectorWalletTransactionType",
    # Routes
    "DailyCollectionRoute",
    "CollectionRouteItem",
    "CollectionRouteStatus",
    "RouteExpense",
    "ExpenseCategory",
]
