"""Exception hierarchy for the payment and wallet ledger.

Every error carries a stable ``reason`` code so callers (HTTP layer, bulk
registration, task runners) can report a structured failure without parsing
the human-readable message.
"""


class LedgerError(Exception):
    """Base exception for ledger errors."""

    reason = "ledger_error"
    retryable = False

    def __init__(self, message: str | None = None):
        super().__init__(message or self.__class__.__doc__ or self.reason)
        self.message = str(self.args[0])

    def to_dict(self) -> dict[str, str]:
        return {"reason": self.reason, "message": self.message}


# ── Lookups ──────────────────────────────────────────────────

class NotFoundError(LedgerError):
    """Referenced record does not exist."""

    reason = "not_found"


class SubLoanNotFoundError(NotFoundError):
    """SubLoan not found."""

    reason = "sub_loan_not_found"


class LoanNotFoundError(NotFoundError):
    """Loan not found."""

    reason = "loan_not_found"


class WalletNotFoundError(NotFoundError):
    """Wallet not found."""

    reason = "wallet_not_found"


class UserNotFoundError(NotFoundError):
    """User not found."""

    reason = "user_not_found"


# ── Access ───────────────────────────────────────────────────

class ForbiddenError(LedgerError):
    """Actor has no management relationship with the client."""

    reason = "forbidden"


# ── Input validation ─────────────────────────────────────────

class ValidationError(LedgerError):
    """Request is not valid for the ledger."""

    reason = "validation_error"


class InvalidAmountError(ValidationError):
    """Amount must be greater than zero."""

    reason = "invalid_amount"


class CurrencyMismatchError(ValidationError):
    """Payment currency differs from the loan currency."""

    reason = "currency_mismatch"


class SubLoanDeletedError(ValidationError):
    """SubLoan has been deleted."""

    reason = "sub_loan_deleted"


class MissingManagerError(ValidationError):
    """Loan has no assigned manager."""

    reason = "missing_manager"


class TrackingCodeConflictError(ValidationError):
    """Tracking code already exists."""

    reason = "tracking_code_conflict"


class EditNotAllowedError(ValidationError):
    """Only fully paid installments can be edited."""

    reason = "edit_not_allowed"


# ── State ────────────────────────────────────────────────────

class AlreadyPaidError(LedgerError):
    """Installment is already fully paid."""

    reason = "already_paid"


class InsufficientFundsError(LedgerError):
    """Wallet balance would go negative."""

    reason = "insufficient_funds"


class ResetWindowExpiredError(LedgerError):
    """Last payment is older than the reset window."""

    reason = "reset_window_expired"


class EditWindowExpiredError(LedgerError):
    """Last payment is older than yesterday."""

    reason = "edit_window_expired"


class NoPaymentsToResetError(LedgerError):
    """Installment has no payments to reset."""

    reason = "no_payments_to_reset"


class NoPaymentsToEditError(LedgerError):
    """Installment has no payments to edit."""

    reason = "no_payments_to_edit"


# ── Infrastructure ───────────────────────────────────────────

class LedgerTimeoutError(LedgerError):
    """Transaction exceeded its statement timeout."""

    reason = "timeout"
    retryable = True
