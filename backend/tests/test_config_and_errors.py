"""Tests for settings validation, error payloads and money/date helpers.

Tests cover:
- Settings validators (timezone, windows, timeout) and ignored stale keys
- LedgerError reason codes and retryable flag
- Decimal money coercion and strict caller amounts
- Business-timezone date handling
"""

import pytest
from datetime import date, datetime, timezone
from decimal import Decimal

from pydantic import ValidationError as PydanticValidationError

from microledger.config import Settings
from microledger.services.ledger.clock import (
    as_utc,
    business_date,
    parse_payment_date,
    start_of_business_day,
)
from microledger.services.ledger.exceptions import (
    AlreadyPaidError,
    InvalidAmountError,
    LedgerError,
    LedgerTimeoutError,
    SubLoanNotFoundError,
    ValidationError,
)
from microledger.services.ledger.money import positive_money, to_money


# ===================================================================
# Settings
# ===================================================================


class TestSettings:
    def test_defaults(self):
        s = Settings(_env_file=None)
        assert s.business_timezone == "America/Argentina/Buenos_Aires"
        assert s.reset_window_hours == 24
        assert s.edit_window_days == 1
        assert s.default_currency == "ARS"
        assert s.balance_tolerance == Decimal("0.01")

    def test_unknown_timezone_rejected(self):
        with pytest.raises(PydanticValidationError):
            Settings(_env_file=None, business_timezone="Mars/Olympus_Mons")

    @pytest.mark.parametrize("field", ["reset_window_hours", "payment_transaction_timeout_seconds"])
    def test_non_positive_windows_rejected(self, field):
        with pytest.raises(PydanticValidationError):
            Settings(_env_file=None, **{field: 0})

    def test_negative_edit_window_rejected(self):
        with pytest.raises(PydanticValidationError):
            Settings(_env_file=None, edit_window_days=-1)

    def test_same_day_only_edit_window_allowed(self):
        assert Settings(_env_file=None, edit_window_days=0).edit_window_days == 0

    def test_stale_keys_ignored(self, tmp_path):
        env_file = tmp_path / ".env"
        env_file.write_text(
            "DATABASE_URL_SYNC=postgresql://old@localhost/old\nDEBUG=true\nDATABASE_ECHO=true\n"
        )
        s = Settings(_env_file=str(env_file))
        assert s.database_echo is True
        assert not hasattr(s, "database_url_sync")
        assert not hasattr(s, "debug")


# ===================================================================
# Errors
# ===================================================================


class TestErrors:
    def test_default_message_from_docstring(self):
        err = AlreadyPaidError()
        assert err.message == "Installment is already fully paid."
        assert err.to_dict() == {
            "reason": "already_paid",
            "message": "Installment is already fully paid.",
        }

    def test_custom_message(self):
        err = SubLoanNotFoundError("SubLoan 7 not found")
        assert str(err) == "SubLoan 7 not found"
        assert err.reason == "sub_loan_not_found"

    def test_hierarchy(self):
        assert issubclass(InvalidAmountError, ValidationError)
        assert issubclass(ValidationError, LedgerError)

    def test_only_timeouts_are_retryable(self):
        assert LedgerTimeoutError.retryable is True
        assert AlreadyPaidError.retryable is False


# ===================================================================
# Money
# ===================================================================


class TestMoney:
    def test_float_goes_through_str(self):
        assert to_money(0.1) == Decimal("0.10")

    def test_rounds_half_up(self):
        assert to_money("10.005") == Decimal("10.01")

    def test_none_is_zero(self):
        assert to_money(None) == Decimal("0.00")

    def test_garbage_rejected(self):
        with pytest.raises(InvalidAmountError):
            to_money("diez")

    @pytest.mark.parametrize("value", [0, "0.001", -1, "NaN", "Infinity", None])
    def test_positive_money_rejects(self, value):
        with pytest.raises(InvalidAmountError):
            positive_money(value)

    @pytest.mark.parametrize("value", ["100.129", Decimal("100.005"), 100.129])
    def test_positive_money_refuses_to_round(self, value):
        with pytest.raises(InvalidAmountError, match="more than 2 decimal places"):
            positive_money(value)

    @pytest.mark.parametrize("value,expected", [
        ("100.1", "100.10"),
        ("100.130", "100.13"),
        (Decimal("1E+2"), "100.00"),
        (0.1, "0.10"),
        (5, "5.00"),
    ])
    def test_positive_money_accepts_cents(self, value, expected):
        assert positive_money(value) == Decimal(expected)


# ===================================================================
# Clock
# ===================================================================


class TestClock:
    def test_date_only_is_business_midnight(self):
        assert parse_payment_date("2025-10-19") == datetime(2025, 10, 19, 3, tzinfo=timezone.utc)

    def test_date_object(self):
        assert parse_payment_date(date(2025, 10, 19)) == datetime(
            2025, 10, 19, 3, tzinfo=timezone.utc
        )

    def test_zulu_timestamp(self):
        assert parse_payment_date("2025-10-19T15:30:00Z") == datetime(
            2025, 10, 19, 15, 30, tzinfo=timezone.utc
        )

    def test_naive_datetime_is_business_wall_clock(self):
        assert parse_payment_date(datetime(2025, 10, 19, 22, 0)) == datetime(
            2025, 10, 20, 1, 0, tzinfo=timezone.utc
        )

    def test_business_date_crosses_utc_midnight(self):
        # 01:00 UTC is still the previous evening in Buenos Aires
        assert business_date(datetime(2025, 10, 20, 1, 0, tzinfo=timezone.utc)) == date(2025, 10, 19)

    def test_naive_values_taken_as_utc(self):
        assert as_utc(datetime(2025, 1, 1, 12, 0)) == datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)

    def test_start_of_business_day(self):
        assert start_of_business_day(date(2030, 1, 7)) == datetime(2030, 1, 7, 3, tzinfo=timezone.utc)
