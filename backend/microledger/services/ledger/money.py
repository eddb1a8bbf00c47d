"""Decimal money helpers: amounts never pass through float arithmetic."""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation

from microledger.services.ledger.exceptions import InvalidAmountError

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def _to_cents(value: Decimal | int | float | str) -> tuple[Decimal, Decimal]:
    """Return *value* as an exact ``Decimal`` and rounded half up to cents."""
    # Floats go through str so 0.1 stays 0.1 rather than its binary approximation
    if isinstance(value, float):
        value = str(value)
    try:
        exact = Decimal(value)
        return exact, exact.quantize(CENT, rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError, TypeError) as exc:
        raise InvalidAmountError(f"Invalid monetary amount: {value!r}") from exc


def to_money(value: Decimal | int | float | str | None) -> Decimal:
    """Coerce *value* to a 2-decimal ``Decimal``, rounding half up.

    Meant for stored values and computed totals; caller-supplied amounts go
    through :func:`positive_money`, which refuses to round.
    """
    if value is None:
        return ZERO
    return _to_cents(value)[1]


def positive_money(value: Decimal | int | float | str) -> Decimal:
    """Validate a caller-supplied amount: positive and at most 2 decimal places."""
    exact, amount = _to_cents(value)
    if amount != exact:
        raise InvalidAmountError(f"Amount has more than 2 decimal places: {value!r}")
    if amount <= 0:
        raise InvalidAmountError(f"Amount must be greater than 0 (got {amount})")
    return amount
