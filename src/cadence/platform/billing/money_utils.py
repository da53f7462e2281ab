"""
Money and currency utilities using py-moneyed and Babel.

Provides currency validation, round-half-up quantization and locale-aware
formatting for invoice descriptions.
"""

from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from babel import Locale
from babel.core import UnknownLocaleError
from babel.numbers import format_currency
from moneyed import Currency, Money, get_currency
from moneyed.classes import CurrencyDoesNotExist

# Default locale for formatting
DEFAULT_LOCALE = "en_US"

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_decimal(amount: int | float | Decimal | str) -> Decimal:
    """Convert a numeric input to Decimal without binary float artifacts."""
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))


def round2(amount: int | float | Decimal | str) -> Decimal:
    """Round to 2 decimal places, half up (0.005 -> 0.01)."""
    return to_decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)


class MoneyHandler:
    """Central handler for money operations with proper error handling."""

    def __init__(self, default_currency: str = "USD", default_locale: str = DEFAULT_LOCALE) -> None:
        self.default_currency = self.validate_currency(default_currency)
        self.default_locale = self._validate_locale(default_locale)

    def validate_currency(self, currency_code: str) -> Currency:
        """Validate and return Currency object."""
        try:
            return get_currency(currency_code.upper())
        except CurrencyDoesNotExist:
            raise ValueError(f"Invalid currency code: {currency_code}")

    def _validate_locale(self, locale_code: str) -> str:
        """Validate locale code."""
        try:
            Locale.parse(locale_code)
            return locale_code
        except (UnknownLocaleError, ValueError):
            return DEFAULT_LOCALE

    def create_money(
        self, amount: int | float | Decimal | str, currency: str | None = None
    ) -> Money:
        """Create Money object with proper validation."""
        currency = currency or self.default_currency.code
        return Money(amount=to_decimal(amount), currency=self.validate_currency(currency))

    def format_money(self, money: Money, locale: str | None = None, **kwargs: Any) -> str:
        """Format Money object with locale-aware formatting."""
        validated_locale = self._validate_locale(locale or self.default_locale)

        try:
            return format_currency(
                number=money.amount, currency=money.currency.code, locale=validated_locale, **kwargs
            )
        except (TypeError, ValueError):
            # Fallback to simple formatting if locale issues
            return f"{money.currency.code} {money.amount}"


# Global instance for convenience
money_handler = MoneyHandler()


def format_amount(amount: Decimal, currency: str, locale: str | None = None) -> str:
    """Format a decimal amount in the given currency."""
    return money_handler.format_money(money_handler.create_money(amount, currency), locale)


def normalize_currency(currency: str) -> str:
    """Validate an ISO 4217 code and return it upper-cased."""
    return money_handler.validate_currency(currency).code


__all__ = [
    "CENT",
    "ZERO",
    "MoneyHandler",
    "money_handler",
    "to_decimal",
    "round2",
    "format_amount",
    "normalize_currency",
]
