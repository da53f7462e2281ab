"""
External collaborators consumed by the billing engine.

The engine depends only on these protocols. Simple configurable defaults are
provided so the engine runs end to end: a system clock, flat-rate tax by
jurisdiction, rule-based coupons and an offline payment gateway.
"""

import asyncio
from collections.abc import Awaitable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING, Literal, Protocol, TypeVar
from uuid import uuid4

import structlog

from cadence.platform.billing.exceptions import (
    BillingError,
    CollaboratorError,
    CollaboratorTimeoutError,
    CouponRejectedError,
)
from cadence.platform.billing.money_utils import ZERO, round2, to_decimal

if TYPE_CHECKING:
    from cadence.platform.billing.payments.models import Payment

logger = structlog.get_logger(__name__)

T = TypeVar("T")


# ============================================================================
# Clock
# ============================================================================


class ClockCollaborator(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    """Wall clock in UTC."""

    def now(self) -> datetime:
        return datetime.now(UTC)


class FixedClock:
    """Clock pinned to a moment; advanced explicitly."""

    def __init__(self, at: datetime) -> None:
        if at.tzinfo is None:
            raise ValueError("FixedClock requires a timezone-aware datetime")
        self._now = at

    def now(self) -> datetime:
        return self._now

    def set(self, at: datetime) -> None:
        self._now = at

    def advance(self, **kwargs: float) -> datetime:
        """Move forward by ``timedelta(**kwargs)`` and return the new time."""
        self._now = self._now + timedelta(**kwargs)
        return self._now


# ============================================================================
# Tax
# ============================================================================


@dataclass(frozen=True)
class TaxQuote:
    """Tax for one amount: rate in percent and the rounded tax."""

    rate: Decimal
    amount: Decimal


class TaxCollaborator(Protocol):
    async def compute_tax(
        self, amount: Decimal, country_code: str, state_code: str | None = None
    ) -> TaxQuote: ...


class FlatRateTaxCollaborator:
    """Percentage rates per jurisdiction.

    Rates are keyed by ``"CC-ST"`` (country and state) or ``"CC"``; the most
    specific key wins and unknown jurisdictions use ``default_rate``.
    """

    def __init__(
        self,
        rates: dict[str, Decimal] | None = None,
        default_rate: Decimal = ZERO,
    ) -> None:
        self.rates = {key.upper(): to_decimal(value) for key, value in (rates or {}).items()}
        self.default_rate = to_decimal(default_rate)

    def rate_for(self, country_code: str, state_code: str | None = None) -> Decimal:
        country = country_code.upper()
        if state_code:
            regional = self.rates.get(f"{country}-{state_code.upper()}")
            if regional is not None:
                return regional
        return self.rates.get(country, self.default_rate)

    async def compute_tax(
        self, amount: Decimal, country_code: str, state_code: str | None = None
    ) -> TaxQuote:
        rate = self.rate_for(country_code, state_code)
        return TaxQuote(rate=rate, amount=round2(to_decimal(amount) * rate / 100))


# ============================================================================
# Coupons
# ============================================================================


@dataclass(frozen=True)
class CouponReservation:
    """Discount granted for one invoice."""

    code: str
    discount_amount: Decimal
    max_redemptions: int | None = None
    max_redemptions_per_user: int | None = None


class CouponCollaborator(Protocol):
    async def validate_and_reserve(
        self, code: str, user_id: str, subtotal: Decimal
    ) -> CouponReservation:
        """Validate ``code`` for ``user_id`` and return the discount.

        Raises:
            CouponRejectedError: Code unknown, expired, inactive or not applicable
        """
        ...


@dataclass
class CouponRule:
    """Discount rule for one coupon code."""

    code: str
    discount_type: Literal["percentage", "fixed_amount"]
    discount_value: Decimal
    min_amount: Decimal = ZERO
    max_discount: Decimal | None = None
    valid_from: datetime | None = None
    valid_until: datetime | None = None
    is_active: bool = True
    max_redemptions: int | None = None
    max_redemptions_per_user: int | None = None

    def discount_for(self, subtotal: Decimal) -> Decimal:
        if self.discount_type == "percentage":
            discount = subtotal * self.discount_value / 100
        else:
            discount = self.discount_value
        if self.max_discount is not None:
            discount = min(discount, self.max_discount)
        return round2(min(discount, subtotal))


class StaticCouponCollaborator:
    """Coupon rules held in memory."""

    def __init__(self, rules: Iterable[CouponRule] = (), clock: ClockCollaborator | None = None) -> None:
        self.rules = {rule.code.upper(): rule for rule in rules}
        self.clock = clock or SystemClock()

    async def validate_and_reserve(
        self, code: str, user_id: str, subtotal: Decimal
    ) -> CouponReservation:
        rule = self.rules.get(code.upper())
        if rule is None:
            raise CouponRejectedError(f"Coupon {code} not found", code=code, reason="unknown")
        if not rule.is_active:
            raise CouponRejectedError(f"Coupon {code} is inactive", code=code, reason="inactive")

        now = self.clock.now()
        if rule.valid_from is not None and now < rule.valid_from:
            raise CouponRejectedError(f"Coupon {code} is not yet valid", code=code, reason="not_started")
        if rule.valid_until is not None and now > rule.valid_until:
            raise CouponRejectedError(f"Coupon {code} has expired", code=code, reason="expired")
        if subtotal < rule.min_amount:
            raise CouponRejectedError(
                f"Minimum purchase amount of {rule.min_amount} required",
                code=code,
                reason="min_amount",
            )

        return CouponReservation(
            code=rule.code,
            discount_amount=rule.discount_for(subtotal),
            max_redemptions=rule.max_redemptions,
            max_redemptions_per_user=rule.max_redemptions_per_user,
        )


# ============================================================================
# Addresses
# ============================================================================


@dataclass(frozen=True)
class BillingAddress:
    """Billing jurisdiction for a user."""

    country_code: str
    state_code: str | None = None
    postal_code: str | None = None


class AddressResolver(Protocol):
    async def __call__(self, user_id: str) -> BillingAddress | None: ...


async def no_address(user_id: str) -> BillingAddress | None:
    """Address resolver for deployments without an address book."""
    return None


# ============================================================================
# Payment gateway
# ============================================================================


@dataclass(frozen=True)
class PaymentOutcome:
    """Success or failure of one charge."""

    success: bool
    transaction_id: str | None = None
    failure_code: str | None = None
    failure_message: str | None = None


class PaymentGateway(Protocol):
    async def charge(self, payment: "Payment") -> PaymentOutcome: ...


@dataclass
class OfflinePaymentGateway:
    """Gateway for manual settlement: records every charge as approved.

    ``declines`` holds user ids whose charges are refused, for staging setups.
    """

    declines: set[str] = field(default_factory=set)

    async def charge(self, payment: "Payment") -> PaymentOutcome:
        if payment.user_id in self.declines:
            return PaymentOutcome(
                success=False,
                failure_code="card_declined",
                failure_message="Charge declined",
            )
        return PaymentOutcome(success=True, transaction_id=f"txn_{uuid4().hex[:16]}")


# ============================================================================
# Deadlines
# ============================================================================


async def call_with_deadline(awaitable: Awaitable[T], collaborator: str, timeout_seconds: float) -> T:
    """Await a collaborator call, bounded by ``timeout_seconds``.

    Billing errors raised by the collaborator propagate unchanged; anything else
    is wrapped in CollaboratorError so the enclosing transaction aborts.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout_seconds)
    except TimeoutError:
        logger.warning(
            "Collaborator call timed out",
            collaborator=collaborator,
            timeout_seconds=timeout_seconds,
        )
        raise CollaboratorTimeoutError(collaborator, timeout_seconds) from None
    except BillingError:
        raise
    except Exception as e:
        logger.error("Collaborator call failed", collaborator=collaborator, error=str(e))
        raise CollaboratorError(f"{collaborator} failed: {e}", collaborator) from e


__all__ = [
    "ClockCollaborator",
    "SystemClock",
    "FixedClock",
    "TaxQuote",
    "TaxCollaborator",
    "FlatRateTaxCollaborator",
    "CouponReservation",
    "CouponCollaborator",
    "CouponRule",
    "StaticCouponCollaborator",
    "BillingAddress",
    "AddressResolver",
    "no_address",
    "PaymentOutcome",
    "PaymentGateway",
    "OfflinePaymentGateway",
    "call_with_deadline",
]
