"""Tests for the default collaborator implementations."""

import asyncio
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest

from cadence.platform.billing.collaborators import (
    CouponRule,
    FixedClock,
    FlatRateTaxCollaborator,
    OfflinePaymentGateway,
    StaticCouponCollaborator,
    call_with_deadline,
)
from cadence.platform.billing.exceptions import (
    CollaboratorError,
    CollaboratorTimeoutError,
    CouponRejectedError,
)
from cadence.platform.billing.payments.models import Payment, PaymentStatus

pytestmark = pytest.mark.unit

NOW = datetime(2025, 4, 1, tzinfo=UTC)


class TestFixedClock:
    def test_advance_and_set(self):
        clock = FixedClock(NOW)
        assert clock.advance(days=2, hours=3) == NOW + timedelta(days=2, hours=3)
        clock.set(NOW)
        assert clock.now() == NOW

    def test_rejects_naive_datetime(self):
        with pytest.raises(ValueError):
            FixedClock(datetime(2025, 4, 1))


class TestFlatRateTax:
    def test_most_specific_rate_wins(self):
        tax = FlatRateTaxCollaborator({"US": Decimal("5"), "us-ca": Decimal("8.25")})

        assert tax.rate_for("US", "CA") == Decimal("8.25")
        assert tax.rate_for("us", "NY") == Decimal("5")
        assert tax.rate_for("US") == Decimal("5")

    def test_unknown_jurisdiction_uses_default(self):
        tax = FlatRateTaxCollaborator({"US": Decimal("5")}, default_rate=Decimal("1"))
        assert tax.rate_for("FR") == Decimal("1")

    @pytest.mark.asyncio
    async def test_compute_tax_rounds_half_up(self):
        quote = await FlatRateTaxCollaborator({"US-CA": Decimal("8.25")}).compute_tax(
            Decimal("10.00"), "US", "CA"
        )
        assert quote.rate == Decimal("8.25")
        assert quote.amount == Decimal("0.83")


class TestStaticCoupons:
    @pytest.fixture
    def coupons(self):
        clock = FixedClock(NOW)
        return StaticCouponCollaborator(
            [
                CouponRule(
                    code="TENOFF",
                    discount_type="percentage",
                    discount_value=Decimal("10"),
                    max_discount=Decimal("5"),
                ),
                CouponRule(
                    code="FIVE",
                    discount_type="fixed_amount",
                    discount_value=Decimal("5"),
                    min_amount=Decimal("20"),
                ),
                CouponRule(
                    code="SOON",
                    discount_type="percentage",
                    discount_value=Decimal("10"),
                    valid_from=NOW + timedelta(days=1),
                ),
                CouponRule(
                    code="OFF",
                    discount_type="percentage",
                    discount_value=Decimal("10"),
                    is_active=False,
                ),
            ],
            clock=clock,
        )

    @pytest.mark.asyncio
    async def test_percentage_with_cap(self, coupons):
        small = await coupons.validate_and_reserve("tenoff", "user-1", Decimal("30"))
        large = await coupons.validate_and_reserve("TENOFF", "user-1", Decimal("200"))

        assert small.discount_amount == Decimal("3.00")
        assert large.discount_amount == Decimal("5.00")

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "code,subtotal,reason",
        [
            ("MISSING", "50", "unknown"),
            ("FIVE", "10", "min_amount"),
            ("SOON", "50", "not_started"),
            ("OFF", "50", "inactive"),
        ],
    )
    async def test_rejections(self, coupons, code, subtotal, reason):
        with pytest.raises(CouponRejectedError) as exc_info:
            await coupons.validate_and_reserve(code, "user-1", Decimal(subtotal))
        assert exc_info.value.context["reason"] == reason


class TestOfflineGateway:
    @pytest.mark.asyncio
    async def test_declines_listed_users(self):
        gateway = OfflinePaymentGateway(declines={"user-2"})
        payment = Payment(
            payment_id="pay_1",
            invoice_id="inv_1",
            user_id="user-1",
            amount=Decimal("10"),
            currency="USD",
            status=PaymentStatus.PENDING,
        )

        approved = await gateway.charge(payment)
        declined = await gateway.charge(payment.model_copy(update={"user_id": "user-2"}))

        assert approved.success and approved.transaction_id.startswith("txn_")
        assert not declined.success
        assert declined.failure_code == "card_declined"


class TestCallWithDeadline:
    @pytest.mark.asyncio
    async def test_returns_result(self):
        async def answer():
            return 42

        assert await call_with_deadline(answer(), "answer", 1) == 42

    @pytest.mark.asyncio
    async def test_timeout(self):
        with pytest.raises(CollaboratorTimeoutError) as exc_info:
            await call_with_deadline(asyncio.sleep(1), "tax", 0.01)
        assert exc_info.value.context["collaborator"] == "tax"

    @pytest.mark.asyncio
    async def test_billing_errors_pass_through(self):
        async def reject():
            raise CouponRejectedError("nope", code="X", reason="expired")

        with pytest.raises(CouponRejectedError):
            await call_with_deadline(reject(), "coupon", 1)

    @pytest.mark.asyncio
    async def test_other_errors_are_wrapped(self):
        async def explode():
            raise ConnectionError("reset by peer")

        with pytest.raises(CollaboratorError) as exc_info:
            await call_with_deadline(explode(), "payment_gateway", 1)
        assert isinstance(exc_info.value.__cause__, ConnectionError)
