"""
Proration calculations.

Pure functions over Decimal. Every amount is rounded to cents with
ROUND_HALF_UP, and day counts are whole days clamped to the period.

Two day bases are used:

* Within a known period (upgrade, downgrade, cancellation, grace) the daily
  rate is ``price / period length in days``, so a refund plus what was already
  used never exceeds the price.
* Where only a cycle is known (cross-cycle changes, trial conversion) the
  cycle's fixed divisor applies: 30, 90 or 365 days.

Neither is calendar-accurate.
"""

from datetime import datetime
from decimal import Decimal

import structlog

from cadence.platform.billing.catalog.models import BillingCycle
from cadence.platform.billing.money_utils import ZERO, round2, to_decimal
from cadence.platform.billing.subscriptions.models import ProrationResult

logger = structlog.get_logger(__name__)

SECONDS_PER_HOUR = 3600


def whole_days(start: datetime, end: datetime) -> int:
    """Full days from ``start`` to ``end``; never negative."""
    return max(0, (end - start).days)


def _period_days(period_start: datetime, period_end: datetime) -> int:
    days = whole_days(period_start, period_end)
    if days <= 0:
        raise ValueError(
            f"Billing period must span at least one day: {period_start} - {period_end}"
        )
    return days


def _remaining_days(period_start: datetime, period_end: datetime, at: datetime) -> tuple[int, int]:
    total = _period_days(period_start, period_end)
    return total, min(total, whole_days(at, period_end))


def daily_rate(price: Decimal, cycle: BillingCycle) -> Decimal:
    """Unrounded price per day using the cycle divisor."""
    return to_decimal(price) / cycle.proration_days


def upgrade_proration(
    old_price: Decimal,
    new_price: Decimal,
    period_start: datetime,
    period_end: datetime,
    change_date: datetime,
) -> Decimal:
    """Amount to charge now for moving to a pricier plan mid-period.

    ``new plan cost for the remaining days - unused credit of the old plan``,
    floored at zero.

    Example:
        $10 -> $30 on a 30-day period, changed on day 15: 15.00 - 5.00 = 10.00
    """
    total, remaining = _remaining_days(period_start, period_end, change_date)
    unused_credit = to_decimal(old_price) * remaining / total
    new_cost = to_decimal(new_price) * remaining / total
    proration = max(ZERO, round2(new_cost - unused_credit))

    logger.debug(
        "Upgrade proration calculated",
        total_days=total,
        remaining_days=remaining,
        unused_credit=str(round2(unused_credit)),
        new_cost=str(round2(new_cost)),
        proration=str(proration),
    )
    return proration


def downgrade_credit(
    old_price: Decimal,
    new_price: Decimal,
    period_start: datetime,
    period_end: datetime,
    change_date: datetime,
) -> Decimal:
    """Signed difference for the remaining days: ``new cost - old cost``.

    Negative when the new plan is cheaper. Used for estimates only; downgrades
    take effect at the next renewal and are never credited.
    """
    total, remaining = _remaining_days(period_start, period_end, change_date)
    old_cost = to_decimal(old_price) * remaining / total
    new_cost = to_decimal(new_price) * remaining / total
    return round2(new_cost - old_cost)


def cross_cycle_proration(
    old_price: Decimal,
    old_cycle: BillingCycle,
    new_price: Decimal,
    new_cycle: BillingCycle,
    period_end: datetime,
    change_date: datetime,
) -> Decimal:
    """Signed proration between cycles, each side at its own cycle rate."""
    remaining = whole_days(change_date, period_end)
    unused_credit = daily_rate(old_price, old_cycle) * remaining
    new_cost = daily_rate(new_price, new_cycle) * remaining
    return round2(new_cost - unused_credit)


def cancellation_refund(
    price: Decimal,
    period_start: datetime,
    period_end: datetime,
    cancel_date: datetime,
) -> Decimal:
    """Unused value of the current period, floored at zero."""
    total = _period_days(period_start, period_end)
    used = min(total, whole_days(period_start, cancel_date))
    refund = to_decimal(price) * (total - used) / total
    return max(ZERO, round2(refund))


def trial_conversion_proration(
    price: Decimal,
    trial_end: datetime,
    period_end: datetime,
    cycle: BillingCycle = BillingCycle.MONTHLY,
) -> Decimal:
    """Charge for the part of the period after the trial ends.

    Full price when the period ends at or before the trial end. The result is
    not capped at the price: a period longer than the cycle divisor (e.g. a
    31-day month) costs slightly more than one cycle.
    """
    days = whole_days(trial_end, period_end)
    if days <= 0:
        return round2(price)
    return round2(daily_rate(price, cycle) * days)


def within_grace_period(period_start: datetime, change_date: datetime, grace_hours: float) -> bool:
    """Whether a change falls inside the no-proration window after period start."""
    if grace_hours <= 0:
        return False
    hours_since_start = (change_date - period_start).total_seconds() / SECONDS_PER_HOUR
    return hours_since_start <= grace_hours


def grace_period_proration(
    old_price: Decimal,
    new_price: Decimal,
    period_start: datetime,
    period_end: datetime,
    change_date: datetime,
    grace_hours: float = 24,
) -> Decimal:
    """Upgrade proration, except zero within ``grace_hours`` of period start.

    A ``grace_hours`` of 0 disables the window.
    """
    if within_grace_period(period_start, change_date, grace_hours):
        logger.debug("Change within grace period, no proration", grace_hours=grace_hours)
        return ZERO
    return upgrade_proration(old_price, new_price, period_start, period_end, change_date)


def calculate_plan_change(
    old_price: Decimal,
    new_price: Decimal,
    period_start: datetime,
    period_end: datetime,
    change_date: datetime,
    grace_hours: float = 0,
) -> ProrationResult:
    """Full breakdown of a plan change for previews."""
    total, remaining = _remaining_days(period_start, period_end, change_date)
    grace = within_grace_period(period_start, change_date, grace_hours)

    if grace:
        charge = ZERO
        net = ZERO
    else:
        charge = upgrade_proration(old_price, new_price, period_start, period_end, change_date)
        net = downgrade_credit(old_price, new_price, period_start, period_end, change_date)

    return ProrationResult(
        old_price=round2(old_price),
        new_price=round2(new_price),
        charge_amount=charge,
        credit_amount=round2(to_decimal(old_price) * remaining / total),
        net_amount=net,
        days_total=total,
        days_remaining=remaining,
        grace_applied=grace,
    )


__all__ = [
    "whole_days",
    "daily_rate",
    "upgrade_proration",
    "downgrade_credit",
    "cross_cycle_proration",
    "cancellation_refund",
    "trial_conversion_proration",
    "within_grace_period",
    "grace_period_proration",
    "calculate_plan_change",
]
