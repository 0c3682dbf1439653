"""Dunning policy, billing-period arithmetic and discount math.

Pure functions and value objects; nothing here touches the database.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal

from dateutil.relativedelta import relativedelta

from billing_engine.config import Settings, settings
from billing_engine.modules.billing.models import BillingCycle, DiscountType, ReminderType


CENT = Decimal("0.01")

_CYCLE_STEPS = {
    BillingCycle.MONTHLY: relativedelta(months=1),
    BillingCycle.QUARTERLY: relativedelta(months=3),
    BillingCycle.YEARLY: relativedelta(years=1),
}


@dataclass(frozen=True)
class DunningPolicy:
    """Retry and reminder schedule for failed payments.

    ``max_retries`` is the single limit consulted by the payment
    processor, manual retries and the overdue sweep.
    """

    max_retries: int
    retry_days: tuple[int, ...]
    reminder_days: tuple[int, ...]
    cancel_after_days: int

    @classmethod
    def from_settings(cls, config: Settings | None = None) -> "DunningPolicy":
        config = config or settings
        return cls(
            max_retries=config.dunning_max_retries,
            retry_days=tuple(config.dunning_retry_days),
            reminder_days=tuple(config.dunning_reminder_days),
            cancel_after_days=config.dunning_cancel_after_days,
        )

    def next_attempt_at(self, attempt_number: int, now: datetime) -> datetime | None:
        """When to retry after the given (1-based) attempt failed.

        Returns None once the schedule has no entry for the attempt.
        """
        if attempt_number < 1 or attempt_number > len(self.retry_days):
            return None
        return now + timedelta(days=self.retry_days[attempt_number - 1])

    def is_exhausted(self, attempts: int) -> bool:
        return attempts >= self.max_retries

    def cancel_at(self, now: datetime) -> datetime:
        return now + timedelta(days=self.cancel_after_days)

    def reminder_schedule(
        self, due_date: datetime, now: datetime
    ) -> list[tuple[ReminderType, datetime]]:
        """Reminder times around a due date, skipping any in the past."""
        schedule = []
        for days in self.reminder_days:
            scheduled_for = due_date + timedelta(days=days)
            if scheduled_for < now:
                continue
            reminder_type = (
                ReminderType.PAYMENT_DUE if days <= 0 else ReminderType.PAYMENT_OVERDUE
            )
            schedule.append((reminder_type, scheduled_for))
        return schedule


def advance_period(start: datetime, cycle: BillingCycle) -> datetime:
    """End of a billing period that begins at ``start``.

    Calendar-aware: a monthly period starting 2024-01-31 ends 2024-02-29.
    """
    return start + _CYCLE_STEPS[cycle]


def monthly_amount(amount: Decimal, cycle: BillingCycle) -> Decimal:
    """Normalise a per-period amount to a monthly figure (for MRR)."""
    if cycle == BillingCycle.YEARLY:
        return amount / 12
    if cycle == BillingCycle.QUARTERLY:
        return amount / 3
    return amount


def to_cents(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def calculate_discount(
    amount: Decimal,
    discount_type: DiscountType,
    discount_value: Decimal,
    max_discount_amount: Decimal | None = None,
) -> Decimal:
    """Discount a coupon grants on ``amount``; never more than the amount."""
    if discount_type == DiscountType.PERCENTAGE:
        discount = amount * discount_value / 100
        if max_discount_amount is not None:
            discount = min(discount, max_discount_amount)
    else:
        discount = discount_value
    return to_cents(max(Decimal(0), min(discount, amount)))
