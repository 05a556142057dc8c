"""Billing cycle and word-usage window calculation.

Monthly plans measure usage over the provider's billing period. Annual plans
are billed once a year but usage still resets monthly, on the day of month
the billing cycle is anchored on (the anchor day). Months too short for the
anchor day clamp to their last day.

Everything here is pure; windows are recomputed from the subscription and
the current time on every query.
"""

import calendar
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from app.modules.billing.stripe_client import StripeSubscriptionData


MONTHLY = "month"
ANNUAL = "year"


@dataclass(frozen=True)
class BillingCycleWindow:
    """Half-open usage window ``[start, end)``."""
    start: datetime
    end: datetime

    def __post_init__(self):
        if self.end <= self.start:
            raise ValueError("Billing cycle window must end after it starts")

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment < self.end

    @property
    def inclusive_end(self) -> datetime:
        """Last representable instant inside the window, for display."""
        return self.end - timedelta(microseconds=1)

    @property
    def duration(self) -> timedelta:
        return self.end - self.start


def ensure_utc(moment: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def _month_index(moment: datetime) -> int:
    return moment.year * 12 + (moment.month - 1)


def anchor_boundary(anchor: datetime, month_index: int) -> datetime:
    """Anchor's day and time of day placed in the given month.

    The day clamps to the month's last day, so an anchor on the 31st lands
    on the 30th in April and the 28th or 29th in February.

    Args:
        anchor: Instant whose day-of-month and time of day are repeated
        month_index: ``year * 12 + month - 1`` of the target month

    Returns:
        The boundary instant in the anchor's timezone
    """
    year, month_zero = divmod(month_index, 12)
    month = month_zero + 1
    last_day = calendar.monthrange(year, month)[1]
    return anchor.replace(year=year, month=month, day=min(anchor.day, last_day))


def cycle_anchor(subscription: StripeSubscriptionData) -> datetime:
    """Instant whose day and time of day the billing boundaries repeat.

    The provider clamps ``current_period_start`` in short months, so a cycle
    anchored on the 31st can report a period starting on the 28th. The
    subscription's own billing cycle anchor is used when it is known.
    """
    return ensure_utc(subscription.billing_cycle_anchor or subscription.current_period_start)


def _annual_sub_window_start_index(anchor: datetime, now: datetime) -> int:
    index = _month_index(now)
    if now < anchor_boundary(anchor, index):
        index -= 1
    return index


def usage_window_for(
    subscription: StripeSubscriptionData,
    now: Optional[datetime] = None,
) -> BillingCycleWindow:
    """Get the window word usage is currently measured over.

    Args:
        subscription: Canonical subscription
        now: Current instant (defaults to the wall clock)

    Returns:
        BillingCycleWindow containing ``now`` for annual plans, or the
        provider's current period for monthly plans
    """
    period_start = ensure_utc(subscription.current_period_start)
    period_end = ensure_utc(subscription.current_period_end)

    if subscription.interval != ANNUAL:
        return BillingCycleWindow(start=period_start, end=period_end)

    now = ensure_utc(now or datetime.now(timezone.utc))
    anchor = cycle_anchor(subscription)
    index = _annual_sub_window_start_index(anchor, now)
    return BillingCycleWindow(
        start=anchor_boundary(anchor, index),
        end=anchor_boundary(anchor, index + 1),
    )


def historical_windows(
    subscription: StripeSubscriptionData,
    count: int,
    now: Optional[datetime] = None,
) -> list[BillingCycleWindow]:
    """Get the current usage window and the ``count - 1`` before it.

    Windows are most recent first and contiguous: each window ends exactly
    where the next more recent one starts. A step is one month for monthly
    plans and one anchor-month for annual plans.

    Args:
        subscription: Canonical subscription
        count: Number of windows, including the current one
        now: Current instant (defaults to the wall clock)

    Returns:
        List of BillingCycleWindow, index 0 being the current window
    """
    if count < 1:
        raise ValueError("count must be at least 1")

    current = usage_window_for(subscription, now)
    anchor = cycle_anchor(subscription)
    current_index = _month_index(current.start)

    windows = [current]
    for step in range(1, count):
        windows.append(BillingCycleWindow(
            start=anchor_boundary(anchor, current_index - step),
            end=windows[-1].start,
        ))
    return windows
