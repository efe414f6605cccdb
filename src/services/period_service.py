"""Billing period arithmetic.

Periods are calendar months, half-open: ``[first of month, first of next month)``.
"""

import calendar
from dataclasses import dataclass
from datetime import date, timedelta


@dataclass(frozen=True)
class BillingPeriod:
    """One calendar month of billing."""

    start: date
    end: date

    @property
    def label(self) -> str:
        """Period label used in bill numbers, e.g. "202403"."""
        return self.start.strftime("%Y%m")

    def contains(self, day: date) -> bool:
        return self.start <= day < self.end

    def issue_date(self, billing_day: int) -> date:
        """Date bills for this period are issued, clamped to the month length."""
        last_day = calendar.monthrange(self.start.year, self.start.month)[1]
        return self.start.replace(day=min(max(billing_day, 1), last_day))

    def due_date(self, billing_day: int, due_days: int) -> date:
        return self.issue_date(billing_day) + timedelta(days=due_days)


def month_start(day: date) -> date:
    """First day of the month containing ``day``."""
    return day.replace(day=1)


def next_month(day: date) -> date:
    """First day of the month after the one containing ``day``."""
    first = month_start(day)
    if first.month == 12:
        return first.replace(year=first.year + 1, month=1)
    return first.replace(month=first.month + 1)


def billing_period(day: date) -> BillingPeriod:
    """Billing period containing ``day``."""
    return BillingPeriod(start=month_start(day), end=next_month(day))


__all__ = ["BillingPeriod", "billing_period", "month_start", "next_month"]
