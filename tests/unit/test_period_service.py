"""Unit tests for billing period arithmetic."""

from datetime import date

import pytest

from src.services.period_service import BillingPeriod, billing_period, month_start, next_month


class TestBillingPeriod:
    def test_period_for_mid_month_day(self):
        period = billing_period(date(2024, 3, 17))

        assert period == BillingPeriod(start=date(2024, 3, 1), end=date(2024, 4, 1))
        assert period.label == "202403"

    def test_december_rolls_into_next_year(self):
        assert next_month(date(2024, 12, 31)) == date(2025, 1, 1)

    def test_month_start(self):
        assert month_start(date(2024, 2, 29)) == date(2024, 2, 1)

    def test_half_open_bounds(self):
        period = billing_period(date(2024, 3, 1))

        assert period.contains(date(2024, 3, 1))
        assert period.contains(date(2024, 3, 31))
        assert not period.contains(date(2024, 4, 1))

    @pytest.mark.parametrize(
        "billing_day,expected",
        [(1, date(2024, 2, 1)), (15, date(2024, 2, 15)), (31, date(2024, 2, 29)), (0, date(2024, 2, 1))],
    )
    def test_issue_date_clamped_to_month(self, billing_day, expected):
        assert billing_period(date(2024, 2, 10)).issue_date(billing_day) == expected

    def test_due_date_counts_from_issue(self):
        assert billing_period(date(2024, 1, 1)).due_date(1, 5) == date(2024, 1, 6)
