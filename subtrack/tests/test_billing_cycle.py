import unittest
from datetime import datetime
from decimal import Decimal

from subtrack.billing_cycle import (
    BillingCycle,
    calculate_next_billing,
    coerce_billing_cycle,
    monthly_equivalent,
    weekly_equivalent,
)


class MonthlyEquivalentTests(unittest.TestCase):
    def test_monthly_is_unchanged(self) -> None:
        self.assertEqual(monthly_equivalent(Decimal("12.99"), BillingCycle.MONTHLY), Decimal("12.99"))

    def test_longer_cycles_divide_by_period_months(self) -> None:
        self.assertEqual(monthly_equivalent(Decimal("120"), BillingCycle.ANNUAL), Decimal("10"))
        self.assertEqual(monthly_equivalent(Decimal("30"), BillingCycle.QUARTERLY), Decimal("10"))
        self.assertEqual(monthly_equivalent(Decimal("60"), BillingCycle.SEMI_ANNUAL), Decimal("10"))

    def test_weekly_multiplies_by_weeks_per_month(self) -> None:
        self.assertEqual(monthly_equivalent(Decimal("10"), BillingCycle.WEEKLY), Decimal("43.30"))

    def test_accepts_raw_strings(self) -> None:
        self.assertEqual(monthly_equivalent(Decimal("120"), "annual"), Decimal("10"))
        self.assertEqual(monthly_equivalent(Decimal("60"), "semi-annual"), Decimal("10"))

    def test_unknown_cycle_is_logged_and_treated_as_monthly(self) -> None:
        with self.assertLogs("subtrack.billing_cycle", level="WARNING"):
            amount = monthly_equivalent(Decimal("15"), "FORTNIGHTLY")

        self.assertEqual(amount, Decimal("15"))


class WeeklyEquivalentTests(unittest.TestCase):
    def test_weekly_is_unchanged(self) -> None:
        self.assertEqual(weekly_equivalent(Decimal("7"), BillingCycle.WEEKLY), Decimal("7"))

    def test_monthly_divides_by_weeks_per_month(self) -> None:
        self.assertEqual(weekly_equivalent(Decimal("43.30"), BillingCycle.MONTHLY), Decimal("10"))

    def test_annual_goes_through_monthly(self) -> None:
        self.assertEqual(weekly_equivalent(Decimal("519.60"), BillingCycle.ANNUAL), Decimal("10"))


class CoerceBillingCycleTests(unittest.TestCase):
    def test_enum_passes_through(self) -> None:
        self.assertIs(coerce_billing_cycle(BillingCycle.QUARTERLY), BillingCycle.QUARTERLY)

    def test_normalizes_case_and_separators(self) -> None:
        self.assertIs(coerce_billing_cycle(" weekly "), BillingCycle.WEEKLY)
        self.assertIs(coerce_billing_cycle("Semi_Annual"), BillingCycle.SEMI_ANNUAL)


class NextBillingTests(unittest.TestCase):
    def test_billing_day_later_this_month(self) -> None:
        now = datetime(2024, 5, 10, 9, 30)

        self.assertEqual(calculate_next_billing(20, BillingCycle.MONTHLY, now=now), datetime(2024, 5, 20))

    def test_passed_billing_day_advances_one_cycle(self) -> None:
        now = datetime(2024, 5, 10, 9, 30)

        self.assertEqual(calculate_next_billing(5, BillingCycle.MONTHLY, now=now), datetime(2024, 6, 5))
        self.assertEqual(calculate_next_billing(5, BillingCycle.QUARTERLY, now=now), datetime(2024, 8, 5))
        self.assertEqual(calculate_next_billing(5, BillingCycle.ANNUAL, now=now), datetime(2025, 5, 5))
        self.assertEqual(calculate_next_billing(5, BillingCycle.WEEKLY, now=now), datetime(2024, 5, 12))

    def test_billing_day_today_rolls_forward(self) -> None:
        now = datetime(2024, 5, 10, 0, 0, 1)

        self.assertEqual(calculate_next_billing(10, BillingCycle.MONTHLY, now=now), datetime(2024, 6, 10))

    def test_clamps_to_month_length(self) -> None:
        now = datetime(2024, 1, 31, 12, 0)

        self.assertEqual(calculate_next_billing(31, BillingCycle.MONTHLY, now=now), datetime(2024, 2, 29))
        self.assertEqual(calculate_next_billing(30, BillingCycle.MONTHLY, now=datetime(2024, 2, 1)), datetime(2024, 2, 29))

    def test_rejects_out_of_range_day(self) -> None:
        with self.assertRaises(ValueError):
            calculate_next_billing(0, BillingCycle.MONTHLY)
        with self.assertRaises(ValueError):
            calculate_next_billing(32, BillingCycle.MONTHLY)


if __name__ == "__main__":
    unittest.main()
