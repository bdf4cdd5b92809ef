import unittest
from datetime import datetime, timedelta
from decimal import Decimal

from subtrack.billing_cycle import BillingCycle
from subtrack.currency_conversion import ExchangeRateTable
from subtrack.spend_aggregator import CategoryTotal, aggregate_spend, upcoming_bills
from subtrack.subscriptions import Category, Subscription, SubscriptionStatus

NOW = datetime(2024, 6, 15, 10, 0)
RATES = ExchangeRateTable(rates={"USD": Decimal("1"), "CLP": Decimal("950")})


def make_subscription(**overrides) -> Subscription:
    values = {
        "id": 1,
        "name": "Netflix",
        "price": Decimal("100"),
        "currency": "USD",
        "billing_cycle": BillingCycle.MONTHLY,
        "status": SubscriptionStatus.ACTIVE,
        "category": Category.STREAMING,
        "next_billing": NOW + timedelta(days=3),
        "start_date": datetime(2024, 1, 1),
    }
    values.update(overrides)
    return Subscription(**values)


class AggregateSpendTests(unittest.TestCase):
    def test_empty_input_yields_zeros(self) -> None:
        summary = aggregate_spend([], "USD", rate_table=RATES)

        self.assertEqual(summary.total_active, 0)
        self.assertEqual(summary.monthly_total, Decimal("0"))
        self.assertEqual(summary.annual_total, Decimal("0"))
        self.assertEqual(summary.by_category, {})

    def test_converts_to_display_currency(self) -> None:
        summary = aggregate_spend([make_subscription()], "CLP", rate_table=RATES)

        self.assertEqual(summary.monthly_total, Decimal("95000"))
        self.assertEqual(summary.annual_total, Decimal("1140000"))
        self.assertEqual(summary.display_currency, "CLP")

    def test_weekly_subscription_is_normalized_to_month(self) -> None:
        summary = aggregate_spend(
            [make_subscription(price=Decimal("10"), billing_cycle=BillingCycle.WEEKLY)],
            "USD",
            rate_table=RATES,
        )

        self.assertEqual(summary.monthly_total, Decimal("43.30"))
        self.assertEqual(summary.annual_total, Decimal("519.60"))

    def test_only_active_subscriptions_count(self) -> None:
        subscriptions = [
            make_subscription(id=1),
            make_subscription(id=2, status=SubscriptionStatus.PAUSED),
            make_subscription(id=3, status=SubscriptionStatus.CANCELLED),
            make_subscription(id=4, status=SubscriptionStatus.TRIAL),
        ]

        summary = aggregate_spend(subscriptions, "USD", rate_table=RATES)

        self.assertEqual(summary.total_active, 1)
        self.assertEqual(summary.monthly_total, Decimal("100"))

    def test_totals_are_rounded_and_annual_is_twelve_months(self) -> None:
        subscriptions = [
            make_subscription(id=1, price=Decimal("10"), billing_cycle=BillingCycle.QUARTERLY),
            make_subscription(id=2, price=Decimal("9.99"), billing_cycle=BillingCycle.ANNUAL),
        ]

        summary = aggregate_spend(subscriptions, "USD", rate_table=RATES)

        self.assertEqual(summary.monthly_total, Decimal("4.17"))
        self.assertEqual(summary.annual_total, summary.monthly_total * 12)

    def test_category_totals_are_converted_but_not_normalized(self) -> None:
        subscriptions = [
            make_subscription(id=1, price=Decimal("120"), billing_cycle=BillingCycle.ANNUAL),
            make_subscription(id=2, price=Decimal("10")),
            make_subscription(id=3, price=Decimal("9500"), currency="CLP", category=Category.MUSIC),
        ]

        summary = aggregate_spend(subscriptions, "USD", rate_table=RATES)

        self.assertEqual(
            summary.by_category,
            {
                Category.STREAMING: CategoryTotal(count=2, total=Decimal("130.00")),
                Category.MUSIC: CategoryTotal(count=1, total=Decimal("10.00")),
            },
        )
        self.assertEqual(summary.monthly_total, Decimal("30.00"))


class UpcomingBillsTests(unittest.TestCase):
    def test_selects_active_bills_within_thirty_days_sorted(self) -> None:
        subscriptions = [
            make_subscription(id=1, next_billing=NOW + timedelta(days=20)),
            make_subscription(id=2, next_billing=NOW + timedelta(days=2)),
            make_subscription(id=3, next_billing=NOW + timedelta(days=31)),
            make_subscription(id=4, next_billing=NOW - timedelta(hours=1)),
            make_subscription(id=5, next_billing=NOW + timedelta(days=1), status=SubscriptionStatus.TRIAL),
        ]

        bills = upcoming_bills(subscriptions, now=NOW)

        self.assertEqual([sub.id for sub in bills], [2, 1])

    def test_caps_to_five(self) -> None:
        subscriptions = [
            make_subscription(id=index, next_billing=NOW + timedelta(days=index))
            for index in range(1, 9)
        ]

        bills = upcoming_bills(subscriptions, now=NOW)

        self.assertEqual([sub.id for sub in bills], [1, 2, 3, 4, 5])


if __name__ == "__main__":
    unittest.main()
