import json
import os
import tempfile
import unittest
from decimal import Decimal

from subtrack.currency_conversion import (
    ExchangeRateTable,
    convert_amount,
    convert_many,
    format_currency,
    load_rate_table,
    normalize_currency,
)


class CurrencyConversionTests(unittest.TestCase):
    def setUp(self) -> None:
        self.rates = ExchangeRateTable(
            rates={
                "USD": Decimal("1"),
                "CLP": Decimal("950"),
                "EUR": Decimal("0.92"),
                "GBP": Decimal("0.79"),
            }
        )

    def test_same_currency_returns_original_amount(self) -> None:
        amount = convert_amount(Decimal("12.50"), "EUR", "EUR", rate_table=self.rates)

        self.assertEqual(amount, Decimal("12.50"))

    def test_converts_from_base_with_forward_rate(self) -> None:
        amount = convert_amount(Decimal("100"), "USD", "CLP", rate_table=self.rates)

        self.assertEqual(amount, Decimal("95000"))

    def test_converts_to_base_with_inverse_rate(self) -> None:
        amount = convert_amount(Decimal("95000"), "CLP", "USD", rate_table=self.rates)

        self.assertEqual(amount, Decimal("100"))

    def test_cross_conversion_pivots_through_base(self) -> None:
        amount = convert_amount(Decimal("100"), "EUR", "GBP", rate_table=self.rates)

        expected = Decimal("100") / Decimal("0.92") * Decimal("0.79")
        self.assertEqual(amount, expected)

    def test_round_trip_is_within_tolerance(self) -> None:
        original = Decimal("9.99")
        there = convert_amount(original, "EUR", "CLP", rate_table=self.rates)
        back = convert_amount(there, "CLP", "EUR", rate_table=self.rates)

        self.assertAlmostEqual(float(back), float(original), places=9)

    def test_unknown_currency_is_treated_as_base(self) -> None:
        amount = convert_amount(Decimal("10"), "XYZ", "CLP", rate_table=self.rates)

        self.assertEqual(amount, Decimal("9500"))

    def test_accepts_float_and_string_amounts(self) -> None:
        self.assertEqual(convert_amount(1.5, "USD", "CLP", rate_table=self.rates), Decimal("1425.0"))
        self.assertEqual(convert_amount("2", "USD", "CLP", rate_table=self.rates), Decimal("1900"))

    def test_convert_many_sums_each_item_independently(self) -> None:
        total = convert_many(
            [(Decimal("10"), "USD"), (Decimal("9500"), "CLP"), (Decimal("5"), "USD")],
            "USD",
            rate_table=self.rates,
        )

        self.assertEqual(total, Decimal("25"))

    def test_convert_many_of_nothing_is_zero(self) -> None:
        self.assertEqual(convert_many([], "USD", rate_table=self.rates), Decimal("0"))

    def test_default_table_includes_clp(self) -> None:
        self.assertEqual(convert_amount(Decimal("100"), "USD", "CLP"), Decimal("95000"))


class CurrencyHelpersTests(unittest.TestCase):
    def test_normalize_currency_uppercases(self) -> None:
        self.assertEqual(normalize_currency(" clp "), "CLP")

    def test_normalize_currency_rejects_bad_codes(self) -> None:
        with self.assertRaises(ValueError):
            normalize_currency("US")
        with self.assertRaises(ValueError):
            normalize_currency("U5D")

    def test_format_currency(self) -> None:
        self.assertEqual(format_currency(Decimal("9990"), "CLP"), "9.990 CLP")
        self.assertEqual(format_currency(Decimal("1234.5"), "USD"), "$1,234.50")
        self.assertEqual(format_currency(Decimal("1234.5"), "EUR"), "1.234,50 EUR")

    def test_load_rate_table_from_json(self) -> None:
        handle, path = tempfile.mkstemp(suffix=".json")
        self.addCleanup(os.remove, path)
        with os.fdopen(handle, "w", encoding="utf-8") as file:
            json.dump({"clp": 900, "EUR": "0.9"}, file)

        table = load_rate_table(path)

        self.assertEqual(table.get_rate("CLP"), Decimal("900"))
        self.assertEqual(table.get_rate("EUR"), Decimal("0.9"))
        self.assertEqual(table.get_rate("USD"), Decimal("1"))

    def test_load_rate_table_rejects_non_positive_rates(self) -> None:
        handle, path = tempfile.mkstemp(suffix=".json")
        self.addCleanup(os.remove, path)
        with os.fdopen(handle, "w", encoding="utf-8") as file:
            json.dump({"CLP": 0}, file)

        with self.assertRaises(ValueError):
            load_rate_table(path)


if __name__ == "__main__":
    unittest.main()
