from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
import json
from pathlib import Path
from typing import Iterable, Mapping

BASE_CURRENCY = "USD"

DEFAULT_RATES: dict[str, Decimal] = {
    "USD": Decimal("1"),
    "CLP": Decimal("950"),
    "EUR": Decimal("0.92"),
    "GBP": Decimal("0.79"),
    "MXN": Decimal("17.5"),
    "ARS": Decimal("1000"),
    "BRL": Decimal("5.0"),
    "COP": Decimal("4000"),
}

SUPPORTED_CURRENCIES: list[dict[str, str]] = [
    {"value": "USD", "label": "USD ($)", "symbol": "$"},
    {"value": "CLP", "label": "CLP (Chilean Peso)", "symbol": "CLP"},
    {"value": "EUR", "label": "EUR (€)", "symbol": "€"},
    {"value": "GBP", "label": "GBP (£)", "symbol": "£"},
    {"value": "MXN", "label": "MXN (Mexican Peso)", "symbol": "$"},
    {"value": "ARS", "label": "ARS (Argentine Peso)", "symbol": "$"},
    {"value": "BRL", "label": "BRL (Real)", "symbol": "R$"},
    {"value": "COP", "label": "COP (Colombian Peso)", "symbol": "$"},
]

ONE = Decimal("1")
CENT = Decimal("0.01")


@dataclass(frozen=True)
class ExchangeRateTable:
    """Static FX rates.

    Rates are expressed as currency units per 1 unit of the base currency.
    Codes missing from the table are treated as the base currency.
    """

    rates: Mapping[str, Decimal] = None
    base_currency: str = BASE_CURRENCY

    def __post_init__(self) -> None:
        object.__setattr__(self, "rates", dict(self.rates or DEFAULT_RATES))

    def get_rate(self, currency: str) -> Decimal:
        return self.rates.get(currency.strip().upper(), ONE)

    @property
    def currencies(self) -> list[str]:
        return sorted(self.rates)


DEFAULT_RATE_TABLE = ExchangeRateTable()


def load_rate_table(path: str | Path) -> ExchangeRateTable:
    """Load a rate table from a JSON object of ``{"CODE": rate}`` pairs."""
    with open(path, encoding="utf-8") as handle:
        payload = json.load(handle)
    if not isinstance(payload, dict):
        raise ValueError("Exchange rate file must contain a JSON object.")
    rates = {normalize_currency(code): Decimal(str(value)) for code, value in payload.items()}
    for code, rate in rates.items():
        if rate <= 0:
            raise ValueError(f"Exchange rate for {code} must be greater than zero.")
    rates.setdefault(BASE_CURRENCY, ONE)
    return ExchangeRateTable(rates=rates)


def convert_amount(
    amount: Decimal | int | float | str,
    source_currency: str,
    target_currency: str,
    rate_table: ExchangeRateTable | None = None,
) -> Decimal:
    """Convert a monetary amount by pivoting through the base currency."""
    table = rate_table or DEFAULT_RATE_TABLE
    coerced_amount = _coerce_amount(amount)
    if source_currency == target_currency:
        return coerced_amount

    source_rate = table.get_rate(source_currency)
    target_rate = table.get_rate(target_currency)
    amount_in_base = coerced_amount / source_rate
    return amount_in_base * target_rate


def convert_many(
    items: Iterable[tuple[Decimal | int | float | str, str]],
    target_currency: str,
    rate_table: ExchangeRateTable | None = None,
) -> Decimal:
    total = Decimal("0")
    for amount, currency in items:
        total += convert_amount(amount, currency, target_currency, rate_table=rate_table)
    return total


def normalize_currency(value: str) -> str:
    normalized = value.strip().upper()
    if len(normalized) != 3 or not normalized.isalpha():
        raise ValueError("Currency must be a 3-letter ISO 4217 code.")
    return normalized


def round_money(amount: Decimal) -> Decimal:
    return _coerce_amount(amount).quantize(CENT, rounding=ROUND_HALF_UP)


def format_currency(amount: Decimal | int | float | str, currency: str) -> str:
    coerced_amount = _coerce_amount(amount)
    if currency == "CLP":
        whole = coerced_amount.quantize(ONE, rounding=ROUND_HALF_UP)
        return f"{_swap_separators(f'{whole:,.0f}')} CLP"
    if currency == "USD":
        return f"${round_money(coerced_amount):,.2f}"
    return f"{_swap_separators(f'{round_money(coerced_amount):,.2f}')} {currency}"


def _swap_separators(value: str) -> str:
    return value.replace(",", "_").replace(".", ",").replace("_", ".")


def _coerce_amount(amount: Decimal | int | float | str) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
