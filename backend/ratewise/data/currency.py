"""Currency reference data: ISO-4217 minor units, fallback FX table, market factors."""

from decimal import Decimal

# ISO-4217 codes we accept → minor units (decimal places on the wire)
CURRENCY_DECIMALS: dict[str, int] = {
    "USD": 2, "CAD": 2, "EUR": 2, "GBP": 2, "CHF": 2, "SEK": 2, "NOK": 2, "DKK": 2,
    "PLN": 2, "CZK": 2, "HUF": 2, "TRY": 2,
    "AUD": 2, "NZD": 2, "SGD": 2, "HKD": 2, "CNY": 2, "INR": 2, "THB": 2, "MYR": 2,
    "PHP": 2, "IDR": 2, "TWD": 2,
    "JPY": 0, "KRW": 0, "VND": 0, "CLP": 0, "ISK": 0,
    "AED": 2, "QAR": 2, "SAR": 2, "ILS": 2, "EGP": 2, "ZAR": 2,
    "MXN": 2, "BRL": 2, "ARS": 2, "COP": 2, "PEN": 2,
    "BHD": 3, "KWD": 3, "OMR": 3, "JOD": 3,
}

# Static exchange rates to USD (USD value of one unit); used when no provider key is set
EXCHANGE_RATES_TO_USD: dict[str, Decimal] = {
    "USD": Decimal("1.0"),
    "CAD": Decimal("0.74"),
    "EUR": Decimal("1.08"),
    "GBP": Decimal("1.27"),
    "CHF": Decimal("1.13"),
    "JPY": Decimal("0.0067"),
    "AUD": Decimal("0.65"),
    "NZD": Decimal("0.60"),
    "SGD": Decimal("0.75"),
    "HKD": Decimal("0.13"),
    "CNY": Decimal("0.14"),
    "INR": Decimal("0.012"),
    "KRW": Decimal("0.00074"),
    "TWD": Decimal("0.031"),
    "THB": Decimal("0.028"),
    "AED": Decimal("0.27"),
    "QAR": Decimal("0.27"),
    "TRY": Decimal("0.031"),
    "MXN": Decimal("0.058"),
    "BRL": Decimal("0.20"),
    "ZAR": Decimal("0.055"),
}

# Purchasing-power-parity factors by market code
PPP_FACTORS: dict[str, Decimal] = {
    "US": Decimal("1.0"),
    "EU": Decimal("0.95"),
    "UK": Decimal("1.1"),
    "JP": Decimal("1.05"),
    "CN": Decimal("0.65"),
    "IN": Decimal("0.45"),
    "BR": Decimal("0.55"),
    "AU": Decimal("1.15"),
    "CA": Decimal("0.92"),
    "MX": Decimal("0.48"),
}

# Tax-inclusive display factors by market code
TAX_FACTORS: dict[str, Decimal] = {
    "US": Decimal("1.0"),
    "EU": Decimal("1.12"),
    "UK": Decimal("1.10"),
    "JP": Decimal("1.08"),
    "CN": Decimal("1.06"),
    "IN": Decimal("1.18"),
    "BR": Decimal("1.15"),
    "AU": Decimal("1.10"),
    "CA": Decimal("1.08"),
    "MX": Decimal("1.16"),
}

# Suggested channel markups (percent) by market, used when a config omits one
CHANNEL_DEFAULT_MARKUPS: dict[str, dict[str, Decimal]] = {
    "booking_com": {"US": Decimal("5"), "EU": Decimal("8"), "default": Decimal("6")},
    "expedia": {"US": Decimal("7"), "EU": Decimal("10"), "default": Decimal("8")},
    "airbnb": {"US": Decimal("3"), "EU": Decimal("5"), "default": Decimal("4")},
    "agoda": {"US": Decimal("6"), "EU": Decimal("9"), "default": Decimal("7")},
}


def is_known_currency(code: str | None) -> bool:
    return bool(code) and code in CURRENCY_DECIMALS


def currency_decimals(code: str) -> int:
    return CURRENCY_DECIMALS.get(code, 2)


def ppp_factor(market: str | None) -> Decimal:
    return PPP_FACTORS.get((market or "").upper(), Decimal("1"))


def tax_factor(market: str | None) -> Decimal:
    return TAX_FACTORS.get((market or "").upper(), Decimal("1"))


def default_markup(channel_id: str, market: str | None) -> Decimal:
    table = CHANNEL_DEFAULT_MARKUPS.get(channel_id)
    if not table:
        return Decimal("0")
    return table.get((market or "").upper(), table["default"])
