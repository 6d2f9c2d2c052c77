"""Currency -- ISO 4217 precision registry and minor-unit formatting."""

from dataclasses import dataclass
from decimal import Decimal
from typing import ClassVar


@dataclass(frozen=True)
class CurrencyInfo:
    """Information about a single ISO 4217 currency."""

    code: str
    decimal_places: int
    name: str
    symbol: str | None = None


class CurrencyRegistry:
    """Registry of ISO 4217 currencies with their minor-unit exponent."""

    _CURRENCIES: ClassVar[dict[str, CurrencyInfo]] = {
        "USD": CurrencyInfo("USD", 2, "US Dollar", "$"),
        "EUR": CurrencyInfo("EUR", 2, "Euro", "€"),
        "GBP": CurrencyInfo("GBP", 2, "Pound Sterling", "£"),
        "JPY": CurrencyInfo("JPY", 0, "Japanese Yen", "¥"),
        "CHF": CurrencyInfo("CHF", 2, "Swiss Franc"),
        "CAD": CurrencyInfo("CAD", 2, "Canadian Dollar"),
        "AUD": CurrencyInfo("AUD", 2, "Australian Dollar"),
        "NZD": CurrencyInfo("NZD", 2, "New Zealand Dollar"),
        "SEK": CurrencyInfo("SEK", 2, "Swedish Krona"),
        "NOK": CurrencyInfo("NOK", 2, "Norwegian Krone"),
        "DKK": CurrencyInfo("DKK", 2, "Danish Krone"),
        "INR": CurrencyInfo("INR", 2, "Indian Rupee"),
        "SGD": CurrencyInfo("SGD", 2, "Singapore Dollar"),
        "ZAR": CurrencyInfo("ZAR", 2, "South African Rand"),
        "BRL": CurrencyInfo("BRL", 2, "Brazilian Real"),
        "MXN": CurrencyInfo("MXN", 2, "Mexican Peso"),
        # Zero decimal currencies
        "CLP": CurrencyInfo("CLP", 0, "Chilean Peso"),
        "ISK": CurrencyInfo("ISK", 0, "Icelandic Krona"),
        "KRW": CurrencyInfo("KRW", 0, "South Korean Won"),
        "VND": CurrencyInfo("VND", 0, "Vietnamese Dong"),
        "UGX": CurrencyInfo("UGX", 0, "Ugandan Shilling"),
        # Three decimal currencies
        "BHD": CurrencyInfo("BHD", 3, "Bahraini Dinar"),
        "JOD": CurrencyInfo("JOD", 3, "Jordanian Dinar"),
        "KWD": CurrencyInfo("KWD", 3, "Kuwaiti Dinar"),
        "OMR": CurrencyInfo("OMR", 3, "Omani Rial"),
        "TND": CurrencyInfo("TND", 3, "Tunisian Dinar"),
    }

    DEFAULT_DECIMAL_PLACES: ClassVar[int] = 2

    @classmethod
    def get_info(cls, code: str) -> CurrencyInfo | None:
        if not code or not isinstance(code, str):
            return None
        return cls._CURRENCIES.get(code.upper().strip())

    @classmethod
    def get_decimal_places(cls, code: str) -> int:
        info = cls.get_info(code)
        return info.decimal_places if info else cls.DEFAULT_DECIMAL_PLACES

    @classmethod
    def normalize(cls, code: str | None, default: str) -> str:
        """Upper-case a currency code, falling back to ``default`` when blank."""
        if not code or not isinstance(code, str) or not code.strip():
            return default.upper()
        return code.strip().upper()


def format_minor_units(amount_cents: int, currency: str) -> str:
    """
    Render an integer amount of minor units in its currency.

    ``format_minor_units(-123456, "GBP") == "-£1,234.56"``; unknown
    codes render as ``"1,234.56 XYZ"``.
    """
    info = CurrencyRegistry.get_info(currency)
    places = info.decimal_places if info else CurrencyRegistry.DEFAULT_DECIMAL_PLACES
    value = Decimal(abs(int(amount_cents))).scaleb(-places)
    body = f"{value:,.{places}f}"
    sign = "-" if amount_cents < 0 else ""
    if info is not None and info.symbol:
        return f"{sign}{info.symbol}{body}"
    code = info.code if info else str(currency).upper()
    return f"{sign}{body} {code}"
