"""
Text helpers for the chat protocol: keyword folding and Czech formatting.
"""

import unicodedata
from decimal import Decimal

CURRENCY_SYMBOLS = {
    "CZK": "Kč",
    "EUR": "€",
    "USD": "US$",
    "GBP": "£",
}

NBSP = " "


def fold(text: str) -> str:
    """
    Lower-case and strip diacritics for keyword matching.

    Examples:
        >>> fold("  Zrušit ")
        'zrusit'
        >>> fold("NOVÝ")
        'novy'
    """
    decomposed = unicodedata.normalize("NFKD", text.strip().lower())
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def format_number(value: Decimal | int | float, decimals: int = 2) -> str:
    """
    Format a number the cs-CZ way: non-breaking space groups, decimal comma.

    Example:
        >>> format_number(Decimal("1210"))
        '1\\xa0210,00'
    """
    formatted = f"{Decimal(str(value)):,.{decimals}f}"
    return formatted.replace(",", NBSP).replace(".", ",")


def format_currency(amount: Decimal | int | float, currency: str = "CZK") -> str:
    """
    Format an amount with its currency symbol after the number.

    Example:
        >>> format_currency(Decimal("1210"), "CZK")
        '1\\xa0210,00\\xa0Kč'
    """
    symbol = CURRENCY_SYMBOLS.get(currency.upper(), currency.upper())
    return f"{format_number(amount)}{NBSP}{symbol}"


def format_quantity(value: Decimal) -> str:
    """
    Format a quantity without trailing zeros.

    Examples:
        >>> format_quantity(Decimal("2.000"))
        '2'
        >>> format_quantity(Decimal("1.50"))
        '1,5'
    """
    normalized = value.normalize()
    if normalized == normalized.to_integral_value():
        return str(normalized.quantize(Decimal(1)))
    return format(normalized, "f").replace(".", ",")
