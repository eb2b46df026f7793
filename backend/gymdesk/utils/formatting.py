"""Number formatting shared by reports and API payloads.

Amounts use the es-CO convention: `.` groups thousands and `,` separates
decimals, so 50000 renders as `50.000`.
"""

from decimal import Decimal, ROUND_HALF_UP


def format_number(amount, decimals: int = 0) -> str:
    if decimals < 0:
        raise ValueError("decimals must be >= 0")
    quant = Decimal(1).scaleb(-decimals)
    value = Decimal(str(amount)).quantize(quant, rounding=ROUND_HALF_UP)
    # format with US separators, then swap them
    text = f"{value:,.{decimals}f}"
    return text.replace(",", "_").replace(".", ",").replace("_", ".")


def format_price(amount) -> str:
    return format_number(amount, 0)
