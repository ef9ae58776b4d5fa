"""
Fixed-point amount conversion.

On-chain quantities are integers scaled by 10**decimals. Conversion goes through
Decimal with enough precision for any uint256, so format then parse is exact.
"""

from decimal import Decimal, localcontext


def format_units(raw: int, decimals: int) -> Decimal:
    """Scale an on-chain integer down to display units."""
    with localcontext() as ctx:
        ctx.prec = 100
        return Decimal(raw).scaleb(-decimals)


def parse_units(value: Decimal | str | int, decimals: int) -> int:
    """Scale a display amount up to the on-chain integer, truncating excess precision."""
    with localcontext() as ctx:
        ctx.prec = 100
        return int(Decimal(str(value)).scaleb(decimals))
