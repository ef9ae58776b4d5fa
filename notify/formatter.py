"""
Human-readable (Telegram HTML) rendering of trade records and subscription state.
"""

from __future__ import annotations

import html
from decimal import Decimal
from typing import TYPE_CHECKING

from shared.types import TradeSide
from shared.units import format_units

if TYPE_CHECKING:
    from shared.types import Network, PoolHandle, PoolReserves, TokenInfo, TradeRecord

_SIDE_LABELS = {
    TradeSide.BUY: "🟢 BUY",
    TradeSide.SELL: "🔴 SELL",
}

_TX_HASH_PREVIEW = 12


def format_amount(value: Decimal | float, max_fraction_digits: int) -> str:
    """Group thousands and keep at most ``max_fraction_digits``, trimming trailing zeros."""
    text = f"{Decimal(str(value)):,.{max_fraction_digits}f}"
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text


def format_trade_message(record: TradeRecord, network: Network, token_info: TokenInfo) -> str:
    symbol = html.escape(token_info.symbol)
    name = html.escape(token_info.name)
    token_digits = 6 if token_info.decimals > 6 else 4
    explorer_url = network.explorer_link(record.tx_hash)
    when = (
        record.block_timestamp.strftime("%Y-%m-%d %H:%M:%S UTC")
        if record.block_timestamp is not None
        else "unknown"
    )

    return (
        f"{_SIDE_LABELS[record.side]} {symbol} ({name})\n"
        f"Network: {network.label}\n"
        f"Amount: {format_amount(record.token_amount, token_digits)} {symbol}\n"
        f"Price: {record.unit_price:.8f} {network.base_symbol}\n"
        f"Total value: {format_amount(record.base_amount, 6)} {network.base_symbol}\n"
        f'TX: <a href="{explorer_url}">{record.tx_hash[:_TX_HASH_PREVIEW]}...</a>\n'
        f"Time: {when}"
    )


def format_subscription_confirmation(
    network: Network,
    token_info: TokenInfo,
    pool: PoolHandle,
    reserves: PoolReserves | None = None,
) -> str:
    symbol = html.escape(token_info.symbol)
    lines = [
        f"✅ Subscription to {symbol} ({html.escape(token_info.name)}) "
        f"on {network.label} is active!",
        f"Token address: <code>{token_info.address}</code>",
        f"Pool: <code>{pool.address}</code>",
    ]
    if reserves is not None:
        if pool.slot_of(token_info.address) == 0:
            token_reserve, base_reserve = reserves.reserve0, reserves.reserve1
        else:
            token_reserve, base_reserve = reserves.reserve1, reserves.reserve0
        token_display = format_units(token_reserve, token_info.decimals)
        base_display = format_units(base_reserve, network.base_decimals)
        lines.append(
            f"Reserves: {token_display:.2f} {symbol} / {base_display:.4f} {network.base_symbol}"
        )
    return "\n".join(lines)
