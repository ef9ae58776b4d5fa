"""
Swap classification: raw V2 Swap amounts -> directional trade record.

Pure and synchronous. Block time is left empty here and filled in
by SwapEventHandler once the swap is known to be relevant.

Algorithm:
    1. all four amounts zero                       -> drop
    2. tokenIn  = token0 if amount0In  > 0 else token1 if amount1In  > 0
       tokenOut = token0 if amount0Out > 0 else token1 if amount1Out > 0
    3. tracked token is neither tokenIn nor tokenOut -> drop
    4. tracked token in  -> SELL, tracked token out -> BUY (SELL wins)
    5. token amount from the tracked slot, base amount from the other slot
    6. base amount below the dust threshold (18-dec scale) -> drop
    7. unit price = base / token as a float (display only)
"""

from __future__ import annotations

from decimal import Decimal

from shared.constants import BASE_ASSET_DECIMALS, DEFAULT_MIN_BASE_AMOUNT
from shared.types import PoolHandle, RawSwap, TokenInfo, TradeRecord, TradeSide
from shared.units import format_units, parse_units


def _token_for(pool: PoolHandle, amount0: int, amount1: int) -> str | None:
    if amount0 > 0:
        return pool.token0
    if amount1 > 0:
        return pool.token1
    return None


def _same(a: str | None, b: str) -> bool:
    return a is not None and a.lower() == b.lower()


def classify_swap(
    raw: RawSwap,
    pool: PoolHandle,
    token_address: str,
    token_info: TokenInfo,
    min_base_amount: Decimal = DEFAULT_MIN_BASE_AMOUNT,
) -> TradeRecord | None:
    """Return the trade for ``token_address`` or None if the swap is dropped."""
    if not (raw.amount0_in or raw.amount1_in or raw.amount0_out or raw.amount1_out):
        return None

    token_in = _token_for(pool, raw.amount0_in, raw.amount1_in)
    token_out = _token_for(pool, raw.amount0_out, raw.amount1_out)

    if _same(token_in, token_address):
        side = TradeSide.SELL
        tracked_is_token0 = _same(pool.token0, token_address)
        token_raw = raw.amount0_in if tracked_is_token0 else raw.amount1_in
        base_raw = raw.amount1_out if tracked_is_token0 else raw.amount0_out
    elif _same(token_out, token_address):
        side = TradeSide.BUY
        tracked_is_token0 = _same(pool.token0, token_address)
        token_raw = raw.amount0_out if tracked_is_token0 else raw.amount1_out
        base_raw = raw.amount1_in if tracked_is_token0 else raw.amount0_in
    else:
        return None

    # Dust filter compares integers to avoid float rounding at the boundary
    if base_raw < parse_units(min_base_amount, BASE_ASSET_DECIMALS):
        return None

    token_amount = format_units(token_raw, token_info.decimals)
    base_amount = format_units(base_raw, BASE_ASSET_DECIMALS)
    unit_price = float(base_amount) / float(token_amount)

    return TradeRecord(
        side=side,
        token_amount=token_amount,
        base_amount=base_amount,
        unit_price=unit_price,
        tx_hash=raw.tx_hash,
    )

