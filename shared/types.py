"""
Shared data types for the pool trade monitor.

Centralized dataclasses and enums used across all modules.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class TradeSide(Enum):
    BUY = "buy"  # Tracked token leaves the pool
    SELL = "sell"  # Tracked token enters the pool


# ---------------------------------------------------------------------------
# Static configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Network:
    key: str  # "ETH", "BSC", "BASE"
    label: str
    ws_url: str
    factory_address: str
    base_asset_address: str
    base_symbol: str
    explorer_tx_url: str  # template with {tx_hash}
    base_decimals: int = 18

    def explorer_link(self, tx_hash: str) -> str:
        return self.explorer_tx_url.format(tx_hash=tx_hash)


# ---------------------------------------------------------------------------
# On-chain entities
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TokenInfo:
    address: str
    symbol: str
    name: str
    decimals: int


@dataclass(frozen=True)
class PoolHandle:
    """Pair contract plus its token ordering, fixed once resolved."""

    address: str
    token0: str
    token1: str
    network_key: str

    def slot_of(self, token_address: str) -> int | None:
        """Return 0 or 1 for the slot holding ``token_address``, else None."""
        needle = token_address.lower()
        if self.token0.lower() == needle:
            return 0
        if self.token1.lower() == needle:
            return 1
        return None


@dataclass(frozen=True)
class PoolReserves:
    reserve0: int
    reserve1: int
    block_timestamp_last: int


# ---------------------------------------------------------------------------
# Events and trades
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RawSwap:
    """Decoded V2 Swap log: four unsigned amounts plus the counterpart."""

    pool_address: str
    sender: str
    recipient: str
    amount0_in: int
    amount1_in: int
    amount0_out: int
    amount1_out: int
    tx_hash: str
    block_number: int | None
    log_index: int | None = None


@dataclass(frozen=True)
class TradeRecord:
    side: TradeSide
    token_amount: Decimal  # display units
    base_amount: Decimal  # display units
    unit_price: float  # base per token, display only
    tx_hash: str
    block_timestamp: datetime | None = None


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ConnectionStatus:
    network_key: str
    url: str
    is_open: bool
    generation: int
    last_block: int | None
    subscription_count: int
